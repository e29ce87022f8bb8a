"""
JSON repair ladder.

An ordered list of pure ``str -> str`` passes, each more aggressive than the last.
Every pass receives the previous pass's output. ``repair`` stops at the first text
that ``json.loads`` accepts and raises JsonRepairError when the ladder is exhausted.
Nothing here invents content: passes only escape, close, or cut.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, Tuple

from lawkb.llm_extraction.errors import JsonRepairError

logger = logging.getLogger(__name__)

_CLOSER_FOR = {"{": "}", "[": "]"}
_DELIMITERS_AFTER_CLOSING_QUOTE = frozenset({",", "]", "}", ":", "\n"})
_CONTROL_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t"}
_WHITESPACE = " \t\r\n"


@dataclass
class _ScanState:
    stack: List[str] = field(default_factory=list)
    in_string: bool = False
    escaped: bool = False
    last_string_start: Optional[int] = None


def _scan(text: str) -> _ScanState:
    """Track open containers and string state, ignoring brackets inside strings."""
    state = _ScanState()
    for i, ch in enumerate(text):
        if state.in_string:
            if state.escaped:
                state.escaped = False
            elif ch == "\\":
                state.escaped = True
            elif ch == '"':
                state.in_string = False
            continue

        if ch == '"':
            state.in_string = True
            state.last_string_start = i
        elif ch in _CLOSER_FOR:
            state.stack.append(ch)
        elif ch in "}]":
            if state.stack and _CLOSER_FOR[state.stack[-1]] == ch:
                state.stack.pop()
    return state


def _closers(stack: Sequence[str]) -> str:
    return "".join(_CLOSER_FOR[opener] for opener in reversed(stack))


def _strip_trailing_comma(text: str) -> str:
    body = text.rstrip()
    if body.endswith(","):
        return body[:-1].rstrip()
    return body


def _strip_commas_before_closers(text: str) -> str:
    out: List[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            out.append(ch)
            continue

        if ch == '"':
            in_string = True
        elif ch in "}]":
            k = len(out) - 1
            while k >= 0 and out[k] in _WHITESPACE:
                k -= 1
            if k >= 0 and out[k] == ",":
                del out[k]
        out.append(ch)
    return "".join(out)


def _is_closing_quote(text: str, start: int) -> bool:
    j = start
    while j < len(text) and text[j] in " \t\r":
        j += 1
    return j >= len(text) or text[j] in _DELIMITERS_AFTER_CLOSING_QUOTE


def sanitize_quotes(text: str) -> str:
    """
    Stage 1: escape stray quotes and raw control characters inside string literals.

    A quote inside a string only closes it when what follows (after optional spaces)
    is a structural delimiter, a newline, or the end of input. Any other quote is an
    unescaped internal quote, e.g. ``"facts": "The court said "hello" to..."``.
    """
    out: List[str] = []
    in_string = False
    escaped = False

    for i, ch in enumerate(text):
        if escaped:
            out.append(ch)
            escaped = False
            continue

        if ch == "\\":
            out.append(ch)
            escaped = True
            continue

        if ch == '"':
            if not in_string:
                in_string = True
                out.append(ch)
            elif _is_closing_quote(text, i + 1):
                in_string = False
                out.append(ch)
            else:
                out.append('\\"')
            continue

        if in_string and ch in _CONTROL_ESCAPES:
            out.append(_CONTROL_ESCAPES[ch])
        else:
            out.append(ch)

    return "".join(out)


def _strip_dangling_key(text: str, state: _ScanState) -> str:
    """Drop a trailing object key that never received a value."""
    body = text.rstrip()
    has_colon = body.endswith(":")
    if has_colon:
        body = body[:-1].rstrip()

    in_object = bool(state.stack) and state.stack[-1] == "{"
    if in_object and body.endswith('"') and state.last_string_start is not None:
        before = body[: state.last_string_start].rstrip()
        if has_colon or before.endswith(("{", ",")):
            return before

    return text


def repair_truncation(text: str) -> str:
    """
    Stage 2: close a response that was cut off mid-stream.

    Closes an unterminated string, removes a dangling ``"key":`` and trailing commas,
    then appends the closers for every still-open container in LIFO order.
    """
    result = _strip_commas_before_closers(text.strip())
    state = _scan(result)

    if state.in_string:
        if state.escaped:
            # A lone trailing backslash would escape the closing quote.
            result = result[:-1]
        result += '"'

    result = _strip_dangling_key(result, state)
    result = _strip_trailing_comma(result)
    return result + _closers(state.stack)


def _value_end_positions(text: str) -> List[Tuple[int, Tuple[str, ...]]]:
    """Positions where a complete value ended, with the containers still open there."""
    positions: List[Tuple[int, Tuple[str, ...]]] = []
    stack: List[str] = []
    in_string = False
    escaped = False

    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
                if not _followed_by_colon(text, i + 1):
                    positions.append((i, tuple(stack)))
            continue

        if ch == '"':
            in_string = True
        elif ch in _CLOSER_FOR:
            stack.append(ch)
        elif ch in "}]":
            if stack and _CLOSER_FOR[stack[-1]] == ch:
                stack.pop()
                positions.append((i, tuple(stack)))
    return positions


def _followed_by_colon(text: str, start: int) -> bool:
    j = start
    while j < len(text) and text[j] in _WHITESPACE:
        j += 1
    return j < len(text) and text[j] == ":"


def repair_aggressive(text: str) -> str:
    """
    Stage 3: cut back to the last complete value and rebalance.

    Candidate cut points are tried from the end of the text backwards; the first one
    whose rebalanced prefix parses wins. An incomplete trailing element is dropped
    entirely rather than salvaged.
    """
    text = text.strip()
    positions = _value_end_positions(text)
    if not positions:
        return text

    failure_floor = len(text)
    fallback: Optional[str] = None
    for pos, open_stack in reversed(positions):
        if pos >= failure_floor:
            continue
        candidate = _strip_trailing_comma(text[: pos + 1]) + _closers(open_stack)
        if fallback is None:
            fallback = candidate
        try:
            json.loads(candidate)
        except json.JSONDecodeError as e:
            # An error inside the shared prefix fails every longer cut as well.
            if e.pos < pos and not e.msg.startswith("Unterminated"):
                failure_floor = e.pos
            continue
        return candidate

    return fallback if fallback is not None else text


RepairStage = Tuple[str, Callable[[str], str]]

REPAIR_STAGES: Tuple[RepairStage, ...] = (
    ("sanitize_quotes", sanitize_quotes),
    ("repair_truncation", repair_truncation),
    ("repair_aggressive", repair_aggressive),
)


@dataclass(frozen=True)
class RepairResult:
    """Parsed JSON plus the ladder stage that produced it (0 = parsed as-is)."""

    data: Any
    stage: int
    text: str

    @property
    def repaired(self) -> bool:
        return self.stage > 0

    @property
    def truncated(self) -> bool:
        """True when the text had to be closed or cut, i.e. stage 2 or later."""
        return self.stage >= 2


def repair(
    candidate: str, stages: Sequence[RepairStage] = REPAIR_STAGES
) -> RepairResult:
    """Parse ``candidate``, climbing the repair ladder until something parses."""
    stage_errors: List[str] = []
    try:
        return RepairResult(json.loads(candidate), 0, candidate)
    except json.JSONDecodeError as e:
        stage_errors.append(f"direct_parse: {e}")
        logger.warning(f"Direct JSON parse failed, attempting repair: {e}")

    text = candidate
    for number, (name, stage) in enumerate(stages, start=1):
        text = stage(text)
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            stage_errors.append(f"{name}: {e}")
            logger.warning(f"Repair stage {number} ({name}) did not yield valid JSON: {e}")
            continue
        logger.info(f"JSON recovered by repair stage {number} ({name})")
        return RepairResult(data, number, text)

    raise JsonRepairError(
        f"Could not repair JSON after {len(stages)} repair stages", candidate, stage_errors
    )
