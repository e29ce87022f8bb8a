import re

# Opening fence with any (or no) language tag, lazily up to the closing fence.
_FENCE_PATTERN = re.compile(r"```[A-Za-z0-9_+.\-]*[ \t]*\n?([\s\S]*?)\n?```")


def extract_json_candidate(raw_text: str) -> str:
    """
    Isolate the JSON-shaped part of a model response.

    Tried in order:
    1. Interior of the first fenced code block, whatever its language tag.
    2. Everything from the first "{" to the last "}".
    3. Everything from the first "{" to the end of the text, when no "}" follows it
       (the stream was cut off before any closing brace appeared).
    4. The trimmed text itself, when there is no "{" at all.
    """
    fence_match = _FENCE_PATTERN.search(raw_text)
    if fence_match:
        return fence_match.group(1).strip()

    first_brace = raw_text.find("{")
    if first_brace == -1:
        return raw_text.strip()

    last_brace = raw_text.rfind("}")
    if last_brace > first_brace:
        return raw_text[first_brace : last_brace + 1]

    return raw_text[first_brace:]


def looks_structured(candidate: str) -> bool:
    return "{" in candidate
