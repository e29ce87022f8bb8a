import pytest

from lawkb.llm_extraction.errors import NotStructuredOutputError
from lawkb.llm_extraction.parser import StructuredOutputParser
from lawkb.llm_extraction.response_extractor import (
    extract_json_candidate,
    looks_structured,
)


@pytest.mark.parametrize(
    "raw",
    [
        'Here it is:\n```json\n{"a": 1}\n```\nDone.',
        '```\n{"a": 1}\n```',
        '```JSON {"a": 1} ```',
    ],
)
def test_fenced_block_interior_is_used(raw):
    assert extract_json_candidate(raw) == '{"a": 1}'


def test_prose_around_object_is_stripped():
    assert extract_json_candidate('Sure! {"a": {"b": 2}} Hope that helps.') == '{"a": {"b": 2}}'


def test_truncated_response_runs_to_end_of_text():
    assert extract_json_candidate('Result: {"a": [1, 2') == '{"a": [1, 2'


def test_unclosed_fence_falls_back_to_braces():
    assert extract_json_candidate('```json\n{"a": [1') == '{"a": [1'


def test_text_without_braces_is_returned_trimmed():
    candidate = extract_json_candidate("  I cannot help with that.  ")
    assert candidate == "I cannot help with that."
    assert not looks_structured(candidate)


def test_refusal_is_rejected_before_repair():
    with pytest.raises(NotStructuredOutputError) as exc_info:
        StructuredOutputParser.parse_entities("I'm sorry, I can't help with that request.")
    assert "not structured output" in str(exc_info.value)
    _, stage, _ = StructuredOutputParser.get_last_debug_info()
    assert stage is None
