from conftest import case, concept, make_batch
from lawkb.llm_extraction.prompts import (
    LANGUAGE_INSTRUCTIONS,
    build_entity_extraction_prompt,
    build_relationship_mapping_prompt,
    chunking_instructions,
    language_instruction,
)


def test_unknown_language_falls_back_to_mixed():
    assert language_instruction("fr") == LANGUAGE_INSTRUCTIONS["mixed"]


def test_entity_prompt_embeds_sources_and_language():
    prompt = build_entity_extraction_prompt("--- SOURCE: a.md ---\nnotes", language="en")

    assert "--- SOURCE: a.md ---\nnotes" in prompt
    assert LANGUAGE_INSTRUCTIONS["en"] in prompt
    assert '"sourceDocuments"' in prompt
    assert chunking_instructions not in prompt


def test_chunked_entity_prompt_starts_with_chunking_instructions():
    prompt = build_entity_extraction_prompt("sources", chunked=True)
    assert prompt.startswith(chunking_instructions)


def test_relationship_prompt_lists_confirmed_ids():
    batch = make_batch(
        concepts=[concept("Aggregate Theory")],
        cases=[case("Diamond v. Commissioner")],
    )

    prompt = build_relationship_mapping_prompt(batch, "sources")

    assert "- aggregate-theory: Aggregate Theory" in prompt
    assert "- diamond-v-commissioner: Diamond v. Commissioner" in prompt
    assert '"casesInOrder"' in prompt


def test_relationship_prompt_marks_empty_sections():
    prompt = build_relationship_mapping_prompt(make_batch(concepts=[concept("Basis")]), "s")
    assert "## CONFIRMED CASES:\n(none)" in prompt
