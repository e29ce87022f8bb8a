from typing import Iterable

from lawkb.llm_extraction.models import ExtractionBatch

system_prompt = """
You are a legal education assistant that turns law school study notes into a structured
knowledge base. You read course notes, casebook excerpts and outlines, and you extract the
legal concepts, cases, principles and rules they discuss. Your output feeds a study tool, so
accuracy matters more than coverage: never invent entities that the source does not discuss.
You always answer with a single JSON object and nothing else.
"""

LANGUAGE_INSTRUCTIONS = {
    "zh": "请用中文输出所有描述性文本。保留英文案例名称、法律术语和引用原文。",
    "en": "Write all descriptive text in English.",
    "mixed": (
        "Write descriptions in Chinese, but keep English case names, citations and legal "
        "terms of art in their original form."
    ),
}


def language_instruction(language: str) -> str:
    return LANGUAGE_INSTRUCTIONS.get(language, LANGUAGE_INSTRUCTIONS["mixed"])


entity_extraction_template = """
Analyze the legal study notes below and extract every distinct entity.

## LANGUAGE:
{language}

## ENTITY TYPES:
1. Concepts: doctrines, rules, standards, defenses, remedies and procedures.
   Fields: `id` (lowercase-kebab-case), `name`, `nameLocalized` (optional), `definition`,
   `category` (one of doctrine, rule, standard, defense, remedy, procedure, other),
   `sourceRefs` (source filenames).
2. Cases: every case the notes mention.
   Fields: `id`, `name`, `citation`, `year` (number), `court`, `facts` (1-2 sentences),
   `holding` (1 sentence), `significance` (1 sentence), `relatedConceptIds`, `sourceRefs`.
3. Principles: overarching principles that span several concepts.
   Fields: `id`, `name`, `nameLocalized`, `description`, `relatedConceptIds`,
   `supportingCaseIds`, `sourceRefs`.
4. Rules: specific rules with elements and application steps.
   Fields: `id`, `name`, `nameLocalized`, `statement`, `elements`, `exceptions`,
   `applicationSteps`, `relatedConceptIds`, `supportingCaseIds`, `sourceRefs`.

## EXTRACTION RULES:
- Keep every text field concise (1-3 sentences). Do not write long paragraphs.
- Do not create several entries for one concept under different names. "Aggregate
  Principle" and "Aggregate Theory of Partnership Taxation" are the same concept: keep one
  entry with the most specific name and mention the alternatives in its definition.
- Only extract a principle when the notes state it explicitly and discuss it with substance.
- Use canonical citation formats: "IRC § 721", "Treas. Reg. § 1.721-1", "26 USC § 721",
  "26 CFR § 1.721". A citation holds only the provision number, never a description.

## REQUIRED OUTPUT FORMAT IN JSON:
{{
  "concepts": [...],
  "cases": [...],
  "principles": [...],
  "rules": [...],
  "metadata": {{
    "sourceDocuments": [...filenames...],
    "extractedAt": "ISO 8601 timestamp",
    "modelId": "model name",
    "tokensUsed": 0
  }}
}}

No markdown fences and no extra text. Pure JSON only.

---
SOURCE DOCUMENTS:
{sources}
---
"""

relationship_mapping_template = """
Map the relationships between the confirmed cases and concepts below.

## LANGUAGE:
{language}

## CONFIRMED CONCEPTS:
{concepts}

## CONFIRMED CASES:
{cases}

## TASK:
For every case-concept pair with a meaningful relationship, produce an entry with:
- `caseId`: the case id
- `conceptId`: the concept id
- `kind`: "establishes" | "applies" | "modifies" | "distinguishes" | "overrules" | "illustrates"
- `description`: 1-2 sentence explanation
- `strength`: "primary" | "secondary" | "tangential"

Skip pairs with no meaningful relationship. Every case should have at least one entry, and
every concept should have at least one case.

## REQUIRED OUTPUT FORMAT IN JSON:
{{
  "entries": [...],
  "casesInOrder": [...case ids in chronological order...],
  "conceptsInOrder": [...concept ids grouped by topic...]
}}

No markdown fences and no extra text. Pure JSON only.

---
SOURCE DOCUMENTS (for verification):
{sources}
---
"""

chunking_instructions = (
    "The notes are sent in several parts. Extract only the entities discussed in this part; "
    "entities repeated across parts are merged afterwards."
)


def _id_list(items: Iterable) -> str:
    lines = [f"- {item.id}: {item.name}" for item in items]
    return "\n".join(lines) if lines else "(none)"


def build_entity_extraction_prompt(
    sources: str, language: str = "mixed", chunked: bool = False
) -> str:
    prompt = entity_extraction_template.format(
        language=language_instruction(language), sources=sources
    )
    if chunked:
        prompt = f"{chunking_instructions}\n{prompt}"
    return prompt


def build_relationship_mapping_prompt(
    batch: ExtractionBatch, sources: str, language: str = "mixed"
) -> str:
    return relationship_mapping_template.format(
        language=language_instruction(language),
        concepts=_id_list(batch.concepts),
        cases=_id_list(batch.cases),
        sources=sources,
    )
