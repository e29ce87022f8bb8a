"""
Incremental merging and fuzzy deduplication of extracted entities.

Entities are matched by a normalized-name similarity test. Both operations work on
deep copies: batches passed in are never mutated.
"""

import logging
import re
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    NamedTuple,
    Sequence,
    Tuple,
    Type,
    TypeVar,
)

from lawkb.llm_extraction.models import (
    Case,
    Concept,
    ExtractionBatch,
    ExtractionModel,
    Principle,
    Rule,
)

logger = logging.getLogger(__name__)

EntityT = TypeVar("EntityT", bound=ExtractionModel)

MIN_CONTAINED_NAME_LENGTH = 6

_ARTICLE_PATTERN = re.compile(r"\b(the|a|an)\b")
_SEPARATOR_PATTERN = re.compile(r"[^a-z0-9\u4e00-\u9fff]+")

# Fields describing the entity's current state; newer extractions replace them.
TEXT_FIELDS: Dict[Type[ExtractionModel], Tuple[str, ...]] = {
    Concept: ("definition",),
    Case: ("facts", "holding", "significance"),
    Principle: ("description",),
    Rule: ("statement",),
}

OPTIONAL_FIELDS: Dict[Type[ExtractionModel], Tuple[str, ...]] = {
    Concept: ("name_localized",),
    Case: ("citation", "year", "court"),
    Principle: ("name_localized",),
    Rule: ("name_localized",),
}

ARRAY_FIELDS: Dict[Type[ExtractionModel], Tuple[str, ...]] = {
    Concept: ("source_refs",),
    Case: ("related_concept_ids", "source_refs"),
    Principle: ("related_concept_ids", "supporting_case_ids", "source_refs"),
    Rule: (
        "elements",
        "exceptions",
        "application_steps",
        "related_concept_ids",
        "supporting_case_ids",
        "source_refs",
    ),
}

SECTIONS = ("concepts", "cases", "principles", "rules")


class DuplicatePair(NamedTuple):
    index_a: int
    index_b: int
    name_a: str
    name_b: str


def normalize_name(name: str) -> str:
    """Lowercase, drop articles, collapse punctuation and whitespace to single spaces."""
    lower = name.lower()
    lower = _ARTICLE_PATTERN.sub("", lower)
    return _SEPARATOR_PATTERN.sub(" ", lower).strip()


def are_similar(a: str, b: str) -> bool:
    """
    Equal after normalization, or one contains the other and the shorter normalized
    form has at least MIN_CONTAINED_NAME_LENGTH characters.
    """
    na = normalize_name(a)
    nb = normalize_name(b)
    if na == nb:
        return True
    shorter, longer = (na, nb) if len(na) <= len(nb) else (nb, na)
    return len(shorter) >= MIN_CONTAINED_NAME_LENGTH and shorter in longer


def union(a: Iterable[Any], b: Iterable[Any]) -> List[Any]:
    """Order-preserving union."""
    result = []
    seen = set()
    for item in list(a) + list(b):
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


def _is_present(value: Any) -> bool:
    return value is not None and value != ""


def _union_arrays(target: ExtractionModel, other: ExtractionModel) -> None:
    for name in ARRAY_FIELDS[type(target)]:
        setattr(target, name, union(getattr(target, name), getattr(other, name)))


def update_entity(target: EntityT, incoming: EntityT) -> None:
    """Fold a newer extraction of the same entity into ``target`` in place."""
    for name in TEXT_FIELDS[type(target)]:
        setattr(target, name, getattr(incoming, name))
    for name in OPTIONAL_FIELDS[type(target)]:
        value = getattr(incoming, name)
        if _is_present(value):
            setattr(target, name, value)
    _union_arrays(target, incoming)


def combine_entities(a: EntityT, b: EntityT) -> EntityT:
    """
    Combine two duplicate entities from the same extraction.

    The shorter name is kept as canonical (ties keep ``a``), the longer of each text
    field wins, optional fields keep whichever value is present, arrays are unioned.
    """
    keep, other = (a, b) if len(a.name) <= len(b.name) else (b, a)
    result = keep.model_copy(deep=True)

    for name in TEXT_FIELDS[type(result)]:
        if len(getattr(other, name)) > len(getattr(result, name)):
            setattr(result, name, getattr(other, name))
    for name in OPTIONAL_FIELDS[type(result)]:
        if not _is_present(getattr(result, name)):
            setattr(result, name, getattr(other, name))
    _union_arrays(result, other)
    return result


def _merge_section(current: List[EntityT], incoming: Sequence[EntityT]) -> int:
    matched = 0
    for entity in incoming:
        match = next((e for e in current if are_similar(e.name, entity.name)), None)
        if match is not None:
            update_entity(match, entity)
            matched += 1
        else:
            current.append(entity.model_copy(deep=True))
    return matched


def merge_entities(existing: ExtractionBatch, incoming: ExtractionBatch) -> ExtractionBatch:
    """
    Merge a new extraction into an existing corpus and return the merged copy.

    An incoming entity updates the first similar existing entity of the same kind,
    otherwise it is appended. Source documents are unioned, the extraction time is
    taken from ``incoming`` and token usage is summed.
    """
    merged = existing.model_copy(deep=True)

    for section in SECTIONS:
        matched = _merge_section(getattr(merged, section), getattr(incoming, section))
        if matched:
            logger.debug(f"Merged {matched} existing {section}")

    merged.metadata.source_documents = union(
        merged.metadata.source_documents, incoming.metadata.source_documents
    )
    merged.metadata.extracted_at = incoming.metadata.extracted_at
    merged.metadata.tokens_used += incoming.metadata.tokens_used
    if merged.metadata.model_id == "unknown":
        merged.metadata.model_id = incoming.metadata.model_id

    logger.info(
        f"Merged {incoming.count_entities()} incoming entities; corpus now has {merged.summary()}"
    )
    return merged


def deduplicate_list(
    items: Sequence[EntityT], combine: Callable[[EntityT, EntityT], EntityT] = combine_entities
) -> List[EntityT]:
    """Collapse similar names, chaining through the running merged entity."""
    result = []
    consumed = set()

    for i, item in enumerate(items):
        if i in consumed:
            continue
        current = item
        for j in range(i + 1, len(items)):
            if j in consumed:
                continue
            if are_similar(current.name, items[j].name):
                logger.debug(f"Merging duplicate '{items[j].name}' into '{current.name}'")
                current = combine(current, items[j])
                consumed.add(j)
        result.append(current)

    return result


def deduplicate_entities(batch: ExtractionBatch) -> ExtractionBatch:
    """Return a copy of ``batch`` with similar entities of each kind merged."""
    result = batch.model_copy(deep=True)
    before = result.count_entities()
    for section in SECTIONS:
        setattr(result, section, deduplicate_list(getattr(result, section)))

    removed = before - result.count_entities()
    if removed:
        logger.info(f"Deduplication merged {removed} duplicate entities")
    return result


def find_duplicate_pairs(items: Sequence[ExtractionModel]) -> List[DuplicatePair]:
    """Every pair of similar names, for review."""
    pairs = []
    for i in range(len(items)):
        for j in range(i + 1, len(items)):
            if are_similar(items[i].name, items[j].name):
                pairs.append(DuplicatePair(i, j, items[i].name, items[j].name))
    return pairs
