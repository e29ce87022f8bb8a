"""
Pre-validation normalization of raw model output.

These functions mutate a freshly parsed JSON tree (owned by the caller) so that the
strict pydantic models accept it: missing containers are filled, nulls are removed,
types are coerced, loose enum values are canonicalized, and the cut-off trailing
element of a truncated response is dropped.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from lawkb.llm_extraction.models import (
    ENTITY_ARRAY_FIELDS,
    ENTITY_COMPLETE_FIELDS,
    ENTITY_SECTIONS,
    ConceptCategory,
    RelationshipKind,
    RelationshipStrength,
)

logger = logging.getLogger(__name__)

VALID_CATEGORIES = frozenset(c.value for c in ConceptCategory)
VALID_KINDS = frozenset(k.value for k in RelationshipKind)
VALID_STRENGTHS = frozenset(s.value for s in RelationshipStrength)

# Keyword fallbacks, checked in order against the lowercased value.
CATEGORY_KEYWORDS = (
    ("concept", ConceptCategory.doctrine.value),
    ("exception", ConceptCategory.defense.value),
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def canonicalize_category(value: Any) -> str:
    if not isinstance(value, str):
        return ConceptCategory.other.value
    lower = value.lower().strip()
    if lower in VALID_CATEGORIES:
        return lower
    for keyword, category in CATEGORY_KEYWORDS:
        if keyword in lower:
            return category
    return ConceptCategory.other.value


def _canonical_or_none(value: Any, vocabulary: frozenset) -> Optional[str]:
    if not isinstance(value, str):
        return None
    lower = value.lower().strip()
    return lower if lower in vocabulary else None


def _coerce_year(obj: Dict[str, Any]) -> None:
    year = obj.get("year")
    if not isinstance(year, str):
        return
    try:
        number = float(year.strip())
    except ValueError:
        del obj["year"]
        return
    if number != number or number in (float("inf"), float("-inf")):
        del obj["year"]
    else:
        obj["year"] = int(number)


def sanitize_object(obj: Dict[str, Any], array_keys: Iterable[str] = ()) -> None:
    """Treat null as absent, drop nulls from arrays, default arrays, coerce year."""
    for key in list(obj):
        value = obj[key]
        if value is None:
            del obj[key]
        elif isinstance(value, list):
            obj[key] = [item for item in value if item is not None]

    for key in array_keys:
        if not isinstance(obj.get(key), list):
            obj[key] = []

    _coerce_year(obj)


def _looks_incomplete(section: str, entity: Dict[str, Any], strict: bool) -> bool:
    if not entity.get("id") or not entity.get("name"):
        return True
    if section == "cases" and ("facts" not in entity or "holding" not in entity):
        return True
    if strict:
        return any(name not in entity for name in ENTITY_COMPLETE_FIELDS[section])
    return False


def _last_emitted_section(data: Dict[str, Any]) -> Optional[str]:
    """The entity section that was written last, i.e. where a cut-off happened."""
    last = None
    for key, value in data.items():
        if key in ENTITY_SECTIONS and isinstance(value, list) and value:
            last = key
    return last


def _normalize_metadata(data: Dict[str, Any]) -> None:
    metadata = data.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}
        data["metadata"] = metadata

    sanitize_object(metadata, ["sourceDocuments"])
    metadata["sourceDocuments"] = [
        doc for doc in metadata["sourceDocuments"] if isinstance(doc, str)
    ]
    if not isinstance(metadata.get("extractedAt"), str):
        metadata["extractedAt"] = _now_iso()
    if not isinstance(metadata.get("modelId"), str):
        metadata["modelId"] = "unknown"
    tokens = metadata.get("tokensUsed")
    if isinstance(tokens, bool) or not isinstance(tokens, (int, float)) or tokens < 0:
        metadata["tokensUsed"] = 0
    else:
        metadata["tokensUsed"] = int(tokens)


def normalize_extracted_entities(
    data: Dict[str, Any], truncated: bool = False
) -> Dict[str, Any]:
    """
    Normalize a raw ExtractionBatch tree in place and return it.

    Args:
        data: Parsed JSON object from the model.
        truncated: The text had to be closed or cut by the repair ladder. The last
            element of the last-written section must then carry every field its
            kind needs, or it is treated as cut off.
    """
    for section in ENTITY_SECTIONS:
        items = data.get(section)
        if not isinstance(items, list):
            data[section] = []
            continue
        data[section] = [item for item in items if isinstance(item, dict)]

    _normalize_metadata(data)

    cut_section = _last_emitted_section(data) if truncated else None
    for section in ENTITY_SECTIONS:
        items: List[Dict[str, Any]] = data[section]
        for entity in items:
            sanitize_object(entity, ENTITY_ARRAY_FIELDS[section])

        if items and _looks_incomplete(section, items[-1], section == cut_section):
            dropped = items.pop()
            logger.info(
                f"Dropped incomplete trailing entry from {section}: "
                f"{dropped.get('name') or dropped.get('id') or '<unnamed>'}"
            )

        if section == "concepts":
            for entity in items:
                entity["category"] = canonicalize_category(entity.get("category"))

    return data


def _normalize_entry(entry: Dict[str, Any]) -> None:
    sanitize_object(entry)
    if "kind" not in entry and "relationshipType" in entry:
        entry["kind"] = entry.pop("relationshipType")

    raw_kind = entry.get("kind")
    kind = _canonical_or_none(raw_kind, VALID_KINDS)
    strength = _canonical_or_none(entry.get("strength"), VALID_STRENGTHS)

    if kind is None:
        swapped_strength = _canonical_or_none(raw_kind, VALID_STRENGTHS)
        if swapped_strength is not None and strength is None:
            # The model put the strength into the kind field.
            strength = swapped_strength
        kind = RelationshipKind.illustrates.value

    entry["kind"] = kind
    entry["strength"] = strength or RelationshipStrength.secondary.value


def _distinct_in_order(values: Iterable[Any]) -> List[Any]:
    seen = set()
    ordered = []
    for value in values:
        if isinstance(value, str) and value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


def normalize_relationship_matrix(data: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize a raw RelationshipMatrix tree in place and return it."""
    entries = data.get("entries")
    if not isinstance(entries, list):
        entries = []
    entries = [entry for entry in entries if isinstance(entry, dict)]
    data["entries"] = entries

    for entry in entries:
        _normalize_entry(entry)

    for key in ("casesInOrder", "conceptsInOrder"):
        value = data.get(key)
        data[key] = (
            [item for item in value if item is not None]
            if isinstance(value, list)
            else []
        )

    if entries and not data["casesInOrder"]:
        data["casesInOrder"] = _distinct_in_order(e.get("caseId") for e in entries)
    if entries and not data["conceptsInOrder"]:
        data["conceptsInOrder"] = _distinct_in_order(
            e.get("conceptId") for e in entries
        )

    return data
