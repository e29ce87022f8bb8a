from .chunking import SourceChunker, SourceDocument, estimate_tokens
from .entity_merger import (
    DuplicatePair,
    are_similar,
    deduplicate_entities,
    find_duplicate_pairs,
    merge_entities,
)
from .extraction_session import (
    EntityExtractor,
    ExtractionSession,
    RelationshipMapper,
    SessionState,
)

__all__ = [
    "DuplicatePair",
    "EntityExtractor",
    "ExtractionSession",
    "RelationshipMapper",
    "SessionState",
    "SourceChunker",
    "SourceDocument",
    "are_similar",
    "deduplicate_entities",
    "estimate_tokens",
    "find_duplicate_pairs",
    "merge_entities",
]
