import logging
from threading import local
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError

from lawkb.llm_extraction.errors import (
    NotStructuredOutputError,
    SchemaValidationError,
)
from lawkb.llm_extraction.models import ExtractionBatch, RelationshipMatrix
from lawkb.llm_extraction.normalizer import (
    normalize_extracted_entities,
    normalize_relationship_matrix,
)
from lawkb.llm_extraction.repair import RepairResult, repair
from lawkb.llm_extraction.response_extractor import (
    extract_json_candidate,
    looks_structured,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def _normalize_batch(data: Dict[str, Any], result: RepairResult) -> Dict[str, Any]:
    return normalize_extracted_entities(data, truncated=result.truncated)


def _normalize_matrix(data: Dict[str, Any], result: RepairResult) -> Dict[str, Any]:
    return normalize_relationship_matrix(data)


NORMALIZERS: Dict[type, Callable[[Dict[str, Any], RepairResult], Dict[str, Any]]] = {
    ExtractionBatch: _normalize_batch,
    RelationshipMatrix: _normalize_matrix,
}


class StructuredOutputParser:
    """Turns raw completion text into validated models.

    raw text -> JSON candidate -> repair ladder -> normalizer -> pydantic validation.
    Debug information about the last parse is kept per thread.
    """

    _thread_local = local()

    @staticmethod
    def parse(raw_text: str, model_cls: Type[ModelT]) -> ModelT:
        """
        Parse ``raw_text`` into ``model_cls``.

        Raises:
            NotStructuredOutputError: the text holds no JSON object at all.
            JsonRepairError: every repair stage failed.
            SchemaValidationError: the normalized data still violates the schema.
        """
        StructuredOutputParser._reset_debug_info(raw_text)

        candidate = extract_json_candidate(raw_text)
        if not looks_structured(candidate):
            raise NotStructuredOutputError(
                "Response is not structured output (no JSON object found)", raw_text
            )

        result = repair(candidate)
        StructuredOutputParser._thread_local.repair_stage = result.stage

        data = StructuredOutputParser._unwrap(result.data, raw_text)
        normalize = NORMALIZERS.get(model_cls)
        if normalize is not None:
            data = normalize(data, result)

        try:
            return model_cls.model_validate(data)
        except ValidationError as e:
            StructuredOutputParser._thread_local.validation_errors = e.errors()
            logger.error(
                f"{model_cls.__name__} failed validation after normalization: "
                f"{e.error_count()} error(s)"
            )
            raise SchemaValidationError(
                f"{model_cls.__name__} failed schema validation: {e}",
                raw_text,
                e.errors(),
            ) from e

    @staticmethod
    def parse_entities(raw_text: str) -> ExtractionBatch:
        return StructuredOutputParser.parse(raw_text, ExtractionBatch)

    @staticmethod
    def parse_relationships(raw_text: str) -> RelationshipMatrix:
        return StructuredOutputParser.parse(raw_text, RelationshipMatrix)

    @staticmethod
    def _unwrap(data: Any, raw_text: str) -> Dict[str, Any]:
        """Accept a top-level object, or a list whose first item is one."""
        if isinstance(data, dict):
            return data
        if isinstance(data, list) and data and isinstance(data[0], dict):
            if len(data) > 1:
                logger.warning(
                    f"Found {len(data)} items in top-level list, using first item"
                )
            return data[0]
        raise SchemaValidationError(
            f"Expected a JSON object, got {type(data).__name__}", raw_text
        )

    @staticmethod
    def _reset_debug_info(raw_text: str) -> None:
        StructuredOutputParser._thread_local.raw_text = raw_text
        StructuredOutputParser._thread_local.repair_stage = None
        StructuredOutputParser._thread_local.validation_errors = []

    @staticmethod
    def get_last_debug_info() -> Tuple[Optional[str], Optional[int], List[Any]]:
        """Raw text, repair stage and validation errors of the last parse on this thread."""
        thread_local = StructuredOutputParser._thread_local
        return (
            getattr(thread_local, "raw_text", None),
            getattr(thread_local, "repair_stage", None),
            getattr(thread_local, "validation_errors", []),
        )
