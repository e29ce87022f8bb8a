"""
Reliable structured output from completion services.

Request orchestration with retries, JSON candidate extraction, the repair ladder,
pre-validation normalization and the pydantic models the output is validated against.
"""

from .errors import (
    CompletionError,
    ErrorKind,
    ExtractionError,
    JsonRepairError,
    NotStructuredOutputError,
    SchemaValidationError,
    StructuredOutputError,
)
from .models import (
    Case,
    Concept,
    ExtractionBatch,
    ExtractionMetadata,
    Principle,
    RelationshipEntry,
    RelationshipMatrix,
    Rule,
)
from .orchestrator import RequestOrchestrator, RetryNotice, Throttle
from .parser import StructuredOutputParser
from .repair import RepairResult, repair

__all__ = [
    "Case",
    "CompletionError",
    "Concept",
    "ErrorKind",
    "ExtractionBatch",
    "ExtractionError",
    "ExtractionMetadata",
    "JsonRepairError",
    "NotStructuredOutputError",
    "Principle",
    "RelationshipEntry",
    "RelationshipMatrix",
    "RepairResult",
    "RequestOrchestrator",
    "RetryNotice",
    "Rule",
    "SchemaValidationError",
    "StructuredOutputError",
    "StructuredOutputParser",
    "Throttle",
    "repair",
]
