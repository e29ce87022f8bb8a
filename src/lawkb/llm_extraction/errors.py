"""
Error taxonomy for the extraction pipeline.

Two independent families:
1. CompletionError: transport/service failures raised by the request orchestrator.
2. StructuredOutputError: failures turning raw model text into validated records.
"""

from enum import Enum
from typing import Any, List, Optional

RAW_PREVIEW_CHARS = 500


class ErrorKind(str, Enum):
    ABORTED = "aborted"
    AUTH_ERROR = "auth_error"
    SAFETY_BLOCKED = "safety_blocked"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    NETWORK_ERROR = "network_error"
    UNKNOWN = "unknown"


TERMINAL_KINDS = frozenset(
    {ErrorKind.ABORTED, ErrorKind.AUTH_ERROR, ErrorKind.SAFETY_BLOCKED}
)


class ExtractionError(Exception):
    """Base class for every error raised by lawkb."""


class CompletionError(ExtractionError):
    """A classified failure from the completion service."""

    def __init__(self, kind: ErrorKind, message: str, attempts: int = 1):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.attempts = attempts

    @property
    def retryable(self) -> bool:
        return self.kind not in TERMINAL_KINDS

    def __str__(self) -> str:
        if self.attempts > 1:
            return f"{self.kind.value}: {self.message} (after {self.attempts} attempts)"
        return f"{self.kind.value}: {self.message}"


class StructuredOutputError(ExtractionError):
    """Raw model text could not be turned into a validated record."""

    def __init__(self, message: str, raw_text: str):
        super().__init__(message)
        self.raw_text = raw_text

    @property
    def raw_preview(self) -> str:
        if len(self.raw_text) <= RAW_PREVIEW_CHARS:
            return self.raw_text
        return self.raw_text[:RAW_PREVIEW_CHARS] + "..."


class NotStructuredOutputError(StructuredOutputError):
    """The response contains no JSON object at all."""


class JsonRepairError(StructuredOutputError):
    """Every stage of the repair ladder failed to produce parseable JSON."""

    def __init__(
        self, message: str, raw_text: str, stage_errors: Optional[List[str]] = None
    ):
        super().__init__(message, raw_text)
        self.stage_errors = stage_errors or []


class SchemaValidationError(StructuredOutputError):
    """Normalized data still violates the schema. Never repaired further."""

    def __init__(
        self, message: str, raw_text: str, errors: Optional[List[Any]] = None
    ):
        super().__init__(message, raw_text)
        self.errors = errors or []
