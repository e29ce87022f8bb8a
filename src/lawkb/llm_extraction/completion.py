import logging
import re
from abc import ABC, abstractmethod
from threading import local
from typing import Iterator, List, Optional

import openai
from google import genai
from google.genai import errors as genai_errors
from google.genai.types import GenerateContentConfig, GenerateContentResponse
from openai import OpenAI
from pydantic import BaseModel, Field

from lawkb.llm_extraction.errors import CompletionError, ErrorKind

logger = logging.getLogger(__name__)


class CompletionConfig(BaseModel):
    """Per-request generation settings passed to a completion service."""

    temperature: float = Field(0.3, ge=0.0, le=2.0)
    max_output_tokens: int = Field(65536, gt=0)
    json_mode: bool = Field(False, description="Ask the service for a JSON response.")


# Checked in order; the first matching kind wins.
_ERROR_PATTERNS = [
    (ErrorKind.ABORTED, re.compile(r"\baborted\b")),
    (
        ErrorKind.RATE_LIMITED,
        re.compile(r"\b429\b|rate.?limit|resource.?exhausted|quota"),
    ),
    (
        ErrorKind.AUTH_ERROR,
        re.compile(
            r"\b401\b|\b403\b|api.?key|unauthori[sz]ed|permission.?denied|unauthenticated"
        ),
    ),
    (ErrorKind.SAFETY_BLOCKED, re.compile(r"safety|blocked|content.?filter")),
    (
        ErrorKind.SERVER_ERROR,
        re.compile(
            r"\b50[0234]\b|internal|unavailable|server error|overloaded|bad gateway"
        ),
    ),
    (
        ErrorKind.NETWORK_ERROR,
        re.compile(
            r"network|connection|timed? ?out|timeout|econnrefused|econnreset|fetch"
        ),
    ),
]


def classify_error(error: BaseException) -> ErrorKind:
    """Map an arbitrary exception onto the closed error taxonomy."""
    if isinstance(error, CompletionError):
        return error.kind
    if isinstance(error, (ConnectionError, TimeoutError)):
        return ErrorKind.NETWORK_ERROR

    message = f"{type(error).__name__}: {error}".lower()
    for kind, pattern in _ERROR_PATTERNS:
        if pattern.search(message):
            return kind
    return ErrorKind.UNKNOWN


def _kind_for_status(status: Optional[int], message: str) -> ErrorKind:
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status in (401, 403):
        return ErrorKind.AUTH_ERROR
    if status is not None and status >= 500:
        return ErrorKind.SERVER_ERROR
    return classify_error(Exception(message))


class CompletionService(ABC):
    """Abstract text-completion capability consumed by the request orchestrator.

    Implementations raise CompletionError for classified failures; any other
    exception is classified by the orchestrator from its message. Token usage is
    recorded per thread, so concurrent requests never see each other's counts.
    """

    model: str = "unknown"

    def __init__(self) -> None:
        self._usage = local()

    @property
    def last_token_count(self) -> Optional[int]:
        """Total tokens reported by this thread's most recent request, if any."""
        return getattr(self._usage, "total", None)

    @last_token_count.setter
    def last_token_count(self, value: Optional[int]) -> None:
        self._usage.total = value

    @abstractmethod
    def generate(self, prompt: str, config: CompletionConfig) -> str:
        """Return the full completion text."""

    @abstractmethod
    def stream(self, prompt: str, config: CompletionConfig) -> Iterator[str]:
        """Yield completion text fragments as they arrive."""


class GeminiCompletionService(CompletionService):
    DEFAULT_MODEL = "gemini-2.5-flash"

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        system_instruction: Optional[str] = None,
        client: Optional[genai.Client] = None,
    ):
        super().__init__()
        self.client = client or genai.Client(api_key=api_key)
        self.model = model
        self.system_instruction = system_instruction
        logger.info(f"Initialized Gemini completion service with model: {model}")

    def _build_config(self, config: CompletionConfig) -> GenerateContentConfig:
        return GenerateContentConfig(
            temperature=config.temperature,
            max_output_tokens=config.max_output_tokens,
            response_mime_type="application/json" if config.json_mode else None,
            system_instruction=self.system_instruction,
        )

    @staticmethod
    def _translate(error: genai_errors.APIError) -> CompletionError:
        message = str(error)
        return CompletionError(_kind_for_status(error.code, message), message)

    @staticmethod
    def _check_blocked(response: GenerateContentResponse) -> None:
        feedback = getattr(response, "prompt_feedback", None)
        block_reason = getattr(feedback, "block_reason", None) if feedback else None
        if block_reason:
            raise CompletionError(
                ErrorKind.SAFETY_BLOCKED,
                f"Prompt blocked by safety filters ({block_reason}). "
                "Try different source material.",
            )
        for candidate in getattr(response, "candidates", None) or []:
            finish_reason = str(getattr(candidate, "finish_reason", "") or "")
            if finish_reason.endswith("SAFETY"):
                raise CompletionError(
                    ErrorKind.SAFETY_BLOCKED,
                    "Response blocked by safety filters. Try different source material.",
                )

    def _record_usage(self, response: GenerateContentResponse) -> None:
        usage = getattr(response, "usage_metadata", None)
        total = getattr(usage, "total_token_count", None) if usage else None
        if total is not None:
            self.last_token_count = total

    def generate(self, prompt: str, config: CompletionConfig) -> str:
        try:
            response = self.client.models.generate_content(
                model=self.model,
                contents=prompt,
                config=self._build_config(config),
            )
        except genai_errors.APIError as e:
            raise self._translate(e) from e

        self._check_blocked(response)
        self._record_usage(response)
        return response.text or ""

    def stream(self, prompt: str, config: CompletionConfig) -> Iterator[str]:
        try:
            for chunk in self.client.models.generate_content_stream(
                model=self.model,
                contents=prompt,
                config=self._build_config(config),
            ):
                self._check_blocked(chunk)
                self._record_usage(chunk)
                if chunk.text:
                    yield chunk.text
        except genai_errors.APIError as e:
            raise self._translate(e) from e


class OpenAICompletionService(CompletionService):
    """Completion service for OpenAI and OpenAI-compatible APIs (e.g. Ollama)."""

    DEFAULT_MODEL = "gpt-4o-mini"

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        base_url: Optional[str] = None,
        system_prompt: Optional[str] = None,
        client: Optional[OpenAI] = None,
    ):
        super().__init__()
        self.client = client or OpenAI(api_key=api_key, base_url=base_url)
        self.model = model
        self.system_prompt = system_prompt
        logger.info(
            f"Initialized OpenAI-compatible completion service with model: {model}"
            + (f", base_url: {base_url}" if base_url else "")
        )

    def _messages(self, prompt: str) -> List[dict]:
        messages = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": prompt.strip()})
        return messages

    def _request_kwargs(self, prompt: str, config: CompletionConfig) -> dict:
        kwargs = {
            "model": self.model,
            "messages": self._messages(prompt),
            "temperature": config.temperature,
            "max_tokens": config.max_output_tokens,
        }
        if config.json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        return kwargs

    @staticmethod
    def _translate(error: openai.OpenAIError) -> CompletionError:
        message = str(error)
        if isinstance(error, openai.RateLimitError):
            kind = ErrorKind.RATE_LIMITED
        elif isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
            kind = ErrorKind.AUTH_ERROR
        elif isinstance(error, openai.APIConnectionError):
            kind = ErrorKind.NETWORK_ERROR
        elif isinstance(error, openai.APIStatusError):
            kind = _kind_for_status(error.status_code, message)
        else:
            kind = classify_error(error)
        return CompletionError(kind, message)

    @staticmethod
    def _check_finish_reason(finish_reason: Optional[str]) -> None:
        if finish_reason == "content_filter":
            raise CompletionError(
                ErrorKind.SAFETY_BLOCKED,
                "Response blocked by content filter. Try different source material.",
            )

    def generate(self, prompt: str, config: CompletionConfig) -> str:
        try:
            completion = self.client.chat.completions.create(
                **self._request_kwargs(prompt, config)
            )
        except openai.OpenAIError as e:
            raise self._translate(e) from e

        if completion.usage is not None:
            self.last_token_count = completion.usage.total_tokens
        if not completion.choices:
            return ""
        choice = completion.choices[0]
        self._check_finish_reason(choice.finish_reason)
        return choice.message.content or ""

    def stream(self, prompt: str, config: CompletionConfig) -> Iterator[str]:
        try:
            response = self.client.chat.completions.create(
                **self._request_kwargs(prompt, config), stream=True
            )
            for chunk in response:
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                self._check_finish_reason(choice.finish_reason)
                if choice.delta and choice.delta.content:
                    yield choice.delta.content
        except openai.OpenAIError as e:
            raise self._translate(e) from e
