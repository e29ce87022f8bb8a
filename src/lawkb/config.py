"""
Runtime configuration.

Settings are read from the environment (and a ``.env`` file, if present) by
``Settings.from_env()``. Entry points build their completion service and orchestrator
from a Settings instance rather than reading the environment themselves.
"""

import logging
import os
from enum import Enum
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from lawkb.llm_extraction.completion import (
    CompletionConfig,
    CompletionService,
    GeminiCompletionService,
    OpenAICompletionService,
)
from lawkb.llm_extraction.orchestrator import RequestOrchestrator, Throttle
from lawkb.llm_extraction.prompts import system_prompt

logger = logging.getLogger(__name__)

ENV_PREFIX = "LAWKB_"


class Provider(str, Enum):
    GEMINI = "gemini"
    OPENAI = "openai"


class OutputLanguage(str, Enum):
    ZH = "zh"
    EN = "en"
    MIXED = "mixed"


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class Settings(BaseModel):
    """Configuration for extraction runs."""

    provider: Provider = Field(Provider.GEMINI, description="Completion provider")
    gemini_api_key: Optional[str] = Field(None, description="Google Gemini API key")
    openai_api_key: Optional[str] = Field(None, description="OpenAI API key")
    openai_base_url: Optional[str] = Field(
        None, description="Base URL for an OpenAI-compatible server"
    )
    model: Optional[str] = Field(
        None, description="Model name; defaults to the provider's default model"
    )
    temperature: float = Field(0.3, description="Sampling temperature")
    max_output_tokens: int = Field(65536, description="Maximum tokens per response")
    streaming: bool = Field(True, description="Stream responses from the service")
    max_attempts: int = Field(3, description="Attempts per request, including the first")
    min_request_interval: float = Field(
        0.0, description="Minimum seconds between independent requests"
    )
    language: OutputLanguage = Field(
        OutputLanguage.MIXED, description="Language of descriptive output"
    )
    max_source_tokens_per_chunk: int = Field(
        40000, description="Token budget for the sources of one extraction request"
    )

    @field_validator("temperature")
    @classmethod
    def validate_temperature(cls, v):
        if not 0.0 <= v <= 2.0:
            raise ValueError("temperature must be between 0 and 2")
        return v

    @field_validator("max_output_tokens", "max_attempts", "max_source_tokens_per_chunk")
    @classmethod
    def validate_positive(cls, v, info):
        if v <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return v

    @field_validator("min_request_interval")
    @classmethod
    def validate_interval(cls, v):
        if v < 0:
            raise ValueError("min_request_interval must be non-negative")
        return v

    @field_validator("streaming", mode="before")
    @classmethod
    def parse_bool(cls, v):
        if isinstance(v, str):
            lower = v.strip().lower()
            if lower in _TRUE_VALUES:
                return True
            if lower in _FALSE_VALUES:
                return False
            raise ValueError(f"invalid boolean value: {v!r}")
        return v

    @field_validator("provider", "language", mode="before")
    @classmethod
    def lowercase_choice(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @model_validator(mode="after")
    def default_model(self):
        if not self.model:
            if self.provider == Provider.GEMINI:
                self.model = GeminiCompletionService.DEFAULT_MODEL
            else:
                self.model = OpenAICompletionService.DEFAULT_MODEL
        return self

    @classmethod
    def from_env(
        cls, environ: Optional[Mapping[str, str]] = None, dotenv: bool = True
    ) -> "Settings":
        """Build settings from environment variables (``LAWKB_*`` plus API keys)."""
        if environ is None:
            if dotenv:
                load_dotenv()
            environ = os.environ

        values = {
            "gemini_api_key": environ.get("GEMINI_API_KEY"),
            "openai_api_key": environ.get("OPENAI_API_KEY"),
            "openai_base_url": environ.get("OPENAI_BASE_URL"),
        }
        for name in (
            "provider",
            "model",
            "temperature",
            "max_output_tokens",
            "streaming",
            "max_attempts",
            "min_request_interval",
            "language",
            "max_source_tokens_per_chunk",
        ):
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is not None and raw.strip() != "":
                values[name] = raw.strip()
        return cls(**{k: v for k, v in values.items() if v is not None})

    def completion_config(self) -> CompletionConfig:
        return CompletionConfig(
            temperature=self.temperature, max_output_tokens=self.max_output_tokens
        )

    def build_completion_service(self) -> CompletionService:
        if self.provider == Provider.GEMINI:
            if not self.gemini_api_key:
                raise ValueError("GEMINI_API_KEY is not set")
            return GeminiCompletionService(
                api_key=self.gemini_api_key,
                model=self.model,
                system_instruction=system_prompt,
            )

        # Local OpenAI-compatible servers accept any key.
        api_key = self.openai_api_key or ("not-needed" if self.openai_base_url else None)
        if not api_key:
            raise ValueError("OPENAI_API_KEY is not set")
        return OpenAICompletionService(
            api_key=api_key,
            model=self.model,
            base_url=self.openai_base_url,
            system_prompt=system_prompt,
        )

    def build_orchestrator(
        self,
        service: Optional[CompletionService] = None,
        throttle: Optional[Throttle] = None,
        **kwargs,
    ) -> RequestOrchestrator:
        return RequestOrchestrator(
            service or self.build_completion_service(),
            config=self.completion_config(),
            throttle=throttle or Throttle(self.min_request_interval),
            max_attempts=self.max_attempts,
            **kwargs,
        )
