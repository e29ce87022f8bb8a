import logging
import math
import random
import time
from dataclasses import dataclass
from threading import Event, Lock
from typing import Callable, Optional

from lawkb.llm_extraction.completion import (
    CompletionConfig,
    CompletionService,
    classify_error,
)
from lawkb.llm_extraction.errors import CompletionError, ErrorKind

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str, str], None]

_RETRY_LABELS = {
    ErrorKind.RATE_LIMITED: "Rate limited",
    ErrorKind.SERVER_ERROR: "Server error",
    ErrorKind.NETWORK_ERROR: "Network error",
    ErrorKind.UNKNOWN: "Error",
}


class _CallbackError(Exception):
    """Carries an exception raised by the consumer's on_chunk callback past retry handling."""

    def __init__(self, original: BaseException):
        super().__init__(str(original))
        self.original = original


class Throttle:
    """Minimum spacing between independent requests.

    Holds the single ``last_request_at`` timestamp. One throttle may be shared by
    several orchestrators; access is serialized with a lock.
    """

    def __init__(
        self,
        min_interval: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval = min_interval
        self.last_request_at: Optional[float] = None
        self._clock = clock
        self._sleep = sleep
        self._lock = Lock()

    def wait(self) -> float:
        """Block until the interval has passed, record the request, return the wait."""
        with self._lock:
            waited = 0.0
            if self.last_request_at is not None and self.min_interval > 0:
                elapsed = self._clock() - self.last_request_at
                if elapsed < self.min_interval:
                    waited = self.min_interval - elapsed
                    logger.debug(f"Throttling request for {waited:.2f}s")
                    self._sleep(waited)
            self.last_request_at = self._clock()
            return waited


@dataclass(frozen=True)
class RetryNotice:
    """What a consumer needs to show a retry countdown."""

    kind: ErrorKind
    attempt: int
    max_attempts: int
    delay: float
    message: str

    def __str__(self) -> str:
        label = _RETRY_LABELS.get(self.kind, "Error")
        return (
            f"{label}. Retrying in {math.ceil(self.delay)}s... "
            f"({self.attempt}/{self.max_attempts})"
        )


class RequestOrchestrator:
    """Issues one logical request to a completion service with retries.

    Retry policy (attempts are numbered from 1):
    - aborted, auth and safety failures are terminal
    - rate limits back off 2^attempt seconds plus up to 1s of jitter
    - server errors back off 2^attempt * 2 seconds plus up to 1s of jitter
    - network and unknown failures wait a fixed 1-2 seconds
    """

    MAX_ATTEMPTS = 3

    def __init__(
        self,
        service: CompletionService,
        config: Optional[CompletionConfig] = None,
        throttle: Optional[Throttle] = None,
        max_attempts: int = MAX_ATTEMPTS,
        on_retry: Optional[Callable[[RetryNotice], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.service = service
        self.config = config or CompletionConfig()
        self.throttle = throttle or Throttle()
        self.max_attempts = max_attempts
        self.on_retry = on_retry
        self._sleep = sleep
        self._rng = rng or random.Random()

    def backoff_delay(self, kind: ErrorKind, attempt: int) -> float:
        """Seconds to wait after a failed ``attempt`` of the given kind."""
        jitter = self._rng.random()
        if kind == ErrorKind.RATE_LIMITED:
            return (2**attempt) * 1.0 + jitter
        if kind == ErrorKind.SERVER_ERROR:
            return (2**attempt) * 2.0 + jitter
        return 1.0 + jitter

    def submit(
        self,
        prompt: str,
        json_mode: bool = False,
        streaming: bool = False,
        on_chunk: Optional[ChunkCallback] = None,
        cancel_event: Optional[Event] = None,
    ) -> str:
        """
        Run one logical request and return the completion text.

        Args:
            prompt: Prompt text sent to the service.
            json_mode: Ask the service for a JSON response.
            streaming: Consume the response as a stream of fragments.
            on_chunk: Called as ``on_chunk(delta, accumulated)`` for every fragment.
            cancel_event: Cooperative cancellation signal, checked before each
                attempt and at every fragment boundary.
                Exceptions raised by ``on_chunk`` propagate unchanged and are
                never retried.

        Raises:
            CompletionError: terminal failure, or the last failure once every
                attempt is used (``attempts`` records how many were made).
        """
        config = self.config.model_copy(update={"json_mode": json_mode})
        self.throttle.wait()

        for attempt in range(1, self.max_attempts + 1):
            self.service.last_token_count = None
            try:
                self._check_cancelled(cancel_event)
                if streaming:
                    return self._stream_once(prompt, config, on_chunk, cancel_event)
                return self._generate_once(prompt, config)
            except _CallbackError as e:
                raise e.original from None
            except Exception as e:
                error = self._as_completion_error(e)
                error.attempts = attempt
                logger.error(f"Completion attempt {attempt}/{self.max_attempts} failed: {error}")

                if not error.retryable or attempt >= self.max_attempts:
                    if error.retryable:
                        logger.error(f"All {self.max_attempts} attempts failed: {error}")
                    if error is e:
                        raise
                    raise error from e

                delay = self.backoff_delay(error.kind, attempt)
                notice = RetryNotice(
                    kind=error.kind,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    delay=delay,
                    message=error.message,
                )
                logger.warning(str(notice))
                if self.on_retry is not None:
                    self.on_retry(notice)
                self._sleep(delay)

    @staticmethod
    def _as_completion_error(error: Exception) -> CompletionError:
        if isinstance(error, CompletionError):
            return error
        return CompletionError(classify_error(error), str(error) or type(error).__name__)

    @staticmethod
    def _check_cancelled(cancel_event: Optional[Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise CompletionError(ErrorKind.ABORTED, "Request aborted by user")

    def _generate_once(self, prompt: str, config: CompletionConfig) -> str:
        text = self.service.generate(prompt, config)
        if not text:
            raise CompletionError(ErrorKind.UNKNOWN, "Empty response from completion service")
        return text

    def _stream_once(
        self,
        prompt: str,
        config: CompletionConfig,
        on_chunk: Optional[ChunkCallback],
        cancel_event: Optional[Event],
    ) -> str:
        accumulated = ""
        for delta in self.service.stream(prompt, config):
            self._check_cancelled(cancel_event)
            accumulated += delta
            if on_chunk is not None:
                try:
                    on_chunk(delta, accumulated)
                except Exception as e:
                    raise _CallbackError(e) from e
        if not accumulated:
            raise CompletionError(ErrorKind.UNKNOWN, "Empty response from completion service")
        return accumulated
