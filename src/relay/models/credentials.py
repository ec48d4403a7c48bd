"""API key rotation and the rate-limit aware retry wrapper."""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional, Sequence, TypeVar

from ..errors import AuthenticationError, KeysExhaustedError, RateLimitError, TransportError

__all__ = ["CredentialSource", "RATE_LIMIT_MARKERS", "is_rate_limit_error"]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_MARKERS = (
    "rate limit",
    "rpm",
    "rpd",
    "429",
    "503",
    "unavailable",
    "overloaded",
    "quota",
    "too many requests",
)


def is_rate_limit_error(error: Optional[BaseException]) -> bool:
    """Return True when ``error`` signals throttling rather than a hard failure."""
    if error is None:
        return False
    if isinstance(error, RateLimitError):
        return True
    message = str(error).lower()
    return any(marker in message for marker in RATE_LIMIT_MARKERS)


class CredentialSource:
    """Round-robin key provider for the selected model.

    ``make_api_call_with_retry`` tries each key once. Rate-limited keys are
    skipped after an exponential backoff; other transport failures are retried
    on the same key up to ``max_retries`` times before surfacing.
    """

    def __init__(
        self,
        keys: Sequence[str],
        *,
        model: str,
        requires_key: bool = True,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._keys: List[str] = [key for key in keys if key]
        self._model = model
        self._requires_key = requires_key
        self._max_retries = max(0, max_retries)
        self._backoff = max(0.0, backoff_seconds)
        self._sleep = sleep
        self._index = 0

    @property
    def keys(self) -> tuple[str, ...]:
        return tuple(self._keys)

    def get_current_model(self) -> str:
        return self._model

    def get_next_api_key(self) -> Optional[str]:
        if not self._keys:
            return None
        key = self._keys[self._index % len(self._keys)]
        self._index = (self._index + 1) % len(self._keys)
        return key

    def reset_rotation(self) -> None:
        self._index = 0

    def make_api_call_with_retry(self, call: Callable[[Optional[str]], T]) -> T:
        """Run ``call`` with each key in turn until one succeeds."""
        self.reset_rotation()
        if not self._keys:
            if self._requires_key:
                raise KeysExhaustedError(f"No API keys configured for model {self._model}.")
            candidates: List[Optional[str]] = [None]
        else:
            candidates = [self.get_next_api_key() for _ in self._keys]

        last_error: Optional[BaseException] = None
        for position, key in enumerate(candidates):
            try:
                return self._call_with_backoff(call, key)
            except AuthenticationError:
                raise
            except TransportError as error:
                if not is_rate_limit_error(error):
                    raise
                last_error = error
                LOGGER.warning("Key %d/%d rate limited: %s", position + 1, len(candidates), error)
                if position + 1 < len(candidates):
                    self._sleep(self._backoff * (2**position))

        raise KeysExhaustedError(
            f"All API keys are exhausted for model {self._model}.", original_error=last_error
        ) from last_error

    def _call_with_backoff(self, call: Callable[[Optional[str]], T], key: Optional[str]) -> T:
        attempt = 0
        while True:
            try:
                return call(key)
            except AuthenticationError:
                raise
            except TransportError as error:
                if is_rate_limit_error(error) or attempt >= self._max_retries:
                    raise
                delay = self._backoff * (2**attempt)
                attempt += 1
                LOGGER.info("Transport error (attempt %d/%d), retrying in %.1fs: %s", attempt, self._max_retries, delay, error)
                self._sleep(delay)
