"""
Retry policy shared by the object-store and database collaborators.

Transient failures are retried with bounded exponential backoff through
tenacity; once the budget is spent the last exception is re-raised so the
caller can escalate it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple, Type

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from cdc_validator.config import Settings, get_settings


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    min_wait: float = 1.0
    max_wait: float = 10.0
    multiplier: float = 1.0

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RetryPolicy":
        settings = settings or get_settings()
        return cls(
            attempts=max(settings.retry_attempts, 1),
            max_wait=settings.retry_max_wait_seconds,
        )

    def retrying(self, exceptions: Tuple[Type[BaseException], ...]) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.multiplier, min=self.min_wait, max=self.max_wait),
            retry=retry_if_exception_type(exceptions),
            reraise=True,
        )


# Used by tests and local runs where sleeping between attempts is pointless.
NO_WAIT = RetryPolicy(attempts=3, min_wait=0.0, max_wait=0.0, multiplier=0.0)

__all__ = ["NO_WAIT", "RetryPolicy"]
