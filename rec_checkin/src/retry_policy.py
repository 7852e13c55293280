"""Retry and exponential backoff policy for commerce calls."""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from checkin_config import CheckinSettings
from checkin_errors import ErrorKind, classify_error


Sleep = Callable[[float], Awaitable[Any]]


def retry_unless_permission(exc: BaseException) -> bool:
    """Permission failures can never succeed, so they are not retried."""
    return classify_error(exc) is not ErrorKind.PERMISSION


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_ms: int = 1000
    is_retryable: Callable[[BaseException], bool] = retry_unless_permission

    @staticmethod
    def from_settings(settings: CheckinSettings) -> "RetryPolicy":
        return RetryPolicy(
            max_attempts=max(int(settings.retry_max_attempts), 1),
            base_delay_ms=max(int(settings.retry_base_delay_ms), 0),
        )

    def delay_seconds(self, failed_attempts: int) -> float:
        """Backoff before the next attempt: base, 2x base, 4x base, ..."""
        if failed_attempts < 1:
            raise ValueError("failed_attempts must be >= 1.")
        return self.base_delay_ms * (2 ** (failed_attempts - 1)) / 1000.0

    def should_retry(self, exc: BaseException, attempts: int) -> bool:
        return attempts < self.max_attempts and self.is_retryable(exc)


@dataclass
class AttemptResult:
    value: Any = None
    error: BaseException | None = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


async def run_with_retry(
    call: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    sleep: Sleep = asyncio.sleep,
) -> AttemptResult:
    """Await ``call`` until it succeeds or the policy gives up.

    The final error is returned instead of raised so batch callers can record
    it per item.
    """
    attempts = 0
    while True:
        attempts += 1
        try:
            return AttemptResult(value=await call(), attempts=attempts)
        except Exception as exc:
            if not policy.should_retry(exc, attempts):
                return AttemptResult(error=exc, attempts=attempts)
            await sleep(policy.delay_seconds(attempts))
