from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from . import config
from .error_codes import CpnuError, ErrorCategory, enrich_error
from .logging_utils import _sync_event

T = TypeVar("T")

RETRYABLE_CATEGORIES = {
    ErrorCategory.CONNECTION,
}

NON_RETRYABLE_CATEGORIES = {
    ErrorCategory.NOT_FOUND,
    ErrorCategory.VALIDATION,
    # The session already used up its whole time allowance.
    ErrorCategory.TIMEOUT,
    ErrorCategory.OTHER,
}


def compute_backoff_seconds(attempt_index: int) -> float:
    """Return a capped exponential backoff for the given attempt (1-based)."""

    return float(min(2 ** max(0, attempt_index - 1), config.BACKOFF_CAP_SECONDS))


def decide_retry(
    attempt_index: int,
    max_attempts: int,
    error: BaseException | None = None,
    *,
    category: Optional[str] = None,
) -> bool:
    """Decide whether a failed attempt should be retried."""

    if category is None and error is not None:
        category = enrich_error(error).category

    if attempt_index >= max_attempts:
        _sync_event(
            "state",
            phase="retry_decision",
            kind="capped",
            attempt=attempt_index,
            max_attempts=max_attempts,
            category=category,
            will_retry=False,
        )
        return False

    if category in RETRYABLE_CATEGORIES:
        _sync_event(
            "state",
            phase="retry_decision",
            kind="retryable",
            attempt=attempt_index,
            max_attempts=max_attempts,
            category=category,
            will_retry=True,
        )
        return True

    _sync_event(
        "state",
        phase="retry_decision",
        kind="non_retryable" if category in NON_RETRYABLE_CATEGORIES else "unknown",
        attempt=attempt_index,
        max_attempts=max_attempts,
        category=category,
        will_retry=False,
        error_repr=repr(error) if error is not None else None,
    )
    return False


async def run_with_retries(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int | None = None,
    context: str = "",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``operation`` until it succeeds or a retry is refused.

    Failures are re-raised as :class:`CpnuError` so callers always see a
    category.
    """

    attempts = max(1, max_attempts if max_attempts is not None else config.SCRAPE_MAX_ATTEMPTS)
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as exc:  # noqa: BLE001
            error = enrich_error(exc)
            if not decide_retry(attempt, attempts, error, category=error.category):
                if error is exc:
                    raise
                raise error from exc
            delay = compute_backoff_seconds(attempt)
            _sync_event(
                "retry",
                phase="backoff",
                context=context,
                attempt=attempt,
                delay_seconds=delay,
                category=error.category,
                error=error.message,
            )
            await sleep(delay)


__all__ = [
    "decide_retry",
    "compute_backoff_seconds",
    "run_with_retries",
    "RETRYABLE_CATEGORIES",
    "NON_RETRYABLE_CATEGORIES",
    "CpnuError",
]
