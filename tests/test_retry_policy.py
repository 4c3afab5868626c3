from __future__ import annotations

import asyncio

import pytest

from app.cpnu import config, retry_policy
from app.cpnu.error_codes import CpnuError, ErrorCategory


@pytest.fixture
def event_recorder(monkeypatch: pytest.MonkeyPatch) -> list[tuple[str, dict]]:
    events: list[tuple[str, dict]] = []

    def _record(event_phase: str, **fields: object) -> None:
        events.append((event_phase, fields))

    monkeypatch.setattr(retry_policy, "_sync_event", _record)
    return events


@pytest.mark.parametrize(
    "attempt, expected, kind",
    [
        (1, True, "retryable"),
        (2, False, "capped"),
        (5, False, "capped"),
    ],
)
def test_connection_retry_limits(
    attempt: int, expected: bool, kind: str, event_recorder: list[tuple[str, dict]]
) -> None:
    result = retry_policy.decide_retry(attempt, 2, category=ErrorCategory.CONNECTION)
    assert result is expected
    assert len(event_recorder) == 1
    phase, fields = event_recorder[0]
    assert phase == "state"
    assert fields["phase"] == "retry_decision"
    assert fields["category"] == ErrorCategory.CONNECTION
    assert fields["attempt"] == attempt
    assert fields["max_attempts"] == 2
    assert fields["will_retry"] is expected
    assert fields["kind"] == kind


@pytest.mark.parametrize(
    "category",
    [ErrorCategory.TIMEOUT, ErrorCategory.NOT_FOUND, ErrorCategory.VALIDATION, ErrorCategory.OTHER],
)
def test_non_retryable_categories(category: str, event_recorder: list[tuple[str, dict]]) -> None:
    assert retry_policy.decide_retry(1, 3, category=category) is False
    assert event_recorder[0][1]["kind"] == "non_retryable"


def test_category_derived_from_error(event_recorder: list[tuple[str, dict]]) -> None:
    assert retry_policy.decide_retry(1, 3, ConnectionResetError("reset")) is True
    assert event_recorder[0][1]["category"] == ErrorCategory.CONNECTION


def test_compute_backoff_seconds_is_capped(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "BACKOFF_CAP_SECONDS", 5)

    assert retry_policy.compute_backoff_seconds(1) == 1.0
    assert retry_policy.compute_backoff_seconds(2) == 2.0
    assert retry_policy.compute_backoff_seconds(3) == 4.0
    assert retry_policy.compute_backoff_seconds(10) == 5.0


def test_run_with_retries_retries_connection_then_succeeds(event_recorder: list[tuple[str, dict]]) -> None:
    calls: list[int] = []
    sleeps: list[float] = []

    async def _operation() -> str:
        calls.append(1)
        if len(calls) == 1:
            raise CpnuError("Failed to initialize browser", ErrorCategory.CONNECTION)
        return "ok"

    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    result = asyncio.run(retry_policy.run_with_retries(_operation, max_attempts=2, sleep=_sleep))

    assert result == "ok"
    assert len(calls) == 2
    assert sleeps == [1.0]


def test_run_with_retries_stops_on_non_retryable(event_recorder: list[tuple[str, dict]]) -> None:
    calls: list[int] = []

    async def _operation() -> str:
        calls.append(1)
        raise CpnuError("Radicado not found in results table", ErrorCategory.NOT_FOUND)

    async def _sleep(delay: float) -> None:
        raise AssertionError("should not back off")

    with pytest.raises(CpnuError) as excinfo:
        asyncio.run(retry_policy.run_with_retries(_operation, max_attempts=3, sleep=_sleep))

    assert excinfo.value.category == ErrorCategory.NOT_FOUND
    assert len(calls) == 1


def test_run_with_retries_wraps_foreign_errors(event_recorder: list[tuple[str, dict]]) -> None:
    async def _operation() -> str:
        raise RuntimeError("page layout changed")

    with pytest.raises(CpnuError) as excinfo:
        asyncio.run(retry_policy.run_with_retries(_operation, max_attempts=1))

    assert excinfo.value.category == ErrorCategory.OTHER
    assert isinstance(excinfo.value.__cause__, RuntimeError)
