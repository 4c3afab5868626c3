from __future__ import annotations

import asyncio

import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from app.cpnu.error_codes import (
    DUPLICATE_RECORD_MESSAGE,
    CpnuError,
    ErrorCategory,
    categorize_error,
    duplicate_record_error,
    enrich_error,
    http_status_for,
    user_message_for,
)


@pytest.mark.parametrize(
    "exc, expected",
    [
        (asyncio.TimeoutError(), ErrorCategory.TIMEOUT),
        (PlaywrightTimeoutError("Timeout 3000ms exceeded."), ErrorCategory.TIMEOUT),
        (ConnectionRefusedError("refused"), ErrorCategory.CONNECTION),
        (PlaywrightError("net::ERR_NAME_NOT_RESOLVED at https://consultaprocesos"), ErrorCategory.CONNECTION),
        (PlaywrightError("Target closed"), ErrorCategory.CONNECTION),
        (PlaywrightError("Element is not attached to the DOM"), ErrorCategory.OTHER),
        (RuntimeError("Radicado not found in results table"), ErrorCategory.NOT_FOUND),
        (ValueError("invalid radicado"), ErrorCategory.VALIDATION),
        (RuntimeError("Existen varios registros con el mismo número"), ErrorCategory.VALIDATION),
        (RuntimeError("something odd"), ErrorCategory.OTHER),
        (RuntimeError(""), ErrorCategory.OTHER),
    ],
)
def test_categorize_error(exc: BaseException, expected: str) -> None:
    assert categorize_error(exc) == expected


def test_categorize_error_prefers_explicit_category() -> None:
    error = CpnuError("network looked slow", ErrorCategory.NOT_FOUND)

    assert categorize_error(error) == ErrorCategory.NOT_FOUND
    assert categorize_error(None) == ErrorCategory.OTHER


def test_unknown_category_falls_back_to_other() -> None:
    assert CpnuError("x", "bogus").category == ErrorCategory.OTHER


def test_enrich_error_wraps_and_chains() -> None:
    original = RuntimeError("Multiple records: duplicate radicado")

    enriched = enrich_error(original)

    assert isinstance(enriched, CpnuError)
    assert enriched.category == ErrorCategory.VALIDATION
    assert enriched.is_duplicate_record is True
    assert enriched.__cause__ is original

    already = CpnuError("boom", ErrorCategory.TIMEOUT)
    assert enrich_error(already) is already


def test_duplicate_record_error_payload() -> None:
    error = duplicate_record_error()

    assert error.to_payload() == {
        "message": DUPLICATE_RECORD_MESSAGE,
        "category": ErrorCategory.VALIDATION,
        "isDuplicateRecord": True,
    }
    assert http_status_for(error) == 400
    assert user_message_for(error) == DUPLICATE_RECORD_MESSAGE


@pytest.mark.parametrize(
    "category, status",
    [
        (ErrorCategory.TIMEOUT, 504),
        (ErrorCategory.CONNECTION, 503),
        (ErrorCategory.NOT_FOUND, 404),
        (ErrorCategory.VALIDATION, 400),
        (ErrorCategory.OTHER, 500),
    ],
)
def test_http_status_mapping(category: str, status: int) -> None:
    assert http_status_for(CpnuError("x", category)) == status


def test_user_messages_hide_internal_details() -> None:
    message = user_message_for(CpnuError("Failed to initialize browser: ENOENT", ErrorCategory.CONNECTION))

    assert "ENOENT" not in message
    assert "rama judicial" in message
    assert "radicado" in user_message_for(CpnuError("Radicado not found", ErrorCategory.NOT_FOUND))
