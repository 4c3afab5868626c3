"""Error taxonomy for CPNU portal sessions and sync runs.

Every failure raised by a portal session carries one of the categories below
from the point where it is detected. Categories are persisted in sync events,
included in structured logs and mapped onto HTTP responses by the API layer.
"""
from __future__ import annotations

import asyncio
from typing import Any

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError


class ErrorCategory:
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    OTHER = "other"


ALL_CATEGORIES = (
    ErrorCategory.TIMEOUT,
    ErrorCategory.CONNECTION,
    ErrorCategory.NOT_FOUND,
    ErrorCategory.VALIDATION,
    ErrorCategory.OTHER,
)

DUPLICATE_RECORD_MESSAGE = (
    "There are multiple case IDs; it can't be synchronized automatically. "
    "Please review it and do it manually."
)

_TIMEOUT_MARKERS = ("timed out", "timeout")
_CONNECTION_MARKERS = (
    "net::err",
    "chromium",
    "browser",
    "target closed",
    "connection",
    "network",
    "failed to initialize",
    "fetch failed",
    "econnrefused",
    "enotfound",
)
_NOT_FOUND_MARKERS = ("not found", "no results found", "may not exist", "no se encontr")
_VALIDATION_MARKERS = (
    "radicado must be",
    "invalid",
    "validation",
    "must be registered manually",
)
DUPLICATE_PHRASES = (
    "varios registros",
    "mismo número",
    "mismo numero",
    "duplicado",
    "duplicate",
    "múltiples registros",
    "multiples registros",
    "multiple records",
)


class CpnuError(Exception):
    """Raised when a CPNU lookup or sync step fails with a known category."""

    def __init__(
        self,
        message: str,
        category: str = ErrorCategory.OTHER,
        *,
        is_duplicate_record: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.category = category if category in ALL_CATEGORIES else ErrorCategory.OTHER
        self.is_duplicate_record = is_duplicate_record

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"message": self.message, "category": self.category}
        if self.is_duplicate_record:
            payload["isDuplicateRecord"] = True
        return payload


def duplicate_record_error() -> CpnuError:
    return CpnuError(
        DUPLICATE_RECORD_MESSAGE,
        ErrorCategory.VALIDATION,
        is_duplicate_record=True,
    )


def is_duplicate_message(text: str | None) -> bool:
    lowered = (text or "").lower()
    return any(phrase in lowered for phrase in DUPLICATE_PHRASES)


def categorize_error(exc: BaseException | None) -> str:
    """Return the error category for ``exc``.

    Typed exceptions are classified first; message markers are a last resort
    for foreign errors surfacing from the browser driver.
    """

    if exc is None:
        return ErrorCategory.OTHER
    if isinstance(exc, CpnuError):
        return exc.category
    if isinstance(exc, (asyncio.TimeoutError, PlaywrightTimeoutError, TimeoutError)):
        return ErrorCategory.TIMEOUT
    if isinstance(exc, (ConnectionError, OSError)):
        return ErrorCategory.CONNECTION

    message = str(exc).lower()
    if not message:
        return ErrorCategory.OTHER
    if any(marker in message for marker in _TIMEOUT_MARKERS):
        return ErrorCategory.TIMEOUT
    if any(marker in message for marker in _CONNECTION_MARKERS):
        return ErrorCategory.CONNECTION
    if isinstance(exc, PlaywrightError):
        # Remaining driver errors are page-structure problems.
        return ErrorCategory.OTHER
    if any(marker in message for marker in _NOT_FOUND_MARKERS):
        return ErrorCategory.NOT_FOUND
    if is_duplicate_message(message) or any(marker in message for marker in _VALIDATION_MARKERS):
        return ErrorCategory.VALIDATION
    return ErrorCategory.OTHER


def enrich_error(exc: BaseException) -> CpnuError:
    """Wrap ``exc`` in a :class:`CpnuError` carrying its category."""

    if isinstance(exc, CpnuError):
        return exc
    category = categorize_error(exc)
    message = str(exc) or exc.__class__.__name__
    enriched = CpnuError(
        message,
        category,
        is_duplicate_record=category == ErrorCategory.VALIDATION and is_duplicate_message(message),
    )
    enriched.__cause__ = exc
    return enriched


HTTP_STATUS_BY_CATEGORY = {
    ErrorCategory.TIMEOUT: 504,
    ErrorCategory.CONNECTION: 503,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.OTHER: 500,
}

_USER_MESSAGES = {
    ErrorCategory.TIMEOUT: "La conexión con la rama judicial tardó demasiado, intenta nuevamente",
    ErrorCategory.CONNECTION: "No se pudo conectar a la informacion de la rama judicial, intenta nuevamente",
    ErrorCategory.NOT_FOUND: "No se encontró el radicado en la información de la rama judicial",
    ErrorCategory.VALIDATION: "El radicado ingresado no es válido",
    ErrorCategory.OTHER: "No se pudo conectar a la informacion de la rama judicial, intenta nuevamente",
}


def http_status_for(error: CpnuError) -> int:
    return HTTP_STATUS_BY_CATEGORY.get(error.category, 500)


def user_message_for(error: CpnuError) -> str:
    """Return the message shown to end users for ``error``.

    Validation failures surface their own message (duplicates ask for manual
    reconciliation); everything else uses a fixed Spanish message.
    """

    if error.category == ErrorCategory.VALIDATION and error.message:
        return error.message
    return _USER_MESSAGES.get(error.category, _USER_MESSAGES[ErrorCategory.OTHER])


__all__ = [
    "ErrorCategory",
    "CpnuError",
    "DUPLICATE_RECORD_MESSAGE",
    "DUPLICATE_PHRASES",
    "duplicate_record_error",
    "is_duplicate_message",
    "categorize_error",
    "enrich_error",
    "http_status_for",
    "user_message_for",
]
