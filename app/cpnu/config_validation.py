from __future__ import annotations

from typing import Literal

from . import config
from .logging_utils import _sync_event
from .utils import log_line

Entrypoint = Literal["ui", "cli", "webhook", "replay", "tests"]


def _raise_config_error(message: str, *, entrypoint: Entrypoint, error: str) -> None:
    _sync_event(
        "error",
        phase="config",
        context="runtime_validation",
        error=error,
        entrypoint=entrypoint,
    )
    log_line(f"[CONFIG] {message} (entrypoint={entrypoint})")
    raise ValueError(message)


def _clamp(field_name: str, value, adjusted, *, entrypoint: Entrypoint) -> None:
    _sync_event(
        "state",
        phase="config",
        context="runtime_validation",
        kind="config_adjustment",
        field=field_name,
        value=value,
        adjusted=adjusted,
        entrypoint=entrypoint,
    )
    log_line(f"[CONFIG] {field_name}={value!r} is out of range; clamping to {adjusted!r}.")
    setattr(config, field_name, adjusted)


def validate_runtime_config(entrypoint: Entrypoint) -> None:
    """Validate runtime configuration for the given entrypoint.

    Raises ``ValueError`` when a blocking misconfiguration is detected.
    Non-fatal adjustments (clamping retry and polling knobs) are logged but do
    not raise.
    """

    base_url = (config.CPNU_BASE_URL or "").strip().lower()
    if not base_url.startswith(("http://", "https://")):
        _raise_config_error(
            "CPNU_BASE_URL must be an http(s) URL.",
            entrypoint=entrypoint,
            error="invalid_base_url",
        )

    if config.MIN_FREE_MB < 0:
        _raise_config_error(
            "CPNU_MIN_FREE_MB must be zero or greater.",
            entrypoint=entrypoint,
            error="invalid_min_free_mb",
        )

    if config.SCRAPE_MAX_ATTEMPTS < 1:
        _clamp("SCRAPE_MAX_ATTEMPTS", config.SCRAPE_MAX_ATTEMPTS, 1, entrypoint=entrypoint)

    if config.POLL_INTERVAL_SECONDS <= 0:
        _clamp("POLL_INTERVAL_SECONDS", config.POLL_INTERVAL_SECONDS, 0.25, entrypoint=entrypoint)

    timeout_fields = [
        ("SESSION_TIMEOUT_SECONDS", config.SESSION_TIMEOUT_SECONDS),
        ("CASE_TIMEOUT_SECONDS", config.CASE_TIMEOUT_SECONDS),
        ("NAV_TIMEOUT_SECONDS", config.NAV_TIMEOUT_SECONDS),
        ("RESULTS_TIMEOUT_SECONDS", config.RESULTS_TIMEOUT_SECONDS),
        ("BROWSER_CLOSE_TIMEOUT_SECONDS", config.BROWSER_CLOSE_TIMEOUT_SECONDS),
    ]

    for field_name, value in timeout_fields:
        if value <= 0:
            _raise_config_error(
                f"{field_name} must be greater than zero.",
                entrypoint=entrypoint,
                error="invalid_timeout",
            )

    if config.CASE_TIMEOUT_SECONDS < config.SESSION_TIMEOUT_SECONDS:
        _sync_event(
            "state",
            phase="config",
            context="runtime_validation",
            kind="config_warning",
            field="CASE_TIMEOUT_SECONDS",
            value=config.CASE_TIMEOUT_SECONDS,
            session_timeout=config.SESSION_TIMEOUT_SECONDS,
            entrypoint=entrypoint,
        )

    if entrypoint == "webhook" and not config.WEBHOOK_SHARED_SECRET:
        _raise_config_error(
            "CPNU_WEBHOOK_SECRET must be set to accept sync triggers.",
            entrypoint=entrypoint,
            error="webhook_secret_missing",
        )


__all__ = ["validate_runtime_config", "Entrypoint"]
