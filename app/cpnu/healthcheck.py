from __future__ import annotations

import shutil
from dataclasses import dataclass
from typing import Any

import requests

from . import config, db
from .config_validation import validate_runtime_config
from .logging_utils import _sync_event
from .utils import ensure_dirs, log_line


@dataclass
class HealthResult:
    ok: bool
    checks: dict[str, dict[str, Any]]


def _check_portal() -> dict[str, Any]:
    try:
        response = requests.get(
            config.CPNU_BASE_URL,
            headers=config.COMMON_HEADERS,
            timeout=config.HEALTH_PORTAL_TIMEOUT_SECONDS,
        )
    except requests.RequestException as exc:
        return {"ok": False, "error": str(exc)}
    return {"ok": response.status_code < 500, "status": response.status_code}


def run_health_checks(entrypoint: str = "cli") -> HealthResult:
    checks: dict[str, dict[str, Any]] = {}

    try:
        validate_runtime_config(entrypoint or "cli")
        checks["config"] = {"ok": True}
    except ValueError as exc:
        checks["config"] = {"ok": False, "error": str(exc)}

    try:
        ensure_dirs()
        free_mb = shutil.disk_usage(config.DATA_DIR).free // (1024 * 1024)
        checks["filesystem"] = {
            "ok": free_mb >= config.MIN_FREE_MB,
            "data_dir": str(config.DATA_DIR),
            "free_mb": free_mb,
        }
    except OSError as exc:
        checks["filesystem"] = {"ok": False, "error": str(exc)}

    try:
        db.initialize_schema()
        conn = db.get_connection()
        try:
            conn.execute("SELECT COUNT(*) FROM cases")
        finally:
            conn.close()
        checks["database"] = {"ok": True}
    except Exception as exc:  # noqa: BLE001
        checks["database"] = {"ok": False, "error": str(exc)}

    if config.HEALTH_CHECK_PORTAL:
        checks["portal"] = _check_portal()

    # The portal is an external dependency; only the CLI treats it as fatal.
    strict_portal = entrypoint == "cli"
    overall_ok = all(
        check.get("ok", False)
        for name, check in checks.items()
        if strict_portal or name != "portal"
    )

    _sync_event(
        "state" if overall_ok else "error",
        phase="health",
        context="healthcheck",
        ok=overall_ok,
        checks=checks,
    )

    return HealthResult(ok=overall_ok, checks=checks)


if __name__ == "__main__":  # pragma: no cover
    result = run_health_checks(entrypoint="cli")
    for name, info in result.checks.items():
        status = "OK" if info.get("ok") else "FAIL"
        log_line(f"[HEALTH] {name}: {status} {info}")
    raise SystemExit(0 if result.ok else 1)
