from __future__ import annotations

import asyncio
import os
from typing import Any

from flask import Flask, Response, jsonify, request, send_file

from app.cpnu import config, db
from app.cpnu.config_validation import validate_runtime_config
from app.cpnu.error_codes import CpnuError, http_status_for, user_message_for
from app.cpnu.export_excel import export_latest_run_to_excel
from app.cpnu.healthcheck import run_health_checks
from app.cpnu.logging_utils import _sync_event
from app.cpnu.sync_runner import bootstrap_case, preview_radicado, run_sync_batch_blocking
from app.cpnu.telemetry import load_latest_run
from app.cpnu.utils import ensure_dirs

app = Flask(__name__)

# Initialise storage paths and SQLite schema on import so WSGI entrypoints
# also have the expected environment ready.
ensure_dirs()
db.initialize_schema()


def _get_webhook_token() -> str | None:
    token = request.headers.get("X-Webhook-Token")
    if not token:
        token = request.args.get("token")
    return token


def _request_payload() -> dict[str, Any]:
    payload: dict[str, Any] = {}
    payload.update(request.args or {})
    if request.is_json:
        payload.update(request.get_json(silent=True) or {})
    else:
        payload.update(request.form or {})
    return payload


def _cpnu_error_response(error: CpnuError, *, context: str) -> tuple[Response, int]:
    status = http_status_for(error)
    _sync_event(
        "error",
        phase="api",
        context=context,
        status=status,
        **error.to_payload(),
    )
    body: dict[str, Any] = {
        "ok": False,
        "error": user_message_for(error),
        "errorCategory": error.category,
        "details": error.message,
    }
    if error.is_duplicate_record:
        body["isDuplicateRecord"] = True
    return jsonify(body), status


@app.post("/api/cpnu/preview")
def api_cpnu_preview() -> Response:
    """Scrape a radicado and return the record without saving it."""

    payload = _request_payload()
    radicado = str(payload.get("radicado") or "").strip()
    user_id = payload.get("user_id") or request.headers.get("X-User-Id")

    try:
        record = asyncio.run(preview_radicado(radicado, user_id=user_id))
    except CpnuError as error:
        return _cpnu_error_response(error, context="preview")

    return jsonify({"ok": True, "data": record.to_dict()})


@app.post("/api/cpnu/sync/<case_id>")
def api_cpnu_bootstrap(case_id: str) -> Response:
    """Link ``case_id`` to a radicado and store its initial CPNU snapshot."""

    payload = _request_payload()
    radicado = str(payload.get("radicado") or "").strip()
    user_id = payload.get("user_id") or request.headers.get("X-User-Id")

    try:
        outcome = asyncio.run(bootstrap_case(case_id, radicado, user_id=user_id))
    except db.BootstrapError as exc:
        _sync_event("error", phase="api", context="bootstrap", case_id=case_id, error=exc.reason)
        status = 404 if exc.reason == "deleted" else 409
        return jsonify({"ok": False, "error": exc.reason, "details": str(exc)}), status
    except CpnuError as error:
        return _cpnu_error_response(error, context="bootstrap")

    return jsonify({"ok": True, **outcome})


@app.get("/api/cpnu/cases/<case_id>")
def api_cpnu_case(case_id: str) -> Response:
    case = db.get_case(case_id)
    if case is None:
        return jsonify({"ok": False, "error": "not_found"}), 404
    return jsonify(
        {
            "ok": True,
            "case": case,
            "cursor": db.get_sync_cursor(case_id).to_dict(),
            "actuaciones": [entry.to_dict() for entry in db.list_actuaciones(case_id)],
            "activity": db.list_activity(case_id),
        }
    )


@app.post("/webhook/cpnu-sync")
def webhook_cpnu_sync() -> Response:
    """Run one sync batch now; meant for an external scheduler."""

    if not config.WEBHOOK_SHARED_SECRET:
        return jsonify({"ok": False, "error": "webhook_disabled"}), 404

    token = _get_webhook_token()
    if token != config.WEBHOOK_SHARED_SECRET:
        _sync_event(
            "error",
            phase="webhook",
            context="cpnu_sync",
            error="invalid_token",
            remote_addr=request.remote_addr,
        )
        return jsonify({"ok": False, "error": "invalid_token"}), 403

    try:
        validate_runtime_config("webhook")
    except ValueError as exc:
        _sync_event(
            "error",
            phase="webhook",
            context="cpnu_sync",
            error="config_invalid",
            message=str(exc),
        )
        return jsonify({"ok": False, "error": "config_invalid", "details": str(exc)}), 500

    _sync_event("state", phase="webhook", context="cpnu_sync", remote_addr=request.remote_addr)

    try:
        result = run_sync_batch_blocking(trigger="webhook")
    except Exception as exc:  # noqa: BLE001
        _sync_event(
            "error",
            phase="webhook",
            context="cpnu_sync",
            error="batch_failed",
            message=str(exc),
        )
        return jsonify({"ok": False, "error": "sync_error", "error_summary": str(exc)}), 500

    return jsonify({"ok": True, "entrypoint": "webhook", "result": result.to_dict()})


@app.get("/api/cpnu/runs/latest")
def api_runs_latest() -> Response:
    """Return the latest sync batch telemetry."""

    payload = load_latest_run()
    if payload is None:
        return jsonify({"ok": False, "error": "no runs"}), 404
    return jsonify({"ok": True, "run": payload})


@app.get("/api/health")
def api_health() -> Response:
    """Return a JSON health summary for configuration, filesystem, DB and portal."""

    result = run_health_checks(entrypoint="ui")
    status = 200 if result.ok else 503
    return jsonify({"ok": result.ok, "checks": result.checks}), status


@app.get("/api/exports/latest.xlsx")
def api_export_latest_xlsx() -> Response:
    try:
        path = export_latest_run_to_excel()
    except FileNotFoundError:
        return jsonify({"ok": False, "error": "no runs"}), 404
    return send_file(path, as_attachment=True, download_name=os.path.basename(path))
