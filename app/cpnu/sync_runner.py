"""Batch synchronisation of linked cases against CPNU.

Cases are processed strictly one after another; each case runs under its own
timeout and any failure is classified, recorded and counted without stopping
the batch.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, Sequence

from . import config, db, resource_tracking
from .change_detector import ChangeResult, detect_changes
from .date_utils import sortable_date
from .error_codes import CpnuError, ErrorCategory, enrich_error
from .logging_utils import _sync_event
from .models import ActuacionEntry, CaseRecord, LinkedCase, SyncBatchResult, SyncStatus, validate_radicado
from .portal_session import scrape_cpnu
from .retry_policy import run_with_retries
from .telemetry import RunTelemetry
from .utils import utc_now_iso

ScrapeFn = Callable[[str], Awaitable[CaseRecord]]

OUTCOME_UPDATED = "updated"
OUTCOME_NO_CHANGES = "no_changes"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _check_quota(user_id: Optional[str], *, context: str) -> None:
    """Consult the usage tracker; failures of the tracker never block a scrape."""

    try:
        availability = resource_tracking.check_availability(user_id, config.RESOURCE_TYPE, 1)
    except Exception as exc:  # noqa: BLE001
        _sync_event("warning", phase="quota", kind="check_failed", context=context, error=repr(exc))
        return

    if availability.get("allowed", True):
        return
    _sync_event(
        "state",
        phase="quota",
        kind="limit_reached",
        context=context,
        user_id=user_id,
        limit=availability.get("limit"),
        enforced=config.ENFORCE_QUOTA,
    )
    if config.ENFORCE_QUOTA:
        raise CpnuError("CPNU scrape limit reached for this account", ErrorCategory.VALIDATION)


def _track_usage(user_id: Optional[str], metadata: dict[str, Any]) -> None:
    try:
        resource_tracking.track(user_id, config.RESOURCE_TYPE, 1, metadata)
    except Exception as exc:  # noqa: BLE001
        _sync_event("warning", phase="quota", kind="track_failed", error=repr(exc), **metadata)


def derive_last_action(entries: Sequence[ActuacionEntry]) -> Optional[dict[str, Optional[str]]]:
    """Return the case's last action from the newest actuación, if any."""

    if not entries:
        return None
    newest = entries[0]
    raw_date = newest.fecha_actuacion or newest.fecha_registro
    return {
        "title": newest.descripcion,
        "date": sortable_date(raw_date) or raw_date,
    }


async def _scrape(radicado: str, scrape: Optional[ScrapeFn], *, context: str) -> CaseRecord:
    scrape_fn = scrape or scrape_cpnu
    return await run_with_retries(lambda: scrape_fn(radicado), context=context)


# ---------------------------------------------------------------------------
# Per-case sync
# ---------------------------------------------------------------------------


def _apply_changes(case: LinkedCase, change: ChangeResult, synced_at: str) -> str:
    if change.cursor_anomaly:
        _sync_event("warning", phase="cursor_anomaly", case_id=case.case_id, radicado=case.radicado)
        db.record_event(case.case_id, "cursor_anomaly", {"radicado": case.radicado})

    if not change.has_changes:
        db.update_sync_cursor(case.case_id, status=SyncStatus.NO_CHANGES, synced_at=synced_at)
        return OUTCOME_NO_CHANGES

    stored = db.append_actuaciones(case.case_id, change.new_actuaciones)
    last_action = derive_last_action(stored)
    if last_action:
        db.set_last_action(case.case_id, title=last_action["title"], date=last_action["date"])
    if stored:
        db.add_activity(case.case_id, f"New Actuaciones detected from CPNU ({len(stored)} new)")
    db.update_sync_cursor(
        case.case_id,
        status=SyncStatus.SUCCESS,
        synced_at=synced_at,
        latest_fecha_registro=change.latest_fecha_registro,
    )
    _sync_event(
        "sync",
        phase="case_updated",
        case_id=case.case_id,
        new=len(change.new_actuaciones),
        stored=len(stored),
        latest=change.latest_fecha_registro,
    )
    return OUTCOME_UPDATED


async def sync_case(case: LinkedCase, *, scrape: Optional[ScrapeFn] = None) -> str:
    """Scrape one linked case and persist any new actuaciones.

    Returns ``"updated"`` or ``"no_changes"``; raises :class:`CpnuError` on
    failure, leaving the stored cursor untouched.
    """

    _check_quota(case.user_id, context=f"case:{case.case_id}")
    record = await _scrape(case.radicado, scrape, context=f"case:{case.case_id}")
    _track_usage(case.user_id, {"caseId": case.case_id, "radicado": case.radicado, "source": "auto_sync"})

    cursor = db.get_sync_cursor(case.case_id)
    change = detect_changes(cursor.latest_fecha_registro if cursor else None, record.actuaciones)
    return _apply_changes(case, change, utc_now_iso())


def _record_failure(case: LinkedCase, error: CpnuError) -> None:
    try:
        db.record_event(case.case_id, "sync_error", {"radicado": case.radicado, **error.to_payload()})
    except Exception as exc:  # noqa: BLE001
        _sync_event("warning", phase="record_failure", case_id=case.case_id, error=repr(exc))


async def run_sync_batch(
    *,
    scrape: Optional[ScrapeFn] = None,
    case_timeout: Optional[float] = None,
    cases: Optional[Sequence[LinkedCase]] = None,
    trigger: str = "manual",
) -> SyncBatchResult:
    """Synchronise every linked case once and return the batch counts."""

    timeout = case_timeout or config.CASE_TIMEOUT_SECONDS
    batch = list(cases) if cases is not None else db.list_linked_cases()
    result = SyncBatchResult()
    telemetry = RunTelemetry(mode="auto_sync")
    started = time.monotonic()

    _sync_event("batch", phase="start", cases=len(batch), trigger=trigger, case_timeout=timeout)

    for case in batch:
        result.processed += 1
        case_started = time.monotonic()
        try:
            outcome = await asyncio.wait_for(sync_case(case, scrape=scrape), timeout)
        except asyncio.TimeoutError:
            error = CpnuError(f"Case sync timed out after {timeout:g} seconds", ErrorCategory.TIMEOUT)
        except Exception as exc:  # noqa: BLE001
            error = enrich_error(exc)
        else:
            if outcome == OUTCOME_UPDATED:
                result.updated += 1
            else:
                result.no_changes += 1
            telemetry.add(
                outcome,
                outcome,
                {
                    "case_id": case.case_id,
                    "radicado": case.radicado,
                    "duration_seconds": round(time.monotonic() - case_started, 2),
                },
            )
            continue

        result.errors += 1
        result.error_details.append(
            {"caseId": case.case_id, "category": error.category, "message": error.message}
        )
        _sync_event(
            "error",
            phase="case_failed",
            case_id=case.case_id,
            radicado=case.radicado,
            **error.to_payload(),
        )
        _record_failure(case, error)
        telemetry.add(
            "error",
            error.category,
            {
                "case_id": case.case_id,
                "radicado": case.radicado,
                "category": error.category,
                "message": error.message,
                "duplicate": error.is_duplicate_record,
                "duration_seconds": round(time.monotonic() - case_started, 2),
            },
        )

    duration = round(time.monotonic() - started, 2)
    try:
        telemetry.finalize({"trigger": trigger, "result": result.to_dict(), "duration_seconds": duration})
    except OSError as exc:
        _sync_event("warning", phase="telemetry", error=repr(exc))

    _sync_event("batch", phase="complete", duration_seconds=duration, **result.to_dict())
    return result


def run_sync_batch_blocking(**kwargs: Any) -> SyncBatchResult:
    """Run one batch from synchronous code (Flask routes, CLI)."""

    return asyncio.run(run_sync_batch(**kwargs))


# ---------------------------------------------------------------------------
# Preview and bootstrap
# ---------------------------------------------------------------------------


async def preview_radicado(
    radicado: str,
    *,
    user_id: Optional[str] = None,
    scrape: Optional[ScrapeFn] = None,
) -> CaseRecord:
    """Scrape ``radicado`` without persisting anything."""

    radicado = validate_radicado(radicado)
    _check_quota(user_id, context="preview")
    record = await _scrape(radicado, scrape, context="preview")
    _track_usage(user_id, {"radicado": radicado, "source": "preview"})
    return record


async def bootstrap_case(
    case_id: str,
    radicado: str,
    *,
    user_id: Optional[str] = None,
    scrape: Optional[ScrapeFn] = None,
) -> dict[str, Any]:
    """Link ``case_id`` to ``radicado`` once and store its initial snapshot.

    Raises :class:`db.BootstrapError` for deleted or already linked cases
    (checked before and after the scrape) and :class:`CpnuError` for portal
    failures.
    """

    radicado = validate_radicado(radicado)
    existing = db.get_case(case_id)
    if existing is not None and existing.get("is_deleted"):
        raise db.BootstrapError("Case has been deleted", "deleted")
    if existing is not None and existing.get("bootstrap_done"):
        raise db.BootstrapError("Case is already linked to CPNU", "already_bootstrapped")

    owner = user_id or (existing or {}).get("user_id")
    _check_quota(owner, context=f"bootstrap:{case_id}")
    record = await _scrape(radicado, scrape, context=f"bootstrap:{case_id}")
    _track_usage(owner, {"caseId": case_id, "radicado": radicado, "source": "bootstrap"})

    db.save_bootstrap(case_id, record, user_id=owner, last_action=derive_last_action(record.actuaciones))
    db.add_activity(
        case_id,
        f"Case linked to CPNU radicado {radicado} ({len(record.actuaciones)} actuaciones)",
    )
    _sync_event(
        "sync",
        phase="bootstrap",
        case_id=case_id,
        radicado=radicado,
        actuaciones=len(record.actuaciones),
    )
    return {"case": db.get_case(case_id), "record": record.to_dict()}


__all__ = [
    "sync_case",
    "run_sync_batch",
    "run_sync_batch_blocking",
    "preview_radicado",
    "bootstrap_case",
    "derive_last_action",
]
