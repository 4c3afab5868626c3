"""SQLite helpers for the CPNU sync engine.

This module defines the database path, connection helper, schema
initialisation and the case-store operations used by the sync orchestrator:
linked-case lookup, sync cursor reads and writes, and the append-only
actuaciones history.
"""
from __future__ import annotations

import json
import sqlite3
import time
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from . import config
from .models import ActuacionEntry, CaseRecord, LinkedCase, SyncCursor

DB_PATH: Path = config.DB_PATH


def get_connection() -> sqlite3.Connection:
    """Return a SQLite connection to the project database.

    The parent directory is created if missing and ``check_same_thread`` is
    disabled to allow reuse from Flask worker threads.
    """

    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(DB_PATH, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def initialize_schema() -> None:
    """Create the tables if they do not yet exist. Safe to call repeatedly."""

    statements: Iterable[str] = (
        """
        CREATE TABLE IF NOT EXISTS cases (
            case_id                 TEXT PRIMARY KEY,
            user_id                 TEXT,
            radicado                TEXT,
            linked_cpnu             INTEGER NOT NULL DEFAULT 0,
            bootstrap_done          INTEGER NOT NULL DEFAULT 0,
            bootstrap_at            TEXT,
            is_deleted              INTEGER NOT NULL DEFAULT 0,
            despacho                TEXT,
            clase_proceso           TEXT,
            fecha_radicacion        TEXT,
            tipo_proceso            TEXT,
            demandante              TEXT,
            demandado               TEXT,
            defensor_privado        TEXT,
            defensor_publico        TEXT,
            attorney                TEXT,
            latest_fecha_registro   TEXT,
            last_sync_status        TEXT,
            last_sync_at            TEXT,
            last_action_title       TEXT,
            last_action_date        TEXT,
            created_at              TEXT NOT NULL,
            updated_at              TEXT NOT NULL
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_cases_linked
            ON cases(linked_cpnu, bootstrap_done, is_deleted);
        """,
        """
        CREATE TABLE IF NOT EXISTS actuaciones (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            case_id         TEXT NOT NULL,
            fecha_registro  TEXT,
            fecha_actuacion TEXT,
            descripcion     TEXT,
            source          TEXT NOT NULL,
            created_at      TEXT NOT NULL,
            FOREIGN KEY(case_id) REFERENCES cases(case_id)
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_actuaciones_case
            ON actuaciones(case_id);
        """,
        """
        CREATE TABLE IF NOT EXISTS activity (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            case_id     TEXT NOT NULL,
            message     TEXT NOT NULL,
            created_at  TEXT NOT NULL,
            FOREIGN KEY(case_id) REFERENCES cases(case_id)
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS events (
            id           INTEGER PRIMARY KEY AUTOINCREMENT,
            case_id      TEXT,
            event_type   TEXT NOT NULL,
            payload_json TEXT,
            created_at   TEXT NOT NULL
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS resource_usage (
            user_id        TEXT NOT NULL,
            resource_type  TEXT NOT NULL,
            used           INTEGER NOT NULL DEFAULT 0,
            usage_limit    INTEGER NOT NULL DEFAULT 0,
            last_reset_at  TEXT,
            PRIMARY KEY(user_id, resource_type)
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS resource_usage_log (
            id             INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id        TEXT NOT NULL,
            resource_type  TEXT NOT NULL,
            amount         INTEGER NOT NULL,
            metadata_json  TEXT,
            created_at     TEXT NOT NULL
        );
        """,
    )

    conn = get_connection()
    try:
        with conn:
            for statement in statements:
                conn.execute(statement)
    finally:
        conn.close()


def _utc_now() -> str:
    """Return a UTC timestamp formatted as ISO8601 without fractional seconds."""

    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def _row_to_dict(row: Optional[sqlite3.Row]) -> Optional[dict[str, Any]]:
    return dict(row) if row is not None else None


# ---------------------------------------------------------------------------
# Cases
# ---------------------------------------------------------------------------


def upsert_case(
    case_id: str,
    *,
    user_id: Optional[str] = None,
    radicado: Optional[str] = None,
    linked_cpnu: Optional[bool] = None,
    bootstrap_done: Optional[bool] = None,
    is_deleted: Optional[bool] = None,
    latest_fecha_registro: Optional[str] = None,
) -> None:
    """Create ``case_id`` or update the given columns of an existing case."""

    now = _utc_now()
    updates: dict[str, Any] = {
        "user_id": user_id,
        "radicado": radicado,
        "linked_cpnu": None if linked_cpnu is None else int(linked_cpnu),
        "bootstrap_done": None if bootstrap_done is None else int(bootstrap_done),
        "is_deleted": None if is_deleted is None else int(is_deleted),
        "latest_fecha_registro": latest_fecha_registro,
    }
    present = {key: value for key, value in updates.items() if value is not None}

    conn = get_connection()
    try:
        with conn:
            conn.execute(
                "INSERT OR IGNORE INTO cases (case_id, created_at, updated_at) VALUES (?, ?, ?)",
                (case_id, now, now),
            )
            if present:
                assignments = ", ".join(f"{column} = ?" for column in present)
                conn.execute(
                    f"UPDATE cases SET {assignments}, updated_at = ? WHERE case_id = ?",
                    (*present.values(), now, case_id),
                )
    finally:
        conn.close()


def get_case(case_id: str) -> Optional[dict[str, Any]]:
    conn = get_connection()
    try:
        row = conn.execute("SELECT * FROM cases WHERE case_id = ?", (case_id,)).fetchone()
    finally:
        conn.close()
    return _row_to_dict(row)


def list_linked_cases() -> list[LinkedCase]:
    """Return bootstrapped, non-deleted cases linked to a radicado, oldest first."""

    conn = get_connection()
    try:
        rows = conn.execute(
            """
            SELECT case_id, user_id, radicado
            FROM cases
            WHERE linked_cpnu = 1
              AND bootstrap_done = 1
              AND is_deleted = 0
              AND radicado IS NOT NULL
              AND radicado != ''
            ORDER BY created_at ASC, case_id ASC
            """
        ).fetchall()
    finally:
        conn.close()
    return [LinkedCase(case_id=row["case_id"], user_id=row["user_id"], radicado=row["radicado"]) for row in rows]


def get_sync_cursor(case_id: str) -> Optional[SyncCursor]:
    case = get_case(case_id)
    if case is None:
        return None
    return SyncCursor(
        latest_fecha_registro=case.get("latest_fecha_registro"),
        last_sync_status=case.get("last_sync_status"),
        last_sync_at=case.get("last_sync_at"),
    )


def update_sync_cursor(
    case_id: str,
    *,
    status: str,
    synced_at: Optional[str] = None,
    latest_fecha_registro: Optional[str] = None,
) -> None:
    """Record a conclusive sync outcome.

    ``latest_fecha_registro`` is only written when provided, so a no-change
    outcome touches nothing but the status and timestamp.
    """

    now = _utc_now()
    conn = get_connection()
    try:
        with conn:
            if latest_fecha_registro is not None:
                conn.execute(
                    """
                    UPDATE cases
                    SET latest_fecha_registro = ?, last_sync_status = ?, last_sync_at = ?, updated_at = ?
                    WHERE case_id = ?
                    """,
                    (latest_fecha_registro, status, synced_at or now, now, case_id),
                )
            else:
                conn.execute(
                    """
                    UPDATE cases
                    SET last_sync_status = ?, last_sync_at = ?, updated_at = ?
                    WHERE case_id = ?
                    """,
                    (status, synced_at or now, now, case_id),
                )
    finally:
        conn.close()


def set_last_action(case_id: str, *, title: Optional[str], date: Optional[str]) -> None:
    now = _utc_now()
    conn = get_connection()
    try:
        with conn:
            conn.execute(
                """
                UPDATE cases
                SET last_action_title = ?, last_action_date = ?, updated_at = ?
                WHERE case_id = ?
                """,
                (title, date, now, case_id),
            )
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Actuaciones history
# ---------------------------------------------------------------------------


def list_actuaciones(case_id: str) -> list[ActuacionEntry]:
    """Return the stored history for ``case_id`` in insertion order."""

    conn = get_connection()
    try:
        rows = conn.execute(
            """
            SELECT fecha_registro, fecha_actuacion, descripcion
            FROM actuaciones
            WHERE case_id = ?
            ORDER BY id ASC
            """,
            (case_id,),
        ).fetchall()
    finally:
        conn.close()
    return [ActuacionEntry.from_dict(dict(row)) for row in rows]


def append_actuaciones(
    case_id: str,
    entries: Sequence[ActuacionEntry],
    *,
    source: str = "cpnu",
) -> list[ActuacionEntry]:
    """Append ``entries`` whose registro date is not already in the stored history.

    Only rows stored before this call are compared, so several new entries
    sharing one registro date are all kept. Returns the entries written.
    """

    now = _utc_now()
    conn = get_connection()
    try:
        with conn:
            existing = {
                row["fecha_registro"]
                for row in conn.execute(
                    "SELECT fecha_registro FROM actuaciones WHERE case_id = ? AND fecha_registro IS NOT NULL",
                    (case_id,),
                )
            }
            added: list[ActuacionEntry] = []
            for entry in entries:
                if entry.fecha_registro and entry.fecha_registro in existing:
                    continue
                conn.execute(
                    """
                    INSERT INTO actuaciones (
                        case_id, fecha_registro, fecha_actuacion, descripcion, source, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (case_id, entry.fecha_registro, entry.fecha_actuacion, entry.descripcion, source, now),
                )
                added.append(entry)
    finally:
        conn.close()
    return added


# ---------------------------------------------------------------------------
# Activity and events
# ---------------------------------------------------------------------------


def add_activity(case_id: str, message: str) -> None:
    conn = get_connection()
    try:
        with conn:
            conn.execute(
                "INSERT INTO activity (case_id, message, created_at) VALUES (?, ?, ?)",
                (case_id, message, _utc_now()),
            )
    finally:
        conn.close()


def list_activity(case_id: str) -> list[str]:
    conn = get_connection()
    try:
        rows = conn.execute(
            "SELECT message FROM activity WHERE case_id = ? ORDER BY id ASC",
            (case_id,),
        ).fetchall()
    finally:
        conn.close()
    return [row["message"] for row in rows]


def record_event(case_id: Optional[str], event_type: str, payload: Optional[dict[str, Any]] = None) -> None:
    conn = get_connection()
    try:
        with conn:
            conn.execute(
                "INSERT INTO events (case_id, event_type, payload_json, created_at) VALUES (?, ?, ?, ?)",
                (
                    case_id,
                    event_type,
                    json.dumps(payload, ensure_ascii=False) if payload is not None else None,
                    _utc_now(),
                ),
            )
    finally:
        conn.close()


def list_events(case_id: Optional[str] = None) -> list[dict[str, Any]]:
    conn = get_connection()
    try:
        if case_id is None:
            rows = conn.execute("SELECT * FROM events ORDER BY id ASC").fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM events WHERE case_id = ? ORDER BY id ASC",
                (case_id,),
            ).fetchall()
    finally:
        conn.close()
    events = []
    for row in rows:
        item = dict(row)
        item["payload"] = json.loads(item.pop("payload_json") or "null")
        events.append(item)
    return events


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------


class BootstrapError(Exception):
    """Raised when a case cannot be bootstrapped (missing, deleted or already done)."""

    def __init__(self, message: str, reason: str) -> None:
        super().__init__(message)
        self.reason = reason


def save_bootstrap(
    case_id: str,
    record: CaseRecord,
    *,
    user_id: Optional[str] = None,
    last_action: Optional[dict[str, Optional[str]]] = None,
) -> None:
    """Store the write-once snapshot taken when a case is first linked."""

    now = _utc_now()
    metadata = record.datos_proceso
    parties = record.sujetos_procesales
    latest = record.actuaciones[0].fecha_registro if record.actuaciones else None
    action = last_action or {}

    conn = get_connection()
    try:
        with conn:
            row = conn.execute(
                "SELECT bootstrap_done, is_deleted FROM cases WHERE case_id = ?",
                (case_id,),
            ).fetchone()
            if row is not None and row["is_deleted"]:
                raise BootstrapError("Case has been deleted", "deleted")
            if row is not None and row["bootstrap_done"]:
                raise BootstrapError("Case is already linked to CPNU", "already_bootstrapped")
            if row is None:
                conn.execute(
                    "INSERT INTO cases (case_id, created_at, updated_at) VALUES (?, ?, ?)",
                    (case_id, now, now),
                )
            conn.execute(
                """
                UPDATE cases SET
                    user_id = COALESCE(?, user_id),
                    radicado = ?,
                    linked_cpnu = 1,
                    bootstrap_done = 1,
                    bootstrap_at = ?,
                    despacho = ?,
                    clase_proceso = ?,
                    fecha_radicacion = ?,
                    tipo_proceso = ?,
                    demandante = ?,
                    demandado = ?,
                    defensor_privado = ?,
                    defensor_publico = ?,
                    attorney = ?,
                    latest_fecha_registro = ?,
                    last_sync_status = 'success',
                    last_sync_at = ?,
                    last_action_title = ?,
                    last_action_date = ?,
                    updated_at = ?
                WHERE case_id = ?
                """,
                (
                    user_id,
                    record.radicado,
                    now,
                    metadata.despacho,
                    metadata.clase_proceso,
                    metadata.fecha_radicacion,
                    metadata.tipo_proceso,
                    parties.demandante,
                    parties.demandado,
                    parties.defensor_privado,
                    parties.defensor_publico,
                    parties.attorney,
                    latest,
                    now,
                    action.get("title"),
                    action.get("date"),
                    now,
                    case_id,
                ),
            )
            for entry in record.actuaciones:
                conn.execute(
                    """
                    INSERT INTO actuaciones (
                        case_id, fecha_registro, fecha_actuacion, descripcion, source, created_at
                    ) VALUES (?, ?, ?, ?, 'cpnu_bootstrap', ?)
                    """,
                    (case_id, entry.fecha_registro, entry.fecha_actuacion, entry.descripcion, now),
                )
    finally:
        conn.close()


__all__ = [
    "DB_PATH",
    "get_connection",
    "initialize_schema",
    "upsert_case",
    "get_case",
    "list_linked_cases",
    "get_sync_cursor",
    "update_sync_cursor",
    "set_last_action",
    "list_actuaciones",
    "append_actuaciones",
    "add_activity",
    "list_activity",
    "record_event",
    "list_events",
    "BootstrapError",
    "save_bootstrap",
]
