"""Per-user usage counters for metered resources such as CPNU scrapes.

A limit of 0 means unlimited. Users without a usage row are unlimited too.
Callers on the sync path treat any failure here as "allowed".
"""
from __future__ import annotations

import json
from typing import Any, Optional

from . import db


def _load_usage(conn, user_id: str, resource_type: str):
    return conn.execute(
        "SELECT used, usage_limit, last_reset_at FROM resource_usage WHERE user_id = ? AND resource_type = ?",
        (user_id, resource_type),
    ).fetchone()


def check_availability(user_id: Optional[str], resource_type: str, amount: int = 1) -> dict[str, Any]:
    """Return ``{allowed, remaining, limit, isUnlimited}`` for ``amount`` more units."""

    unlimited = {"allowed": True, "remaining": None, "limit": 0, "isUnlimited": True}
    if not user_id:
        return unlimited

    conn = db.get_connection()
    try:
        row = _load_usage(conn, user_id, resource_type)
    finally:
        conn.close()

    if row is None or int(row["usage_limit"]) == 0:
        return unlimited

    limit = int(row["usage_limit"])
    used = int(row["used"])
    remaining = max(0, limit - used)
    return {
        "allowed": used + amount <= limit,
        "remaining": remaining,
        "limit": limit,
        "isUnlimited": False,
    }


def track(
    user_id: Optional[str],
    resource_type: str,
    amount: int = 1,
    metadata: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Add ``amount`` to the user's counter and append a usage-log row."""

    if not user_id:
        return {"success": False, "reason": "missing_user"}

    now = db._utc_now()
    conn = db.get_connection()
    try:
        with conn:
            conn.execute(
                """
                INSERT INTO resource_usage (user_id, resource_type, used, usage_limit, last_reset_at)
                VALUES (?, ?, 0, 0, ?)
                ON CONFLICT(user_id, resource_type) DO NOTHING
                """,
                (user_id, resource_type, now),
            )
            conn.execute(
                "UPDATE resource_usage SET used = used + ? WHERE user_id = ? AND resource_type = ?",
                (amount, user_id, resource_type),
            )
            conn.execute(
                """
                INSERT INTO resource_usage_log (user_id, resource_type, amount, metadata_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, resource_type, amount, json.dumps(metadata or {}, ensure_ascii=False), now),
            )
            row = _load_usage(conn, user_id, resource_type)
    finally:
        conn.close()

    limit = int(row["usage_limit"])
    used = int(row["used"])
    return {
        "success": True,
        "used": used,
        "limit": limit,
        "remaining": max(0, limit - used) if limit > 0 else None,
        "isUnlimited": limit == 0,
    }


def set_limit(user_id: str, resource_type: str, limit: int) -> None:
    if limit < 0:
        raise ValueError("limit must be a non-negative integer")
    conn = db.get_connection()
    try:
        with conn:
            conn.execute(
                """
                INSERT INTO resource_usage (user_id, resource_type, used, usage_limit, last_reset_at)
                VALUES (?, ?, 0, ?, ?)
                ON CONFLICT(user_id, resource_type) DO UPDATE SET usage_limit = excluded.usage_limit
                """,
                (user_id, resource_type, limit, db._utc_now()),
            )
    finally:
        conn.close()


def reset_usage(user_id: str, resource_type: str) -> None:
    conn = db.get_connection()
    try:
        with conn:
            conn.execute(
                "UPDATE resource_usage SET used = 0, last_reset_at = ? WHERE user_id = ? AND resource_type = ?",
                (db._utc_now(), user_id, resource_type),
            )
    finally:
        conn.close()


__all__ = ["check_availability", "track", "set_limit", "reset_usage"]
