"""Compare freshly scraped actuaciones against a stored sync cursor."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from .date_utils import parse_portal_date
from .models import ActuacionEntry


@dataclass
class ChangeResult:
    has_changes: bool
    latest_fecha_registro: Optional[str]
    new_actuaciones: list[ActuacionEntry] = field(default_factory=list)
    cursor_anomaly: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "hasChanges": self.has_changes,
            "latestFechaRegistro": self.latest_fecha_registro,
            "newActuaciones": [entry.to_dict() for entry in self.new_actuaciones],
        }
        if self.cursor_anomaly:
            payload["cursorAnomaly"] = True
        return payload


def detect_changes(
    stored_cursor: Optional[str],
    scraped_entries: Sequence[ActuacionEntry],
) -> ChangeResult:
    """Return which of ``scraped_entries`` (newest first) are newer than the cursor.

    Dates are compared at calendar-day granularity. Entries whose registro
    date cannot be parsed are never reported as new, except on the first sync
    (no cursor) or when the cursor itself is unreadable, where every entry is
    returned and ``cursor_anomaly`` flags the latter case.
    """

    entries = list(scraped_entries)
    if not entries:
        return ChangeResult(False, stored_cursor)

    top = entries[0].fecha_registro
    cursor = (stored_cursor or "").strip()
    if not cursor:
        return ChangeResult(True, top, entries)

    cursor_day = parse_portal_date(cursor)
    if cursor_day is None:
        return ChangeResult(True, top, entries, cursor_anomaly=True)

    if parse_portal_date(top) == cursor_day:
        return ChangeResult(False, stored_cursor)

    new_entries = []
    for entry in entries:
        entry_day = parse_portal_date(entry.fecha_registro)
        if entry_day is not None and entry_day > cursor_day:
            new_entries.append(entry)

    if not new_entries:
        return ChangeResult(False, stored_cursor)
    return ChangeResult(True, new_entries[0].fecha_registro, new_entries)


__all__ = ["ChangeResult", "detect_changes"]
