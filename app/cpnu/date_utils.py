from __future__ import annotations

import re
from datetime import date, datetime
from typing import Iterable, Optional

# Portal dates are day-first ("10/01/2024"); stored cursors are usually ISO.
_DATE_FORMATS: Iterable[str] = (
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%d/%m/%y",
    "%d-%b-%Y",
)

_BARE_DATE_RE = re.compile(
    r"^(\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4}|\d{4}[/\-.]\d{1,2}[/\-.]\d{1,2})$"
)
_YEAR_FIRST_RE = re.compile(r"^(\d{4})[/\-.](\d{1,2})[/\-.](\d{1,2})(?:$|[T\s])")
_DAY_FIRST_RE = re.compile(r"^(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{2,4})(?:$|[T\s])")


def is_bare_date(value: str | None) -> bool:
    """Return ``True`` when ``value`` is nothing but a calendar date."""

    return bool(_BARE_DATE_RE.match((value or "").strip()))


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    if year < 100:
        year += 2000
    if month > 12 and day <= 12:
        month, day = day, month
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_portal_date(value: str | None) -> Optional[date]:
    """Parse a portal or cursor date down to a calendar day.

    Accepts ISO dates and timestamps, year-first and day-first forms with
    ``/``, ``-`` or ``.`` delimiters, and two-digit years. Returns ``None``
    when nothing sensible can be read.
    """

    candidate = (value or "").strip()
    if not candidate:
        return None

    try:
        return datetime.fromisoformat(candidate.replace("Z", "+00:00")).date()
    except ValueError:
        pass

    match = _YEAR_FIRST_RE.match(candidate)
    if match:
        year, month, day = (int(part) for part in match.groups())
        return _safe_date(year, month, day)

    match = _DAY_FIRST_RE.match(candidate)
    if match:
        day, month, year = (int(part) for part in match.groups())
        return _safe_date(year, month, day)

    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(candidate, fmt).date()
        except ValueError:
            continue
    return None


def sortable_date(value: str | None) -> str:
    """Return ``YYYY-MM-DD`` for ``value`` or an empty string when unparsable."""

    parsed = parse_portal_date(value)
    return parsed.isoformat() if parsed else ""


def same_calendar_day(left: str | None, right: str | None) -> bool:
    left_day = parse_portal_date(left)
    right_day = parse_portal_date(right)
    return left_day is not None and left_day == right_day


__all__ = ["is_bare_date", "parse_portal_date", "sortable_date", "same_calendar_day"]
