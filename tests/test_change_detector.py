from __future__ import annotations

from app.cpnu.change_detector import detect_changes
from app.cpnu.models import ActuacionEntry


def _entries(*dates: str) -> list[ActuacionEntry]:
    return [ActuacionEntry(fecha_registro=d, descripcion=f"Actuación {d}") for d in dates]


def test_empty_scrape_reports_no_changes_and_keeps_cursor() -> None:
    result = detect_changes("2024-01-10", [])

    assert result.has_changes is False
    assert result.latest_fecha_registro == "2024-01-10"
    assert result.new_actuaciones == []


def test_first_sync_treats_every_entry_as_new() -> None:
    entries = _entries("15/01/2024", "10/01/2024", "sin fecha")

    result = detect_changes(None, entries)

    assert result.has_changes is True
    assert result.latest_fecha_registro == "15/01/2024"
    assert result.new_actuaciones == entries
    assert result.cursor_anomaly is False


def test_blank_cursor_counts_as_first_sync() -> None:
    result = detect_changes("   ", _entries("15/01/2024"))

    assert result.has_changes is True
    assert result.latest_fecha_registro == "15/01/2024"


def test_same_day_in_different_formats_is_not_a_change() -> None:
    result = detect_changes("2024-01-10", _entries("10/01/2024", "05/01/2024"))

    assert result.has_changes is False
    assert result.latest_fecha_registro == "2024-01-10"
    assert result.new_actuaciones == []


def test_only_strictly_newer_entries_are_new() -> None:
    entries = _entries("20/01/2024", "15/01/2024", "10/01/2024", "02/01/2024")

    result = detect_changes("2024-01-10", entries)

    assert result.has_changes is True
    assert [e.fecha_registro for e in result.new_actuaciones] == ["20/01/2024", "15/01/2024"]
    assert result.latest_fecha_registro == "20/01/2024"


def test_unparsable_entries_are_never_new_once_cursor_exists() -> None:
    entries = _entries("sin fecha", "20/01/2024", "10/01/2024")

    result = detect_changes("2024-01-10", entries)

    assert [e.fecha_registro for e in result.new_actuaciones] == ["20/01/2024"]
    assert result.latest_fecha_registro == "20/01/2024"


def test_nothing_newer_than_cursor_keeps_cursor() -> None:
    result = detect_changes("2024-02-01", _entries("15/01/2024", "10/01/2024"))

    assert result.has_changes is False
    assert result.latest_fecha_registro == "2024-02-01"


def test_unparsable_cursor_fails_open() -> None:
    entries = _entries("15/01/2024", "10/01/2024")

    result = detect_changes("garbage", entries)

    assert result.has_changes is True
    assert result.cursor_anomaly is True
    assert result.new_actuaciones == entries
    assert result.latest_fecha_registro == "15/01/2024"
    assert result.to_dict()["cursorAnomaly"] is True


def test_detect_changes_is_repeatable() -> None:
    entries = _entries("20/01/2024", "10/01/2024")

    first = detect_changes("2024-01-10", entries)
    second = detect_changes(first.latest_fecha_registro, entries)

    assert first.has_changes is True
    assert second.has_changes is False
    assert "cursorAnomaly" not in second.to_dict()
