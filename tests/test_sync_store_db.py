from __future__ import annotations

import importlib
import sys
from pathlib import Path

import pytest

from app.cpnu import config, db
from app.cpnu.models import ActuacionEntry, CaseRecord, PartyRecord, ProcessMetadata


def _configure_temp_paths(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data_dir = tmp_path / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    db_path = data_dir / "cpnu_sync.db"

    monkeypatch.setattr(config, "DATA_DIR", data_dir)
    monkeypatch.setattr(config, "LOG_DIR", data_dir / "logs")
    monkeypatch.setattr(config, "LOG_FILE", data_dir / "logs" / "latest.log")
    monkeypatch.setattr(config, "RUNS_DIR", data_dir / "runs")
    monkeypatch.setattr(config, "EXPORTS_DIR", data_dir / "exports")
    monkeypatch.setattr(config, "REPLAY_FIXTURES_DIR", data_dir / "replay_fixtures")
    monkeypatch.setattr(config, "DB_PATH", db_path)
    monkeypatch.setattr(db, "DB_PATH", db_path)
    monkeypatch.setattr(config, "HEALTH_CHECK_PORTAL", False)


def _reload_main_module():
    if "app.main" in sys.modules:
        del sys.modules["app.main"]
    return importlib.import_module("app.main")


def _link_case(case_id: str, radicado: str, *, user_id: str = "user-1", latest: str | None = None) -> None:
    db.upsert_case(
        case_id,
        user_id=user_id,
        radicado=radicado,
        linked_cpnu=True,
        bootstrap_done=True,
        latest_fecha_registro=latest,
    )


def _record(radicado: str, *dates: str) -> CaseRecord:
    return CaseRecord(
        radicado=radicado,
        datos_proceso=ProcessMetadata(despacho="Juzgado 01 Civil", clase_proceso="Verbal"),
        sujetos_procesales=PartyRecord(demandante="Ana", demandado="Banco", defensor_publico="Luis"),
        actuaciones=[ActuacionEntry(fecha_registro=d, descripcion=f"Actuación {d}") for d in dates],
        scraped_at="2024-03-01T00:00:00.000Z",
    )


RADICADO = "11001310300120240001200"


def test_list_linked_cases_filters_unlinked_and_deleted(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()

    _link_case("case-a", RADICADO)
    _link_case("case-b", "11001310300120240001300")
    db.upsert_case("case-b", is_deleted=True)
    db.upsert_case("case-c", radicado="11001310300120240001400", linked_cpnu=True)
    db.upsert_case("case-d", user_id="user-1")

    linked = db.list_linked_cases()

    assert [case.case_id for case in linked] == ["case-a"]
    assert linked[0].radicado == RADICADO
    assert linked[0].user_id == "user-1"


def test_update_sync_cursor_without_date_keeps_latest(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()
    _link_case("case-a", RADICADO, latest="2024-01-10")

    db.update_sync_cursor("case-a", status="no_changes", synced_at="2024-02-01T00:00:00Z")

    cursor = db.get_sync_cursor("case-a")
    assert cursor is not None
    assert cursor.latest_fecha_registro == "2024-01-10"
    assert cursor.last_sync_status == "no_changes"
    assert cursor.last_sync_at == "2024-02-01T00:00:00Z"

    db.update_sync_cursor("case-a", status="success", latest_fecha_registro="2024-02-02")
    assert db.get_sync_cursor("case-a").latest_fecha_registro == "2024-02-02"


def test_get_sync_cursor_unknown_case_returns_none(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()

    assert db.get_sync_cursor("missing") is None


def test_append_actuaciones_skips_known_registro_dates(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()
    _link_case("case-a", RADICADO)

    first = db.append_actuaciones(
        "case-a",
        [ActuacionEntry("2024-01-10", None, "Auto admite"), ActuacionEntry("2024-01-05", None, "Radicación")],
    )
    second = db.append_actuaciones(
        "case-a",
        [ActuacionEntry("2024-02-01", None, "Traslado"), ActuacionEntry("2024-01-10", None, "Auto admite")],
    )

    assert len(first) == 2
    assert [entry.descripcion for entry in second] == ["Traslado"]
    stored = [entry.fecha_registro for entry in db.list_actuaciones("case-a")]
    assert stored == ["2024-01-10", "2024-01-05", "2024-02-01"]


def test_append_actuaciones_keeps_new_entries_sharing_a_registro_date(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()
    _link_case("case-a", RADICADO)
    db.append_actuaciones("case-a", [ActuacionEntry("2024-01-10", None, "Radicación")])

    added = db.append_actuaciones(
        "case-a",
        [
            ActuacionEntry("2024-02-01", None, "Auto admite demanda"),
            ActuacionEntry("2024-02-01", None, "Fijación estado"),
            ActuacionEntry("2024-01-10", None, "Radicación"),
        ],
    )

    assert [entry.descripcion for entry in added] == ["Auto admite demanda", "Fijación estado"]
    stored = [entry.descripcion for entry in db.list_actuaciones("case-a")]
    assert stored == ["Radicación", "Auto admite demanda", "Fijación estado"]


def test_save_bootstrap_is_write_once(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()

    record = _record(RADICADO, "2024-01-10", "2024-01-05")
    db.save_bootstrap("case-a", record, user_id="user-1", last_action={"title": "Actuación 2024-01-10", "date": "2024-01-10"})

    case = db.get_case("case-a")
    assert case["bootstrap_done"] == 1
    assert case["linked_cpnu"] == 1
    assert case["despacho"] == "Juzgado 01 Civil"
    assert case["attorney"] == "Luis"
    assert case["latest_fecha_registro"] == "2024-01-10"
    assert case["last_sync_status"] == "success"
    assert case["last_action_title"] == "Actuación 2024-01-10"
    assert len(db.list_actuaciones("case-a")) == 2

    with pytest.raises(db.BootstrapError) as excinfo:
        db.save_bootstrap("case-a", _record(RADICADO, "2024-03-01"))
    assert excinfo.value.reason == "already_bootstrapped"
    assert len(db.list_actuaciones("case-a")) == 2


def test_save_bootstrap_rejects_deleted_case(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()
    db.upsert_case("case-a", user_id="user-1", is_deleted=True)

    with pytest.raises(db.BootstrapError) as excinfo:
        db.save_bootstrap("case-a", _record(RADICADO, "2024-01-10"))

    assert excinfo.value.reason == "deleted"


def test_record_event_and_activity_roundtrip(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()
    _link_case("case-a", RADICADO)

    db.record_event("case-a", "sync_error", {"category": "timeout"})
    db.add_activity("case-a", "New Actuaciones detected from CPNU (2 new)")

    events = db.list_events("case-a")
    assert events[0]["event_type"] == "sync_error"
    assert events[0]["payload"] == {"category": "timeout"}
    assert db.list_activity("case-a") == ["New Actuaciones detected from CPNU (2 new)"]
