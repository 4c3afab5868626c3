from __future__ import annotations

from pathlib import Path

import pytest

from app.cpnu import config, db, sync_runner
from app.cpnu.error_codes import DUPLICATE_RECORD_MESSAGE, CpnuError, ErrorCategory, duplicate_record_error
from tests.test_sync_store_db import _configure_temp_paths, _link_case, _record, _reload_main_module

RADICADO = "11001310300120240001200"


@pytest.fixture
def client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    _configure_temp_paths(tmp_path, monkeypatch)
    monkeypatch.setattr(config, "SCRAPE_MAX_ATTEMPTS", 1)
    main = _reload_main_module()
    return main.app.test_client()


def _fake_scrape(monkeypatch: pytest.MonkeyPatch, outcome) -> list[str]:
    calls: list[str] = []

    async def _scrape(radicado: str):
        calls.append(radicado)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(sync_runner, "scrape_cpnu", _scrape)
    return calls


def test_preview_returns_record(client, monkeypatch: pytest.MonkeyPatch) -> None:
    _fake_scrape(monkeypatch, _record(RADICADO, "20/01/2024"))

    resp = client.post("/api/cpnu/preview", json={"radicado": RADICADO})

    assert resp.status_code == 200
    data = resp.get_json()
    assert data["ok"] is True
    assert data["data"]["radicado"] == RADICADO
    assert data["data"]["sujetosProcesales"]["demandante"] == "Ana"
    assert data["data"]["actuaciones"][0]["fecha_registro"] == "20/01/2024"


def test_preview_rejects_malformed_radicado(client, monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _fake_scrape(monkeypatch, _record(RADICADO))

    resp = client.post("/api/cpnu/preview", json={"radicado": "12345"})

    assert resp.status_code == 400
    data = resp.get_json()
    assert data["errorCategory"] == ErrorCategory.VALIDATION
    assert calls == []


@pytest.mark.parametrize(
    "error, status, category",
    [
        (CpnuError("CPNU scraping timed out after 90 seconds", ErrorCategory.TIMEOUT), 504, "timeout"),
        (CpnuError("Failed to initialize browser: ENOENT", ErrorCategory.CONNECTION), 503, "connection"),
        (CpnuError("Radicado not found in results table", ErrorCategory.NOT_FOUND), 404, "not_found"),
        (CpnuError("Consultar button not found on CPNU page", ErrorCategory.OTHER), 500, "other"),
    ],
)
def test_preview_error_mapping(client, monkeypatch: pytest.MonkeyPatch, error, status, category) -> None:
    _fake_scrape(monkeypatch, error)

    resp = client.post("/api/cpnu/preview", json={"radicado": RADICADO})

    assert resp.status_code == status
    data = resp.get_json()
    assert data["ok"] is False
    assert data["errorCategory"] == category
    assert data["details"] == error.message
    assert "isDuplicateRecord" not in data


def test_preview_duplicate_record(client, monkeypatch: pytest.MonkeyPatch) -> None:
    _fake_scrape(monkeypatch, duplicate_record_error())

    resp = client.post("/api/cpnu/preview", json={"radicado": RADICADO})

    assert resp.status_code == 400
    data = resp.get_json()
    assert data["isDuplicateRecord"] is True
    assert data["error"] == DUPLICATE_RECORD_MESSAGE


def test_bootstrap_route_links_case_once(client, monkeypatch: pytest.MonkeyPatch) -> None:
    _fake_scrape(monkeypatch, _record(RADICADO, "20/01/2024", "10/01/2024"))

    resp = client.post("/api/cpnu/sync/case-1", json={"radicado": RADICADO}, headers={"X-User-Id": "user-1"})

    assert resp.status_code == 200
    assert resp.get_json()["case"]["user_id"] == "user-1"

    again = client.post("/api/cpnu/sync/case-1", json={"radicado": RADICADO})
    assert again.status_code == 409
    assert again.get_json()["error"] == "already_bootstrapped"

    detail = client.get("/api/cpnu/cases/case-1").get_json()
    assert detail["cursor"]["latestFechaRegistro"] == "20/01/2024"
    assert len(detail["actuaciones"]) == 2


def test_bootstrap_route_deleted_case(client, monkeypatch: pytest.MonkeyPatch) -> None:
    _fake_scrape(monkeypatch, _record(RADICADO, "20/01/2024"))
    db.upsert_case("case-1", user_id="user-1", is_deleted=True)

    resp = client.post("/api/cpnu/sync/case-1", json={"radicado": RADICADO})

    assert resp.status_code == 404
    assert resp.get_json()["error"] == "deleted"


def test_case_route_unknown_case(client) -> None:
    assert client.get("/api/cpnu/cases/missing").status_code == 404


def test_webhook_disabled_without_secret(client, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "WEBHOOK_SHARED_SECRET", "")

    resp = client.post("/webhook/cpnu-sync")

    assert resp.status_code == 404
    assert resp.get_json()["error"] == "webhook_disabled"


def test_webhook_rejects_bad_token(client, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "WEBHOOK_SHARED_SECRET", "s3cret")

    resp = client.post("/webhook/cpnu-sync", headers={"X-Webhook-Token": "nope"})

    assert resp.status_code == 403
    assert resp.get_json()["error"] == "invalid_token"


def test_webhook_runs_batch(client, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "WEBHOOK_SHARED_SECRET", "s3cret")
    _fake_scrape(monkeypatch, _record(RADICADO, "20/01/2024"))
    _link_case("case-1", RADICADO, latest="2024-01-10")

    resp = client.post("/webhook/cpnu-sync?token=s3cret")

    assert resp.status_code == 200
    payload = resp.get_json()
    assert payload["entrypoint"] == "webhook"
    assert payload["result"] == {"processed": 1, "updated": 1, "noChanges": 0, "errors": 0, "errorDetails": []}

    latest = client.get("/api/cpnu/runs/latest").get_json()
    assert latest["run"]["trigger"] == "webhook"
    assert latest["run"]["result"]["updated"] == 1

    export = client.get("/api/exports/latest.xlsx")
    assert export.status_code == 200
    assert export.headers["Content-Disposition"].startswith("attachment")


def test_runs_latest_and_export_without_runs(client) -> None:
    assert client.get("/api/cpnu/runs/latest").status_code == 404
    assert client.get("/api/exports/latest.xlsx").status_code == 404


def test_health_endpoint_reports_checks(client) -> None:
    resp = client.get("/api/health")

    data = resp.get_json()
    assert set(data["checks"]) == {"config", "filesystem", "database"}
    assert data["checks"]["database"]["ok"] is True
    assert resp.status_code == (200 if data["ok"] else 503)
