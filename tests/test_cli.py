from __future__ import annotations

from pathlib import Path

import pytest

from app.cpnu import cli, config, db, sync_runner
from app.cpnu.error_codes import CpnuError, ErrorCategory
from tests.test_sync_store_db import _configure_temp_paths, _link_case, _record

RADICADO = "11001310300120240001200"


@pytest.fixture
def printed(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> list[object]:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()
    monkeypatch.setattr(config, "SCRAPE_MAX_ATTEMPTS", 1)
    payloads: list[object] = []
    monkeypatch.setattr(cli, "_print", payloads.append)
    return payloads


def _patch_scrape(monkeypatch: pytest.MonkeyPatch, outcome) -> None:
    async def _scrape(radicado: str):
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(sync_runner, "scrape_cpnu", _scrape)


def test_summary_without_runs(printed: list[object], capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["summary"]) == 1
    assert "No sync runs recorded yet." in capsys.readouterr().out
    assert printed == []


def test_bootstrap_sync_then_summary(printed: list[object], monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_scrape(monkeypatch, _record(RADICADO, "20/01/2024"))

    assert cli.main(["bootstrap", "case-1", RADICADO, "--user-id", "user-1"]) == 0
    assert printed[-1]["case"]["user_id"] == "user-1"

    assert cli.main(["sync"]) == 0
    assert printed[-1]["processed"] == 1
    assert printed[-1]["noChanges"] == 1

    assert cli.main(["summary"]) == 0
    assert printed[-1]["noChanges"] == 1
    assert printed[-1]["run_id"]


def test_sync_exit_code_reflects_errors(printed: list[object], monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_scrape(monkeypatch, CpnuError("Radicado not found in results table", ErrorCategory.NOT_FOUND))
    _link_case("case-1", RADICADO)

    assert cli.main(["sync"]) == 2
    assert printed[-1]["errors"] == 1


def test_preview_prints_error_payload(printed: list[object]) -> None:
    assert cli.main(["preview", "not-a-radicado"]) == 1
    assert printed[-1]["category"] == ErrorCategory.VALIDATION


def test_bootstrap_twice_reports_reason(printed: list[object], monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_scrape(monkeypatch, _record(RADICADO, "20/01/2024"))

    assert cli.main(["bootstrap", "case-1", RADICADO]) == 0
    assert cli.main(["bootstrap", "case-1", RADICADO]) == 1
    assert printed[-1]["reason"] == "already_bootstrapped"
