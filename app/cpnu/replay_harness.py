"""Offline replay of captured CPNU page snapshots.

A live session with ``CPNU_RECORD_REPLAY_FIXTURES`` enabled writes
``detail.html``, ``parties.html`` and ``actuaciones.html`` into a fixture
directory. This harness rebuilds the case record from those files without a
browser and, when a cursor is given, runs change detection on it.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .change_detector import detect_changes
from .config_validation import validate_runtime_config
from .extractor import ExtractionContext, extract_actuaciones, extract_parties, extract_process_metadata
from .logging_utils import _sync_event
from .models import CaseRecord, PartyRecord, ProcessMetadata
from .utils import log_line, utc_now_iso

FIXTURE_FILES = {
    "detail": "detail.html",
    "parties": "parties.html",
    "actuaciones": "actuaciones.html",
}


@dataclass
class ReplayConfig:
    fixtures_path: Path
    radicado: Optional[str] = None
    cursor: Optional[str] = None


def load_snapshots(fixtures_path: Path) -> Dict[str, str]:
    snapshots: Dict[str, str] = {}
    for key, filename in FIXTURE_FILES.items():
        path = Path(fixtures_path) / filename
        if path.is_file():
            snapshots[key] = path.read_text(encoding="utf-8")
    return snapshots


def _radicado_from_dir(fixtures_path: Path) -> str:
    return Path(fixtures_path).name.split("_", 1)[0]


def run_replay(config_obj: ReplayConfig) -> Dict[str, Any]:
    validate_runtime_config("replay")
    radicado = config_obj.radicado or _radicado_from_dir(config_obj.fixtures_path)
    snapshots = load_snapshots(config_obj.fixtures_path)
    if not snapshots:
        raise FileNotFoundError(f"No snapshots found under {config_obj.fixtures_path}")

    _sync_event("replay", phase="start", fixtures=str(config_obj.fixtures_path), snapshots=sorted(snapshots))

    ctx = ExtractionContext(radicado=radicado)
    metadata = extract_process_metadata(snapshots["detail"], ctx) if "detail" in snapshots else ProcessMetadata()
    parties = extract_parties(snapshots["parties"], ctx) if "parties" in snapshots else PartyRecord()
    actuaciones = extract_actuaciones(snapshots["actuaciones"], ctx) if "actuaciones" in snapshots else []

    record = CaseRecord(
        radicado=radicado,
        datos_proceso=metadata,
        sujetos_procesales=parties,
        actuaciones=actuaciones,
        scraped_at=utc_now_iso(),
    )
    summary: Dict[str, Any] = {
        "record": record.to_dict(),
        "warnings": list(ctx.warnings),
    }
    if config_obj.cursor is not None:
        summary["changes"] = detect_changes(config_obj.cursor, actuaciones).to_dict()

    _sync_event("replay", phase="end", fixtures=str(config_obj.fixtures_path), actuaciones=len(actuaciones))
    return summary


if __name__ == "__main__":
    import argparse
    import json

    parser = argparse.ArgumentParser(description="Replay captured CPNU snapshots offline.")
    parser.add_argument("fixtures", help="Directory holding detail/parties/actuaciones HTML snapshots")
    parser.add_argument("--radicado", default=None)
    parser.add_argument("--cursor", default=None, help="Stored latest fecha de registro to diff against")
    args = parser.parse_args()

    result = run_replay(ReplayConfig(Path(args.fixtures), radicado=args.radicado, cursor=args.cursor))
    log_line(json.dumps(result, ensure_ascii=False, indent=2))
