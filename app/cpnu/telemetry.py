"""Per-batch sync telemetry and export housekeeping."""

from __future__ import annotations

import json
import os
import time
import uuid
from collections import defaultdict
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import config


def _ts() -> str:
    return time.strftime("%Y%m%d_%H%M%S")


class RunTelemetry:
    """Collect per-case outcomes of one sync run for analytics and export."""

    def __init__(self, mode: str) -> None:
        self.run_id = f"{_ts()}_{uuid.uuid4().hex[:8]}"
        self.mode = mode
        self.started_at = time.time()
        self.entries: List[Dict[str, Any]] = []
        self.summary: Dict[str, Any] = defaultdict(int)
        os.makedirs(config.RUNS_DIR, exist_ok=True)

    def add(self, status: str, reason: str, meta: Dict[str, Any]) -> None:
        self.entries.append(
            {
                "status": status,
                "reason": reason,
                **meta,
            }
        )
        self.summary[f"count_{status}"] += 1

    def finalize(self, extra: Optional[Dict[str, Any]] = None) -> str:
        payload = {
            "run_id": self.run_id,
            "mode": self.mode,
            "started_at": self.started_at,
            "ended_at": time.time(),
            "summary": dict(self.summary),
            "entries": self.entries,
            **(extra or {}),
        }
        path = os.path.join(config.RUNS_DIR, f"run_{self.run_id}.json")
        with open(path, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
        return path


def latest_run_path() -> Optional[Path]:
    """Return the most recent run telemetry JSON path, if any."""

    runs_dir = Path(config.RUNS_DIR)
    if not runs_dir.is_dir():
        return None
    runs = sorted(runs_dir.glob("run_*.json"))
    return runs[-1] if runs else None


def load_latest_run() -> Optional[Dict[str, Any]]:
    path = latest_run_path()
    if path is None:
        return None
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def prune_old_exports() -> None:
    exports_dir = str(config.EXPORTS_DIR)
    if not os.path.isdir(exports_dir):
        return
    files = sorted(
        [os.path.join(exports_dir, p) for p in os.listdir(exports_dir) if p.endswith(".xlsx")]
    )
    while len(files) > config.EXPORTS_KEEP_MAX:
        old = files.pop(0)
        try:
            os.remove(old)
        except OSError:
            continue


__all__ = [
    "RunTelemetry",
    "latest_run_path",
    "load_latest_run",
    "prune_old_exports",
]
