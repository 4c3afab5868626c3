"""Command-line entrypoints for the CPNU sync engine."""
from __future__ import annotations

import argparse
import asyncio
import json
from typing import Sequence

from . import db
from .config_validation import validate_runtime_config
from .error_codes import CpnuError
from .sync_runner import bootstrap_case, preview_radicado, run_sync_batch_blocking
from .telemetry import load_latest_run
from .utils import ensure_dirs, setup_run_logger


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Synchronise legal cases with CPNU.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("sync", help="Run one batch over every linked case.")

    preview = sub.add_parser("preview", help="Scrape a radicado without saving it.")
    preview.add_argument("radicado")

    bootstrap = sub.add_parser("bootstrap", help="Link a case to a radicado and store its snapshot.")
    bootstrap.add_argument("case_id")
    bootstrap.add_argument("radicado")
    bootstrap.add_argument("--user-id", default=None)

    sub.add_parser("summary", help="Print the latest batch summary.")
    return parser


def _print(payload: object) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    ensure_dirs()
    db.initialize_schema()

    if args.command == "summary":
        latest = load_latest_run()
        if latest is None:
            print("No sync runs recorded yet.")
            return 1
        _print({"run_id": latest.get("run_id"), **(latest.get("result") or {})})
        return 0

    validate_runtime_config("cli")

    if args.command == "sync":
        setup_run_logger()
        result = run_sync_batch_blocking(trigger="cli")
        _print(result.to_dict())
        return 0 if result.errors == 0 else 2

    try:
        if args.command == "preview":
            record = asyncio.run(preview_radicado(args.radicado))
            _print(record.to_dict())
        else:
            outcome = asyncio.run(bootstrap_case(args.case_id, args.radicado, user_id=args.user_id))
            _print(outcome)
    except CpnuError as exc:
        _print(exc.to_payload())
        return 1
    except db.BootstrapError as exc:
        _print({"message": str(exc), "reason": exc.reason})
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
