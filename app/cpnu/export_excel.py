"""Excel export helpers for sync-run telemetry."""

from __future__ import annotations

import os
from typing import Optional

import pandas as pd

from . import config
from .telemetry import load_latest_run, prune_old_exports


def export_latest_run_to_excel(dest_path: Optional[str] = None) -> str:
    """Create an Excel workbook from the most recent sync telemetry payload."""

    payload = load_latest_run()
    if payload is None:
        raise FileNotFoundError("No sync telemetry available to export")

    df = pd.DataFrame(payload.get("entries", []))
    if df.empty:
        df = pd.DataFrame([{"status": "none", "info": "No cases in latest run"}])

    def by_status(status: str) -> pd.DataFrame:
        return df[df["status"] == status].copy()

    updated = by_status("updated")
    no_changes = by_status("no_changes")
    failed = by_status("error")

    summary_status = df.groupby("status").size().reset_index(name="count")
    summary_category = pd.DataFrame()
    if not failed.empty and "category" in failed.columns:
        summary_category = (
            failed.groupby("category").size().reset_index(name="count").sort_values("count", ascending=False)
        )

    os.makedirs(config.EXPORTS_DIR, exist_ok=True)
    if not dest_path:
        dest_path = os.path.join(config.EXPORTS_DIR, f"cpnu_sync_{payload['run_id']}.xlsx")

    with pd.ExcelWriter(dest_path, engine="openpyxl") as writer:
        df.to_excel(writer, index=False, sheet_name="All")
        updated.to_excel(writer, index=False, sheet_name="Updated")
        no_changes.to_excel(writer, index=False, sheet_name="No_Changes")
        failed.to_excel(writer, index=False, sheet_name="Errors")
        summary_status.to_excel(writer, index=False, sheet_name="Summary_Status")
        if not summary_category.empty:
            summary_category.to_excel(writer, index=False, sheet_name="Summary_Category")

    prune_old_exports()
    return dest_path


__all__ = ["export_latest_run_to_excel"]
