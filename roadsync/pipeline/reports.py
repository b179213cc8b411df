"""Sync run reports."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from roadsync.common.fs import write_json


def report_path(data_dir: Path, run_id: str) -> Path:
    return data_dir / "out" / "reports" / f"sync_{run_id}.json"


def write_sync_report(data_dir: Path, summary: dict[str, Any]) -> Path:
    status = "success"
    if summary.get("errors"):
        status = "partial"
    path = report_path(data_dir, summary["run_id"])
    write_json(path, {"status": status, **summary})
    return path
