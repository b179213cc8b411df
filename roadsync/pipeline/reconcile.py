"""Batch reconciliation of stored readings into aggregated locations."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from roadsync.common.config_loader import AppConfig, clamp_limit
from roadsync.common.constants import MAX_SYNC_LIMIT, STATUS_DENIED, STATUS_ERROR, STATUS_MIGRATED, STATUS_WOULD_MIGRATE
from roadsync.common.deterministic import stable_sorted
from roadsync.common.errors import StageError
from roadsync.common.ids import generate_run_id
from roadsync.common.logging import get_logger, log_event
from roadsync.common.models import AnomalyType, LeafRecord, Severity
from roadsync.common.time_utils import utc_timestamp_iso
from roadsync.pipeline.detector import build_detector
from roadsync.pipeline.flatten import flatten_tree
from roadsync.pipeline.normalize import event_timestamp_ms
from roadsync.pipeline.process import EventPipeline, ItemOutcome
from roadsync.pipeline.tracker import is_eligible
from roadsync.store.tree import TreeStore


@dataclass
class SyncSummary:
    run_id: str
    root_path: str
    mode: str
    dry_run: bool
    reprocess: bool
    thresholds: dict[str, float]
    scanned: int = 0
    eligible: int = 0
    skipped: int = 0
    candidates: int = 0
    migrated: int = 0
    denied: int = 0
    errors: int = 0
    duplicates: int = 0
    pothole_events: int = 0
    patchy_events: int = 0
    by_severity: dict[str, int] = field(default_factory=lambda: {s.value: 0 for s in Severity})
    started_at: str = ""
    finished_at: str = ""
    duration_ms: int = 0
    items: list[dict[str, Any]] = field(default_factory=list)

    def record(self, outcome: ItemOutcome) -> None:
        self.items.append(outcome.to_item())
        if outcome.status in (STATUS_MIGRATED, STATUS_WOULD_MIGRATE):
            self.migrated += 1
            if outcome.duplicate:
                self.duplicates += 1
            for event in outcome.events:
                if event.type is AnomalyType.POTHOLE:
                    self.pothole_events += 1
                else:
                    self.patchy_events += 1
                self.by_severity[event.severity.value] += 1
        elif outcome.status == STATUS_DENIED:
            self.denied += 1
        elif outcome.status == STATUS_ERROR:
            self.errors += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "root_path": self.root_path,
            "mode": self.mode,
            "dry_run": self.dry_run,
            "reprocess": self.reprocess,
            "thresholds": dict(self.thresholds),
            "scanned": self.scanned,
            "eligible": self.eligible,
            "skipped": self.skipped,
            "candidates": self.candidates,
            "migrated": self.migrated,
            "denied": self.denied,
            "errors": self.errors,
            "duplicates": self.duplicates,
            "pothole_events": self.pothole_events,
            "patchy_events": self.patchy_events,
            "by_severity": dict(self.by_severity),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": self.duration_ms,
            "items": list(self.items),
        }


def order_key(leaf: LeafRecord) -> tuple[int, str]:
    return (event_timestamp_ms(leaf.key, leaf.payload) or 0, leaf.path)


def select_candidates(leaves: list[LeafRecord], limit: int, reprocess: bool) -> tuple[list[LeafRecord], int]:
    """Return the most recent ``limit`` eligible leaves in ascending time order, and the eligible count."""
    eligible = stable_sorted((leaf for leaf in leaves if is_eligible(leaf.payload, reprocess)), key=order_key)
    return eligible[-limit:] if limit > 0 else [], len(eligible)


class Reconciler:
    def __init__(
        self,
        tree_store: TreeStore,
        pipeline: EventPipeline,
        config: AppConfig,
        logger: logging.Logger | None = None,
    ) -> None:
        self.tree_store = tree_store
        self.pipeline = pipeline
        self.config = config
        self.logger = logger or get_logger("roadsync.reconcile")

    def run(
        self,
        limit: int | None = None,
        dry_run: bool | None = None,
        reprocess: bool | None = None,
        *,
        run_id: str | None = None,
    ) -> SyncSummary:
        config = self.config
        limit = clamp_limit(limit if limit is not None else config.sync_limit, config.sync_limit, MAX_SYNC_LIMIT)
        dry_run = config.dry_run if dry_run is None else bool(dry_run)
        reprocess = config.reprocess if reprocess is None else bool(reprocess)

        summary = SyncSummary(
            run_id=run_id or generate_run_id(),
            root_path=config.root_path,
            mode=config.mode,
            dry_run=dry_run,
            reprocess=reprocess,
            thresholds=config.thresholds.to_dict(),
            started_at=utc_timestamp_iso(),
        )
        started = time.monotonic()
        fields = {"run_id": summary.run_id, "stage": "sync", "mode": config.mode}
        log_event(
            self.logger,
            f"sync start root={config.root_path} limit={limit} dry_run={dry_run} reprocess={reprocess}",
            event="SYNC_START",
            status="ok",
            **fields,
        )

        try:
            root = self.tree_store.get(config.root_path)
        except Exception as exc:
            log_event(
                self.logger,
                f"failed to read {config.root_path}: {exc}",
                level=logging.ERROR,
                event="SYNC_END",
                status="error",
                error_code=StageError.error_code,
                **fields,
            )
            raise StageError(f"Failed to read readings root {config.root_path!r}: {exc}") from exc

        leaves = flatten_tree(root, config.root_path)
        candidates, eligible_count = select_candidates(leaves, limit, reprocess)
        summary.scanned = len(leaves)
        summary.eligible = eligible_count
        summary.skipped = summary.scanned - eligible_count
        summary.candidates = len(candidates)

        detector = build_detector(config.mode, config.thresholds)
        for leaf in candidates:
            outcome = self.pipeline.process(leaf, detector, dry_run=dry_run)
            summary.record(outcome)
            if outcome.status == STATUS_WOULD_MIGRATE:
                log_event(
                    self.logger,
                    f"would migrate {leaf.key}",
                    level=logging.DEBUG,
                    path=leaf.path,
                    key=leaf.key,
                    event="ITEM_WOULD_MIGRATE",
                    status="ok",
                    **fields,
                )

        summary.finished_at = utc_timestamp_iso()
        summary.duration_ms = int((time.monotonic() - started) * 1000)
        log_event(
            self.logger,
            (
                f"sync end scanned={summary.scanned} candidates={summary.candidates} "
                f"migrated={summary.migrated} denied={summary.denied} errors={summary.errors}"
            ),
            event="SYNC_END",
            status="partial" if summary.errors else "ok",
            duration_ms=summary.duration_ms,
            **fields,
        )
        return summary
