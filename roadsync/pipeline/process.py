"""Single-leaf pipeline shared by the batch reconciler and the live watcher."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from roadsync.common.constants import STATUS_DENIED, STATUS_ERROR, STATUS_MIGRATED, STATUS_WOULD_MIGRATE
from roadsync.common.errors import ReadingError, StorageFailure
from roadsync.common.logging import get_logger, log_event
from roadsync.common.models import AnomalyEvent, LeafRecord
from roadsync.common.time_utils import now_ms
from roadsync.pipeline.aggregate import GridAggregator
from roadsync.pipeline.detector import Detector
from roadsync.pipeline.normalize import event_timestamp_ms, normalize_and_validate
from roadsync.pipeline.tracker import MigrationTracker

STORAGE_FAILURE = "storage_failure"
SIDECAR_WRITE_FAILED = "sidecar_write_failed"
ALREADY_AGGREGATED = "already_aggregated"


@dataclass
class ItemOutcome:
    key: str
    path: str
    status: str
    reason: str | None = None
    error: str | None = None
    events: list[AnomalyEvent] = field(default_factory=list)
    grid_ids: list[str] = field(default_factory=list)
    created: list[bool] = field(default_factory=list)
    duplicate: bool = False
    detector: str | None = None

    def to_item(self) -> dict[str, Any]:
        item: dict[str, Any] = {"key": self.key, "path": self.path, "status": self.status}
        if self.reason:
            item["reason"] = self.reason
        if self.error:
            item["error"] = self.error
        if self.events:
            item["types"] = [e.type.value for e in self.events]
            item["severities"] = [e.severity.value for e in self.events]
        if self.grid_ids:
            item["grid_ids"] = list(self.grid_ids)
            item["created"] = list(self.created)
        if self.duplicate:
            item["duplicate"] = True
        return item


class EventPipeline:
    """Normalise, classify, aggregate and annotate one source record."""

    def __init__(
        self,
        tracker: MigrationTracker,
        aggregator: GridAggregator,
        logger: logging.Logger | None = None,
    ) -> None:
        self.tracker = tracker
        self.aggregator = aggregator
        self.logger = logger or get_logger("roadsync.pipeline")

    def classify(self, leaf: LeafRecord, detector: Detector) -> tuple[list[AnomalyEvent], str]:
        reading = normalize_and_validate(leaf.payload)
        timestamp_ms = event_timestamp_ms(leaf.key, leaf.payload) or now_ms()
        strategy = detector.detector_for(reading)
        return strategy.detect(reading, timestamp_ms), strategy.name

    def process(self, leaf: LeafRecord, detector: Detector, *, dry_run: bool = False) -> ItemOutcome:
        try:
            events, detector_name = self.classify(leaf, detector)
        except ReadingError as exc:
            return self._deny(leaf, exc.reason, str(exc), dry_run=dry_run, error_code=exc.error_code)

        if dry_run:
            return ItemOutcome(leaf.key, leaf.path, STATUS_WOULD_MIGRATE, events=events, detector=detector_name)

        try:
            aggregation = self.aggregator.upsert_many(events, source_ref=leaf.path)
        except Exception as exc:
            return self._fail(leaf, STORAGE_FAILURE, exc, events=events, detector_name=detector_name)

        outcome = ItemOutcome(
            leaf.key,
            leaf.path,
            STATUS_MIGRATED,
            events=events,
            grid_ids=aggregation.grid_ids,
            created=[r.created for r in aggregation.results],
            duplicate=aggregation.duplicate,
            detector=detector_name,
        )
        try:
            self.tracker.mark_migrated(
                leaf.path,
                leaf.payload,
                events=events,
                grid_ids=aggregation.grid_ids,
                location_ids=[r.aggregated_location_id for r in aggregation.results],
                detector=detector_name,
                note=ALREADY_AGGREGATED if aggregation.duplicate else None,
            )
        except Exception as exc:
            # The aggregate is committed and ledgered; a later pass only rewrites the sidecar.
            outcome.status = STATUS_ERROR
            outcome.reason = SIDECAR_WRITE_FAILED
            outcome.error = str(exc)
            log_event(
                self.logger,
                f"sidecar write failed for {leaf.path}: {exc}",
                level=logging.WARNING,
                path=leaf.path,
                key=leaf.key,
                event="ITEM_ERROR",
                status="error",
                reason=SIDECAR_WRITE_FAILED,
                error_code=StorageFailure.error_code,
            )
            return outcome

        log_event(
            self.logger,
            f"migrated {leaf.key} types={','.join(e.type.value for e in events)}",
            path=leaf.path,
            key=leaf.key,
            event="ITEM_MIGRATED",
            status="ok",
            grid_id=",".join(aggregation.grid_ids),
        )
        return outcome

    def _deny(self, leaf: LeafRecord, reason: str, message: str, *, dry_run: bool, error_code: str) -> ItemOutcome:
        outcome = ItemOutcome(leaf.key, leaf.path, STATUS_DENIED, reason=reason, error=message)
        log_event(
            self.logger,
            f"denied {leaf.key}: {message}",
            level=logging.DEBUG,
            path=leaf.path,
            key=leaf.key,
            event="ITEM_DENIED",
            status="denied",
            reason=reason,
            error_code=error_code,
        )
        if dry_run:
            return outcome
        try:
            self.tracker.mark_denied(leaf.path, leaf.payload, reason, error=message)
        except Exception as exc:
            outcome.status = STATUS_ERROR
            outcome.reason = SIDECAR_WRITE_FAILED
            outcome.error = str(exc)
        return outcome

    def _fail(
        self,
        leaf: LeafRecord,
        reason: str,
        exc: Exception,
        *,
        events: list[AnomalyEvent],
        detector_name: str,
    ) -> ItemOutcome:
        message = str(exc) or exc.__class__.__name__
        log_event(
            self.logger,
            f"aggregation failed for {leaf.path}: {message}",
            level=logging.ERROR,
            path=leaf.path,
            key=leaf.key,
            event="ITEM_ERROR",
            status="error",
            reason=reason,
            error_code=StorageFailure.error_code,
        )
        try:
            self.tracker.mark_denied(leaf.path, leaf.payload, reason, error=message, detector=detector_name)
        except Exception as sidecar_exc:
            message = f"{message}; sidecar write failed: {sidecar_exc}"
        return ItemOutcome(
            leaf.key,
            leaf.path,
            STATUS_ERROR,
            reason=reason,
            error=message,
            events=events,
            detector=detector_name,
        )
