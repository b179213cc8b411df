"""Live processing of readings as they arrive in the event store.

The watcher subscribes at the root path and walks down the tree by attaching
a further subscription to every container node it is notified about. Reading
nodes go through the same ``EventPipeline`` the batch reconciler uses.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter, OrderedDict
from typing import Any

from roadsync.common.config_loader import DetectorThresholds
from roadsync.common.constants import STATUS_DENIED, STATUS_ERROR, STATUS_MIGRATED, WATCH_HANDLED_CAPACITY
from roadsync.common.errors import NotEligible
from roadsync.common.logging import get_logger, log_event
from roadsync.common.models import LeafRecord
from roadsync.pipeline.detector import Detector, build_detector
from roadsync.pipeline.flatten import NodeKind, classify_node
from roadsync.pipeline.process import EventPipeline
from roadsync.pipeline.tracker import ensure_eligible, source_digest
from roadsync.store.tree import ChildEvent, Subscription, TreeStore, normalize_path

STAT_KEYS = ("processed", "migrated", "denied", "errors", "skipped", "duplicates")


class WatchHandle:
    def __init__(self, watcher: "LiveWatcher") -> None:
        self._watcher = watcher

    @property
    def root_path(self) -> str:
        return self._watcher.root_path

    def watched_paths(self) -> list[str]:
        return self._watcher.watched_paths()

    def stats(self) -> dict[str, int]:
        return self._watcher.stats()

    def stop(self) -> None:
        self._watcher.stop()


class LiveWatcher:
    def __init__(
        self,
        tree_store: TreeStore,
        pipeline: EventPipeline,
        root_path: str,
        mode: str = "auto",
        thresholds: DetectorThresholds | None = None,
        reprocess: bool = False,
        logger: logging.Logger | None = None,
        handled_capacity: int = WATCH_HANDLED_CAPACITY,
    ) -> None:
        self.tree_store = tree_store
        self.pipeline = pipeline
        self.root_path = normalize_path(root_path)
        self.mode = mode
        self.thresholds = thresholds or DetectorThresholds()
        self.reprocess = reprocess
        self.logger = logger or get_logger("roadsync.watch")

        self._lock = threading.Lock()
        self._subscriptions: dict[str, Subscription] = {}
        self._detectors: dict[str, tuple[Detector, threading.RLock]] = {}
        self._in_flight: set[tuple[str, str]] = set()
        # Recently handled leaf digests, oldest first, capped at handled_capacity.
        self._handled: OrderedDict[str, str] = OrderedDict()
        self.handled_capacity = max(1, handled_capacity)
        self._stats: Counter = Counter({key: 0 for key in STAT_KEYS})
        self._stopped = False

    def start(self) -> WatchHandle:
        log_event(
            self.logger,
            f"watching {self.root_path or '/'} mode={self.mode} reprocess={self.reprocess}",
            stage="watch",
            mode=self.mode,
            path=self.root_path,
            event="WATCH_START",
            status="ok",
        )
        self.attach(self.root_path)
        return WatchHandle(self)

    def attach(self, path: str) -> bool:
        path = normalize_path(path)
        with self._lock:
            if self._stopped or path in self._subscriptions:
                return False
            # Reserve the slot before subscribing: existing children are delivered during subscribe().
            self._subscriptions[path] = None  # type: ignore[assignment]
        try:
            sub = self.tree_store.subscribe(path, lambda event: self.on_child(path, event))
        except Exception as exc:
            with self._lock:
                self._subscriptions.pop(path, None)
            self._count("errors")
            log_event(
                self.logger,
                f"failed to attach listener at {path}: {exc}",
                level=logging.ERROR,
                stage="watch",
                path=path,
                event="WATCH_ERROR",
                status="error",
            )
            return False
        with self._lock:
            if self._stopped:
                sub.close()
                return False
            self._subscriptions[path] = sub
        log_event(self.logger, f"listener attached at {path}", level=logging.DEBUG, stage="watch", path=path, event="WATCH_ATTACH")
        return True

    def on_child(self, listener_path: str, event: ChildEvent) -> None:
        if self._stopped:
            return
        try:
            kind = classify_node(event.value)
            if kind is NodeKind.CONTAINER:
                self.attach(event.path)
            elif kind is NodeKind.READING:
                self.handle_reading(listener_path, event)
        except Exception as exc:
            self._count("errors")
            log_event(
                self.logger,
                f"listener failure at {event.path}: {exc}",
                level=logging.ERROR,
                stage="watch",
                path=event.path,
                key=event.key,
                event="WATCH_ERROR",
                status="error",
            )

    def handle_reading(self, listener_path: str, event: ChildEvent) -> None:
        payload: dict[str, Any] = dict(event.value)
        flight_key = (listener_path, event.key)
        with self._lock:
            if flight_key in self._in_flight:
                self._stats["duplicates"] += 1
                return
            self._in_flight.add(flight_key)
        try:
            try:
                ensure_eligible(payload, self.reprocess)
            except NotEligible:
                self._count("skipped")
                return
            digest = source_digest(payload)
            with self._lock:
                if self._handled.get(event.path) == digest:
                    self._stats["duplicates"] += 1
                    return

            detector, path_lock = self._detector_for(listener_path)
            with path_lock:
                outcome = self.pipeline.process(LeafRecord(event.path, event.key, payload), detector)

            with self._lock:
                self._remember(event.path, digest)
                self._stats["processed"] += 1
                if outcome.status == STATUS_MIGRATED:
                    self._stats["migrated"] += 1
                elif outcome.status == STATUS_DENIED:
                    self._stats["denied"] += 1
                elif outcome.status == STATUS_ERROR:
                    self._stats["errors"] += 1
            log_event(
                self.logger,
                f"{event.kind} {event.key} -> {outcome.status}",
                stage="watch",
                mode=self.mode,
                path=event.path,
                key=event.key,
                event="WATCH_ITEM",
                status=outcome.status,
                reason=outcome.reason,
                grid_id=",".join(outcome.grid_ids) or None,
            )
        finally:
            with self._lock:
                self._in_flight.discard(flight_key)

    def _detector_for(self, listener_path: str) -> tuple[Detector, threading.RLock]:
        with self._lock:
            entry = self._detectors.get(listener_path)
            if entry is None:
                entry = (build_detector(self.mode, self.thresholds), threading.RLock())
                self._detectors[listener_path] = entry
            return entry

    def _remember(self, path: str, digest: str) -> None:
        self._handled[path] = digest
        self._handled.move_to_end(path)
        while len(self._handled) > self.handled_capacity:
            self._handled.popitem(last=False)

    def handled_count(self) -> int:
        with self._lock:
            return len(self._handled)

    def _count(self, key: str) -> None:
        with self._lock:
            self._stats[key] += 1

    def watched_paths(self) -> list[str]:
        with self._lock:
            return sorted(path for path, sub in self._subscriptions.items() if sub is not None)

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {key: self._stats[key] for key in STAT_KEYS}

    def stop(self) -> None:
        with self._lock:
            self._stopped = True
            subs = [sub for sub in self._subscriptions.values() if sub is not None]
            self._subscriptions.clear()
        for sub in subs:
            sub.close()
