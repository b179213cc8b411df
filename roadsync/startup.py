"""Component wiring and the process startup hook."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from roadsync.common.config_loader import AppConfig
from roadsync.common.logging import get_logger, log_event
from roadsync.pipeline.aggregate import GridAggregator
from roadsync.pipeline.process import EventPipeline
from roadsync.pipeline.reconcile import Reconciler
from roadsync.pipeline.tracker import MigrationTracker
from roadsync.pipeline.watcher import LiveWatcher, WatchHandle
from roadsync.store.relational import ConnectionPool
from roadsync.store.tree import TreeStore, build_tree_store


@dataclass
class Runtime:
    config: AppConfig
    tree_store: TreeStore
    pool: ConnectionPool
    aggregator: GridAggregator
    tracker: MigrationTracker
    pipeline: EventPipeline
    reconciler: Reconciler

    def watcher(self, reprocess: bool | None = None, logger: logging.Logger | None = None) -> LiveWatcher:
        return LiveWatcher(
            self.tree_store,
            self.pipeline,
            self.config.root_path,
            mode=self.config.mode,
            thresholds=self.config.thresholds,
            reprocess=self.config.reprocess if reprocess is None else reprocess,
            logger=logger or self.pipeline.logger,
        )

    def close(self) -> None:
        self.tree_store.close()
        self.pool.close()


def build_runtime(
    config: AppConfig,
    *,
    tree_store: TreeStore | None = None,
    pool: ConnectionPool | None = None,
    logger: logging.Logger | None = None,
) -> Runtime:
    logger = logger or get_logger()
    if tree_store is None:
        tree_store = build_tree_store(config.store_url, auth=config.store_auth)
    if pool is None:
        pool = ConnectionPool(config.database_path, size=config.pool_size)
    pool.init_schema()

    aggregator = GridAggregator(pool)
    tracker = MigrationTracker(tree_store)
    pipeline = EventPipeline(tracker, aggregator, logger)
    reconciler = Reconciler(tree_store, pipeline, config, logger)
    return Runtime(config, tree_store, pool, aggregator, tracker, pipeline, reconciler)


@dataclass
class StartupResult:
    sync_summary: dict[str, Any] | None = None
    sync_error: str | None = None
    watch: WatchHandle | None = None


def run_startup(runtime: Runtime, logger: logging.Logger | None = None) -> StartupResult:
    """Run the optional startup sync, then start the live watcher.

    A failed startup sync is logged and never prevents the watcher from starting.
    """
    logger = logger or runtime.pipeline.logger
    toggles = runtime.config.startup
    result = StartupResult()

    if toggles.sync:
        try:
            summary = runtime.reconciler.run(limit=toggles.sync_limit, dry_run=False, reprocess=toggles.sync_reprocess)
            result.sync_summary = summary.to_dict()
            log_event(
                logger,
                f"startup sync done scanned={summary.scanned} migrated={summary.migrated} denied={summary.denied}",
                stage="startup",
                event="STARTUP_SYNC",
                status="ok",
            )
        except Exception as exc:
            result.sync_error = str(exc)
            log_event(
                logger,
                f"startup sync failed: {exc}",
                level=logging.ERROR,
                stage="startup",
                event="STARTUP_SYNC",
                status="error",
                error_code=getattr(exc, "error_code", "UNEXPECTED_ERROR"),
            )

    if toggles.watch:
        result.watch = runtime.watcher(reprocess=toggles.watch_reprocess, logger=logger).start()
    return result
