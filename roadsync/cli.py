"""CLI entrypoint for road-condition reading reconciliation."""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path

from roadsync.common.config_loader import clamp_limit, load_config
from roadsync.common.constants import COMMANDS, EXIT_HARD_FAIL, EXIT_PARTIAL, EXIT_SUCCESS, SYNC_MODES
from roadsync.common.errors import PipelineError
from roadsync.common.ids import generate_run_id
from roadsync.common.logging import build_logger, log_event
from roadsync.pipeline.flatten import flatten_tree
from roadsync.pipeline.normalize import strip_sidecar
from roadsync.pipeline.reconcile import order_key
from roadsync.pipeline.reports import write_sync_report
from roadsync.pipeline.tracker import migration_status, sidecar
from roadsync.startup import Runtime, build_runtime, run_startup

PEEK_DEFAULT = 5


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("command", choices=COMMANDS)
    parser.add_argument("--config", default=None)
    parser.add_argument("--store-url", default=None)
    parser.add_argument("--database", default=None)
    parser.add_argument("--root-path", default=None)
    parser.add_argument("--mode", default=None, choices=SYNC_MODES)
    parser.add_argument("--limit", type=int, default=None)
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--reprocess", action="store_true")
    parser.add_argument("--duration", type=float, default=None, help="Stop watching after N seconds")
    parser.add_argument("--run-id", default=None)
    parser.add_argument("--data-dir", default="./data")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARN", "ERROR"])
    return parser.parse_args(argv)


def config_overrides(args: argparse.Namespace) -> dict:
    return {
        "store_url": args.store_url,
        "database_path": args.database,
        "root_path": args.root_path,
        "mode": args.mode,
        "dry_run": True if args.dry_run else None,
        "reprocess": True if args.reprocess else None,
    }


def wait_for_stop(duration: float | None) -> None:
    deadline = None if duration is None else time.monotonic() + duration
    try:
        while deadline is None or time.monotonic() < deadline:
            time.sleep(0.2)
    except KeyboardInterrupt:
        pass


def run_sync(runtime: Runtime, args: argparse.Namespace, data_dir: Path, run_id: str) -> int:
    summary = runtime.reconciler.run(limit=args.limit, run_id=run_id).to_dict()
    write_sync_report(data_dir, summary)
    if summary["errors"]:
        return EXIT_PARTIAL
    return EXIT_SUCCESS


def run_peek(runtime: Runtime, args: argparse.Namespace) -> int:
    root_path = runtime.config.root_path
    leaves = sorted(flatten_tree(runtime.tree_store.get(root_path), root_path), key=order_key)
    count = clamp_limit(args.limit, default=PEEK_DEFAULT)
    for leaf in leaves[-count:]:
        meta = sidecar(leaf.payload)
        row = {
            "path": leaf.path,
            "key": leaf.key,
            "collection": leaf.path.rsplit("/", 1)[0] if "/" in leaf.path else "",
            "status": migration_status(leaf.payload) or "pending",
            "reason": meta.get("reason"),
            "reading": strip_sidecar(leaf.payload),
        }
        sys.stdout.write(json.dumps(row, ensure_ascii=False, default=str) + "\n")
    return EXIT_SUCCESS


def run_command(args: argparse.Namespace) -> int:
    run_id = args.run_id or generate_run_id("run" if args.command == "sync" else args.command)
    data_dir = Path(args.data_dir)
    logger = build_logger(run_id, data_dir=data_dir, level=args.log_level)

    config = load_config(Path(args.config) if args.config else None, overrides=config_overrides(args))
    runtime = build_runtime(config, logger=logger)
    log_event(logger, f"{args.command} start", run_id=run_id, stage=args.command, mode=config.mode, event="RUN_START")
    try:
        if args.command == "sync":
            return run_sync(runtime, args, data_dir, run_id)
        if args.command == "peek":
            return run_peek(runtime, args)
        if args.command == "watch":
            handle = runtime.watcher().start()
        else:
            handle = run_startup(runtime, logger).watch
        if handle is None:
            return EXIT_SUCCESS
        wait_for_stop(args.duration)
        handle.stop()
        stats = handle.stats()
        log_event(logger, f"watch stopped stats={stats}", run_id=run_id, stage=args.command, event="WATCH_STOP")
        return EXIT_PARTIAL if stats["errors"] else EXIT_SUCCESS
    finally:
        runtime.close()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv or sys.argv[1:])
    try:
        return run_command(args)
    except PipelineError as exc:
        sys.stderr.write(f"{exc.error_code}: {exc}\n")
        return EXIT_HARD_FAIL
    except Exception as exc:
        sys.stderr.write(f"UNEXPECTED_ERROR: {exc}\n")
        return EXIT_HARD_FAIL


if __name__ == "__main__":
    raise SystemExit(main())
