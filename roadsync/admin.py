"""Administrative trigger for an on-demand sync run."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from roadsync.common.errors import PipelineError
from roadsync.common.logging import get_logger, log_event
from roadsync.pipeline.reconcile import Reconciler

FALSE_STRINGS = {"", "0", "false", "no", "off"}


def coerce_flag(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip().lower() not in FALSE_STRINGS
    return bool(value)


def _pick(name: str, body: Mapping[str, Any], query: Mapping[str, Any]) -> Any:
    value = body.get(name)
    return query.get(name) if value is None else value


def handle_sync_request(
    reconciler: Reconciler,
    body: Mapping[str, Any] | None = None,
    query: Mapping[str, Any] | None = None,
    logger: logging.Logger | None = None,
) -> dict[str, Any]:
    """Run one sync from a request body of ``{limit, dryRun, reprocess}``.

    Request values fall back to query parameters. Whole-run failures are
    reported as ``success: false`` instead of raising.
    """
    body = body if isinstance(body, Mapping) else {}
    query = query or {}
    logger = logger or get_logger("roadsync.admin")
    try:
        summary = reconciler.run(
            limit=_pick("limit", body, query),
            dry_run=coerce_flag(_pick("dryRun", body, query)),
            reprocess=coerce_flag(_pick("reprocess", body, query)),
        )
    except Exception as exc:
        error_code = exc.error_code if isinstance(exc, PipelineError) else "UNEXPECTED_ERROR"
        log_event(logger, f"sync request failed: {exc}", level=logging.ERROR, stage="admin", event="SYNC_END", status="error", error_code=error_code)
        return {"success": False, "message": "Readings sync failed", "error": str(exc)}
    return {"success": True, **summary.to_dict()}
