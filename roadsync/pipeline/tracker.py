"""Migration status sidecar on source records."""

from __future__ import annotations

from typing import Any, Mapping, Sequence

from roadsync.common.constants import MIGRATION_FIELD, STATUS_DENIED, STATUS_MIGRATED
from roadsync.common.deterministic import stable_digest
from roadsync.common.errors import NotEligible
from roadsync.common.models import AnomalyEvent
from roadsync.common.time_utils import utc_timestamp_iso
from roadsync.pipeline.normalize import FLAG_KEYS, has_any_key, strip_sidecar
from roadsync.store.tree import TreeStore

TERMINAL_STATUSES = (STATUS_MIGRATED, STATUS_DENIED)


def sidecar(record: Any) -> dict[str, Any]:
    if not isinstance(record, Mapping):
        return {}
    value = record.get(MIGRATION_FIELD)
    return value if isinstance(value, dict) else {}


def migration_status(record: Any) -> str | None:
    meta = sidecar(record)
    status = meta.get("status")
    if status in TERMINAL_STATUSES:
        return status
    if meta.get("processed") is True or (isinstance(record, Mapping) and record.get("processed") is True):
        # Records written before the status field existed.
        return STATUS_MIGRATED
    return None


def source_digest(record: Mapping[str, Any]) -> str:
    return stable_digest(strip_sidecar(record))[:16]


def is_flag_driven(record: Any) -> bool:
    return isinstance(record, Mapping) and has_any_key(record, FLAG_KEYS)


def is_eligible(record: Any, reprocess: bool = False) -> bool:
    if reprocess:
        return True
    status = migration_status(record)
    if status is None:
        return True
    if status == STATUS_MIGRATED:
        return False
    # Denied flag-driven records are reconsidered once their content changes.
    if is_flag_driven(record):
        stored = sidecar(record).get("sourceDigest")
        return stored is not None and stored != source_digest(record)
    return False


def ensure_eligible(record: Any, reprocess: bool = False) -> None:
    if not is_eligible(record, reprocess):
        raise NotEligible(f"record already {migration_status(record)}")


class MigrationTracker:
    def __init__(self, store: TreeStore) -> None:
        self.store = store

    def _write(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        self.store.update(path, {MIGRATION_FIELD: payload})
        return payload

    def mark_migrated(
        self,
        path: str,
        record: Mapping[str, Any],
        *,
        events: Sequence[AnomalyEvent],
        grid_ids: Sequence[str] = (),
        location_ids: Sequence[int] = (),
        detector: str | None = None,
        note: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": STATUS_MIGRATED,
            "processed": True,
            "processedAt": utc_timestamp_iso(),
            "derivedType": ",".join(e.type.value for e in events),
            "derivedSeverity": ",".join(e.severity.value for e in events),
            "gridIds": list(grid_ids),
            "aggregatedLocationIds": list(location_ids),
            "sourceDigest": source_digest(record),
        }
        if detector:
            payload["detector"] = detector
        if note:
            payload["note"] = note
        return self._write(path, payload)

    def mark_denied(
        self,
        path: str,
        record: Mapping[str, Any],
        reason: str,
        *,
        error: str | None = None,
        detector: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": STATUS_DENIED,
            "processed": True,
            "processedAt": utc_timestamp_iso(),
            "reason": reason,
            "error": error or reason,
            "sourceDigest": source_digest(record) if isinstance(record, Mapping) else None,
        }
        if detector:
            payload["detector"] = detector
        return self._write(path, payload)
