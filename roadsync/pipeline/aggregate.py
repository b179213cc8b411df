"""Grid-bucketed aggregation of anomaly events into ``aggregated_locations``."""

from __future__ import annotations

import json
import math
import sqlite3
from dataclasses import dataclass, field
from typing import Iterable

from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential_jitter

from roadsync.common.constants import GRID_PRECISION
from roadsync.common.models import AggregatedLocation, AnomalyEvent, AnomalyType, Severity, max_severity
from roadsync.common.time_utils import ms_to_iso, now_ms, utc_timestamp_iso
from roadsync.store.relational import ConnectionPool


def grid_id_for(latitude: float, longitude: float, precision: int = GRID_PRECISION) -> str:
    if not (math.isfinite(latitude) and math.isfinite(longitude)):
        raise ValueError("Invalid latitude/longitude for aggregated event")
    return f"{_grid_part(latitude, precision)}_{_grid_part(longitude, precision)}"


def _grid_part(value: float, precision: int) -> str:
    text = f"{value:.{precision}f}"
    if text.startswith("-") and float(text) == 0:
        return text[1:]
    return text


@dataclass(frozen=True)
class UpsertResult:
    grid_id: str
    aggregated_location_id: int
    created: bool
    highest_severity: Severity


@dataclass(frozen=True)
class AggregationOutcome:
    results: list[UpsertResult] = field(default_factory=list)
    duplicate: bool = False

    @property
    def grid_ids(self) -> list[str]:
        return [r.grid_id for r in self.results]


def _is_transient(exc: BaseException) -> bool:
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return "locked" in message or "busy" in message


def _row_to_location(row: sqlite3.Row) -> AggregatedLocation:
    return AggregatedLocation(
        id=row["id"],
        grid_id=row["grid_id"],
        latitude=row["latitude"],
        longitude=row["longitude"],
        total_potholes=row["total_potholes"],
        total_patchy=row["total_patchy"],
        highest_severity=Severity.parse(row["highest_severity"]) or Severity.LOW,
        report_count=row["report_count"],
        first_reported_at=row["first_reported_at"],
        last_reported_at=row["last_reported_at"],
        status=row["status"],
    )


class GridAggregator:
    def __init__(self, pool: ConnectionPool, *, max_attempts: int = 5) -> None:
        self.pool = pool
        self.max_attempts = max_attempts

    def upsert(self, event: AnomalyEvent) -> UpsertResult:
        return self.upsert_many([event]).results[0]

    def upsert_many(self, events: Iterable[AnomalyEvent], *, source_ref: str | None = None) -> AggregationOutcome:
        """Apply all ``events`` in one transaction.

        With ``source_ref`` the source is recorded in ``source_events`` inside
        the same transaction; a source already recorded there is not applied
        again and the outcome is flagged ``duplicate``.
        """
        events = list(events)

        @retry(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential_jitter(initial=0.05, max=2.0, jitter=0.1),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        )
        def _wrapped() -> AggregationOutcome:
            with self.pool.transaction() as conn:
                if source_ref is not None and self._already_applied(conn, source_ref):
                    return AggregationOutcome(duplicate=True)
                results = [self._upsert_event(conn, event) for event in events]
                if source_ref is not None:
                    conn.execute(
                        "INSERT INTO source_events (source_ref, grid_ids, event_types, aggregated_at) VALUES (?, ?, ?, ?)",
                        (
                            source_ref,
                            json.dumps([r.grid_id for r in results]),
                            ",".join(e.type.value for e in events),
                            utc_timestamp_iso(),
                        ),
                    )
                return AggregationOutcome(results=results)

        return _wrapped()

    def _already_applied(self, conn: sqlite3.Connection, source_ref: str) -> bool:
        row = conn.execute("SELECT 1 FROM source_events WHERE source_ref = ?", (source_ref,)).fetchone()
        return row is not None

    def _upsert_event(self, conn: sqlite3.Connection, event: AnomalyEvent) -> UpsertResult:
        grid_id = grid_id_for(event.latitude, event.longitude)
        reported_at = ms_to_iso(event.timestamp_ms or now_ms())
        pothole_inc = 1 if event.type is AnomalyType.POTHOLE else 0
        patchy_inc = 1 if event.type is AnomalyType.PATCHY else 0

        existing = conn.execute(
            "SELECT id, highest_severity FROM aggregated_locations WHERE grid_id = ?",
            (grid_id,),
        ).fetchone()

        if existing is not None:
            current = Severity.parse(existing["highest_severity"]) or Severity.LOW
            highest = max_severity(current, event.severity)
            conn.execute(
                """
                UPDATE aggregated_locations
                SET total_potholes = total_potholes + ?,
                    total_patchy = total_patchy + ?,
                    highest_severity = ?,
                    report_count = report_count + 1,
                    last_reported_at = ?
                WHERE grid_id = ?
                """,
                (pothole_inc, patchy_inc, highest.value, reported_at, grid_id),
            )
            return UpsertResult(grid_id, existing["id"], False, highest)

        cursor = conn.execute(
            """
            INSERT INTO aggregated_locations
            (grid_id, latitude, longitude, total_potholes, total_patchy, highest_severity,
             report_count, first_reported_at, last_reported_at)
            VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
            """,
            (
                grid_id,
                event.latitude,
                event.longitude,
                pothole_inc,
                patchy_inc,
                event.severity.value,
                reported_at,
                reported_at,
            ),
        )
        return UpsertResult(grid_id, cursor.lastrowid, True, event.severity)

    def get_location(self, grid_id: str) -> AggregatedLocation | None:
        with self.pool.connection() as conn:
            row = conn.execute("SELECT * FROM aggregated_locations WHERE grid_id = ?", (grid_id,)).fetchone()
        return _row_to_location(row) if row is not None else None

    def list_locations(self) -> list[AggregatedLocation]:
        with self.pool.connection() as conn:
            rows = conn.execute("SELECT * FROM aggregated_locations ORDER BY grid_id").fetchall()
        return [_row_to_location(row) for row in rows]

    def is_applied(self, source_ref: str) -> bool:
        with self.pool.connection() as conn:
            return self._already_applied(conn, source_ref)
