import math
from pathlib import Path

import pytest

from roadsync.common.models import AnomalyEvent, AnomalyType, Severity
from roadsync.pipeline.aggregate import GridAggregator, grid_id_for
from roadsync.store.relational import ConnectionPool

T0 = 1_700_000_000_000


def _aggregator(tmp_path: Path) -> GridAggregator:
    pool = ConnectionPool(tmp_path / "agg.db", size=2)
    pool.init_schema()
    return GridAggregator(pool)


def _event(kind=AnomalyType.POTHOLE, lat=12.97134, lng=77.59463, severity=Severity.MEDIUM, ts=T0):
    return AnomalyEvent(kind, lat, lng, severity, ts)


def test_grid_id_rounds_to_four_decimals():
    assert grid_id_for(12.97134, 77.59463) == "12.9713_77.5946"
    assert grid_id_for(12.97129, 77.59458) == "12.9713_77.5946"
    assert grid_id_for(-33.8679, 151.2073) == "-33.8679_151.2073"


def test_grid_id_folds_negative_zero():
    assert grid_id_for(-0.00001, 10.0) == "0.0000_10.0000"


def test_grid_id_rejects_non_finite():
    with pytest.raises(ValueError):
        grid_id_for(math.nan, 1.0)


def test_two_events_in_same_cell_share_one_row(tmp_path: Path):
    agg = _aggregator(tmp_path)
    first = agg.upsert(_event())
    second = agg.upsert(_event(AnomalyType.PATCHY, lat=12.97129, lng=77.59458, severity=Severity.LOW, ts=T0 + 60_000))

    assert first.created is True
    assert second.created is False
    assert first.aggregated_location_id == second.aggregated_location_id

    rows = agg.list_locations()
    assert len(rows) == 1
    row = rows[0]
    assert row.grid_id == "12.9713_77.5946"
    assert row.report_count == 2
    assert row.total_potholes == 1
    assert row.total_patchy == 1
    assert row.highest_severity is Severity.MEDIUM
    assert row.latitude == 12.97134
    assert row.first_reported_at == "2023-11-14T22:13:20+00:00"
    assert row.last_reported_at == "2023-11-14T22:14:20+00:00"
    assert row.status == "pending"


def test_highest_severity_never_decreases(tmp_path: Path):
    agg = _aggregator(tmp_path)
    for severity in (Severity.LOW, Severity.HIGH, Severity.MEDIUM):
        agg.upsert(_event(severity=severity))
    assert agg.get_location("12.9713_77.5946").highest_severity is Severity.HIGH


def test_ledger_prevents_double_aggregation(tmp_path: Path):
    agg = _aggregator(tmp_path)
    first = agg.upsert_many([_event()], source_ref="UsersData/u1/r1")
    again = agg.upsert_many([_event()], source_ref="UsersData/u1/r1")

    assert first.duplicate is False
    assert again.duplicate is True
    assert again.results == []
    assert agg.is_applied("UsersData/u1/r1")
    assert agg.get_location("12.9713_77.5946").report_count == 1


def test_failed_batch_rolls_back_every_event(tmp_path: Path):
    agg = _aggregator(tmp_path)
    bad = _event(lat=math.nan)

    with pytest.raises(ValueError):
        agg.upsert_many([_event(), bad], source_ref="UsersData/u1/r2")

    assert agg.list_locations() == []
    assert not agg.is_applied("UsersData/u1/r2")


def test_multi_event_source_counts_each_event(tmp_path: Path):
    agg = _aggregator(tmp_path)
    outcome = agg.upsert_many(
        [_event(), _event(AnomalyType.PATCHY, severity=Severity.LOW)],
        source_ref="UsersData/u1/r3",
    )

    assert outcome.grid_ids == ["12.9713_77.5946", "12.9713_77.5946"]
    row = agg.get_location("12.9713_77.5946")
    assert (row.total_potholes, row.total_patchy, row.report_count) == (1, 1, 2)
