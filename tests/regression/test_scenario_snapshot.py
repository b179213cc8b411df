from __future__ import annotations

from pathlib import Path

import pytest

from roadsync.common.config_loader import load_config
from roadsync.startup import build_runtime
from roadsync.store.relational import ConnectionPool
from roadsync.store.tree import MemoryTreeStore

TS = 1_700_000_000

FIXTURE = {
    "UsersData": {
        "alice": {
            "2024-05-01": {
                "a1": {"latitude": 12.97134, "longitude": 77.59463, "potholeFlag": True, "zCorrected": 9.5, "timestamp": TS},
                "a2": {
                    "lat": 12.97129,
                    "lng": 77.59458,
                    "potholeFlag": True,
                    "patchyFlag": True,
                    "vibration": 7.2,
                    "timestamp": TS + 60,
                },
                "a3": {"lat": 0, "lng": 0, "potholeFlag": True},
            }
        },
        "bob": {
            "b1": {"lat": 12.5, "lng": 77.1, "potholeFlag": "false", "patchyFlag": False},
            "b2": {"lat": "abc", "potholeFlag": True},
            "b3": {"lat": -33.8679, "lng": 151.2073, "patchy": True, "timestamp": TS + 120},
        },
    }
}

EXPECTED_LOCATIONS = [
    {
        "grid_id": "-33.8679_151.2073",
        "total_potholes": 0,
        "total_patchy": 1,
        "highest_severity": "Low",
        "report_count": 1,
        "first_reported_at": "2023-11-14T22:15:20+00:00",
        "last_reported_at": "2023-11-14T22:15:20+00:00",
        "status": "pending",
    },
    {
        "grid_id": "12.9713_77.5946",
        "total_potholes": 2,
        "total_patchy": 1,
        "highest_severity": "High",
        "report_count": 3,
        "first_reported_at": "2023-11-14T22:13:20+00:00",
        "last_reported_at": "2023-11-14T22:14:20+00:00",
        "status": "pending",
    },
]

EXPECTED_ITEMS = [
    ("UsersData/alice/2024-05-01/a3", "denied", "gps_not_locked_or_zero_coords"),
    ("UsersData/bob/b1", "denied", "flags_false"),
    ("UsersData/bob/b2", "denied", "invalid_coordinates"),
    ("UsersData/alice/2024-05-01/a1", "migrated", None),
    ("UsersData/alice/2024-05-01/a2", "migrated", None),
    ("UsersData/bob/b3", "migrated", None),
]


def _run(tmp_path: Path, name: str):
    config = load_config(env={})
    pool = ConnectionPool(tmp_path / f"{name}.db", size=2)
    runtime = build_runtime(config, tree_store=MemoryTreeStore(FIXTURE), pool=pool)
    summary = runtime.reconciler.run(run_id=f"run-{name}")
    locations = []
    for location in runtime.aggregator.list_locations():
        row = location.to_dict()
        for key in ("id", "latitude", "longitude"):
            row.pop(key)
        locations.append(row)
    runtime.close()
    return summary, locations


@pytest.mark.regression
def test_fixture_aggregates_to_pinned_locations(tmp_path: Path):
    summary, locations = _run(tmp_path, "a")

    assert locations == EXPECTED_LOCATIONS
    assert [(item["path"], item["status"], item.get("reason")) for item in summary.items] == EXPECTED_ITEMS
    assert (summary.scanned, summary.migrated, summary.denied, summary.errors) == (6, 3, 3, 0)
    assert (summary.pothole_events, summary.patchy_events) == (2, 2)
    assert summary.by_severity == {"Low": 2, "Medium": 1, "High": 1}


@pytest.mark.regression
def test_fixture_outputs_are_stable_across_runs(tmp_path: Path):
    first_summary, first_locations = _run(tmp_path, "first")
    second_summary, second_locations = _run(tmp_path, "second")

    assert first_locations == second_locations
    assert first_summary.items == second_summary.items
