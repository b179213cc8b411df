"""Data models used across the pipeline."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class Severity(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def parse(cls, value: Any) -> "Severity | None":
        for member in cls:
            if member.value == value:
                return member
        return None


_SEVERITY_RANK = {Severity.LOW: 1, Severity.MEDIUM: 2, Severity.HIGH: 3}


def max_severity(*values: Severity) -> Severity:
    return max(values, key=lambda s: s.rank)


class AnomalyType(str, Enum):
    POTHOLE = "pothole"
    PATCHY = "patchy"


@dataclass(frozen=True)
class RawFlags:
    pothole: bool
    patchy: bool


@dataclass(frozen=True)
class Reading:
    latitude: float
    longitude: float
    vibration: float
    speed: float
    timestamp_ms: int | None
    raw_flags: RawFlags | None = None
    gps_fix: bool | None = None

    @property
    def has_coordinates(self) -> bool:
        return math.isfinite(self.latitude) and math.isfinite(self.longitude)


@dataclass(frozen=True)
class AnomalyEvent:
    type: AnomalyType
    latitude: float
    longitude: float
    severity: Severity
    timestamp_ms: int | None


@dataclass(frozen=True)
class AggregatedLocation:
    id: int
    grid_id: str
    latitude: float
    longitude: float
    total_potholes: int
    total_patchy: int
    highest_severity: Severity
    report_count: int
    first_reported_at: str | None
    last_reported_at: str | None
    status: str

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["highest_severity"] = self.highest_severity.value
        return payload


@dataclass(frozen=True)
class LeafRecord:
    path: str
    key: str
    payload: dict[str, Any] = field(default_factory=dict)
