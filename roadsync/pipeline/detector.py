"""Anomaly detection over time-ordered readings.

Two strategies share one interface. ``ThresholdDetector`` replays the
on-device peak/cooldown and sustained-band rules and therefore carries state
from one reading to the next; ``FlagDetector`` trusts explicit pothole/patchy
flags set by the device. ``AutoDetector`` picks per reading based on which
fields the payload exposes.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass

from roadsync.common.config_loader import DetectorThresholds
from roadsync.common.errors import ConfigError, NoAnomalyDetected
from roadsync.common.models import AnomalyEvent, AnomalyType, Reading, Severity

NO_ANOMALY = "no_anomaly_detected"
FLAGS_FALSE = "flags_false"

FLAG_HIGH_VIBRATION = 9.0
FLAG_MEDIUM_VIBRATION = 7.0


def severity_from_vibration(vibration: float) -> Severity:
    value = abs(vibration)
    if not math.isfinite(value):
        return Severity.LOW
    if value >= FLAG_HIGH_VIBRATION:
        return Severity.HIGH
    if value >= FLAG_MEDIUM_VIBRATION:
        return Severity.MEDIUM
    return Severity.LOW


@dataclass
class DetectorState:
    prev_vibration: float = 0.0
    last_pothole_ms: float = 0
    patchy_start_ms: float | None = None
    patchy_alerted: bool = False
    last_patchy_ms: float = 0


class Detector(ABC):
    name = "detector"

    @abstractmethod
    def detect(self, reading: Reading, timestamp_ms: int) -> list[AnomalyEvent]:
        """Return the events fired by ``reading`` or raise ``NoAnomalyDetected``."""

    def detector_for(self, reading: Reading) -> "Detector":
        return self


class ThresholdDetector(Detector):
    name = "threshold"

    def __init__(self, thresholds: DetectorThresholds, state: DetectorState | None = None) -> None:
        self.thresholds = thresholds
        self.state = state or DetectorState()

    def effective_speed(self, speed: float) -> float:
        if not math.isfinite(speed) or speed < self.thresholds.speed_noise:
            return 0.0
        return speed

    def _patchy(self, reading: Reading, vibration: float, speed: float, ts: int) -> AnomalyEvent | None:
        t = self.thresholds
        s = self.state
        in_band = math.isfinite(vibration) and t.patchy_min <= vibration < t.patchy_max
        if speed >= t.min_speed and in_band:
            s.last_patchy_ms = ts
            if s.patchy_start_ms is None:
                s.patchy_start_ms = ts
            if ts - s.patchy_start_ms >= t.patchy_duration_ms and not s.patchy_alerted:
                s.patchy_alerted = True
                return AnomalyEvent(AnomalyType.PATCHY, reading.latitude, reading.longitude, Severity.LOW, ts)
        elif ts - s.last_patchy_ms > t.patchy_reset_ms:
            s.patchy_start_ms = None
            s.patchy_alerted = False
        return None

    def _pothole(self, reading: Reading, vibration: float, speed: float, ts: int) -> AnomalyEvent | None:
        t = self.thresholds
        s = self.state
        if not math.isfinite(vibration):
            return None
        if (
            speed >= t.min_speed
            and abs(vibration - s.prev_vibration) > t.peak_delta
            and vibration >= t.z_min_threshold
            and ts - s.last_pothole_ms > t.cooldown_ms
        ):
            s.last_pothole_ms = ts
            severity = Severity.HIGH if vibration >= t.high_z_threshold else Severity.MEDIUM
            return AnomalyEvent(AnomalyType.POTHOLE, reading.latitude, reading.longitude, severity, ts)
        return None

    def detect(self, reading: Reading, timestamp_ms: int) -> list[AnomalyEvent]:
        speed = self.effective_speed(reading.speed)
        vibration = abs(reading.vibration)

        event = self._patchy(reading, vibration, speed, timestamp_ms)
        if event is None:
            event = self._pothole(reading, vibration, speed, timestamp_ms)

        if math.isfinite(vibration):
            self.state.prev_vibration = vibration

        if event is None:
            raise NoAnomalyDetected(
                NO_ANOMALY,
                f"No pothole/patchy conditions met (speed={speed:.1f} z={vibration:.3f})",
            )
        return [event]


class FlagDetector(Detector):
    name = "flags"

    def detect(self, reading: Reading, timestamp_ms: int) -> list[AnomalyEvent]:
        flags = reading.raw_flags
        if flags is None or not (flags.pothole or flags.patchy):
            raise NoAnomalyDetected(FLAGS_FALSE, "Flags false (potholeFlag & patchyFlag)")

        events = []
        if flags.pothole:
            events.append(
                AnomalyEvent(
                    AnomalyType.POTHOLE,
                    reading.latitude,
                    reading.longitude,
                    severity_from_vibration(reading.vibration),
                    timestamp_ms,
                )
            )
        if flags.patchy:
            events.append(AnomalyEvent(AnomalyType.PATCHY, reading.latitude, reading.longitude, Severity.LOW, timestamp_ms))
        return events


class AutoDetector(Detector):
    name = "auto"

    def __init__(self, thresholds: DetectorThresholds, state: DetectorState | None = None) -> None:
        self.threshold = ThresholdDetector(thresholds, state)
        self.flags = FlagDetector()

    def detector_for(self, reading: Reading) -> Detector:
        return self.flags if reading.raw_flags is not None else self.threshold

    def detect(self, reading: Reading, timestamp_ms: int) -> list[AnomalyEvent]:
        return self.detector_for(reading).detect(reading, timestamp_ms)


def build_detector(mode: str, thresholds: DetectorThresholds) -> Detector:
    if mode == "threshold":
        return ThresholdDetector(thresholds)
    if mode == "flags":
        return FlagDetector()
    if mode == "auto":
        return AutoDetector(thresholds)
    raise ConfigError(f"Unknown detector mode: {mode}")
