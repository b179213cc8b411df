"""Payload normalisation: heterogeneous device payloads to canonical readings."""

from __future__ import annotations

import math
from typing import Any, Mapping

from roadsync.common.constants import MIGRATION_FIELD
from roadsync.common.errors import GpsNotLocked, InvalidPayload
from roadsync.common.models import RawFlags, Reading, Severity
from roadsync.common.time_utils import normalize_unix_ms

# Aliases are lower-case and listed in precedence order.
LATITUDE_ALIASES = ("latitude", "lat")
LONGITUDE_ALIASES = ("longitude", "lon", "lng")
VIBRATION_ALIASES = ("vibration", "z", "zcorrected")
FLAG_VIBRATION_ALIASES = ("zcorrected", "vibration", "z")
SPEED_ALIASES = ("speed",)
TIMESTAMP_ALIASES = ("timestamp", "ts")
POTHOLE_FLAG_ALIASES = ("potholeflag", "pothole")
PATCHY_FLAG_ALIASES = ("patchyflag", "patchy")
GPS_FIX_ALIASES = ("gpsfix",)

FLAG_KEYS = frozenset(POTHOLE_FLAG_ALIASES + PATCHY_FLAG_ALIASES)
COORDINATE_KEYS = frozenset(LATITUDE_ALIASES + LONGITUDE_ALIASES)

GPS_NOT_LOCKED = "gps_not_locked_or_zero_coords"
INVALID_COORDINATES = "invalid_coordinates"
COORDINATES_OUT_OF_RANGE = "coordinates_out_of_range"
INVALID_TIMESTAMP = "invalid_timestamp"
INVALID_SEVERITY = "invalid_severity"
NOT_OBJECT = "not_object"

_MISSING = object()


def _lookup_first(payload: Mapping[str, Any], aliases: tuple[str, ...]) -> Any:
    by_lower: dict[str, str] = {}
    for key in payload:
        if isinstance(key, str):
            by_lower.setdefault(key.lower(), key)
    for alias in aliases:
        if alias in by_lower:
            return payload[by_lower[alias]]
    return _MISSING


def has_any_key(payload: Mapping[str, Any], keys: frozenset[str]) -> bool:
    return any(isinstance(key, str) and key.lower() in keys for key in payload)


def parse_number(value: Any) -> float:
    """Permissive numeric parse. Unusable input becomes ``nan``, never 0."""
    if value is _MISSING or value is None:
        return math.nan
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return math.nan
        try:
            return float(text)
        except ValueError:
            return math.nan
    return math.nan


def parse_flag(value: Any) -> bool:
    if value is _MISSING or value is None:
        return False
    if isinstance(value, str):
        return value.strip().lower() not in ("", "0", "false", "no", "off")
    return bool(value)


def strip_sidecar(payload: Mapping[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in payload.items() if k != MIGRATION_FIELD}


def normalize_payload(payload: Any) -> Reading:
    if not isinstance(payload, Mapping):
        raise InvalidPayload(NOT_OBJECT, "Reading must be an object")

    speed_raw = _lookup_first(payload, SPEED_ALIASES)
    gps_raw = _lookup_first(payload, GPS_FIX_ALIASES)

    raw_flags = None
    vibration_aliases = VIBRATION_ALIASES
    if has_any_key(payload, FLAG_KEYS):
        raw_flags = RawFlags(
            pothole=parse_flag(_lookup_first(payload, POTHOLE_FLAG_ALIASES)),
            patchy=parse_flag(_lookup_first(payload, PATCHY_FLAG_ALIASES)),
        )
        # Flag-driven devices report the gravity-corrected axis for severity.
        vibration_aliases = FLAG_VIBRATION_ALIASES

    return Reading(
        latitude=parse_number(_lookup_first(payload, LATITUDE_ALIASES)),
        longitude=parse_number(_lookup_first(payload, LONGITUDE_ALIASES)),
        vibration=parse_number(_lookup_first(payload, vibration_aliases)),
        speed=0.0 if speed_raw is _MISSING else parse_number(speed_raw),
        timestamp_ms=normalize_unix_ms(_raw_timestamp(payload)),
        raw_flags=raw_flags,
        gps_fix=None if gps_raw is _MISSING else parse_flag(gps_raw),
    )


def _raw_timestamp(payload: Mapping[str, Any]) -> Any:
    value = _lookup_first(payload, TIMESTAMP_ALIASES)
    return None if value is _MISSING else value


def validate_reading(reading: Reading, payload: Mapping[str, Any]) -> Reading:
    """Raise the matching reading error, or return ``reading`` unchanged.

    A zero coordinate is the device's "no GPS lock" sentinel, so it is checked
    before finiteness and reported separately from malformed input.
    """
    if reading.gps_fix is False or reading.latitude == 0 or reading.longitude == 0:
        raise GpsNotLocked(GPS_NOT_LOCKED, "GPS not locked (latitude/longitude is 0)")

    if not reading.has_coordinates:
        raise InvalidPayload(INVALID_COORDINATES, "Missing/invalid latitude/longitude")

    if not (-90 <= reading.latitude <= 90 and -180 <= reading.longitude <= 180):
        raise InvalidPayload(COORDINATES_OUT_OF_RANGE, "Latitude/longitude out of range")

    severity = payload.get("severity")
    if severity and Severity.parse(severity) is None:
        raise InvalidPayload(INVALID_SEVERITY, f"Invalid severity: {severity!r}")

    # Flag-driven records fall back to the key, then the current time.
    raw_ts = _raw_timestamp(payload)
    if reading.raw_flags is None and raw_ts is not None and reading.timestamp_ms is None:
        raise InvalidPayload(INVALID_TIMESTAMP, f"Invalid timestamp: {raw_ts!r}")

    return reading


def normalize_and_validate(payload: Any) -> Reading:
    reading = normalize_payload(payload)
    return validate_reading(reading, payload)


def event_timestamp_ms(key: str, payload: Any) -> int | None:
    if isinstance(payload, Mapping):
        from_payload = normalize_unix_ms(_raw_timestamp(payload))
        if from_payload:
            return from_payload
    return normalize_unix_ms(key)
