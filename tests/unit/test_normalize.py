import math

import pytest

from roadsync.common.errors import GpsNotLocked, InvalidPayload
from roadsync.pipeline.normalize import (
    COORDINATES_OUT_OF_RANGE,
    GPS_NOT_LOCKED,
    INVALID_COORDINATES,
    INVALID_SEVERITY,
    INVALID_TIMESTAMP,
    NOT_OBJECT,
    event_timestamp_ms,
    normalize_and_validate,
    normalize_payload,
    parse_number,
)


def test_normalize_payload_resolves_aliases_case_insensitively():
    reading = normalize_payload({"Lat": "12.9", "LNG": 77.5, "zCorrected": "-10.5", "Speed": "22", "ts": 1700000000})

    assert reading.latitude == 12.9
    assert reading.longitude == 77.5
    assert reading.vibration == -10.5
    assert reading.speed == 22.0
    assert reading.timestamp_ms == 1_700_000_000_000
    assert reading.raw_flags is None


def test_normalize_payload_prefers_canonical_names_over_aliases():
    reading = normalize_payload({"latitude": 1.5, "lat": 9.0, "longitude": 2.5, "lon": 9.0, "vibration": 4, "z": 99})
    assert (reading.latitude, reading.longitude, reading.vibration) == (1.5, 2.5, 4.0)


def test_normalize_payload_unparseable_numbers_become_nan_not_zero():
    reading = normalize_payload({"latitude": "north", "longitude": None, "vibration": ""})
    assert math.isnan(reading.latitude)
    assert math.isnan(reading.longitude)
    assert math.isnan(reading.vibration)
    assert reading.speed == 0.0


def test_normalize_payload_reads_flags_only_when_present():
    flagged = normalize_payload({"lat": 1, "lng": 1, "potholeFlag": "true", "patchyFlag": 0})
    assert flagged.raw_flags is not None
    assert flagged.raw_flags.pothole is True
    assert flagged.raw_flags.patchy is False

    only_patchy = normalize_payload({"lat": 1, "lng": 1, "patchy": True})
    assert only_patchy.raw_flags.pothole is False
    assert only_patchy.raw_flags.patchy is True


def test_parse_number_handles_strings_bools_and_garbage():
    assert parse_number(" 3.25 ") == 3.25
    assert parse_number(True) == 1.0
    assert math.isnan(parse_number({"x": 1}))


def test_zero_coordinates_are_denied_as_gps_not_locked():
    with pytest.raises(GpsNotLocked) as excinfo:
        normalize_and_validate({"lat": 0, "lng": 0, "vibration": 10})
    assert excinfo.value.reason == GPS_NOT_LOCKED


def test_gps_fix_false_is_denied_even_with_coordinates():
    with pytest.raises(GpsNotLocked):
        normalize_and_validate({"lat": 12.9, "lng": 77.5, "gpsFix": False})


@pytest.mark.parametrize(
    "payload,reason",
    [
        ("not a dict", NOT_OBJECT),
        ({"lat": "x", "lng": 77.5}, INVALID_COORDINATES),
        ({"lng": 77.5}, INVALID_COORDINATES),
        ({"lat": 91, "lng": 77.5}, COORDINATES_OUT_OF_RANGE),
        ({"lat": 12.9, "lng": 181}, COORDINATES_OUT_OF_RANGE),
        ({"lat": 12.9, "lng": 77.5, "severity": "Extreme"}, INVALID_SEVERITY),
        ({"lat": 12.9, "lng": 77.5, "timestamp": "yesterday"}, INVALID_TIMESTAMP),
    ],
)
def test_invalid_payloads_raise_with_reason(payload, reason):
    with pytest.raises(InvalidPayload) as excinfo:
        normalize_and_validate(payload)
    assert excinfo.value.reason == reason


def test_valid_severity_passes_validation():
    reading = normalize_and_validate({"lat": 12.9, "lng": 77.5, "severity": "High"})
    assert reading.latitude == 12.9


def test_event_timestamp_prefers_payload_then_key():
    assert event_timestamp_ms("1700000000500", {"ts": 1700000001000}) == 1_700_000_001_000
    assert event_timestamp_ms("1700000000500", {"lat": 1}) == 1_700_000_000_500
    assert event_timestamp_ms("-Nabc", {"lat": 1}) is None


def test_vibration_precedence_depends_on_the_record_kind():
    fields = {"lat": 12.9, "lng": 77.5, "vibration": 3.0, "z": 5.0, "zCorrected": 9.5}

    assert normalize_payload(fields).vibration == 3.0
    assert normalize_payload({**fields, "potholeFlag": True}).vibration == 9.5
    assert normalize_payload({"lat": 12.9, "lng": 77.5, "z": 5.0, "zCorrected": 9.5}).vibration == 5.0


def test_flag_record_with_unparseable_timestamp_is_still_valid():
    reading = normalize_and_validate({"lat": 12.9, "lng": 77.5, "patchyFlag": True, "timestamp": "yesterday"})

    assert reading.timestamp_ms is None
    assert reading.raw_flags.patchy is True
