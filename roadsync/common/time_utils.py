"""UTC helpers and epoch normalisation."""

from __future__ import annotations

import math
import time
from datetime import datetime, timezone
from typing import Any

# Epoch values below this are seconds, not milliseconds.
SECONDS_CUTOFF = 1_000_000_000_000


def utc_timestamp_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat(timespec="milliseconds")


def now_ms() -> int:
    return int(time.time() * 1000)


def ms_to_iso(value: int) -> str:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).isoformat(timespec="seconds")


def normalize_unix_ms(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    if number < SECONDS_CUTOFF:
        return int(round(number * 1000))
    return int(round(number))
