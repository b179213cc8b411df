"""Run identifier helpers."""

from __future__ import annotations

import secrets
from datetime import datetime, timezone


def generate_run_id(prefix: str = "run") -> str:
    now = datetime.now(tz=timezone.utc)
    # Sortable by time; the suffix separates runs started in the same microsecond.
    return f"{prefix}-{now.strftime('%Y%m%dT%H%M%S%fZ')}-{secrets.token_hex(2)}"
