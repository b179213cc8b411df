"""Minimal strict schemas for YAML config validation."""

from __future__ import annotations

from roadsync.common.constants import SYNC_MODES
from roadsync.common.errors import ConfigError

SECTION_KEYS = {
    "store": {"url", "root_path", "auth"},
    "database": {"path", "pool_size"},
    "sync": {"limit", "dry_run", "reprocess", "mode"},
    "detector": {
        "min_speed",
        "speed_noise",
        "peak_delta",
        "z_min_threshold",
        "cooldown_ms",
        "high_z_threshold",
        "patchy_min",
        "patchy_max",
        "patchy_duration_ms",
        "patchy_reset_ms",
    },
    "startup": {"sync", "sync_limit", "sync_reprocess", "watch", "watch_reprocess"},
}


def _assert_no_unknown_keys(obj: dict, known: set[str], ctx: str, allow_unknown: bool) -> None:
    if allow_unknown:
        return
    unknown = set(obj) - known
    if unknown:
        unknown_str = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown keys in {ctx}: {unknown_str}")


def _assert_mapping(obj: object, ctx: str) -> dict:
    if obj is None:
        return {}
    if not isinstance(obj, dict):
        raise ConfigError(f"{ctx} must be a mapping")
    return obj


def validate_app_config(cfg: object, *, allow_unknown: bool = False) -> dict:
    cfg = _assert_mapping(cfg, "config")
    _assert_no_unknown_keys(cfg, set(SECTION_KEYS), "config", allow_unknown)

    for section, known in SECTION_KEYS.items():
        body = _assert_mapping(cfg.get(section), section)
        _assert_no_unknown_keys(body, known, section, allow_unknown)

    mode = (cfg.get("sync") or {}).get("mode")
    if mode is not None and mode not in SYNC_MODES:
        raise ConfigError(f"sync.mode must be one of {', '.join(SYNC_MODES)}, got {mode!r}")

    detector = cfg.get("detector") or {}
    for key, value in detector.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"detector.{key} must be numeric")

    patchy_min = detector.get("patchy_min")
    patchy_max = detector.get("patchy_max")
    if patchy_min is not None and patchy_max is not None and patchy_min >= patchy_max:
        raise ConfigError("detector.patchy_min must be below detector.patchy_max")

    return cfg
