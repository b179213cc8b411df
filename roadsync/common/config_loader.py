"""Configuration loading: defaults, YAML file, environment, then explicit overrides."""

from __future__ import annotations

import math
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping

from roadsync.common.constants import (
    DEFAULT_DATABASE_PATH,
    DEFAULT_POOL_SIZE,
    DEFAULT_ROOT_PATH,
    DEFAULT_STARTUP_SYNC_LIMIT,
    DEFAULT_STORE_URL,
    DEFAULT_SYNC_LIMIT,
    MAX_SYNC_LIMIT,
    SYNC_MODES,
)
from roadsync.common.errors import ConfigError
from roadsync.common.fs import read_yaml
from roadsync.common.schema import validate_app_config


@dataclass(frozen=True)
class DetectorThresholds:
    min_speed: float = 0.0
    speed_noise: float = 3.0
    peak_delta: float = 3.5
    z_min_threshold: float = 8.0
    cooldown_ms: float = 4000
    high_z_threshold: float = 12.0
    patchy_min: float = 2.0
    patchy_max: float = 6.0
    patchy_duration_ms: float = 3000
    patchy_reset_ms: float = 800

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class StartupToggles:
    sync: bool = True
    sync_limit: int = DEFAULT_STARTUP_SYNC_LIMIT
    sync_reprocess: bool = False
    watch: bool = True
    watch_reprocess: bool = False


@dataclass(frozen=True)
class AppConfig:
    root_path: str = DEFAULT_ROOT_PATH
    store_url: str = DEFAULT_STORE_URL
    store_auth: str | None = None
    database_path: str = DEFAULT_DATABASE_PATH
    pool_size: int = DEFAULT_POOL_SIZE
    sync_limit: int = DEFAULT_SYNC_LIMIT
    dry_run: bool = False
    reprocess: bool = False
    mode: str = "auto"
    thresholds: DetectorThresholds = field(default_factory=DetectorThresholds)
    startup: StartupToggles = field(default_factory=StartupToggles)


ENV_THRESHOLDS = {
    "READINGS_MIN_SPEED_KMH": "min_speed",
    "READINGS_SPEED_NOISE_KMH": "speed_noise",
    "READINGS_POTHOLE_PEAK_DELTA": "peak_delta",
    "READINGS_POTHOLE_Z_MIN": "z_min_threshold",
    "READINGS_POTHOLE_COOLDOWN_MS": "cooldown_ms",
    "READINGS_POTHOLE_HIGH_Z": "high_z_threshold",
    "READINGS_PATCHY_MIN": "patchy_min",
    "READINGS_PATCHY_MAX": "patchy_max",
    "READINGS_PATCHY_DURATION_MS": "patchy_duration_ms",
    "READINGS_PATCHY_RESET_MS": "patchy_reset_ms",
}


def clamp_limit(value: Any, default: int = DEFAULT_SYNC_LIMIT, maximum: int = MAX_SYNC_LIMIT) -> int:
    try:
        parsed = int(float(value))
    except (TypeError, ValueError):
        return default
    if parsed <= 0:
        return default
    return min(parsed, maximum)


def env_number(env: Mapping[str, str], name: str, fallback: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return fallback
    try:
        number = float(raw)
    except ValueError:
        return fallback
    return number if math.isfinite(number) else fallback


def env_flag(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    lowered = str(raw).strip().lower()
    if default:
        return lowered != "false"
    return lowered == "true"


def _from_file(base: AppConfig, cfg: dict) -> AppConfig:
    store = cfg.get("store") or {}
    database = cfg.get("database") or {}
    sync = cfg.get("sync") or {}
    detector = cfg.get("detector") or {}
    startup = cfg.get("startup") or {}

    return replace(
        base,
        root_path=store.get("root_path", base.root_path),
        store_url=store.get("url", base.store_url),
        store_auth=store.get("auth", base.store_auth),
        database_path=str(database.get("path", base.database_path)),
        pool_size=int(database.get("pool_size", base.pool_size)),
        sync_limit=clamp_limit(sync.get("limit", base.sync_limit)),
        dry_run=bool(sync.get("dry_run", base.dry_run)),
        reprocess=bool(sync.get("reprocess", base.reprocess)),
        mode=sync.get("mode", base.mode),
        thresholds=replace(base.thresholds, **detector),
        startup=replace(base.startup, **startup),
    )


def _from_env(base: AppConfig, env: Mapping[str, str]) -> AppConfig:
    threshold_values = {
        attr: env_number(env, name, getattr(base.thresholds, attr)) for name, attr in ENV_THRESHOLDS.items()
    }
    mode = env.get("READINGS_SYNC_MODE") or base.mode
    if mode not in SYNC_MODES:
        raise ConfigError(f"READINGS_SYNC_MODE must be one of {', '.join(SYNC_MODES)}, got {mode!r}")

    startup = base.startup
    return replace(
        base,
        root_path=env.get("READINGS_ROOT_PATH") or base.root_path,
        store_url=env.get("READINGS_STORE_URL") or base.store_url,
        store_auth=env.get("READINGS_STORE_AUTH") or base.store_auth,
        database_path=env.get("READINGS_DATABASE_PATH") or base.database_path,
        sync_limit=clamp_limit(env.get("READINGS_SYNC_LIMIT"), default=base.sync_limit),
        mode=mode,
        thresholds=replace(base.thresholds, **threshold_values),
        startup=replace(
            startup,
            sync=env_flag(env, "STARTUP_SYNC", startup.sync),
            sync_limit=clamp_limit(env.get("STARTUP_SYNC_LIMIT"), default=startup.sync_limit),
            sync_reprocess=env_flag(env, "STARTUP_SYNC_REPROCESS", startup.sync_reprocess),
            watch=env_flag(env, "REALTIME_WATCH", startup.watch),
            watch_reprocess=env_flag(env, "REALTIME_WATCH_REPROCESS", startup.watch_reprocess),
        ),
    )


def load_config(
    config_path: Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> AppConfig:
    config = AppConfig()

    if config_path is not None:
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")
        config = _from_file(config, validate_app_config(read_yaml(config_path)))

    config = _from_env(config, os.environ if env is None else env)

    if overrides:
        known = {f.name for f in fields(AppConfig)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigError(f"Unknown config overrides: {', '.join(sorted(unknown))}")
        values = {k: v for k, v in overrides.items() if v is not None}
        if "sync_limit" in values:
            values["sync_limit"] = clamp_limit(values["sync_limit"], default=config.sync_limit)
        if values.get("mode", config.mode) not in SYNC_MODES:
            raise ConfigError(f"mode must be one of {', '.join(SYNC_MODES)}")
        config = replace(config, **values)

    t = config.thresholds
    if t.patchy_min >= t.patchy_max:
        raise ConfigError("patchy_min must be below patchy_max")
    return config
