from pathlib import Path

import pytest

from roadsync.common.config_loader import DetectorThresholds, clamp_limit, env_flag, load_config
from roadsync.common.errors import ConfigError


def test_load_config_defaults():
    config = load_config(env={})
    assert config.root_path == "UsersData"
    assert config.store_url == "memory://"
    assert config.sync_limit == 200
    assert config.mode == "auto"
    assert config.thresholds == DetectorThresholds()
    assert config.startup.sync is True
    assert config.startup.sync_limit == 500


def test_load_config_from_repo_example_file():
    config = load_config(Path("config/roadsync.yml"), env={})
    assert config.thresholds.peak_delta == 3.5
    assert config.startup.watch is True


def test_load_config_layers_file_env_and_overrides(tmp_path: Path):
    path = tmp_path / "roadsync.yml"
    path.write_text(
        """store:
  root_path: Devices
sync:
  limit: 50
  mode: threshold
detector:
  z_min_threshold: 9.5
""",
        encoding="utf-8",
    )
    env = {"READINGS_SYNC_LIMIT": "75", "READINGS_POTHOLE_PEAK_DELTA": "4.25", "STARTUP_SYNC": "false"}

    config = load_config(path, env=env, overrides={"root_path": "Other", "mode": None})

    assert config.root_path == "Other"
    assert config.sync_limit == 75
    assert config.mode == "threshold"
    assert config.thresholds.z_min_threshold == 9.5
    assert config.thresholds.peak_delta == 4.25
    assert config.startup.sync is False


def test_unparseable_env_numbers_fall_back_to_defaults():
    config = load_config(env={"READINGS_PATCHY_MIN": "abc", "READINGS_SYNC_LIMIT": "-3"})
    assert config.thresholds.patchy_min == 2.0
    assert config.sync_limit == 200


def test_sync_limit_is_capped():
    assert clamp_limit("99999") == 5000
    assert clamp_limit(None, default=10) == 10
    assert load_config(env={}, overrides={"sync_limit": 10_000}).sync_limit == 5000


def test_env_flag_semantics():
    assert env_flag({}, "X", True) is True
    assert env_flag({"X": "false"}, "X", True) is False
    assert env_flag({"X": "yes"}, "X", True) is True
    assert env_flag({"X": "true"}, "X", False) is True
    assert env_flag({"X": "1"}, "X", False) is False


def test_invalid_mode_and_patchy_band_are_rejected():
    with pytest.raises(ConfigError):
        load_config(env={"READINGS_SYNC_MODE": "random"})
    with pytest.raises(ConfigError):
        load_config(env={"READINGS_PATCHY_MIN": "7"})
    with pytest.raises(ConfigError):
        load_config(env={}, overrides={"bogus": 1})


def test_missing_config_file_raises(tmp_path: Path):
    with pytest.raises(ConfigError):
        load_config(tmp_path / "missing.yml", env={})
