import pytest

from hlcopy.utils.config import load_config
from hlcopy.utils.errors import ConfigError

from conftest import TARGET, TEST_KEY, make_config


def write(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text)
    return str(path)


def test_yaml_with_env_overrides(tmp_path):
    path = write(tmp_path, f"target_wallet: '{TARGET}'\nrisk:\n  size_multiplier: 0.5\n")
    cfg = load_config(path, environ={"PRIVATE_KEY": TEST_KEY, "MAX_LEVERAGE": "5", "BLOCKED_ASSETS": "doge,pepe"})
    assert cfg.risk.size_multiplier == 0.5
    assert cfg.risk.max_leverage == 5
    assert cfg.risk.blocked_assets == ("DOGE", "PEPE")
    assert cfg.testnet is True
    assert cfg.dry_run is False


def test_defaults():
    cfg = make_config()
    assert cfg.risk.max_position_size_percent == 50
    assert cfg.risk.max_concurrent_trades == 10
    assert cfg.health.interval_minutes == 5
    assert cfg.retry.max_attempts == 3
    assert cfg.telegram.enabled is False


def test_out_of_range_values_are_rejected(tmp_path):
    path = write(tmp_path, "risk:\n  max_leverage: 150\n")
    with pytest.raises(ConfigError) as info:
        load_config(path, environ={"PRIVATE_KEY": TEST_KEY, "TARGET_WALLET": TARGET})
    assert "risk.max_leverage" in str(info.value)


def test_missing_required_and_missing_file(tmp_path):
    with pytest.raises(ConfigError):
        load_config(None, environ={})
    with pytest.raises(ConfigError, match="not found"):
        load_config(str(tmp_path / "nope.yaml"), environ={})


def test_config_is_frozen_and_summary_has_no_secrets():
    cfg = make_config()
    with pytest.raises(Exception):
        cfg.dry_run = True
    assert cfg.model_copy(update={"dry_run": True}).dry_run is True
    summary = cfg.summary()
    assert TEST_KEY not in str(summary)
    assert summary["target_wallet"] == TARGET
