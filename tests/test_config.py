"""Tests for settings.conf loading."""

import pytest

from config import SettingsError, load_settings_conf


def write_settings(path, body: str):
    (path / 'settings.conf').write_text("[DEFAULT]\n" + body)


def test_missing_file_uses_defaults(tmp_path):
    settings = load_settings_conf(str(tmp_path))

    assert settings['storage_backend'] == 'postgres'
    assert settings['usdc_decimals'] == 6
    assert settings['rpc_timeout'] == 10.0
    assert settings['verify_onchain'] is True
    assert settings['replication_max_items'] == 5000


def test_values_are_typed(tmp_path):
    write_settings(tmp_path, (
        "db_url = postgresql://u:p@db:5432/ledger\n"
        "storage_backend = memory\n"
        "chain_network = base\n"
        "verify_onchain = false\n"
        "api_port = 9000\n"
        "db_reconnect_max_time = 12.5\n"
    ))

    settings = load_settings_conf(str(tmp_path))

    assert settings['db_url'] == 'postgresql://u:p@db:5432/ledger'
    assert settings['storage_backend'] == 'memory'
    assert settings['chain_network'] == 'base'
    assert settings['verify_onchain'] is False
    assert settings['api_port'] == 9000
    assert settings['db_reconnect_max_time'] == 12.5
    # Untouched keys keep their defaults
    assert settings['chain_rpc_url'] == 'https://sepolia.base.org'


def test_settings_dir_from_environment(tmp_path, monkeypatch):
    write_settings(tmp_path, "api_host = 127.0.0.1\n")
    monkeypatch.setenv('SETTLEMENT_SETTINGS_DIR', str(tmp_path))

    assert load_settings_conf()['api_host'] == '127.0.0.1'


@pytest.mark.parametrize('body, message', [
    ("usdc_decimals = six\n", "usdc_decimals"),
    ("storage_backend = sqlite\n", "storage_backend"),
    ("verify_onchain = maybe\n", "verify_onchain"),
    ("db_min_pool_size = 30\n", "db_min_pool_size"),
    ("replication_max_depth = 0\n", "replication_max_depth"),
    ("rpc_timeout = 0\n", "rpc_timeout"),
])
def test_invalid_values(tmp_path, body, message):
    write_settings(tmp_path, body)

    with pytest.raises(SettingsError) as excinfo:
        load_settings_conf(str(tmp_path))

    assert message in str(excinfo.value)


def test_required_setting_cannot_be_blank(tmp_path):
    write_settings(tmp_path, "usdc_contract =\n")

    with pytest.raises(SettingsError) as excinfo:
        load_settings_conf(str(tmp_path))

    assert "usdc_contract" in str(excinfo.value)
