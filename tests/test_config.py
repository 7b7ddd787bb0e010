"""YAML + environment configuration"""

import pytest

from tip_settlement.config import TipConfig, load_config


YAML_TEXT = """
chain:
  explorer_host: holesky.etherscan.io
  paymaster_address: "0xf77De6d2AD0E954AF262bb5798002Dd5582376Cd"
  unexpected_key: 1

gas_sponsorship:
  min_balance: "0.02"
  propagation_delay_seconds: 0

settlement:
  confirmation_timeout_seconds: 30
"""


def test_yaml_values_and_env_overrides(tmp_path):
    config_path = tmp_path / "tip_config.yaml"
    config_path.write_text(YAML_TEXT)

    config = load_config(
        str(config_path),
        env_file=None,
        environ={
            'ETHEREUM_PROVIDER_URL': 'http://node:8545',
            'RLUSD_CONTRACT_ADDRESS': '0x' + 'ab' * 20,
            'ADMIN_PRIVATE_KEY': '0x' + '11' * 32,
            'TIP_DB_PATH': str(tmp_path / 'tips.db'),
            'TIP_LOG_LEVEL': 'debug',
        },
    )

    assert config.chain.explorer_host == "holesky.etherscan.io"
    assert config.chain.rpc_url == "http://node:8545"
    assert config.chain.paymaster_address == "0xf77De6d2AD0E954AF262bb5798002Dd5582376Cd"
    assert config.gas.min_balance == "0.02"
    assert config.gas.top_up_amount == "0.015"
    assert config.settlement.confirmation_timeout_seconds == 30
    assert config.storage.db_path == str(tmp_path / 'tips.db')
    assert config.logging.level == "debug"
    config.validate()


def test_missing_file_uses_defaults(tmp_path):
    config = load_config(str(tmp_path / "absent.yaml"), env_file=None, environ={})

    assert config == TipConfig()
    assert config.gas.retry_top_up_amount == "0.02"
    assert config.settlement.standing_allowance == "1000000"


def test_validate_reports_missing_secrets(tmp_path):
    config = load_config(str(tmp_path / "absent.yaml"), env_file=None, environ={})

    with pytest.raises(ValueError) as exc_info:
        config.validate()

    assert "rpc_url" in str(exc_info.value)
    assert "admin_private_key" in str(exc_info.value)


def test_admin_key_not_in_repr(tip_config):
    assert "11" * 32 not in repr(tip_config)
