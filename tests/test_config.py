from __future__ import annotations

from pathlib import Path

import pytest
from stellar_sdk import Keypair

from src.config.load_config import ConfigError, load_runner_config


def _env(secret: str, **extra: str) -> dict[str, str]:
    return {
        "RUNNER_SECRET": secret,
        "RUNNER_CONTRACT_ID": "CVAULT",
        "RUNNER_AGENT_REGISTRY_ID": "CREGISTRY",
        **extra,
    }


def test_defaults_and_derived_public_key(tmp_path: Path) -> None:
    kp = Keypair.random()
    cfg = load_runner_config(tmp_path / "missing.toml", env=_env(kp.secret))

    assert cfg.runner_public_key == kp.public_key
    assert cfg.port == 4000
    assert cfg.poll_interval_s == 1.0
    assert cfg.finalize_on_error is True
    assert cfg.log_level == "info"
    assert cfg.network_passphrase == "Standalone Network ; February 2017"
    assert kp.secret not in repr(cfg)

    summary = cfg.summary()
    assert summary["runner"] == kp.public_key
    assert summary["pollIntervalMs"] == 1000
    assert kp.secret not in str(summary)


def test_env_overrides_toml(tmp_path: Path) -> None:
    kp = Keypair.random()
    cfg_path = tmp_path / "runner.toml"
    cfg_path.write_text(
        "\n".join(
            [
                "[runner]",
                'rpc_url = "https://rpc.example.org"',
                "port = 5000",
                "poll_interval_s = 2.5",
                "finalize_on_error = false",
                'log_level = "debug"',
            ]
        ),
        encoding="utf-8",
    )

    from_file = load_runner_config(cfg_path, env=_env(kp.secret))
    assert from_file.rpc_url == "https://rpc.example.org"
    assert from_file.port == 5000
    assert from_file.poll_interval_s == 2.5
    assert from_file.finalize_on_error is False
    assert from_file.log_level == "debug"

    overridden = load_runner_config(
        cfg_path,
        env=_env(kp.secret, PORT="6000", RUNNER_POLL_INTERVAL_MS="250", RUNNER_FINALIZE_ON_ERROR="true"),
    )
    assert overridden.port == 6000
    assert overridden.poll_interval_s == 0.25
    assert overridden.finalize_on_error is True


def test_private_key_alias_is_accepted(tmp_path: Path) -> None:
    kp = Keypair.random()
    env = _env("", RUNNER_PRIVATE_KEY=kp.secret)
    cfg = load_runner_config(tmp_path / "missing.toml", env=env)
    assert cfg.runner_public_key == kp.public_key


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"RUNNER_SECRET": ""}, "RUNNER_SECRET"),
        ({"RUNNER_SECRET": "not-a-seed"}, "Ed25519"),
        ({"RUNNER_CONTRACT_ID": ""}, "contract_id"),
        ({"RUNNER_AGENT_REGISTRY_ID": ""}, "agent_registry_id"),
        ({"RUNNER_LOG_LEVEL": "trace"}, "log_level"),
        ({"RUNNER_POLL_INTERVAL_MS": "0"}, "poll interval"),
        ({"RUNNER_PORT": "abc"}, "port"),
        ({"RUNNER_FINALIZE_ON_ERROR": "maybe"}, "finalize_on_error"),
    ],
)
def test_invalid_config_raises(tmp_path: Path, overrides: dict[str, str], message: str) -> None:
    env = {**_env(Keypair.random().secret), **overrides}
    with pytest.raises(ConfigError, match=message):
        load_runner_config(tmp_path / "missing.toml", env=env)


def test_invalid_toml_raises(tmp_path: Path) -> None:
    cfg_path = tmp_path / "runner.toml"
    cfg_path.write_text("[runner\nport = ", encoding="utf-8")
    with pytest.raises(ConfigError, match="Invalid TOML"):
        load_runner_config(cfg_path, env=_env(Keypair.random().secret))
