from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from src.ledger.signer import SigningError, keypair_from_secret


class ConfigError(RuntimeError):
    pass


DEFAULT_NETWORK_PASSPHRASE = "Standalone Network ; February 2017"
DEFAULT_RPC_URL = "http://localhost:8000/soroban/rpc"

_TRUE_WORDS = {"1", "true", "yes", "y", "on"}
_FALSE_WORDS = {"0", "false", "no", "n", "off"}


def _as_int(value: Any, *, key: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e


def _as_float(value: Any, *, key: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e


def _as_str(value: Any, *, key: str) -> str:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    s = str(value).strip()
    if not s:
        raise ConfigError(f"Invalid {key}: empty string")
    return s


def _as_bool(value: Any, *, key: str) -> bool:
    if isinstance(value, bool):
        return value
    v = str(value).strip().lower()
    if v in _TRUE_WORDS:
        return True
    if v in _FALSE_WORDS:
        return False
    raise ConfigError(f"Invalid boolean for {key}: {value!r}")


def _first(env: Mapping[str, str], *names: str) -> str | None:
    for name in names:
        raw = env.get(name)
        if raw is not None and str(raw).strip() != "":
            return raw
    return None


@dataclass(frozen=True)
class RunnerConfig:
    host: str
    port: int
    rpc_url: str
    network_passphrase: str
    contract_id: str
    agent_registry_id: str
    runner_secret: str = field(repr=False)
    runner_public_key: str
    db_path: str
    poll_interval_s: float
    finalize_on_error: bool
    log_level: str
    rpc_timeout_s: float
    submit_timeout_s: float

    def summary(self) -> dict[str, Any]:
        """Non-secret view for status endpoints."""
        return {
            "runner": self.runner_public_key,
            "contractId": self.contract_id,
            "networkPassphrase": self.network_passphrase,
            "rpcUrl": self.rpc_url,
            "agentRegistryId": self.agent_registry_id,
            "pollIntervalMs": int(round(self.poll_interval_s * 1000)),
            "finalizeOnError": self.finalize_on_error,
        }


def default_config_path() -> Path:
    return Path(os.getenv("RUNNER_CONFIG_PATH", "config/runner.toml")).expanduser().resolve()


def _load_toml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        raw = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e
    runner = raw.get("runner", {})
    if not isinstance(runner, dict):
        raise ConfigError(f"Invalid [runner] table in {path}")
    return runner


def load_runner_config(path: Path | None = None, env: Mapping[str, str] | None = None) -> RunnerConfig:
    """Defaults < TOML `[runner]` table < environment variables."""
    env = os.environ if env is None else env
    file_values = _load_toml(path or default_config_path())

    def pick(key: str, *env_names: str, default: Any = None) -> Any:
        from_env = _first(env, *env_names)
        if from_env is not None:
            return from_env
        if key in file_values:
            return file_values[key]
        return default

    port = _as_int(pick("port", "RUNNER_PORT", "PORT", default=4000), key="port")
    if port < 0:
        raise ConfigError(f"Invalid port: {port}")

    poll_raw = _first(env, "RUNNER_POLL_INTERVAL_MS")
    if poll_raw is not None:
        poll_interval_s = _as_float(poll_raw, key="RUNNER_POLL_INTERVAL_MS") / 1000.0
    else:
        poll_interval_s = _as_float(file_values.get("poll_interval_s", 1.0), key="poll_interval_s")
    if poll_interval_s <= 0:
        raise ConfigError(f"Invalid poll interval: {poll_interval_s}")

    rpc_timeout_s = _as_float(pick("rpc_timeout_s", "RUNNER_RPC_TIMEOUT_S", default=30.0), key="rpc_timeout_s")
    submit_timeout_s = _as_float(
        pick("submit_timeout_s", "RUNNER_SUBMIT_TIMEOUT_S", default=60.0), key="submit_timeout_s"
    )
    if rpc_timeout_s <= 0 or submit_timeout_s <= 0:
        raise ConfigError("RPC and submit timeouts must be positive.")

    log_level = _as_str(pick("log_level", "RUNNER_LOG_LEVEL", default="info"), key="log_level").lower()
    if log_level not in {"info", "debug"}:
        raise ConfigError(f"Invalid log_level: {log_level!r} (expected 'info' or 'debug')")

    runner_secret = str(pick("runner_secret", "RUNNER_SECRET", "RUNNER_PRIVATE_KEY", default="") or "").strip()
    if not runner_secret:
        raise ConfigError("RUNNER_SECRET is required")
    try:
        runner_public_key = keypair_from_secret(runner_secret).public_key
    except SigningError as e:
        raise ConfigError(
            "Runner configuration failed: RUNNER_SECRET must be a valid Ed25519 secret seed."
        ) from e

    contract_id = str(pick("contract_id", "RUNNER_CONTRACT_ID", default="") or "").strip()
    if not contract_id:
        raise ConfigError("Runner configuration missing contract_id. Set RUNNER_CONTRACT_ID.")
    agent_registry_id = str(pick("agent_registry_id", "RUNNER_AGENT_REGISTRY_ID", default="") or "").strip()
    if not agent_registry_id:
        raise ConfigError("Runner configuration missing agent_registry_id. Set RUNNER_AGENT_REGISTRY_ID.")

    return RunnerConfig(
        host=_as_str(pick("host", "RUNNER_HOST", default="127.0.0.1"), key="host"),
        port=port,
        rpc_url=_as_str(pick("rpc_url", "RUNNER_RPC_URL", "SOROBAN_RPC_URL", default=DEFAULT_RPC_URL), key="rpc_url"),
        network_passphrase=_as_str(
            pick(
                "network_passphrase",
                "RUNNER_NETWORK_PASSPHRASE",
                "SOROBAN_NETWORK_PASSPHRASE",
                default=DEFAULT_NETWORK_PASSPHRASE,
            ),
            key="network_passphrase",
        ),
        contract_id=contract_id,
        agent_registry_id=agent_registry_id,
        runner_secret=runner_secret,
        runner_public_key=runner_public_key,
        db_path=_as_str(pick("db_path", "RUNNER_STATE_PATH", default="data/runner.db"), key="db_path"),
        poll_interval_s=poll_interval_s,
        finalize_on_error=_as_bool(
            pick("finalize_on_error", "RUNNER_FINALIZE_ON_ERROR", default=True), key="finalize_on_error"
        ),
        log_level=log_level,
        rpc_timeout_s=rpc_timeout_s,
        submit_timeout_s=submit_timeout_s,
    )
