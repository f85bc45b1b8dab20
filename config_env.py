"""Load tradesync.yaml and apply env overrides."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from env_utils import (
    TRADESYNC_CONFIG_FILE,
    env_float,
    env_json,
    env_list,
    env_present,
    env_str,
)
from logging_utils import get_logger
from networks import NETWORK_ARBITRUM, normalize_network


PathKey = Tuple[str, ...]

# Env overrides cover connectivity and credentials only.
# Sync tuning (timeouts, retention, bounds) comes from tradesync.yaml.
ALLOWED_ENV_OVERRIDES = {
    "TRADESYNC_NETWORK",
    "TRADESYNC_API_KEY",
    "TRADESYNC_API_BASE_URL",
    "TRADESYNC_WS_BASE_URL",
    "TRADESYNC_RPC_URL",
    "TRADESYNC_CONTRACTS",
    "TRADESYNC_COMMITMENT",
    "TRADESYNC_CHANNELS",
}

_WARNED_IGNORED_ENV_OVERRIDES = False

log = get_logger("config")


def _warn_ignored_env_overrides_once(names: set[str]) -> None:
    global _WARNED_IGNORED_ENV_OVERRIDES
    if _WARNED_IGNORED_ENV_OVERRIDES or not names:
        return
    preview = ", ".join(sorted(names))
    log.warning(
        "Ignoring non-whitelisted TRADESYNC env overrides (YAML-first mode). "
        f"Ignored keys: {preview}"
    )
    _WARNED_IGNORED_ENV_OVERRIDES = True


def _get_path(cfg: Dict[str, Any], path: PathKey, default: Any = None) -> Any:
    cur: Any = cfg
    for key in path:
        if not isinstance(cur, dict) or key not in cur:
            return default
        cur = cur[key]
    return cur


def _set_path(cfg: Dict[str, Any], path: PathKey, value: Any) -> None:
    cur: Any = cfg
    for key in path[:-1]:
        if key not in cur or not isinstance(cur[key], dict):
            cur[key] = {}
        cur = cur[key]
    cur[path[-1]] = value


def apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    cfg = deepcopy(config) if config else {}
    ignored_env_overrides: set[str] = set()

    def override(path: PathKey, env_name: str, kind: str = "str") -> None:
        if not env_present(env_name):
            return
        if env_name not in ALLOWED_ENV_OVERRIDES:
            ignored_env_overrides.add(env_name)
            return
        default = _get_path(cfg, path)
        if kind == "float":
            value = env_float(env_name, float(default) if default is not None else 0.0)
        elif kind == "list":
            value = env_list(env_name, default if isinstance(default, list) else [])
        elif kind == "json":
            value = env_json(env_name, default if default is not None else {})
        else:
            value = env_str(env_name, default if default is not None else "")
        _set_path(cfg, path, value)

    # Connectivity
    override(("config", "network"), "TRADESYNC_NETWORK")
    override(("config", "api_key"), "TRADESYNC_API_KEY")
    override(("config", "api_base_url"), "TRADESYNC_API_BASE_URL")
    override(("config", "ws_base_url"), "TRADESYNC_WS_BASE_URL")
    override(("config", "rpc_url"), "TRADESYNC_RPC_URL")
    override(("config", "contracts"), "TRADESYNC_CONTRACTS", kind="json")
    override(("config", "program_chain", "commitment"), "TRADESYNC_COMMITMENT")
    override(("config", "sync", "channels"), "TRADESYNC_CHANNELS", kind="list")

    # Sync tuning is YAML-first; env names are only detected so they can be reported.
    override(("config", "sync", "reconnect_delay_seconds"), "TRADESYNC_RECONNECT_DELAY_SECONDS", kind="float")
    override(("config", "sync", "confirmation_timeout_seconds"), "TRADESYNC_CONFIRMATION_TIMEOUT_SECONDS", kind="float")
    override(("config", "sync", "position_retention_seconds"), "TRADESYNC_POSITION_RETENTION_SECONDS", kind="float")

    _warn_ignored_env_overrides_once(ignored_env_overrides)

    network = normalize_network(_get_path(cfg, ("config", "network"), NETWORK_ARBITRUM))
    _set_path(cfg, ("config", "network"), network or NETWORK_ARBITRUM)
    return cfg


@dataclass
class SyncConfig:
    """Runtime configuration for the sync engine."""
    network: str = NETWORK_ARBITRUM
    api_key: str = ""
    api_base_url: str = "https://api.defiplatform.io"
    ws_base_url: str = "wss://ws.defiplatform.io"
    rpc_url: str = ""
    contracts: Dict[str, str] = field(default_factory=dict)
    wallet_key_env: str = "TRADESYNC_WALLET_PRIVATE_KEY"
    # Push channel
    reconnect_delay_seconds: float = 3.0
    channels: Tuple[str, ...] = ("orders", "positions", "balances", "markets")
    # Chain calls
    request_timeout_seconds: float = 30.0
    confirmation_timeout_seconds: float = 120.0
    min_leverage: float = 1.0
    max_leverage: float = 50.0
    # Store
    position_retention_seconds: float = 60.0
    # Numeric encodings
    default_token_decimals: int = 18
    token_decimals: Dict[str, int] = field(default_factory=dict)
    quote_decimals: int = 6
    # Program chain
    commitment: str = "confirmed"
    historical_trades_limit: int = 50

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncConfig":
        root = (data or {}).get("config", data or {}) or {}
        sync = root.get("sync", {}) or {}
        program = root.get("program_chain", {}) or {}
        defaults = cls()

        def pick(section: Dict[str, Any], key: str, default: Any) -> Any:
            value = section.get(key)
            return default if value is None else value

        channels = pick(sync, "channels", list(defaults.channels))
        return cls(
            network=normalize_network(pick(root, "network", defaults.network)) or defaults.network,
            api_key=str(pick(root, "api_key", defaults.api_key)),
            api_base_url=str(pick(root, "api_base_url", defaults.api_base_url)),
            ws_base_url=str(pick(root, "ws_base_url", defaults.ws_base_url)),
            rpc_url=str(pick(root, "rpc_url", defaults.rpc_url)),
            contracts={str(k): str(v) for k, v in (root.get("contracts") or {}).items()},
            wallet_key_env=str(pick(root, "wallet_key_env", defaults.wallet_key_env)),
            reconnect_delay_seconds=float(pick(sync, "reconnect_delay_seconds", defaults.reconnect_delay_seconds)),
            channels=tuple(str(c) for c in channels),
            request_timeout_seconds=float(pick(sync, "request_timeout_seconds", defaults.request_timeout_seconds)),
            confirmation_timeout_seconds=float(
                pick(sync, "confirmation_timeout_seconds", defaults.confirmation_timeout_seconds)
            ),
            min_leverage=float(pick(sync, "min_leverage", defaults.min_leverage)),
            max_leverage=float(pick(sync, "max_leverage", defaults.max_leverage)),
            position_retention_seconds=float(
                pick(sync, "position_retention_seconds", defaults.position_retention_seconds)
            ),
            default_token_decimals=int(pick(sync, "default_token_decimals", defaults.default_token_decimals)),
            token_decimals={str(k): int(v) for k, v in (sync.get("token_decimals") or {}).items()},
            quote_decimals=int(pick(program, "quote_decimals", defaults.quote_decimals)),
            commitment=str(pick(program, "commitment", defaults.commitment)),
            historical_trades_limit=int(pick(sync, "historical_trades_limit", defaults.historical_trades_limit)),
        )


def load_config(path: Optional[str] = None) -> SyncConfig:
    """Read tradesync.yaml (if present), apply env overrides, build SyncConfig."""
    cfg_path = Path(path or TRADESYNC_CONFIG_FILE)
    raw: Dict[str, Any] = {}
    if cfg_path.exists():
        raw = yaml.safe_load(cfg_path.read_text()) or {}
    else:
        log.info(f"Config file {cfg_path} not found; using defaults")
    return SyncConfig.from_dict(apply_env_overrides(raw))
