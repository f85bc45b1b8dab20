#!/usr/bin/env python3
"""Network-based chain adapter selection."""

from __future__ import annotations

from typing import Any, Optional

from config_env import SyncConfig
from logging_utils import get_logger
from networks import FAMILY_EVM, FAMILY_PROGRAM, NetworkConfig, get_network_config

from .base import ChainAdapter
from .evm_adapter import EvmAdapter
from .program_adapter import ProgramChainAdapter


class ChainRoutingError(RuntimeError):
    """Raised when no adapter can serve the configured network."""


def resolve_network(config: SyncConfig) -> NetworkConfig:
    try:
        return get_network_config(config.network, contract_overrides=config.contracts, rpc_url=config.rpc_url or None)
    except ValueError as exc:
        raise ChainRoutingError(str(exc)) from exc


def select_adapter(
    config: SyncConfig,
    transport: Any,
    api: Optional[Any] = None,
    network: Optional[NetworkConfig] = None,
    log=None,
) -> ChainAdapter:
    """Build the adapter variant matching the network family."""
    network = network or resolve_network(config)
    common = dict(
        confirmation_timeout=config.confirmation_timeout_seconds,
        min_leverage=config.min_leverage,
        max_leverage=config.max_leverage,
    )
    if network.family == FAMILY_EVM:
        return EvmAdapter(
            log or get_logger("evm_adapter"),
            network,
            transport,
            api,
            token_decimals=config.token_decimals,
            default_token_decimals=config.default_token_decimals,
            **common,
        )
    if network.family == FAMILY_PROGRAM:
        return ProgramChainAdapter(
            log or get_logger("program_adapter"),
            network,
            transport,
            commitment=config.commitment,
            quote_decimals=config.quote_decimals,
            **common,
        )
    raise ChainRoutingError(f"No chain adapter for network {network.name} (family {network.family!r})")
