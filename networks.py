#!/usr/bin/env python3
"""Network normalization and the supported-network table."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

NETWORK_ETHEREUM = "ethereum"
NETWORK_ARBITRUM = "arbitrum"
NETWORK_OPTIMISM = "optimism"
NETWORK_BNB = "bnb"
NETWORK_SOLANA = "solana"

FAMILY_EVM = "evm"
FAMILY_PROGRAM = "program"

EVM_NETWORKS = frozenset({NETWORK_ETHEREUM, NETWORK_ARBITRUM, NETWORK_OPTIMISM, NETWORK_BNB})
PROGRAM_NETWORKS = frozenset({NETWORK_SOLANA})
SUPPORTED_NETWORKS = EVM_NETWORKS | PROGRAM_NETWORKS

_ALIASES = {
    "eth": NETWORK_ETHEREUM,
    "mainnet": NETWORK_ETHEREUM,
    "arb": NETWORK_ARBITRUM,
    "arbitrum-one": NETWORK_ARBITRUM,
    "op": NETWORK_OPTIMISM,
    "bsc": NETWORK_BNB,
    "sol": NETWORK_SOLANA,
}


@dataclass
class NetworkConfig:
    """Static description of one deployment of the venue."""
    name: str
    family: str
    chain_id: Optional[int] = None
    rpc_url: str = ""
    # EVM: contract addresses; program chain: program ids.
    contracts: Dict[str, str] = field(default_factory=dict)

    @property
    def is_evm(self) -> bool:
        return self.family == FAMILY_EVM

    def contract(self, role: str) -> str:
        address = self.contracts.get(role, "")
        if not address:
            raise ValueError(f"No {role} contract configured for network {self.name}")
        return address


# Optimism and BNB deployments carry no built-in addresses; supply them
# through the `contracts` config block.
_DEFAULT_NETWORKS: Dict[str, NetworkConfig] = {
    NETWORK_ETHEREUM: NetworkConfig(
        name=NETWORK_ETHEREUM,
        family=FAMILY_EVM,
        chain_id=1,
        rpc_url="https://rpc.ethereum.io",
        contracts={
            "exchange": "0x1234567890abcdef1234567890abcdef12345678",
            "margin": "0xabcdef1234567890abcdef1234567890abcdef12",
            "vault": "0x2345678901abcdef2345678901abcdef23456789",
        },
    ),
    NETWORK_ARBITRUM: NetworkConfig(
        name=NETWORK_ARBITRUM,
        family=FAMILY_EVM,
        chain_id=42161,
        rpc_url="https://rpc.arbitrum.io",
        contracts={
            "exchange": "0x3456789012abcdef3456789012abcdef34567890",
            "margin": "0xbcdef1234567890abcdef1234567890abcdef123",
            "vault": "0x4567890123abcdef4567890123abcdef45678901",
        },
    ),
    NETWORK_OPTIMISM: NetworkConfig(name=NETWORK_OPTIMISM, family=FAMILY_EVM, chain_id=10, rpc_url="https://rpc.optimism.io"),
    NETWORK_BNB: NetworkConfig(name=NETWORK_BNB, family=FAMILY_EVM, chain_id=56, rpc_url="https://rpc.bnb.io"),
    NETWORK_SOLANA: NetworkConfig(
        name=NETWORK_SOLANA,
        family=FAMILY_PROGRAM,
        rpc_url="https://api.mainnet-beta.solana.com",
        contracts={
            "exchange": "ExchGENgNJgVLFAPNPdQnkfNhCLfFNqBmz1v6mzNDJJk",
            "margin": "MrgnU9zKjwE9PaxrKroLrYm2nNKQVCVsRBzNVGxKuQA",
            "vault": "VLT8qTUTYsbXXskRJHQtLM5SoVQNWjLdcWEPsfRPaemH",
        },
    ),
}


def normalize_network(value: str) -> str:
    """Normalize network aliases to canonical strings."""
    raw = str(value or "").strip().lower()
    if not raw:
        return ""
    return _ALIASES.get(raw, raw)


def network_family(value: str) -> str:
    name = normalize_network(value)
    if name in EVM_NETWORKS:
        return FAMILY_EVM
    if name in PROGRAM_NETWORKS:
        return FAMILY_PROGRAM
    return ""


def parse_networks(value: str) -> List[str]:
    """Parse comma-delimited networks into canonical list."""
    raw = str(value or "").strip()
    if not raw:
        return []
    out: List[str] = []
    seen = set()
    for part in (p.strip() for p in raw.split(",")):
        norm = normalize_network(part)
        if not norm or norm in seen:
            continue
        seen.add(norm)
        out.append(norm)
    return out


def get_network_config(
    value: str,
    contract_overrides: Optional[Dict[str, str]] = None,
    rpc_url: Optional[str] = None,
) -> NetworkConfig:
    """Return the network table entry with optional overrides applied."""
    name = normalize_network(value)
    base = _DEFAULT_NETWORKS.get(name)
    if base is None:
        raise ValueError(f"Unsupported network: {value!r}")
    contracts = dict(base.contracts)
    for role, address in (contract_overrides or {}).items():
        if address:
            contracts[str(role)] = str(address)
    return NetworkConfig(
        name=base.name,
        family=base.family,
        chain_id=base.chain_id,
        rpc_url=rpc_url or base.rpc_url,
        contracts=contracts,
    )
