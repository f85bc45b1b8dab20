"""Chain adapters and router."""

from .base import ChainAdapter
from .codes import CodeTable
from .evm_adapter import EvmAdapter
from .program_adapter import ProgramChainAdapter
from .router import ChainRoutingError, resolve_network, select_adapter

__all__ = [
    "ChainAdapter",
    "CodeTable",
    "EvmAdapter",
    "ProgramChainAdapter",
    "ChainRoutingError",
    "resolve_network",
    "select_adapter",
]
