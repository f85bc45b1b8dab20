#!/usr/bin/env python3
"""
Chain adapter capability interface.

Every chain variant exposes the same read and write operations in terms of
the canonical model:
- fetch_markets / fetch_balances / fetch_positions / fetch_open_orders
- submit_order / cancel_order / update_leverage, each blocking until the
  chain's confirmation (bounded by `confirmation_timeout`)

Transport failures surface as AdapterUnavailable, confirmation waits that
run out as AdapterTimeout, and reverted/failed transactions as
OrderSubmissionFailed.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from decimal import Decimal
from typing import Any, Awaitable, Dict, Iterable, List, Mapping, Optional

from errors import AdapterTimeout, AdapterUnavailable, OrderSubmissionFailed
from models import Balance, Market, Order, OrderRequest, Position, SubmitResult, WriteResult
from networks import NetworkConfig

DEFAULT_CONFIRMATION_TIMEOUT_SEC = 120.0

_MISSING = object()


def raw_field(raw: Any, *names: str, default: Any = _MISSING) -> Any:
    """Read a field from a decoded chain struct (mapping or attribute style)."""
    for name in names:
        if isinstance(raw, Mapping):
            if name in raw:
                return raw[name]
        elif hasattr(raw, name):
            return getattr(raw, name)
    if default is _MISSING:
        raise KeyError(f"missing field {names[0]!r} in chain payload")
    return default


class ChainAdapter(abc.ABC):
    """Base class for chain adapters."""

    family = ""

    def __init__(
        self,
        log: logging.Logger,
        network: NetworkConfig,
        *,
        confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT_SEC,
        min_leverage: Any = 1,
        max_leverage: Any = 50,
    ):
        self.log = log
        self.network = network
        self.confirmation_timeout = float(confirmation_timeout)
        self.min_leverage = Decimal(str(min_leverage))
        self.max_leverage = Decimal(str(max_leverage))
        self._markets_by_ref: Dict[str, Market] = {}

    @property
    def name(self) -> str:
        return f"{self.__class__.__name__}[{self.network.name}]"

    # ------------------------------------------------------------------ reads
    @abc.abstractmethod
    async def fetch_markets(self) -> List[Market]:
        raise NotImplementedError

    @abc.abstractmethod
    async def fetch_balances(self, owner: Optional[str]) -> List[Balance]:
        """Balances for `owner`; empty when no wallet is bound."""
        raise NotImplementedError

    @abc.abstractmethod
    async def fetch_positions(self, owner: Optional[str]) -> List[Position]:
        raise NotImplementedError

    @abc.abstractmethod
    async def fetch_open_orders(self, owner: Optional[str]) -> List[Order]:
        raise NotImplementedError

    # ----------------------------------------------------------------- writes
    @abc.abstractmethod
    async def submit_order(self, request: OrderRequest, market: Market) -> SubmitResult:
        """Send an order and wait for confirmation.

        Returns the chain-assigned order id, or the `pending` sentinel when the
        id could not be read from the confirmation's events.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def cancel_order(self, order_id: str) -> WriteResult:
        raise NotImplementedError

    @abc.abstractmethod
    async def update_leverage(self, position_id: str, leverage: Decimal) -> WriteResult:
        raise NotImplementedError

    async def close(self) -> None:
        """Release transport resources (no-op by default)."""
        return None

    # ---------------------------------------------------------------- helpers
    def leverage_in_bounds(self, leverage: Decimal) -> bool:
        return self.min_leverage <= leverage <= self.max_leverage

    def remember_markets(self, markets: Iterable[Market]) -> None:
        """Index markets by symbol and by on-chain reference for payload decoding."""
        for market in markets:
            self._markets_by_ref[market.symbol] = market
            if market.address:
                self._markets_by_ref[market.address] = market
                self._markets_by_ref[market.address.lower()] = market

    def lookup_market(self, ref: Any) -> Optional[Market]:
        key = str(ref)
        return self._markets_by_ref.get(key) or self._markets_by_ref.get(key.lower())

    async def _transport_call(self, what: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except (AdapterUnavailable, AdapterTimeout, OrderSubmissionFailed):
            raise
        except asyncio.TimeoutError as exc:
            raise AdapterUnavailable(f"{self.name} {what} timed out") from exc
        except Exception as exc:
            raise AdapterUnavailable(f"{self.name} {what} failed: {exc}") from exc

    async def _await_confirmation(self, what: str, awaitable: Awaitable[Any], tx_ref: str) -> Any:
        try:
            result = await asyncio.wait_for(awaitable, timeout=self.confirmation_timeout)
        except asyncio.TimeoutError as exc:
            self.log.warning(
                f"{self.name} {what}: no confirmation for {tx_ref} after {self.confirmation_timeout:.0f}s"
            )
            raise AdapterTimeout(
                f"{what} not confirmed within {self.confirmation_timeout:.0f}s", tx_ref=tx_ref
            ) from exc
        except (AdapterUnavailable, AdapterTimeout, OrderSubmissionFailed):
            raise
        except Exception as exc:
            raise AdapterUnavailable(f"{self.name} {what} confirmation failed: {exc}") from exc
        if result is None:
            # Not found at the requested finality; it may still land.
            self.log.warning(f"{self.name} {what}: {tx_ref} not found at confirmation")
            raise AdapterTimeout(f"{what} not confirmed: {tx_ref} not found", tx_ref=tx_ref)
        return result
