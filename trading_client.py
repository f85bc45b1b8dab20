#!/usr/bin/env python3
"""
TradingClient: sync orchestrator and public entry point.

Wires one chain adapter, the canonical store, the realtime channel and the
order lifecycle controller around a single shared SequenceClock.

Usage:
    client = await TradingClient.create(transport=my_evm_transport)
    order = await client.create_order(market="ETH-USDC", side="buy", type="limit",
                                      price="1720.50", amount="1.5")
    print(client.orders())
    await client.close()
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Mapping, Optional

from chains import ChainAdapter, resolve_network, select_adapter
from config_env import SyncConfig, load_config
from errors import AdapterUnavailable, WalletNotConnected
from logging_utils import get_logger
from models import (
    KIND_BALANCE,
    KIND_MARKET,
    KIND_ORDER,
    KIND_POSITION,
    Balance,
    Market,
    Order,
    Position,
)
from order_lifecycle import OrderLifecycleController
from realtime_channel import ChannelState, FixedBackoff, RealtimeChannel
from state_store import SOURCE_FETCH, SequenceClock, StateStore
from venue_api import VenueApi
from wallet import LocalWallet

ACCOUNT_CATEGORIES = (
    ("balances", KIND_BALANCE, "fetch_balances"),
    ("positions", KIND_POSITION, "fetch_positions"),
    ("orders", KIND_ORDER, "fetch_open_orders"),
)


class TradingClient:
    """Keeps one consistent view of a trader's markets, balances, positions and orders."""

    def __init__(
        self,
        config: SyncConfig,
        adapter: ChainAdapter,
        wallet: Any = None,
        api: Optional[VenueApi] = None,
        store: Optional[StateStore] = None,
        clock: Optional[SequenceClock] = None,
        channel: Optional[RealtimeChannel] = None,
        session_factory: Any = None,
        backoff: Any = None,
        log=None,
    ):
        self.config = config
        self.adapter = adapter
        self.wallet = wallet
        self.api = api
        self.log = log or get_logger("trading_client")
        self.clock = clock or SequenceClock()
        self.store = store or StateStore(
            min_leverage=config.min_leverage,
            max_leverage=config.max_leverage,
            position_retention_ms=int(config.position_retention_seconds * 1000),
        )
        self.orders_controller = OrderLifecycleController(adapter, self.store, self.clock, wallet=wallet)
        self.channel = channel or RealtimeChannel.for_network(
            config.ws_base_url,
            adapter.network.name,
            self.store,
            self.clock,
            api_key=config.api_key,
            wallet=wallet,
            channels=config.channels,
            backoff=backoff or FixedBackoff(config.reconnect_delay_seconds),
            session_factory=session_factory,
            on_state_change=self._on_channel_state,
        )
        self.fetch_failures: Dict[str, str] = {}
        self._was_subscribed = False
        self._resync_task: Optional[asyncio.Task] = None

    @classmethod
    async def create(
        cls,
        config: Optional[SyncConfig] = None,
        transport: Any = None,
        wallet: Any = None,
        wallet_from_env: bool = True,
        connect: bool = True,
        **kwargs: Any,
    ) -> "TradingClient":
        """Build adapter + API client from config, bootstrap, and start the push channel."""
        config = config or load_config()
        if wallet is None and wallet_from_env:
            wallet = LocalWallet.from_env(config.wallet_key_env)
        network = resolve_network(config)
        api = VenueApi(
            config.api_base_url,
            api_key=config.api_key,
            timeout_seconds=config.request_timeout_seconds,
        )
        adapter = select_adapter(config, transport, api=api, network=network)
        instance = cls(config, adapter, wallet=wallet, api=api, **kwargs)
        await instance.start(connect=connect)
        return instance

    @property
    def owner(self) -> Optional[str]:
        return self.wallet.address if self.wallet is not None else None

    @property
    def network(self) -> str:
        return self.adapter.network.name

    # ============================================================ lifecycle
    async def start(self, connect: bool = True) -> Dict[str, Any]:
        summary = await self.refresh()
        if connect:
            await self.channel.start()
        self.log.info(f"Trading client initialized on {self.network} ({self.adapter.name})")
        return summary

    async def refresh(self) -> Dict[str, Any]:
        """Fetch every category from the chain and merge it (source=fetch).

        A failing category is logged and left as it was; the others still merge.
        Markets load first so account payloads can resolve market references.
        """
        summary: Dict[str, Any] = {}
        self.fetch_failures = {}
        sequence = self.clock.tick()
        try:
            markets = await self.adapter.fetch_markets()
        except Exception as e:
            self._record_failure("markets", e, summary)
        else:
            self.store.merge_many(KIND_MARKET, markets, SOURCE_FETCH, sequence)
            summary["markets"] = len(markets)

        owner = self.owner
        results = await asyncio.gather(
            *(getattr(self.adapter, method)(owner) for _, _, method in ACCOUNT_CATEGORIES),
            return_exceptions=True,
        )
        for (category, kind, _), result in zip(ACCOUNT_CATEGORIES, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                self._record_failure(category, result, summary)
                continue
            self.store.merge_many(kind, result, SOURCE_FETCH, sequence)
            summary[category] = len(result)

        self.store.prune_positions()
        return summary

    def _record_failure(self, category: str, error: Exception, summary: Dict[str, Any]) -> None:
        self.log.error(f"Error fetching {category}: {error}")
        self.fetch_failures[category] = str(error)
        summary[category] = None

    async def _on_channel_state(self, old: ChannelState, new: ChannelState) -> None:
        if new != ChannelState.SUBSCRIBED:
            return
        if self._was_subscribed:
            # Push updates sent during the outage are lost; poll once to catch up.
            self.log.info("Channel resubscribed; resyncing state")
            if self._resync_task is None or self._resync_task.done():
                self._resync_task = asyncio.create_task(self.refresh())
        self._was_subscribed = True

    async def close(self) -> None:
        await self.channel.stop()
        if self._resync_task is not None and not self._resync_task.done():
            self._resync_task.cancel()
            try:
                await self._resync_task
            except asyncio.CancelledError:
                pass
        await self.orders_controller.drain()
        await self.adapter.close()
        if self.api is not None:
            await self.api.close()
        self.log.info("Trading client closed")

    async def __aenter__(self) -> "TradingClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ============================================================ writes
    async def create_order(self, params: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> Order:
        merged = dict(params or {})
        merged.update(kwargs)
        return await self.orders_controller.create_order(merged)

    async def cancel_order(self, order_id: str) -> Order:
        return await self.orders_controller.cancel_order(order_id)

    async def update_position_leverage(self, position_id: str, leverage: Any) -> Optional[Position]:
        return await self.orders_controller.update_position_leverage(position_id, leverage)

    async def get_historical_trades(
        self,
        market: Optional[str] = None,
        limit: Optional[int] = None,
        from_ts: Optional[int] = None,
        to_ts: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Trade history from the venue API (pass-through, not merged into the store)."""
        if self.wallet is None:
            raise WalletNotConnected()
        if self.api is None:
            self.log.warning("No venue API configured; historical trades unavailable")
            return []
        try:
            return await self.api.get_trades(
                self.network,
                self.wallet.address,
                market=market,
                limit=limit or self.config.historical_trades_limit,
                from_ts=from_ts,
                to_ts=to_ts,
            )
        except AdapterUnavailable as e:
            self.log.error(f"Error fetching historical trades: {e}")
            return []

    # ============================================================ reads
    @property
    def channel_state(self) -> ChannelState:
        return self.channel.state

    def markets(self) -> Dict[str, Market]:
        return self.store.markets()

    def balances(self) -> Dict[str, Balance]:
        return self.store.balances()

    def positions(self) -> Dict[str, Position]:
        return self.store.positions()

    def orders(self) -> Dict[str, Order]:
        return self.store.orders()

    def get_market(self, symbol: str) -> Optional[Market]:
        return self.store.get(KIND_MARKET, symbol)

    def get_balance(self, token: str) -> Optional[Balance]:
        return self.store.get(KIND_BALANCE, token)

    def get_position(self, position_id: str) -> Optional[Position]:
        return self.store.get(KIND_POSITION, position_id)

    def get_order(self, order_id: str) -> Optional[Order]:
        """Look up by chain id, falling back to the client order id."""
        return self.store.get(KIND_ORDER, order_id) or self.store.order_by_client_id(order_id)
