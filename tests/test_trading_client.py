#!/usr/bin/env python3
"""Sync orchestrator: bootstrap, partial failures, resync and pass-through reads."""

import asyncio
import logging
import sys
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import trading_client  # noqa: E402
from chains.base import ChainAdapter  # noqa: E402
from chains.evm_adapter import EvmAdapter  # noqa: E402
from config_env import SyncConfig  # noqa: E402
from errors import AdapterUnavailable, WalletNotConnected  # noqa: E402
from models import Balance, Market, Order, Position, SubmitResult, WriteResult  # noqa: E402
from networks import get_network_config  # noqa: E402
from realtime_channel import ChannelState  # noqa: E402
from trading_client import TradingClient  # noqa: E402

D = Decimal


class StubAdapter(ChainAdapter):
    def __init__(self) -> None:
        super().__init__(logging.getLogger("test_client"), get_network_config("arbitrum"))
        self.markets = [Market(symbol="ETH-USDC", price_decimals=8, size_decimals=18)]
        self.balances = [Balance(token="USDC", free=D("100"), locked=D("20"), total=D("120"))]
        self.positions = [Position(id="p1", market="ETH-USDC", side="long", size=D("2"), leverage=D("5"))]
        self.orders = [Order(id="7", market="ETH-USDC", side="sell", type="limit", price=D("1800"), amount=D("1"))]
        self.failures: Dict[str, Exception] = {}
        self.owners: List[Any] = []
        self.market_fetches = 0
        self.closed = False

    def _maybe_fail(self, category: str) -> None:
        if category in self.failures:
            raise self.failures[category]

    async def fetch_markets(self):
        self.market_fetches += 1
        self._maybe_fail("markets")
        return list(self.markets)

    async def fetch_balances(self, owner):
        self.owners.append(owner)
        self._maybe_fail("balances")
        return list(self.balances)

    async def fetch_positions(self, owner):
        self._maybe_fail("positions")
        return list(self.positions)

    async def fetch_open_orders(self, owner):
        self._maybe_fail("orders")
        return list(self.orders)

    async def submit_order(self, request, market):
        return SubmitResult(order_id="42", tx_ref="0xtx", confirmed_at=1_000)

    async def cancel_order(self, order_id):
        return WriteResult(success=True, tx_ref="0xc", confirmed_at=2_000, target_id=order_id)

    async def update_leverage(self, position_id, leverage):
        return WriteResult(success=True, tx_ref="0xl", confirmed_at=3_000, target_id=position_id)

    async def close(self) -> None:
        self.closed = True


class FakeChannel:
    def __init__(self) -> None:
        self.state = ChannelState.DISCONNECTED
        self.started = 0
        self.stopped = 0

    async def start(self) -> None:
        self.started += 1

    async def stop(self) -> None:
        self.stopped += 1


class FakeApi:
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self.trade_calls: List[tuple] = []
        self.error: Exception = None
        self.closed = 0

    async def get_markets(self, network: str):
        return [{"symbol": "BTC-USDC", "address": "0xBtc", "priceDecimals": 6, "sizeDecimals": 8}]

    async def get_trades(self, network, address, market=None, limit=50, from_ts=None, to_ts=None):
        self.trade_calls.append((network, address, market, limit, from_ts, to_ts))
        if self.error is not None:
            raise self.error
        return [{"id": "t1", "price": "1720.5"}]

    async def close(self) -> None:
        self.closed += 1


class StubWallet:
    address = "0xTrader"

    def sign_message(self, text: str) -> str:
        return "sig"


def _client(wallet: Any = StubWallet(), api: Any = None):
    adapter = StubAdapter()
    channel = FakeChannel()
    client = TradingClient(SyncConfig(), adapter, wallet=wallet, api=api, channel=channel)
    return client, adapter, channel


def test_bootstrap_fills_every_category() -> None:
    client, adapter, channel = _client()
    summary = asyncio.run(client.start())

    assert summary == {"markets": 1, "balances": 1, "positions": 1, "orders": 1}
    assert list(client.markets()) == ["ETH-USDC"]
    assert client.get_market("ETH-USDC").price_decimals == 8
    assert client.get_balance("USDC").total == D("120")
    assert client.get_position("p1").leverage == D("5")
    assert client.get_order("7").price == D("1800")
    assert adapter.owners == ["0xTrader"]
    assert channel.started == 1


def test_partial_bootstrap_failure_keeps_other_categories() -> None:
    client, adapter, channel = _client()
    adapter.failures["positions"] = AdapterUnavailable("margin contract unreachable")
    summary = asyncio.run(client.start(connect=False))

    assert summary["positions"] is None
    assert summary["balances"] == 1
    assert "positions" in client.fetch_failures
    assert client.positions() == {}
    assert list(client.orders()) == ["7"]
    assert channel.started == 0


def test_refresh_without_wallet_reads_public_state_only() -> None:
    client, adapter, channel = _client(wallet=None)
    asyncio.run(client.refresh())
    assert client.owner is None
    assert adapter.owners == [None]


def test_create_order_with_keyword_params_and_client_id_lookup() -> None:
    client, adapter, channel = _client()

    async def _run():
        await client.refresh()
        return await client.create_order(
            market="ETH-USDC", side="buy", type="limit", price="1720.50", amount="1.5", clientOrderId="cid-9"
        )

    order = asyncio.run(_run())
    assert order.id == "42"
    assert client.get_order("cid-9").id == "42"


def test_historical_trades_pass_through() -> None:
    api = FakeApi()
    client, adapter, channel = _client(api=api)
    trades = asyncio.run(client.get_historical_trades(market="ETH-USDC", from_ts=1, to_ts=2))
    assert trades == [{"id": "t1", "price": "1720.5"}]
    assert api.trade_calls == [("arbitrum", "0xTrader", "ETH-USDC", 50, 1, 2)]


def test_historical_trades_error_returns_empty() -> None:
    api = FakeApi()
    api.error = AdapterUnavailable("HTTP 502")
    client, adapter, channel = _client(api=api)
    assert asyncio.run(client.get_historical_trades(limit=5)) == []


def test_historical_trades_need_wallet() -> None:
    client, adapter, channel = _client(wallet=None, api=FakeApi())
    with pytest.raises(WalletNotConnected):
        asyncio.run(client.get_historical_trades())


def test_resubscribe_triggers_resync() -> None:
    client, adapter, channel = _client()

    async def _run():
        await client._on_channel_state(ChannelState.AUTHENTICATING, ChannelState.SUBSCRIBED)
        first = client._resync_task
        await client._on_channel_state(ChannelState.AUTHENTICATING, ChannelState.SUBSCRIBED)
        await client._resync_task
        return first

    first = asyncio.run(_run())
    assert first is None
    assert adapter.market_fetches == 1
    assert list(client.orders()) == ["7"]


def test_close_releases_everything() -> None:
    api = FakeApi()
    client, adapter, channel = _client(api=api)

    async def _run():
        async with client:
            await client.start()

    asyncio.run(_run())
    assert channel.stopped == 1
    assert adapter.closed is True
    assert api.closed == 1


def test_create_wires_adapter_from_config(monkeypatch) -> None:
    monkeypatch.setattr(trading_client, "VenueApi", FakeApi)
    config = SyncConfig(network="arb")

    async def _run():
        client = await TradingClient.create(config=config, transport=object(), wallet_from_env=False, connect=False)
        markets = client.markets()
        await client.close()
        return client, markets

    client, markets = asyncio.run(_run())
    assert isinstance(client.adapter, EvmAdapter)
    assert client.network == "arbitrum"
    assert list(markets) == ["BTC-USDC"]
    assert client.channel.url == "wss://ws.defiplatform.io/arbitrum"
    assert client.channel_state == ChannelState.DISCONNECTED
