#!/usr/bin/env python3
"""Websocket state machine, reconnect backoff and push-message merging."""

import asyncio
import json
import sys
from decimal import Decimal
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List

import aiohttp

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from realtime_channel import (  # noqa: E402
    DEFAULT_CHANNELS,
    ChannelState,
    ExponentialBackoff,
    FixedBackoff,
    RealtimeChannel,
)
from state_store import SequenceClock, StateStore  # noqa: E402


def _text(payload: Any) -> SimpleNamespace:
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=data)


class FakeWebSocket:
    """Yields queued messages, then either ends (socket drop) or waits for close()."""

    def __init__(self, messages: List[Any], hold: asyncio.Event = None) -> None:
        self.messages = list(messages)
        self.hold = hold
        self.sent: List[Dict[str, Any]] = []
        self.closed = False

    async def __aenter__(self) -> "FakeWebSocket":
        return self

    async def __aexit__(self, *exc) -> None:
        self.closed = True

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> Any:
        if self.messages:
            return self.messages.pop(0)
        if self.hold is not None and not self.closed:
            await self.hold.wait()
        raise StopAsyncIteration

    async def send_json(self, payload: Dict[str, Any]) -> None:
        self.sent.append(payload)

    async def close(self) -> None:
        self.closed = True
        if self.hold is not None:
            self.hold.set()

    def exception(self) -> Exception:
        return RuntimeError("boom")


class FakeSession:
    def __init__(self, factory: "FakeSessionFactory") -> None:
        self.factory = factory

    async def __aenter__(self) -> "FakeSession":
        return self

    async def __aexit__(self, *exc) -> None:
        return None

    def ws_connect(self, url: str, heartbeat: float = None) -> FakeWebSocket:
        self.factory.urls.append(url)
        if self.factory.error is not None:
            raise self.factory.error
        return self.factory.sockets.pop(0)


class FakeSessionFactory:
    def __init__(self, sockets: List[FakeWebSocket] = None, error: Exception = None) -> None:
        self.sockets = list(sockets or [])
        self.error = error
        self.urls: List[str] = []

    def __call__(self) -> FakeSession:
        return FakeSession(self)


class StubWallet:
    address = "0xme"

    def sign_message(self, text: str) -> str:
        return f"sig({text})"


class AsyncWallet:
    address = "0xme"

    async def sign_message(self, text: str) -> str:
        return "async-sig"


ORDER_FILLED = {
    "type": "order_update",
    "data": {"id": "42", "status": "filled", "filled": "1.5", "amount": "1.5", "market": "ETH-USDC"},
}


def test_backoff_policies() -> None:
    assert FixedBackoff().next_delay(1) == 3.0
    assert FixedBackoff(5).next_delay(9) == 5.0
    policy = ExponentialBackoff(initial=1, maximum=5)
    assert [policy.next_delay(n) for n in (1, 2, 3, 4, 5)] == [1, 2, 4, 5, 5]


def test_for_network_builds_url() -> None:
    channel = RealtimeChannel.for_network("wss://ws.venue.io/", "arbitrum", StateStore(), SequenceClock())
    assert channel.url == "wss://ws.venue.io/arbitrum"
    assert channel.state == ChannelState.DISCONNECTED


def test_drop_reconnects_and_resubscribes() -> None:
    async def _run():
        store = StateStore()
        events = []
        store.subscribe(lambda kind, key, snap, changed: events.append((kind, key)))
        first = FakeWebSocket([_text(ORDER_FILLED)])
        second = FakeWebSocket([], hold=asyncio.Event())
        factory = FakeSessionFactory([first, second])
        states: List[str] = []
        sleeps: List[float] = []
        resubscribed = asyncio.Event()

        def on_state(old, new):
            states.append(new.value)
            if states.count("subscribed") == 2:
                resubscribed.set()

        async def fake_sleep(delay):
            sleeps.append(delay)

        channel = RealtimeChannel(
            "wss://ws.venue.io/arbitrum",
            store,
            SequenceClock(),
            api_key="key-1",
            wallet=StubWallet(),
            session_factory=factory,
            on_state_change=on_state,
            sleep=fake_sleep,
        )
        await channel.start()
        await asyncio.wait_for(resubscribed.wait(), timeout=2)
        await channel.stop()
        return store, events, first, states, sleeps, channel, factory

    store, events, first, states, sleeps, channel, factory = asyncio.run(_run())
    assert states == [
        "connecting",
        "authenticating",
        "subscribed",
        "disconnected",
        "connecting",
        "authenticating",
        "subscribed",
        "disconnected",
    ]
    assert sleeps == [3.0]
    assert factory.urls == ["wss://ws.venue.io/arbitrum"] * 2
    assert channel.state == ChannelState.DISCONNECTED
    assert channel.messages_received == 1

    order = store.orders()["42"]
    assert order.status == "filled"
    assert order.filled == Decimal("1.5")
    assert events == [("order", "42")]

    auth, subscribe = first.sent
    assert auth["type"] == "auth"
    assert auth["apiKey"] == "key-1"
    assert auth["signature"] == f"sig(key-1:{auth['timestamp']})"
    assert subscribe == {"type": "subscribe", "channels": list(DEFAULT_CHANNELS)}


def test_async_wallet_and_missing_wallet_signatures() -> None:
    async def _envelopes():
        signed = RealtimeChannel("wss://x", StateStore(), SequenceClock(), api_key="k", wallet=AsyncWallet())
        unsigned = RealtimeChannel("wss://x", StateStore(), SequenceClock(), api_key="k")
        return await signed._auth_envelope(), await unsigned._auth_envelope()

    signed, unsigned = asyncio.run(_envelopes())
    assert signed["signature"] == "async-sig"
    assert unsigned["signature"] == ""
    assert unsigned["apiKey"] == "k"


def test_exponential_backoff_on_connect_failures() -> None:
    async def _run():
        factory = FakeSessionFactory(error=aiohttp.ClientConnectionError("refused"))
        sleeps: List[float] = []
        gave_up = asyncio.Event()

        async def fake_sleep(delay):
            sleeps.append(delay)
            if len(sleeps) == 3:
                gave_up.set()
                raise asyncio.CancelledError()

        channel = RealtimeChannel(
            "wss://x",
            StateStore(),
            SequenceClock(),
            backoff=ExponentialBackoff(initial=1, maximum=30),
            session_factory=factory,
            sleep=fake_sleep,
        )
        await channel.start()
        await asyncio.wait_for(gave_up.wait(), timeout=2)
        await channel.stop()
        return sleeps, channel

    sleeps, channel = asyncio.run(_run())
    assert sleeps == [1, 2, 4]
    assert channel.state == ChannelState.DISCONNECTED


def test_messages_outside_subscribed_are_dropped() -> None:
    store = StateStore()
    channel = RealtimeChannel("wss://x", store, SequenceClock())
    channel._handle_message(json.dumps(ORDER_FILLED))
    assert channel.messages_dropped == 1
    assert channel.messages_received == 0
    assert store.orders() == {}


def test_malformed_messages_are_skipped() -> None:
    store = StateStore()
    channel = RealtimeChannel("wss://x", store, SequenceClock())
    channel._state = ChannelState.SUBSCRIBED

    for raw in (
        "{not json",
        "[1, 2]",
        json.dumps({"type": "heartbeat"}),
        json.dumps({"type": "order_update"}),
        json.dumps({"type": "order_update", "data": {"status": "open"}}),
        json.dumps({"type": "balance_update", "data": {"token": "USDC", "free": "lots"}}),
    ):
        channel._handle_message(raw)

    channel._handle_message(json.dumps({"type": "balance_update", "data": {"token": "USDC", "free": "10", "locked": "2"}}))
    assert channel.messages_received == 7
    assert store.orders() == {}
    assert store.balances()["USDC"].total == Decimal("12")


def test_non_finite_numbers_are_skipped_without_dropping_session() -> None:
    store = StateStore()
    channel = RealtimeChannel("wss://x", store, SequenceClock())
    channel._state = ChannelState.SUBSCRIBED

    channel._handle_message(json.dumps({"type": "order_update", "data": {"id": "42", "filled": "NaN"}}))
    channel._handle_message(json.dumps({"type": "order_update", "data": {"id": "43", "filled": "sNaN"}}))
    channel._handle_message(json.dumps({"type": "balance_update", "data": {"token": "USDC", "free": "Infinity"}}))

    assert store.orders() == {}
    assert store.balances() == {}
    assert channel.state == ChannelState.SUBSCRIBED


class _ExplodingStore(StateStore):
    def merge(self, *args, **kwargs):
        raise RuntimeError("store offline")


def test_merge_failure_is_logged_and_skipped() -> None:
    channel = RealtimeChannel("wss://x", _ExplodingStore(), SequenceClock())
    channel._state = ChannelState.SUBSCRIBED

    channel._handle_message(json.dumps({"type": "order_update", "data": {"id": "42", "filled": "1"}}))

    assert channel.messages_received == 1
    assert channel.messages_dropped == 1
