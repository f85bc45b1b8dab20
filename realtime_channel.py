#!/usr/bin/env python3
"""
Realtime push channel (websocket) feeding the state store.

Lifecycle is an explicit state machine:

    disconnected -> connecting -> authenticating -> subscribed -> disconnected

After a drop the channel waits for the backoff policy's delay and re-enters
`connecting` on its own, with no retry cap. Connection errors are logged and
never raised to callers; only `state` is observable.

Wire contract:
    -> {"type": "auth", "apiKey", "timestamp", "signature"}
    -> {"type": "subscribe", "channels": [...]}
    <- {"type": "order_update" | "position_update" | "balance_update" | "market_update", "data": {...}}
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import json
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Union

import aiohttp

from env_utils import join_url
from logging_utils import get_logger
from models import KEY_FIELDS, KIND_BALANCE, KIND_MARKET, KIND_ORDER, KIND_POSITION, from_wire, now_ms
from state_store import SOURCE_PUSH, SequenceClock, StateStore

DEFAULT_CHANNELS = ("orders", "positions", "balances", "markets")
DEFAULT_RECONNECT_DELAY = 3.0
HEARTBEAT_SECONDS = 30.0

MESSAGE_KINDS = {
    "order_update": KIND_ORDER,
    "position_update": KIND_POSITION,
    "balance_update": KIND_BALANCE,
    "market_update": KIND_MARKET,
}


class ChannelState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    SUBSCRIBED = "subscribed"


class FixedBackoff:
    """Same delay before every reconnect attempt."""

    def __init__(self, delay: float = DEFAULT_RECONNECT_DELAY):
        self.delay = float(delay)

    def next_delay(self, attempt: int) -> float:
        return self.delay


class ExponentialBackoff:
    """Doubling delay, capped; attempt 1 waits `initial`."""

    def __init__(self, initial: float = 2.0, maximum: float = 30.0, factor: float = 2.0):
        self.initial = float(initial)
        self.maximum = float(maximum)
        self.factor = float(factor)

    def next_delay(self, attempt: int) -> float:
        exponent = max(0, int(attempt) - 1)
        return min(self.initial * (self.factor ** exponent), self.maximum)


StateCallback = Callable[[ChannelState, ChannelState], Union[None, Awaitable[None]]]


class RealtimeChannel:
    """
    Websocket client that keeps itself subscribed and merges push updates.

    Usage:
        channel = RealtimeChannel(url, store, clock, api_key=..., wallet=...)
        await channel.start()
        ...
        await channel.stop()
    """

    def __init__(
        self,
        url: str,
        store: StateStore,
        clock: SequenceClock,
        api_key: str = "",
        wallet: Any = None,
        channels: Sequence[str] = DEFAULT_CHANNELS,
        backoff: Any = None,
        session_factory: Optional[Callable[[], Any]] = None,
        on_state_change: Optional[StateCallback] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        log=None,
    ):
        self.url = url
        self.store = store
        self.clock = clock
        self.api_key = api_key
        self.wallet = wallet
        self.channels = list(channels)
        self.backoff = backoff or FixedBackoff()
        self.on_state_change = on_state_change
        self._session_factory = session_factory or aiohttp.ClientSession
        self._sleep = sleep
        self.log = log or get_logger("realtime_channel")

        self._state = ChannelState.DISCONNECTED
        self._should_run = False
        self._task: Optional[asyncio.Task] = None
        self._ws: Any = None
        self._attempt = 0

        self.messages_received = 0
        self.messages_dropped = 0

    @classmethod
    def for_network(cls, ws_base_url: str, network: str, store: StateStore, clock: SequenceClock, **kwargs: Any):
        return cls(join_url(ws_base_url, network), store, clock, **kwargs)

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _set_state(self, new_state: ChannelState) -> None:
        old_state = self._state
        if new_state == old_state:
            return
        self._state = new_state
        self.log.info(f"Channel {old_state.value} -> {new_state.value}")
        if self.on_state_change is None:
            return
        try:
            result = self.on_state_change(old_state, new_state)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self.log.error(f"State change callback failed: {e}")

    # ------------------------------------------------------------------ control
    async def start(self) -> None:
        """Start the connection loop in the background (idempotent)."""
        if self.running:
            return
        self._should_run = True
        self._task = asyncio.create_task(self._connection_loop())

    async def stop(self) -> None:
        """Close the socket and stop reconnecting."""
        self._should_run = False
        ws = self._ws
        if ws is not None and not ws.closed:
            await ws.close()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._set_state(ChannelState.DISCONNECTED)

    async def _connection_loop(self) -> None:
        """Connect, read until the socket drops, back off, repeat."""
        while self._should_run:
            try:
                await self._connect_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.log.error(f"Connection error: {e}")

            self._ws = None
            await self._set_state(ChannelState.DISCONNECTED)
            if not self._should_run:
                break

            self._attempt += 1
            delay = self.backoff.next_delay(self._attempt)
            self.log.info(f"Reconnecting in {delay:.1f}s (attempt {self._attempt})...")
            try:
                await self._sleep(delay)
            except asyncio.CancelledError:
                break

    async def _connect_once(self) -> None:
        await self._set_state(ChannelState.CONNECTING)
        async with self._session_factory() as session:
            async with session.ws_connect(self.url, heartbeat=HEARTBEAT_SECONDS) as ws:
                self._ws = ws
                await self._set_state(ChannelState.AUTHENTICATING)
                await ws.send_json(await self._auth_envelope())
                await ws.send_json({"type": "subscribe", "channels": list(self.channels)})
                await self._set_state(ChannelState.SUBSCRIBED)
                self._attempt = 0

                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        self._handle_message(msg.data)
                    elif msg.type == aiohttp.WSMsgType.BINARY:
                        self._handle_message(msg.data.decode("utf-8", errors="replace"))
                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        self.log.warning(f"Websocket error: {ws.exception()}")
                        break
                    elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.CLOSING):
                        break
        self.log.info("Websocket closed")

    async def _auth_envelope(self) -> Dict[str, Any]:
        timestamp = now_ms()
        signature = ""
        if self.wallet is None:
            self.log.warning("No wallet bound; authenticating with an empty signature")
        else:
            signed = self.wallet.sign_message(f"{self.api_key}:{timestamp}")
            signature = await signed if inspect.isawaitable(signed) else signed
        return {
            "type": "auth",
            "apiKey": self.api_key,
            "timestamp": timestamp,
            "signature": signature,
        }

    # ----------------------------------------------------------------- messages
    def _handle_message(self, raw: str) -> None:
        """Decode one push message and merge it; bad input is logged and skipped."""
        if self._state != ChannelState.SUBSCRIBED:
            self.messages_dropped += 1
            self.log.debug(f"Dropping message received while {self._state.value}")
            return
        self.messages_received += 1
        try:
            message = json.loads(raw)
        except json.JSONDecodeError as e:
            self.log.warning(f"Malformed push message: {e}")
            return
        if not isinstance(message, dict):
            self.log.warning(f"Push message is not an object: {str(raw)[:200]}")
            return

        msg_type = message.get("type")
        kind = MESSAGE_KINDS.get(msg_type)
        if kind is None:
            self.log.debug(f"Ignoring push message type {msg_type!r}")
            return
        data = message.get("data")
        if not isinstance(data, dict):
            self.log.warning(f"{msg_type} without data object")
            return

        # Stamp on receipt so push updates order against fetches and confirmations.
        sequence = self.clock.tick()
        try:
            patch = from_wire(kind, data)
        except ValueError as e:
            self.log.warning(f"Skipping {msg_type}: {e}")
            return
        key = patch.get(KEY_FIELDS[kind])
        if not key:
            self.log.warning(f"Skipping {msg_type} without {KEY_FIELDS[kind]}")
            return
        try:
            self.store.merge(kind, key, patch, SOURCE_PUSH, sequence)
        except Exception as e:
            self.messages_dropped += 1
            self.log.error(f"Skipping {msg_type} for {key}: merge failed: {e}")
