#!/usr/bin/env python3
"""Optimistic order writes, chain confirmation reconciliation and rollback."""

import asyncio
import logging
import sys
from decimal import Decimal
from pathlib import Path
from typing import Any, List

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from chains.base import ChainAdapter  # noqa: E402
from errors import (  # noqa: E402
    AdapterTimeout,
    AdapterUnavailable,
    MarketNotFound,
    OrderSubmissionFailed,
    WalletNotConnected,
)
from models import KIND_MARKET, KIND_ORDER, KIND_POSITION, PENDING_ORDER_ID, SubmitResult, WriteResult  # noqa: E402
from networks import get_network_config  # noqa: E402
from order_lifecycle import OrderLifecycleController  # noqa: E402
from state_store import SOURCE_FETCH, SOURCE_PUSH, SequenceClock, StateStore  # noqa: E402

D = Decimal

ORDER_PARAMS = {
    "market": "ETH-USDC",
    "side": "buy",
    "type": "limit",
    "price": "1720.50",
    "amount": "1.5",
    "clientOrderId": "cid-1",
}


class FakeAdapter(ChainAdapter):
    """Chain adapter double; `gate` holds confirmations until the test releases them."""

    def __init__(self) -> None:
        super().__init__(logging.getLogger("test_lifecycle"), get_network_config("arbitrum"), min_leverage=1, max_leverage=50)
        self.submitted: List[Any] = []
        self.cancels: List[str] = []
        self.leverage_calls: List[tuple] = []
        self.order_id = "42"
        self.error: Exception = None
        self.gate: asyncio.Event = None

    async def _wait(self) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error

    async def fetch_markets(self):
        return []

    async def fetch_balances(self, owner):
        return []

    async def fetch_positions(self, owner):
        return []

    async def fetch_open_orders(self, owner):
        return []

    async def submit_order(self, request, market):
        self.submitted.append(request)
        await self._wait()
        return SubmitResult(order_id=self.order_id, tx_ref="0xtx", confirmed_at=1_000)

    async def cancel_order(self, order_id):
        self.cancels.append(order_id)
        await self._wait()
        return WriteResult(success=True, tx_ref="0xcancel", confirmed_at=2_000, target_id=order_id)

    async def update_leverage(self, position_id, leverage):
        self.leverage_calls.append((position_id, leverage))
        await self._wait()
        return WriteResult(success=True, tx_ref="0xlev", confirmed_at=3_000, target_id=position_id)


def _setup(wallet: Any = "wallet"):
    adapter = FakeAdapter()
    store = StateStore()
    clock = SequenceClock(time_fn=lambda: 500)
    store.merge(KIND_MARKET, "ETH-USDC", {"price_decimals": 8, "size_decimals": 18}, SOURCE_FETCH, clock.tick())
    controller = OrderLifecycleController(adapter, store, clock, wallet=wallet, log=logging.getLogger("test_lifecycle"))
    return adapter, store, clock, controller


def test_create_order_confirmed_rekeys_record() -> None:
    adapter, store, clock, controller = _setup()
    order = asyncio.run(controller.create_order(ORDER_PARAMS))

    assert order.id == "42"
    assert order.status == "open"
    assert order.filled == D("0")
    assert order.client_order_id == "cid-1"
    assert order.tx_ref == "0xtx"
    assert list(store.orders()) == ["42"]
    assert store.get(KIND_ORDER, "cid-1") is None
    assert store.order_by_client_id("cid-1").id == "42"
    assert adapter.submitted[0].price == D("1720.50")


def test_push_after_confirmation_then_stale_duplicate() -> None:
    adapter, store, clock, controller = _setup()
    asyncio.run(controller.create_order(ORDER_PARAMS))
    confirmed_seq = store.sequence_of(KIND_ORDER, "42")

    fill = store.merge(KIND_ORDER, "42", {"id": "42", "status": "filled", "filled": D("1.5")}, SOURCE_PUSH, clock.tick())
    assert fill.accepted
    assert store.sequence_of(KIND_ORDER, "42") > confirmed_seq

    stale = store.merge(KIND_ORDER, "42", {"id": "42", "status": "open", "filled": D("0")}, SOURCE_PUSH, confirmed_seq - 1)
    assert not stale.accepted
    order = store.get(KIND_ORDER, "42")
    assert order.status == "filled"
    assert order.filled == D("1.5")


def test_optimistic_record_visible_while_in_flight() -> None:
    async def _run():
        adapter, store, clock, controller = _setup()
        adapter.gate = asyncio.Event()
        task = asyncio.ensure_future(controller.create_order(ORDER_PARAMS))
        await asyncio.sleep(0)
        pending = store.get(KIND_ORDER, "cid-1")
        inflight = controller.pending_operations
        adapter.gate.set()
        await task
        return pending, inflight, store

    pending, inflight, store = asyncio.run(_run())
    assert pending.id == PENDING_ORDER_ID
    assert pending.status == "open"
    assert inflight == 1
    assert list(store.orders()) == ["42"]


def test_create_order_validation_order() -> None:
    adapter, store, clock, controller = _setup(wallet=None)
    with pytest.raises(ValueError):
        asyncio.run(controller.create_order(dict(ORDER_PARAMS, side="long")))
    with pytest.raises(MarketNotFound):
        asyncio.run(controller.create_order(dict(ORDER_PARAMS, market="DOGE-USDC")))
    with pytest.raises(WalletNotConnected):
        asyncio.run(controller.create_order(ORDER_PARAMS))
    assert store.orders() == {}
    assert adapter.submitted == []


def test_rejected_submission_removes_optimistic_record() -> None:
    adapter, store, clock, controller = _setup()
    adapter.error = OrderSubmissionFailed("insufficient margin", tx_ref="0xbad")
    with pytest.raises(OrderSubmissionFailed) as exc:
        asyncio.run(controller.create_order(ORDER_PARAMS))
    assert exc.value.tx_ref == "0xbad"
    assert store.orders() == {}
    assert store.order_by_client_id("cid-1") is None


def test_transport_failure_is_wrapped_and_rolled_back() -> None:
    adapter, store, clock, controller = _setup()
    adapter.error = AdapterUnavailable("rpc down")
    with pytest.raises(OrderSubmissionFailed) as exc:
        asyncio.run(controller.create_order(ORDER_PARAMS))
    assert "rpc down" in str(exc.value)
    assert store.orders() == {}


def test_confirmation_timeout_keeps_pending_record() -> None:
    adapter, store, clock, controller = _setup()
    adapter.error = AdapterTimeout("not confirmed", tx_ref="0xslow")
    with pytest.raises(AdapterTimeout):
        asyncio.run(controller.create_order(ORDER_PARAMS))
    order = store.get(KIND_ORDER, "cid-1")
    assert order.id == PENDING_ORDER_ID
    assert order.tx_ref == "0xslow"


def test_pending_confirmation_keeps_client_key() -> None:
    adapter, store, clock, controller = _setup()
    adapter.order_id = PENDING_ORDER_ID
    order = asyncio.run(controller.create_order(ORDER_PARAMS))
    assert order.id == PENDING_ORDER_ID
    assert order.tx_ref == "0xtx"
    assert list(store.orders()) == ["cid-1"]

    # The first push carrying the client id adopts the pending record.
    store.merge(KIND_ORDER, "42", {"id": "42", "client_order_id": "cid-1", "status": "open"}, SOURCE_PUSH, clock.tick())
    assert list(store.orders()) == ["42"]


def test_caller_cancellation_does_not_stop_reconciliation() -> None:
    async def _run():
        adapter, store, clock, controller = _setup()
        adapter.gate = asyncio.Event()
        caller = asyncio.ensure_future(controller.create_order(ORDER_PARAMS))
        await asyncio.sleep(0)
        caller.cancel()
        await asyncio.sleep(0)
        adapter.gate.set()
        await controller.drain(timeout=1)
        return caller, store

    caller, store = asyncio.run(_run())
    assert caller.cancelled()
    assert list(store.orders()) == ["42"]


def test_cancel_unknown_order_inserts_canceled_record() -> None:
    adapter, store, clock, controller = _setup()
    order = asyncio.run(controller.cancel_order("77"))
    assert adapter.cancels == ["77"]
    assert order.id == "77"
    assert order.status == "canceled"
    assert order.pending_cancel is False


def test_double_cancel_makes_one_chain_call() -> None:
    async def _run():
        adapter, store, clock, controller = _setup()
        await controller.create_order(ORDER_PARAMS)
        adapter.gate = asyncio.Event()
        first = asyncio.ensure_future(controller.cancel_order("42"))
        second = asyncio.ensure_future(controller.cancel_order("42"))
        await asyncio.sleep(0)
        flagged = store.get(KIND_ORDER, "42").pending_cancel
        adapter.gate.set()
        results = await asyncio.gather(first, second)
        return adapter, flagged, results

    adapter, flagged, (a, b) = asyncio.run(_run())
    assert adapter.cancels == ["42"]
    assert flagged is True
    assert a.status == b.status == "canceled"
    assert a.pending_cancel is False


def test_cancel_already_canceled_is_noop() -> None:
    adapter, store, clock, controller = _setup()
    store.merge(KIND_ORDER, "9", {"status": "canceled"}, SOURCE_FETCH, clock.tick())
    order = asyncio.run(controller.cancel_order("9"))
    assert order.status == "canceled"
    assert adapter.cancels == []


def test_cancel_filled_or_pending_order_raises() -> None:
    adapter, store, clock, controller = _setup()
    store.merge(KIND_ORDER, "9", {"status": "filled"}, SOURCE_FETCH, clock.tick())
    with pytest.raises(OrderSubmissionFailed) as exc:
        asyncio.run(controller.cancel_order("9"))
    assert exc.value.operation == "cancel"

    store.merge(KIND_ORDER, "cid-x", {"id": PENDING_ORDER_ID, "status": "open"}, SOURCE_FETCH, clock.tick())
    with pytest.raises(OrderSubmissionFailed):
        asyncio.run(controller.cancel_order("cid-x"))
    assert adapter.cancels == []


def test_cancel_requires_wallet() -> None:
    adapter, store, clock, controller = _setup(wallet=None)
    with pytest.raises(WalletNotConnected):
        asyncio.run(controller.cancel_order("42"))


def test_cancel_failure_clears_flag() -> None:
    adapter, store, clock, controller = _setup()
    asyncio.run(controller.create_order(ORDER_PARAMS))
    adapter.error = OrderSubmissionFailed("order not found", operation="cancel")
    with pytest.raises(OrderSubmissionFailed):
        asyncio.run(controller.cancel_order("42"))
    order = store.get(KIND_ORDER, "42")
    assert order.status == "open"
    assert order.pending_cancel is False


def _with_position(store, clock, leverage="5"):
    store.merge(
        KIND_POSITION,
        "p1",
        {"market": "ETH-USDC", "side": "long", "size": D("2"), "leverage": D(leverage)},
        SOURCE_FETCH,
        clock.tick(),
    )


def test_update_leverage_confirms() -> None:
    adapter, store, clock, controller = _setup()
    _with_position(store, clock)
    position = asyncio.run(controller.update_position_leverage("p1", "10"))
    assert adapter.leverage_calls == [("p1", D("10"))]
    assert position.leverage == D("10")
    assert position.pending_leverage is None


def test_update_leverage_bounds_and_noop() -> None:
    adapter, store, clock, controller = _setup()
    _with_position(store, clock)
    with pytest.raises(ValueError):
        asyncio.run(controller.update_position_leverage("p1", "0.5"))
    with pytest.raises(ValueError):
        asyncio.run(controller.update_position_leverage("p1", "51"))
    same = asyncio.run(controller.update_position_leverage("p1", "5"))
    assert same.leverage == D("5")
    assert adapter.leverage_calls == []


def test_update_leverage_unknown_position_returns_none() -> None:
    adapter, store, clock, controller = _setup()
    assert asyncio.run(controller.update_position_leverage("p9", "3")) is None
    assert adapter.leverage_calls == [("p9", D("3"))]
    assert store.positions() == {}


def test_update_leverage_failure_restores_position() -> None:
    adapter, store, clock, controller = _setup()
    _with_position(store, clock)
    adapter.error = RuntimeError("reverted")
    with pytest.raises(OrderSubmissionFailed) as exc:
        asyncio.run(controller.update_position_leverage("p1", "20"))
    assert exc.value.operation == "update leverage"
    position = store.get(KIND_POSITION, "p1")
    assert position.leverage == D("5")
    assert position.pending_leverage is None
