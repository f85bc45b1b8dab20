#!/usr/bin/env python3
"""
Order lifecycle controller.

Write operations follow the same shape:
1. validate locally (market known, wallet bound, bounds)
2. write an optimistic record/flag into the store (source=local)
3. run the chain call in a task the caller cannot cancel
4. reconcile the confirmation into the store (source=confirmation), or roll
   the optimistic change back on failure

Order status machine: open -> {filled, canceled, expired, rejected}.
Partial fills stay open.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from functools import partial
from typing import Any, Awaitable, Dict, Mapping, Optional, Set, Union

from chains.base import ChainAdapter
from errors import (
    AdapterTimeout,
    MarketNotFound,
    OrderSubmissionFailed,
    WalletNotConnected,
)
from logging_utils import get_logger
from models import (
    KIND_MARKET,
    KIND_ORDER,
    KIND_POSITION,
    PENDING_ORDER_ID,
    STATUS_CANCELED,
    TERMINAL_STATUSES,
    Order,
    OrderRequest,
    Position,
    now_ms,
)
from numeric import parse_decimal
from state_store import SOURCE_CONFIRMATION, SOURCE_LOCAL, SequenceClock, StateStore


class OrderLifecycleController:
    """Creates, cancels and re-leverages through a chain adapter, keeping the store in step."""

    def __init__(
        self,
        adapter: ChainAdapter,
        store: StateStore,
        clock: SequenceClock,
        wallet: Any = None,
        log=None,
    ):
        self.adapter = adapter
        self.store = store
        self.clock = clock
        self.wallet = wallet
        self.log = log or get_logger("order_lifecycle")
        self._inflight: Set[asyncio.Task] = set()
        self._cancels: Dict[str, asyncio.Task] = {}

    @property
    def pending_operations(self) -> int:
        return len(self._inflight)

    def _require_wallet(self) -> None:
        if self.wallet is None:
            raise WalletNotConnected()

    def _spawn(self, coro: Awaitable[Any], label: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._inflight.add(task)
        task.add_done_callback(partial(self._on_done, label))
        return task

    def _on_done(self, label: str, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if task.cancelled():
            self.log.warning(f"{label}: chain operation cancelled before reconciliation")
            return
        exc = task.exception()
        if exc is not None:
            self.log.info(f"{label} finished with {type(exc).__name__}: {exc}")

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for outstanding chain operations to reconcile."""
        if not self._inflight:
            return
        done, pending = await asyncio.wait(set(self._inflight), timeout=timeout)
        if pending:
            self.log.warning(f"{len(pending)} chain operation(s) still unconfirmed at shutdown")

    # ================================================================ create
    async def create_order(self, params: Union[OrderRequest, Mapping[str, Any]]) -> Order:
        """Submit an order; returns the reconciled Order snapshot.

        Raises:
            ValueError: invalid request fields
            MarketNotFound: market not in the local store
            WalletNotConnected: no wallet bound
            AdapterTimeout: sent but not confirmed in time (optimistic record kept)
            OrderSubmissionFailed: rejected, reverted or transport failure
        """
        request = params if isinstance(params, OrderRequest) else OrderRequest.from_params(params)
        market = self.store.get(KIND_MARKET, request.market)
        if market is None:
            raise MarketNotFound(request.market)
        self._require_wallet()

        client_id = request.client_order_id
        self.store.merge(
            KIND_ORDER,
            client_id,
            request.optimistic_patch(now_ms()),
            SOURCE_LOCAL,
            self.clock.tick(),
        )
        self.log.info(
            f"Submitting {request.side} {request.type} {request.amount} {request.market} "
            f"@ {request.price} (client {client_id})"
        )
        task = self._spawn(self._submit_and_reconcile(request, market), f"create {client_id}")
        return await asyncio.shield(task)

    async def _submit_and_reconcile(self, request: OrderRequest, market: Any) -> Order:
        client_id = request.client_order_id
        try:
            result = await self.adapter.submit_order(request, market)
        except AdapterTimeout as exc:
            self.log.warning(f"Order {client_id} unconfirmed; keeping optimistic record (tx={exc.tx_ref})")
            if exc.tx_ref:
                key = self.store.order_key_for_client_id(client_id) or client_id
                if self.store.get(KIND_ORDER, key) is not None:
                    self.store.merge(KIND_ORDER, key, {"tx_ref": exc.tx_ref}, SOURCE_LOCAL, self.clock.tick())
            raise
        except OrderSubmissionFailed:
            self._discard_optimistic(client_id)
            raise
        except Exception as exc:
            self._discard_optimistic(client_id)
            raise OrderSubmissionFailed(str(exc)) from exc

        sequence = self.clock.advance(result.confirmed_at)
        key = self.store.order_key_for_client_id(client_id) or client_id
        if result.is_pending:
            self.store.merge(
                KIND_ORDER,
                key,
                {"client_order_id": client_id, "tx_ref": result.tx_ref},
                SOURCE_CONFIRMATION,
                sequence,
            )
            return self.store.get(KIND_ORDER, key)

        self.store.rekey(
            KIND_ORDER,
            key,
            result.order_id,
            {"id": result.order_id, "client_order_id": client_id, "tx_ref": result.tx_ref},
            SOURCE_CONFIRMATION,
            sequence,
        )
        self.log.info(f"Order {client_id} confirmed as {result.order_id} (tx={result.tx_ref})")
        return self.store.get(KIND_ORDER, result.order_id)

    def _discard_optimistic(self, client_id: str) -> None:
        key = self.store.order_key_for_client_id(client_id) or client_id
        order = self.store.get(KIND_ORDER, key)
        if order is not None and order.id == PENDING_ORDER_ID:
            self.store.remove(KIND_ORDER, key)

    # ================================================================ cancel
    async def cancel_order(self, order_id: str) -> Order:
        """Cancel by id. Already-canceled orders return immediately."""
        order_id = str(order_id)
        self._require_wallet()
        existing: Optional[Order] = self.store.get(KIND_ORDER, order_id)
        if existing is not None:
            if existing.status == STATUS_CANCELED:
                self.log.info(f"Order {order_id} already canceled")
                return existing
            if existing.status in TERMINAL_STATUSES:
                raise OrderSubmissionFailed(f"order {order_id} is already {existing.status}", operation="cancel")
            if existing.id == PENDING_ORDER_ID:
                raise OrderSubmissionFailed(f"order {order_id} has no confirmed id yet", operation="cancel")

        task = self._cancels.get(order_id)
        if task is None:
            if existing is not None:
                self.store.merge(KIND_ORDER, order_id, {"pending_cancel": True}, SOURCE_LOCAL, self.clock.tick())
            task = self._spawn(self._cancel_and_reconcile(order_id), f"cancel {order_id}")
            self._cancels[order_id] = task
            task.add_done_callback(lambda _t, oid=order_id: self._cancels.pop(oid, None))
        else:
            self.log.info(f"Cancel for {order_id} already in flight; joining it")
        return await asyncio.shield(task)

    async def _cancel_and_reconcile(self, order_id: str) -> Order:
        try:
            result = await self.adapter.cancel_order(order_id)
        except (AdapterTimeout, OrderSubmissionFailed):
            self._clear_flag(KIND_ORDER, order_id, "pending_cancel", False)
            raise
        except Exception as exc:
            self._clear_flag(KIND_ORDER, order_id, "pending_cancel", False)
            raise OrderSubmissionFailed(str(exc), operation="cancel") from exc

        sequence = self.clock.advance(result.confirmed_at)
        self.store.merge(
            KIND_ORDER,
            order_id,
            {"status": STATUS_CANCELED, "pending_cancel": False},
            SOURCE_CONFIRMATION,
            sequence,
        )
        self.log.info(f"Order {order_id} canceled (tx={result.tx_ref})")
        return self.store.get(KIND_ORDER, order_id)

    def _clear_flag(self, kind: str, key: str, name: str, value: Any) -> None:
        if self.store.get(kind, key) is None:
            return
        self.store.merge(kind, key, {name: value}, SOURCE_LOCAL, self.clock.tick())

    # ============================================================== leverage
    async def update_position_leverage(self, position_id: str, leverage: Any) -> Optional[Position]:
        """Change a position's leverage; returns the reconciled Position (None if not held locally)."""
        position_id = str(position_id)
        value = leverage if isinstance(leverage, Decimal) else parse_decimal(leverage)
        if value is None:
            raise ValueError("Leverage is required")
        if not self.adapter.leverage_in_bounds(value):
            raise ValueError(
                f"Leverage {value} outside [{self.adapter.min_leverage}, {self.adapter.max_leverage}]"
            )
        self._require_wallet()

        position: Optional[Position] = self.store.get(KIND_POSITION, position_id)
        if position is not None:
            if position.leverage == value and position.pending_leverage is None:
                self.log.info(f"Position {position_id} already at {value}x")
                return position
            self.store.merge(
                KIND_POSITION, position_id, {"pending_leverage": value}, SOURCE_LOCAL, self.clock.tick()
            )

        task = self._spawn(self._leverage_and_reconcile(position_id, value), f"leverage {position_id}")
        return await asyncio.shield(task)

    async def _leverage_and_reconcile(self, position_id: str, leverage: Decimal) -> Optional[Position]:
        try:
            result = await self.adapter.update_leverage(position_id, leverage)
        except (AdapterTimeout, OrderSubmissionFailed):
            self._clear_flag(KIND_POSITION, position_id, "pending_leverage", None)
            raise
        except Exception as exc:
            self._clear_flag(KIND_POSITION, position_id, "pending_leverage", None)
            raise OrderSubmissionFailed(str(exc), operation="update leverage") from exc

        if self.store.get(KIND_POSITION, position_id) is None:
            self.log.info(f"Leverage for {position_id} confirmed; position not held locally yet")
            return None
        sequence = self.clock.advance(result.confirmed_at)
        self.store.merge(
            KIND_POSITION,
            position_id,
            {"leverage": leverage, "pending_leverage": None},
            SOURCE_CONFIRMATION,
            sequence,
        )
        self.log.info(f"Position {position_id} leverage -> {leverage}x (tx={result.tx_ref})")
        return self.store.get(KIND_POSITION, position_id)
