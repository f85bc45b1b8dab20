#!/usr/bin/env python3
"""EVM chain adapter (exchange / margin / vault contracts).

All contract I/O goes through an injected transport with this surface:

    async call(contract, method, *args) -> decoded return value
    async transact(contract, method, *args) -> tx hash (signed by the wallet)
    async wait_for_receipt(tx_hash) -> {"status": 0|1, "logs": [...]}
    decode_log(contract, log) -> {"event": name, "args": {...}} | None

Structs may come back as mappings or attribute objects.
"""

from __future__ import annotations

import asyncio
import logging
from decimal import ROUND_DOWN, Decimal
from typing import Any, Dict, List, Optional

from errors import OrderSubmissionFailed
from logging_utils import short_ref
from models import (
    KIND_MARKET,
    PENDING_ORDER_ID,
    Balance,
    Market,
    Order,
    OrderRequest,
    Position,
    SubmitResult,
    WriteResult,
    from_fields,
    from_wire,
    now_ms,
)
from networks import FAMILY_EVM, NetworkConfig
from numeric import (
    from_canonical,
    leverage_from_bps,
    leverage_to_bps,
    percent_from_bps,
    to_canonical,
)

from .base import ChainAdapter, raw_field
from .codes import CodeTable

DEFAULT_PRICE_DECIMALS = 8
DEFAULT_SIZE_DECIMALS = 18
DEFAULT_TOKEN_DECIMALS = 18

ORDER_CREATED_EVENT = "OrderCreated"

EVM_SIDES = CodeTable("side", {0: "buy", 1: "sell"})
EVM_POSITION_SIDES = CodeTable("position side", {0: "long", 1: "short"})
EVM_ORDER_TYPES = CodeTable(
    "order type",
    {0: "market", 1: "limit", 2: "stop", 3: "stopLimit", 4: "trailingStop"},
    default="limit",
)
EVM_ORDER_STATUSES = CodeTable(
    "order status",
    {0: "open", 1: "filled", 2: "canceled", 3: "expired", 4: "rejected"},
)
EVM_TIME_IN_FORCE = CodeTable("time in force", {0: "GTC", 1: "IOC", 2: "FOK", 3: "GTD"}, default="GTC")


class EvmAdapter(ChainAdapter):
    """Adapter for EVM deployments (ethereum, arbitrum, optimism, bnb)."""

    family = FAMILY_EVM

    def __init__(
        self,
        log: logging.Logger,
        network: NetworkConfig,
        transport: Any,
        api: Optional[Any] = None,
        *,
        token_decimals: Optional[Dict[str, int]] = None,
        default_token_decimals: int = DEFAULT_TOKEN_DECIMALS,
        **kwargs: Any,
    ):
        super().__init__(log, network, **kwargs)
        self.transport = transport
        self.api = api
        self._token_decimals = {str(k).lower(): int(v) for k, v in (token_decimals or {}).items()}
        self._default_token_decimals = int(default_token_decimals)

    def _decimals_for_token(self, token: Any) -> int:
        return self._token_decimals.get(str(token).lower(), self._default_token_decimals)

    def _market_decimals(self, ref: Any) -> tuple:
        market = self.lookup_market(ref)
        if market is None:
            return str(ref), DEFAULT_PRICE_DECIMALS, DEFAULT_SIZE_DECIMALS
        return market.symbol, market.price_decimals, market.size_decimals

    async def _call(self, role: str, method: str, *args: Any) -> Any:
        contract = self.network.contract(role)
        return await self._transport_call(f"{method}", self.transport.call(contract, method, *args))

    async def _send(self, role: str, method: str, *args: Any) -> str:
        contract = self.network.contract(role)
        tx_hash = await self._transport_call(f"{method}", self.transport.transact(contract, method, *args))
        self.log.info(f"{self.name} {method} sent tx={short_ref(tx_hash)}")
        return str(tx_hash)

    async def _confirm(self, method: str, tx_hash: str, operation: str) -> Any:
        receipt = await self._await_confirmation(method, self.transport.wait_for_receipt(tx_hash), tx_hash)
        status = raw_field(receipt, "status", default=1)
        if status is not None and int(status) == 0:
            raise OrderSubmissionFailed(f"transaction {tx_hash} reverted", operation=operation, tx_ref=tx_hash)
        return receipt

    # ================================================================= reads
    async def fetch_markets(self) -> List[Market]:
        if self.api is not None:
            rows = await self.api.get_markets(self.network.name)
        else:
            rows = await self._call("exchange", "getMarkets")
        markets: List[Market] = []
        for row in rows or []:
            patch = from_wire(KIND_MARKET, row if isinstance(row, dict) else {
                "symbol": raw_field(row, "symbol"),
                "address": raw_field(row, "address", default=""),
                "priceDecimals": raw_field(row, "priceDecimals", default=DEFAULT_PRICE_DECIMALS),
                "sizeDecimals": raw_field(row, "sizeDecimals", default=DEFAULT_SIZE_DECIMALS),
            })
            if not patch.get("symbol"):
                continue
            markets.append(from_fields(KIND_MARKET, patch))
        self.remember_markets(markets)
        return markets

    async def fetch_balances(self, owner: Optional[str]) -> List[Balance]:
        if not owner:
            return []
        tokens = await self._call("vault", "getUserTokens", owner)

        async def _one(token: Any) -> Balance:
            raw = await self._call("vault", "getBalance", owner, token)
            decimals = self._decimals_for_token(token)
            return Balance(
                token=str(token),
                free=to_canonical(raw_field(raw, "free"), decimals),
                locked=to_canonical(raw_field(raw, "locked"), decimals),
                total=to_canonical(raw_field(raw, "total"), decimals),
            )

        return list(await asyncio.gather(*(_one(t) for t in tokens or [])))

    async def fetch_positions(self, owner: Optional[str]) -> List[Position]:
        if not owner:
            return []
        rows = await self._call("margin", "getUserPositions", owner)
        quote = self._default_token_decimals
        positions: List[Position] = []
        for row in rows or []:
            symbol, price_dec, size_dec = self._market_decimals(raw_field(row, "market"))
            positions.append(
                Position(
                    id=str(raw_field(row, "id")),
                    market=symbol,
                    side=EVM_POSITION_SIDES.decode(raw_field(row, "side")),
                    size=to_canonical(raw_field(row, "size"), size_dec),
                    leverage=leverage_from_bps(raw_field(row, "leverage")),
                    entry_price=to_canonical(raw_field(row, "entryPrice"), price_dec),
                    liquidation_price=to_canonical(raw_field(row, "liquidationPrice"), price_dec),
                    margin=to_canonical(raw_field(row, "margin"), quote),
                    pnl=to_canonical(raw_field(row, "unrealizedPnl"), quote),
                    pnl_percentage=percent_from_bps(raw_field(row, "unrealizedPnlPercentage", default=0)),
                )
            )
        return positions

    async def fetch_open_orders(self, owner: Optional[str]) -> List[Order]:
        if not owner:
            return []
        rows = await self._call("exchange", "getUserOrders", owner)
        orders: List[Order] = []
        for row in rows or []:
            symbol, price_dec, size_dec = self._market_decimals(raw_field(row, "market"))
            client_order_id = raw_field(row, "clientOrderId", default=None)
            stop_raw = raw_field(row, "stopPrice", default=0)
            orders.append(
                Order(
                    id=str(raw_field(row, "id")),
                    client_order_id=str(client_order_id) if client_order_id else None,
                    market=symbol,
                    side=EVM_SIDES.decode(raw_field(row, "side")),
                    type=EVM_ORDER_TYPES.decode(raw_field(row, "orderType")),
                    price=to_canonical(raw_field(row, "price"), price_dec),
                    amount=to_canonical(raw_field(row, "amount"), size_dec),
                    filled=to_canonical(raw_field(row, "filled", default=0), size_dec),
                    status=EVM_ORDER_STATUSES.decode(raw_field(row, "status")),
                    # Contracts stamp seconds.
                    timestamp=int(raw_field(row, "timestamp", default=0)) * 1000,
                    stop_price=to_canonical(stop_raw, price_dec) if int(stop_raw or 0) else None,
                    reduce_only=bool(raw_field(row, "reduceOnly", default=False)),
                    time_in_force=EVM_TIME_IN_FORCE.decode(raw_field(row, "timeInForce", default=0)),
                )
            )
        return orders

    # ================================================================ writes
    def build_order_params(self, request: OrderRequest, market: Market) -> Dict[str, Any]:
        """Contract argument struct for createOrder."""
        return {
            "market": market.address or market.symbol,
            "side": EVM_SIDES.encode(request.side),
            "orderType": EVM_ORDER_TYPES.encode(request.type),
            "price": from_canonical(request.price or 0, market.price_decimals),
            "amount": from_canonical(request.amount, market.size_decimals, rounding=ROUND_DOWN),
            "leverage": leverage_to_bps(request.leverage),
            "reduceOnly": bool(request.reduce_only),
            "timeInForce": EVM_TIME_IN_FORCE.encode(request.time_in_force),
            "stopPrice": from_canonical(request.stop_price, market.price_decimals) if request.stop_price else 0,
            "clientOrderId": request.client_order_id,
        }

    def extract_order_id(self, receipt: Any) -> Optional[str]:
        """Find the OrderCreated event among the receipt logs."""
        exchange = self.network.contract("exchange")
        for entry in raw_field(receipt, "logs", default=None) or []:
            try:
                event = self.transport.decode_log(exchange, entry)
            except Exception as exc:
                # Logs emitted by other contracts do not decode against the exchange ABI.
                self.log.debug(f"{self.name} skipping undecodable log: {exc}")
                continue
            if not event:
                continue
            if raw_field(event, "event", "name", default=None) != ORDER_CREATED_EVENT:
                continue
            args = raw_field(event, "args", default={})
            order_id = raw_field(args, "orderId", default=None)
            if order_id is not None:
                return str(order_id)
        return None

    async def submit_order(self, request: OrderRequest, market: Market) -> SubmitResult:
        try:
            params = self.build_order_params(request, market)
        except ValueError as exc:
            raise OrderSubmissionFailed(str(exc)) from exc
        tx_hash = await self._send("exchange", "createOrder", params)
        receipt = await self._confirm("createOrder", tx_hash, "create")
        order_id = self.extract_order_id(receipt)
        if order_id is None:
            self.log.warning(
                f"{self.name} createOrder {tx_hash}: no {ORDER_CREATED_EVENT} event; "
                f"order {request.client_order_id} stays pending"
            )
            order_id = PENDING_ORDER_ID
        return SubmitResult(order_id=order_id, tx_ref=tx_hash, confirmed_at=now_ms())

    async def cancel_order(self, order_id: str) -> WriteResult:
        tx_hash = await self._send("exchange", "cancelOrder", order_id)
        await self._confirm("cancelOrder", tx_hash, "cancel")
        return WriteResult(success=True, tx_ref=tx_hash, confirmed_at=now_ms(), target_id=str(order_id))

    async def update_leverage(self, position_id: str, leverage: Decimal) -> WriteResult:
        bps = leverage_to_bps(leverage)
        tx_hash = await self._send("margin", "updatePositionLeverage", position_id, bps)
        await self._confirm("updatePositionLeverage", tx_hash, "update leverage")
        return WriteResult(success=True, tx_ref=tx_hash, confirmed_at=now_ms(), target_id=str(position_id))

    async def close(self) -> None:
        if self.api is not None:
            await self.api.close()
        closer = getattr(self.transport, "close", None)
        if closer is not None:
            result = closer()
            if asyncio.iscoroutine(result):
                await result
