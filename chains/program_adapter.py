#!/usr/bin/env python3
"""Program-chain (solana-style) adapter.

Program accounts are read through an injected transport:

    async get_accounts(program_id, account_type, owner=None) -> [decoded account dicts]
    async send_instruction(program_id, instruction, args) -> signature
    async confirm_transaction(signature, commitment) -> {"err", "slot", "logMessages"}

Each decoded account carries its own `pubkey`. Enum fields arrive either as
variant names ("Bid") or single-key objects ({"bid": {}}).
"""

from __future__ import annotations

import asyncio
import logging
import re
from decimal import ROUND_DOWN, Decimal
from typing import Any, Dict, List, Optional

from errors import OrderSubmissionFailed
from logging_utils import short_ref
from models import (
    PENDING_ORDER_ID,
    Balance,
    Market,
    Order,
    OrderRequest,
    Position,
    SubmitResult,
    WriteResult,
    now_ms,
)
from networks import FAMILY_PROGRAM, NetworkConfig
from numeric import (
    from_canonical,
    leverage_from_bps,
    leverage_to_bps,
    percent_from_bps,
    to_canonical,
)

from .base import ChainAdapter, raw_field
from .codes import CodeTable

COMMITMENTS = ("processed", "confirmed", "finalized")
DEFAULT_COMMITMENT = "confirmed"
DEFAULT_QUOTE_DECIMALS = 6
DEFAULT_PRICE_DECIMALS = 6
DEFAULT_SIZE_DECIMALS = 9

ORDER_CREATED_LOG = re.compile(r"Program log: OrderCreated order_id=(\S+)")

PROGRAM_SIDES = CodeTable("side", {"Bid": "buy", "Ask": "sell"})
PROGRAM_POSITION_SIDES = CodeTable("position side", {"Long": "long", "Short": "short"})
PROGRAM_ORDER_TYPES = CodeTable(
    "order type",
    {
        "Market": "market",
        "Limit": "limit",
        "StopMarket": "stop",
        "StopLimit": "stopLimit",
        "TrailingStop": "trailingStop",
    },
    default="limit",
)
PROGRAM_ORDER_STATUSES = CodeTable(
    "order status",
    {
        "Open": "open",
        "Filled": "filled",
        "Cancelled": "canceled",
        "Expired": "expired",
        "Rejected": "rejected",
    },
)
PROGRAM_TIME_IN_FORCE = CodeTable(
    "time in force",
    {
        "GoodTillCancelled": "GTC",
        "ImmediateOrCancel": "IOC",
        "FillOrKill": "FOK",
        "GoodTillDate": "GTD",
    },
    default="GTC",
)


def variant_name(raw: Any) -> Any:
    """{"stopMarket": {}} -> "StopMarket"; plain names pass through."""
    if isinstance(raw, dict) and len(raw) == 1:
        name = str(next(iter(raw)))
        return name[:1].upper() + name[1:]
    return raw


class ProgramChainAdapter(ChainAdapter):
    """Adapter for program-based chains (solana)."""

    family = FAMILY_PROGRAM

    def __init__(
        self,
        log: logging.Logger,
        network: NetworkConfig,
        transport: Any,
        *,
        commitment: str = DEFAULT_COMMITMENT,
        quote_decimals: int = DEFAULT_QUOTE_DECIMALS,
        **kwargs: Any,
    ):
        super().__init__(log, network, **kwargs)
        if commitment not in COMMITMENTS:
            raise ValueError(f"Unsupported commitment {commitment!r}; expected one of {COMMITMENTS}")
        self.transport = transport
        self.commitment = commitment
        self.quote_decimals = int(quote_decimals)

    async def _accounts(self, role: str, account_type: str, owner: Optional[str] = None) -> List[Any]:
        program_id = self.network.contract(role)
        rows = await self._transport_call(
            f"get {account_type} accounts",
            self.transport.get_accounts(program_id, account_type, owner),
        )
        return list(rows or [])

    async def _execute(self, role: str, instruction: str, args: Dict[str, Any], operation: str) -> Any:
        """Send an instruction and wait for the configured commitment level."""
        program_id = self.network.contract(role)
        signature = await self._transport_call(
            instruction, self.transport.send_instruction(program_id, instruction, args)
        )
        signature = str(signature)
        self.log.info(f"{self.name} {instruction} sent sig={short_ref(signature)}")
        status = await self._await_confirmation(
            instruction,
            self.transport.confirm_transaction(signature, self.commitment),
            signature,
        )
        err = raw_field(status, "err", default=None)
        if err:
            raise OrderSubmissionFailed(
                f"transaction {signature} failed: {err}", operation=operation, tx_ref=signature
            )
        return signature, status

    def _market_decimals(self, ref: Any) -> tuple:
        market = self.lookup_market(ref)
        if market is None:
            return str(ref), DEFAULT_PRICE_DECIMALS, DEFAULT_SIZE_DECIMALS
        return market.symbol, market.price_decimals, market.size_decimals

    # ================================================================= reads
    async def fetch_markets(self) -> List[Market]:
        markets: List[Market] = []
        for acc in await self._accounts("exchange", "Market"):
            symbol = raw_field(acc, "symbol", default="")
            if not symbol:
                continue
            price_dec = int(raw_field(acc, "priceDecimals", default=DEFAULT_PRICE_DECIMALS))
            last_raw = raw_field(acc, "lastPrice", default=None)
            funding_raw = raw_field(acc, "fundingRateBps", default=None)
            markets.append(
                Market(
                    symbol=str(symbol),
                    address=str(raw_field(acc, "pubkey", default="")),
                    price_decimals=price_dec,
                    size_decimals=int(raw_field(acc, "sizeDecimals", default=DEFAULT_SIZE_DECIMALS)),
                    last_price=to_canonical(last_raw, price_dec) if last_raw is not None else None,
                    funding_rate=percent_from_bps(funding_raw) if funding_raw is not None else None,
                )
            )
        self.remember_markets(markets)
        return markets

    async def fetch_balances(self, owner: Optional[str]) -> List[Balance]:
        if not owner:
            return []
        balances: List[Balance] = []
        for acc in await self._accounts("vault", "UserBalance", owner):
            decimals = int(raw_field(acc, "decimals"))
            free = to_canonical(raw_field(acc, "free"), decimals)
            locked = to_canonical(raw_field(acc, "locked", default=0), decimals)
            balances.append(
                Balance(
                    token=str(raw_field(acc, "mint", "token")),
                    free=free,
                    locked=locked,
                    total=free + locked,
                )
            )
        return balances

    async def fetch_positions(self, owner: Optional[str]) -> List[Position]:
        if not owner:
            return []
        positions: List[Position] = []
        for acc in await self._accounts("margin", "Position", owner):
            symbol, price_dec, size_dec = self._market_decimals(raw_field(acc, "market"))
            positions.append(
                Position(
                    id=str(raw_field(acc, "pubkey")),
                    market=symbol,
                    side=PROGRAM_POSITION_SIDES.decode(variant_name(raw_field(acc, "side"))),
                    size=to_canonical(raw_field(acc, "size"), size_dec),
                    leverage=leverage_from_bps(raw_field(acc, "leverageBps")),
                    entry_price=to_canonical(raw_field(acc, "entryPrice"), price_dec),
                    liquidation_price=to_canonical(raw_field(acc, "liquidationPrice"), price_dec),
                    margin=to_canonical(raw_field(acc, "margin"), self.quote_decimals),
                    pnl=to_canonical(raw_field(acc, "unrealizedPnl", default=0), self.quote_decimals),
                    pnl_percentage=percent_from_bps(raw_field(acc, "unrealizedPnlBps", default=0)),
                )
            )
        return positions

    async def fetch_open_orders(self, owner: Optional[str]) -> List[Order]:
        if not owner:
            return []
        orders: List[Order] = []
        for acc in await self._accounts("exchange", "Order", owner):
            symbol, price_dec, size_dec = self._market_decimals(raw_field(acc, "market"))
            client_order_id = raw_field(acc, "clientOrderId", default=None)
            stop_raw = raw_field(acc, "stopPrice", default=None)
            orders.append(
                Order(
                    id=str(raw_field(acc, "orderId", "pubkey")),
                    client_order_id=str(client_order_id) if client_order_id else None,
                    market=symbol,
                    side=PROGRAM_SIDES.decode(variant_name(raw_field(acc, "side"))),
                    type=PROGRAM_ORDER_TYPES.decode(variant_name(raw_field(acc, "orderType"))),
                    price=to_canonical(raw_field(acc, "price"), price_dec),
                    amount=to_canonical(raw_field(acc, "amount"), size_dec),
                    filled=to_canonical(raw_field(acc, "filled", default=0), size_dec),
                    status=PROGRAM_ORDER_STATUSES.decode(variant_name(raw_field(acc, "status"))),
                    # Unix seconds on chain.
                    timestamp=int(raw_field(acc, "createdAt", default=0)) * 1000,
                    stop_price=to_canonical(stop_raw, price_dec) if stop_raw else None,
                    reduce_only=bool(raw_field(acc, "reduceOnly", default=False)),
                    time_in_force=PROGRAM_TIME_IN_FORCE.decode(
                        variant_name(raw_field(acc, "timeInForce", default="GoodTillCancelled"))
                    ),
                )
            )
        return orders

    # ================================================================ writes
    def build_order_args(self, request: OrderRequest, market: Market) -> Dict[str, Any]:
        return {
            "market": market.address or market.symbol,
            "side": PROGRAM_SIDES.encode(request.side),
            "orderType": PROGRAM_ORDER_TYPES.encode(request.type),
            "price": from_canonical(request.price or 0, market.price_decimals),
            "amount": from_canonical(request.amount, market.size_decimals, rounding=ROUND_DOWN),
            "leverageBps": leverage_to_bps(request.leverage),
            "reduceOnly": bool(request.reduce_only),
            "timeInForce": PROGRAM_TIME_IN_FORCE.encode(request.time_in_force),
            "stopPrice": from_canonical(request.stop_price, market.price_decimals) if request.stop_price else None,
            "clientOrderId": request.client_order_id,
        }

    @staticmethod
    def extract_order_id(status: Any) -> Optional[str]:
        for line in raw_field(status, "logMessages", "logs", default=None) or []:
            match = ORDER_CREATED_LOG.search(str(line))
            if match:
                return match.group(1)
        return None

    async def submit_order(self, request: OrderRequest, market: Market) -> SubmitResult:
        try:
            args = self.build_order_args(request, market)
        except ValueError as exc:
            raise OrderSubmissionFailed(str(exc)) from exc
        signature, status = await self._execute("exchange", "place_order", args, "create")
        order_id = self.extract_order_id(status) if status is not None else None
        if order_id is None:
            self.log.warning(
                f"{self.name} place_order {signature}: no OrderCreated log; "
                f"order {request.client_order_id} stays pending"
            )
            order_id = PENDING_ORDER_ID
        return SubmitResult(order_id=order_id, tx_ref=signature, confirmed_at=now_ms())

    async def cancel_order(self, order_id: str) -> WriteResult:
        signature, _ = await self._execute("exchange", "cancel_order", {"orderId": order_id}, "cancel")
        return WriteResult(success=True, tx_ref=signature, confirmed_at=now_ms(), target_id=str(order_id))

    async def update_leverage(self, position_id: str, leverage: Decimal) -> WriteResult:
        args = {"position": position_id, "leverageBps": leverage_to_bps(leverage)}
        signature, _ = await self._execute("margin", "update_leverage", args, "update leverage")
        return WriteResult(success=True, tx_ref=signature, confirmed_at=now_ms(), target_id=str(position_id))

    async def close(self) -> None:
        closer = getattr(self.transport, "close", None)
        if closer is not None:
            result = closer()
            if asyncio.iscoroutine(result):
                await result
