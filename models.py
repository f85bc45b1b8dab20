#!/usr/bin/env python3
"""
Canonical data model.

Snapshots handed out by the state store are frozen dataclasses; patches
flowing into the store are plain dicts keyed by the dataclass field names.
Wire payloads (venue REST API and push channel) use camelCase keys and are
decoded here so both sources produce identical patches.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, fields
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Type

from numeric import parse_decimal

UNKNOWN = "unknown"

SIDE_BUY = "buy"
SIDE_SELL = "sell"
ORDER_SIDES = (SIDE_BUY, SIDE_SELL)

POSITION_LONG = "long"
POSITION_SHORT = "short"
POSITION_SIDES = (POSITION_LONG, POSITION_SHORT)

ORDER_TYPES = ("market", "limit", "stop", "stopLimit", "trailingStop")
# Types that rest on the book at a limit price.
PRICED_ORDER_TYPES = frozenset({"limit", "stopLimit"})
TRIGGERED_ORDER_TYPES = frozenset({"stop", "stopLimit"})

STATUS_OPEN = "open"
STATUS_FILLED = "filled"
STATUS_CANCELED = "canceled"
STATUS_EXPIRED = "expired"
STATUS_REJECTED = "rejected"
ORDER_STATUSES = (STATUS_OPEN, STATUS_FILLED, STATUS_CANCELED, STATUS_EXPIRED, STATUS_REJECTED)
TERMINAL_STATUSES = frozenset({STATUS_FILLED, STATUS_CANCELED, STATUS_EXPIRED, STATUS_REJECTED})

TIME_IN_FORCE = ("GTC", "IOC", "FOK", "GTD")

# Order id used when the chain confirmation did not reveal the assigned id.
PENDING_ORDER_ID = "pending"

KIND_MARKET = "market"
KIND_BALANCE = "balance"
KIND_POSITION = "position"
KIND_ORDER = "order"
KINDS = (KIND_MARKET, KIND_BALANCE, KIND_POSITION, KIND_ORDER)


def canonical_choice(value: Any, allowed: Tuple[str, ...]) -> str:
    """Map a raw enum string onto `allowed` case-insensitively; anything else is UNKNOWN."""
    raw = str(value or "").strip()
    for choice in allowed:
        if raw.lower() == choice.lower():
            return choice
    return UNKNOWN


def new_client_order_id() -> str:
    return uuid.uuid4().hex


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Market:
    symbol: str
    address: str = ""
    price_decimals: int = 8
    size_decimals: int = 18
    last_price: Optional[Decimal] = None
    funding_rate: Optional[Decimal] = None


@dataclass(frozen=True)
class Balance:
    token: str
    free: Decimal = Decimal(0)
    locked: Decimal = Decimal(0)
    total: Decimal = Decimal(0)


@dataclass(frozen=True)
class Position:
    id: str
    market: str = ""
    side: str = UNKNOWN
    size: Decimal = Decimal(0)
    leverage: Decimal = Decimal(1)
    entry_price: Optional[Decimal] = None
    liquidation_price: Optional[Decimal] = None
    margin: Optional[Decimal] = None
    pnl: Optional[Decimal] = None
    pnl_percentage: Optional[Decimal] = None
    pending_leverage: Optional[Decimal] = None


@dataclass(frozen=True)
class Order:
    id: str
    client_order_id: Optional[str] = None
    market: str = ""
    side: str = UNKNOWN
    type: str = UNKNOWN
    price: Optional[Decimal] = None
    amount: Optional[Decimal] = None
    filled: Decimal = Decimal(0)
    status: str = STATUS_OPEN
    timestamp: Optional[int] = None
    tx_ref: Optional[str] = None
    stop_price: Optional[Decimal] = None
    reduce_only: bool = False
    time_in_force: str = "GTC"
    leverage: Optional[Decimal] = None
    pending_cancel: bool = False


ENTITY_TYPES: Dict[str, Type[Any]] = {
    KIND_MARKET: Market,
    KIND_BALANCE: Balance,
    KIND_POSITION: Position,
    KIND_ORDER: Order,
}

KEY_FIELDS = {
    KIND_MARKET: "symbol",
    KIND_BALANCE: "token",
    KIND_POSITION: "id",
    KIND_ORDER: "id",
}


def entity_key(kind: str, entity: Any) -> str:
    return str(getattr(entity, KEY_FIELDS[kind]))


def to_patch(entity: Any) -> Dict[str, Any]:
    """Dataclass instance to a merge patch (None fields are left out)."""
    return {
        f.name: getattr(entity, f.name)
        for f in fields(entity)
        if getattr(entity, f.name) is not None
    }


def from_fields(kind: str, values: Mapping[str, Any]) -> Any:
    cls = ENTITY_TYPES[kind]
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in values.items() if k in names})


# ---------------------------------------------------------------------------
# Wire decoding
# ---------------------------------------------------------------------------

def _str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def _bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


def _order_side(value: Any) -> str:
    return canonical_choice(value, ORDER_SIDES)


def _position_side(value: Any) -> str:
    return canonical_choice(value, POSITION_SIDES)


def _order_type(value: Any) -> str:
    return canonical_choice(value, ORDER_TYPES)


def _order_status(value: Any) -> str:
    raw = str(value or "").strip().lower()
    if raw == "cancelled":
        raw = STATUS_CANCELED
    return canonical_choice(raw, ORDER_STATUSES)


def _tif(value: Any) -> str:
    return canonical_choice(value, TIME_IN_FORCE)


_Converter = Callable[[Any], Any]

_WIRE_FIELDS: Dict[str, Dict[str, Tuple[str, _Converter]]] = {
    KIND_MARKET: {
        "symbol": ("symbol", _str),
        "address": ("address", _str),
        "priceDecimals": ("price_decimals", _int),
        "sizeDecimals": ("size_decimals", _int),
        "lastPrice": ("last_price", parse_decimal),
        "fundingRate": ("funding_rate", parse_decimal),
    },
    KIND_BALANCE: {
        "token": ("token", _str),
        "free": ("free", parse_decimal),
        "locked": ("locked", parse_decimal),
        "total": ("total", parse_decimal),
    },
    KIND_POSITION: {
        "id": ("id", _str),
        "market": ("market", _str),
        "side": ("side", _position_side),
        "size": ("size", parse_decimal),
        "leverage": ("leverage", parse_decimal),
        "entryPrice": ("entry_price", parse_decimal),
        "liquidationPrice": ("liquidation_price", parse_decimal),
        "margin": ("margin", parse_decimal),
        "pnl": ("pnl", parse_decimal),
        "pnlPercentage": ("pnl_percentage", parse_decimal),
    },
    KIND_ORDER: {
        "id": ("id", _str),
        "clientOrderId": ("client_order_id", _str),
        "market": ("market", _str),
        "side": ("side", _order_side),
        "type": ("type", _order_type),
        "price": ("price", parse_decimal),
        "amount": ("amount", parse_decimal),
        "filled": ("filled", parse_decimal),
        "status": ("status", _order_status),
        "timestamp": ("timestamp", _int),
        "txHash": ("tx_ref", _str),
        "stopPrice": ("stop_price", parse_decimal),
        "reduceOnly": ("reduce_only", _bool),
        "timeInForce": ("time_in_force", _tif),
        "leverage": ("leverage", parse_decimal),
    },
}


def from_wire(kind: str, data: Mapping[str, Any]) -> Dict[str, Any]:
    """Decode a camelCase wire object into a merge patch.

    snake_case field names are accepted too. Unknown keys are dropped.
    Raises ValueError when a numeric field cannot be parsed.
    """
    table = _WIRE_FIELDS[kind]
    by_field = {target: (target, conv) for target, conv in table.values()}
    patch: Dict[str, Any] = {}
    for key, value in data.items():
        entry = table.get(key) or by_field.get(key)
        if entry is None:
            continue
        target, conv = entry
        try:
            patch[target] = conv(value)
        except (TypeError, ValueError, ArithmeticError) as exc:
            raise ValueError(f"Bad {kind}.{key} value {value!r}: {exc}") from exc
    return patch


# ---------------------------------------------------------------------------
# Write-side value objects
# ---------------------------------------------------------------------------

@dataclass
class OrderRequest:
    """Order submission request in canonical form."""
    market: str
    side: str
    type: str
    amount: Decimal
    price: Optional[Decimal] = None
    leverage: Decimal = Decimal(1)
    reduce_only: bool = False
    time_in_force: str = "GTC"
    stop_price: Optional[Decimal] = None
    client_order_id: str = field(default_factory=new_client_order_id)

    def __post_init__(self) -> None:
        if self.side not in ORDER_SIDES:
            raise ValueError(f"Invalid side {self.side!r}; expected one of {ORDER_SIDES}")
        if self.type not in ORDER_TYPES:
            raise ValueError(f"Invalid order type {self.type!r}; expected one of {ORDER_TYPES}")
        if self.time_in_force not in TIME_IN_FORCE:
            raise ValueError(f"Invalid timeInForce {self.time_in_force!r}; expected one of {TIME_IN_FORCE}")
        if self.amount is None or self.amount <= 0:
            raise ValueError(f"Order amount must be positive, got {self.amount}")
        if self.type in PRICED_ORDER_TYPES and (self.price is None or self.price <= 0):
            raise ValueError(f"{self.type} orders need a positive price")
        if self.type in TRIGGERED_ORDER_TYPES and (self.stop_price is None or self.stop_price <= 0):
            raise ValueError(f"{self.type} orders need a positive stopPrice")
        if self.leverage <= 0:
            raise ValueError(f"Leverage must be positive, got {self.leverage}")

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> "OrderRequest":
        """Build from the public request shape (camelCase or snake_case keys)."""
        def get(*names: str, default: Any = None) -> Any:
            for name in names:
                if name in params and params[name] is not None:
                    return params[name]
            return default

        amount = parse_decimal(get("amount"))
        if amount is None:
            raise ValueError("Order amount is required")
        return cls(
            market=str(get("market", default="")),
            side=str(get("side", default="")),
            type=str(get("type", "order_type", default="")),
            amount=amount,
            price=parse_decimal(get("price")),
            leverage=parse_decimal(get("leverage", default=1)),
            reduce_only=_bool(get("reduceOnly", "reduce_only", default=False)),
            time_in_force=str(get("timeInForce", "time_in_force", default="GTC")),
            stop_price=parse_decimal(get("stopPrice", "stop_price")),
            client_order_id=str(get("clientOrderId", "client_order_id", default="") or new_client_order_id()),
        )

    def optimistic_patch(self, timestamp: int) -> Dict[str, Any]:
        """Fields of the local order record inserted before the chain confirms."""
        patch = {
            "id": PENDING_ORDER_ID,
            "client_order_id": self.client_order_id,
            "market": self.market,
            "side": self.side,
            "type": self.type,
            "price": self.price,
            "amount": self.amount,
            "filled": Decimal(0),
            "status": STATUS_OPEN,
            "timestamp": timestamp,
            "stop_price": self.stop_price,
            "reduce_only": self.reduce_only,
            "time_in_force": self.time_in_force,
            "leverage": self.leverage,
        }
        return {k: v for k, v in patch.items() if v is not None}


@dataclass(frozen=True)
class SubmitResult:
    """Outcome of a confirmed order submission."""
    order_id: str
    tx_ref: Optional[str]
    confirmed_at: int

    @property
    def is_pending(self) -> bool:
        return self.order_id == PENDING_ORDER_ID


@dataclass(frozen=True)
class WriteResult:
    """Outcome of a confirmed cancel / leverage update."""
    success: bool
    tx_ref: Optional[str] = None
    confirmed_at: int = 0
    target_id: str = ""
    error: str = ""
