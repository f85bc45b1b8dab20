#!/usr/bin/env python3
"""
Canonical state store with sequenced merge.

Four keyed maps (markets, balances, positions, orders). Every write goes
through `merge`, which decides field by field whether the incoming value is
newer than what is stored:

- each field carries a clock `(sequence, source_rank)` of the write that set it
- an incoming field is accepted when its clock is >= the stored clock
- source ranks: local < push < fetch < confirmation (ties go to the higher rank)
- kind invariants run after the clock filter; violating fields keep their
  previous value and a DataIntegrityWarning is logged and recorded

Listeners only hear about real changes. Re-sending identical state is silent.
"""

from __future__ import annotations

import asyncio
import inspect
import threading
from collections import deque
from dataclasses import dataclass, fields
from decimal import Decimal
from functools import partial
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple

from errors import DataIntegrityWarning
from logging_utils import get_logger
from models import (
    ENTITY_TYPES,
    KEY_FIELDS,
    KIND_BALANCE,
    KIND_MARKET,
    KIND_ORDER,
    KIND_POSITION,
    KINDS,
    PENDING_ORDER_ID,
    POSITION_LONG,
    POSITION_SHORT,
    TERMINAL_STATUSES,
    UNKNOWN,
    Balance,
    Market,
    Order,
    Position,
    entity_key,
    from_fields,
    now_ms,
    to_patch,
)

SOURCE_LOCAL = "local"
SOURCE_PUSH = "push"
SOURCE_FETCH = "fetch"
SOURCE_CONFIRMATION = "confirmation"

SOURCE_RANKS = {
    SOURCE_LOCAL: 0,
    SOURCE_PUSH: 1,
    SOURCE_FETCH: 2,
    SOURCE_CONFIRMATION: 3,
}

DEFAULT_POSITION_RETENTION_MS = 60_000
MAX_RECORDED_WARNINGS = 500

# Flags owned by the order controller; chain snapshots never carry them.
CLIENT_ONLY_FIELDS = frozenset({"pending_cancel", "pending_leverage"})

Clock = Tuple[int, int]
Listener = Callable[[str, str, Any, Tuple[str, ...]], Any]

_ZERO = Decimal(0)


class SequenceClock:
    """Monotonic hybrid clock shared by every producer.

    `advance(t)` returns max(t, last + 1), so stamps follow wall time when it
    moves forward and stay strictly increasing when it does not.
    """

    def __init__(self, time_fn: Callable[[], int] = now_ms):
        self._time_fn = time_fn
        self._last = 0
        self._lock = threading.Lock()

    @property
    def last(self) -> int:
        return self._last

    def advance(self, observed_ms: int) -> int:
        with self._lock:
            value = max(int(observed_ms), self._last + 1)
            self._last = value
            return value

    def tick(self) -> int:
        return self.advance(self._time_fn())


@dataclass(frozen=True)
class MergeResult:
    kind: str
    key: str
    accepted: bool
    changed: Tuple[str, ...] = ()
    rejected: Tuple[str, ...] = ()


class _Record:
    __slots__ = ("values", "clocks", "last_ref_ms")

    def __init__(self, values: Optional[Dict[str, Any]] = None):
        self.values: Dict[str, Any] = dict(values or {})
        self.clocks: Dict[str, Clock] = {}
        self.last_ref_ms = 0

    @property
    def sequence(self) -> int:
        return max((c[0] for c in self.clocks.values()), default=0)


class StateStore:
    """In-memory canonical view of markets, balances, positions and orders."""

    def __init__(
        self,
        *,
        min_leverage: Any = 1,
        max_leverage: Any = 50,
        position_retention_ms: int = DEFAULT_POSITION_RETENTION_MS,
        time_fn: Callable[[], int] = now_ms,
        log=None,
    ):
        self.log = log or get_logger("state_store")
        self.min_leverage = Decimal(str(min_leverage))
        self.max_leverage = Decimal(str(max_leverage))
        self.position_retention_ms = int(position_retention_ms)
        self._time_fn = time_fn
        self._maps: Dict[str, Dict[str, _Record]] = {kind: {} for kind in KINDS}
        self._fields = {kind: {f.name for f in fields(cls)} for kind, cls in ENTITY_TYPES.items()}
        self._client_index: Dict[str, str] = {}
        self._locks: Dict[Tuple[str, str], threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._listeners: List[Listener] = []
        self._listener_tasks: Set["asyncio.Future[Any]"] = set()
        self.integrity_warnings: Deque[DataIntegrityWarning] = deque(maxlen=MAX_RECORDED_WARNINGS)

    # ------------------------------------------------------------ listeners
    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register listener(kind, key, snapshot_or_None, changed_fields); returns an unsubscribe."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, kind: str, key: str, snapshot: Any, changed: Tuple[str, ...]) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(kind, key, snapshot, changed)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._listener_tasks.add(task)
                    task.add_done_callback(partial(self._on_listener_done, f"{kind}:{key}"))
            except Exception as exc:
                self.log.error(f"Store listener failed for {kind}:{key}: {exc}")

    def _on_listener_done(self, label: str, task: "asyncio.Future[Any]") -> None:
        self._listener_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.log.error(f"Async store listener failed for {label}: {exc}")

    # ---------------------------------------------------------------- locks
    def _lock_for(self, kind: str, key: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get((kind, key))
            if lock is None:
                lock = threading.RLock()
                self._locks[(kind, key)] = lock
            return lock

    @staticmethod
    def _check_kind(kind: str) -> None:
        if kind not in ENTITY_TYPES:
            raise ValueError(f"Unknown entity kind {kind!r}")

    @staticmethod
    def _rank(source: str) -> int:
        try:
            return SOURCE_RANKS[source]
        except KeyError:
            raise ValueError(f"Unknown merge source {source!r}") from None

    def _warn(self, kind: str, key: str, message: str) -> None:
        warning = DataIntegrityWarning(kind, key, message)
        self.integrity_warnings.append(warning)
        self.log.warning(f"Data integrity: {warning}")

    def _snapshot(self, kind: str, rec: Optional[_Record]) -> Any:
        if rec is None:
            return None
        return from_fields(kind, rec.values)

    # ---------------------------------------------------------------- merge
    def merge(
        self,
        kind: str,
        key: str,
        patch: Dict[str, Any],
        source: str,
        sequence: int,
    ) -> MergeResult:
        """Merge a partial update into the record at (kind, key)."""
        self._check_kind(kind)
        key = str(key or "")
        if not key:
            raise ValueError(f"{kind} merge needs a key")
        clock = (int(sequence), self._rank(source))

        if kind == KIND_ORDER:
            adopted = self._adopt_pending_order(key, patch)
            if adopted is not None:
                self.log.info(f"Order {adopted} confirmed as {key} ({source})")

        events: List[Tuple[str, str, Any, Tuple[str, ...]]] = []
        with self._lock_for(kind, key):
            table = self._maps[kind]
            rec = table.get(key)
            created = rec is None
            if rec is None:
                rec = _Record({KEY_FIELDS[kind]: key})
            accepted, changed, rejected = self._apply(kind, key, rec, patch, clock)
            rec.last_ref_ms = self._time_fn()
            if created and accepted:
                table[key] = rec
                changed = tuple(sorted(set(changed) | {KEY_FIELDS[kind]}))
            if kind == KIND_ORDER and table.get(key) is rec:
                self._index_client_id(key, rec)
            if changed and table.get(key) is rec:
                events.append((kind, key, self._snapshot(kind, rec), changed))

        for event in events:
            self._notify(*event)
        if kind == KIND_POSITION:
            self.prune_positions()
        if rejected:
            self.log.debug(f"{kind}:{key} {source}@{sequence} rejected fields {rejected}")
        return MergeResult(kind, key, bool(accepted), changed, rejected)

    def _apply(
        self,
        kind: str,
        key: str,
        rec: _Record,
        patch: Dict[str, Any],
        clock: Clock,
    ) -> Tuple[List[str], Tuple[str, ...], Tuple[str, ...]]:
        allowed = self._fields[kind]
        key_field = KEY_FIELDS[kind]
        candidate: Dict[str, Any] = {}
        rejected: List[str] = []
        for name, value in (patch or {}).items():
            if name not in allowed:
                continue
            if name == key_field and kind != KIND_ORDER:
                continue
            stored = rec.clocks.get(name)
            if stored is not None and clock < stored:
                rejected.append(name)
                continue
            # A decoder that could not map an enum never erases a known value.
            if value == UNKNOWN and rec.values.get(name) not in (None, UNKNOWN):
                rejected.append(name)
                continue
            candidate[name] = value

        checker = getattr(self, f"_check_{kind}")
        candidate, invalid = checker(key, rec.values, candidate)
        rejected.extend(invalid)

        changed: List[str] = []
        for name, value in candidate.items():
            rec.clocks[name] = clock
            if rec.values.get(name) != value or name not in rec.values:
                rec.values[name] = value
                changed.append(name)
        return list(candidate), tuple(changed), tuple(rejected)

    # ------------------------------------------------------------ invariants
    def _check_market(self, key: str, current: Dict[str, Any], candidate: Dict[str, Any]):
        invalid: List[str] = []
        for name in ("price_decimals", "size_decimals"):
            if name in candidate and (candidate[name] is None or int(candidate[name]) < 0):
                self._warn(KIND_MARKET, key, f"{name} must be >= 0, got {candidate[name]}")
                candidate.pop(name)
                invalid.append(name)
        return candidate, invalid

    def _check_balance(self, key: str, current: Dict[str, Any], candidate: Dict[str, Any]):
        invalid: List[str] = []
        for name in ("free", "locked"):
            if name in candidate and (candidate[name] is None or candidate[name] < 0):
                self._warn(KIND_BALANCE, key, f"{name} cannot be negative ({candidate[name]})")
                candidate.pop(name)
                invalid.append(name)
        free = candidate.get("free", current.get("free")) or _ZERO
        locked = candidate.get("locked", current.get("locked")) or _ZERO
        derived = free + locked
        reported = candidate.get("total")
        if reported is not None and reported != derived:
            self._warn(KIND_BALANCE, key, f"reported total {reported} != free + locked {derived}")
            invalid.append("total")
        if "free" in candidate or "locked" in candidate or "total" in candidate or "total" not in current:
            candidate["total"] = derived
        return candidate, invalid

    def _check_position(self, key: str, current: Dict[str, Any], candidate: Dict[str, Any]):
        invalid: List[str] = []
        size = candidate.get("size")
        if "size" in candidate and (size is None or size < 0):
            self._warn(KIND_POSITION, key, f"size cannot be negative ({size})")
            candidate.pop("size")
            invalid.append("size")
        leverage = candidate.get("leverage")
        if leverage is not None and not (self.min_leverage <= leverage <= self.max_leverage):
            self._warn(
                KIND_POSITION, key,
                f"leverage {leverage} outside [{self.min_leverage}, {self.max_leverage}]",
            )
        if {"side", "entry_price", "liquidation_price"} & set(candidate):
            side = candidate.get("side", current.get("side"))
            entry = candidate.get("entry_price", current.get("entry_price"))
            liq = candidate.get("liquidation_price", current.get("liquidation_price"))
            if entry and liq:
                if side == POSITION_LONG and liq >= entry:
                    self._warn(KIND_POSITION, key, f"long liquidation {liq} not below entry {entry}")
                elif side == POSITION_SHORT and liq <= entry:
                    self._warn(KIND_POSITION, key, f"short liquidation {liq} not above entry {entry}")
        return candidate, invalid

    def _check_order(self, key: str, current: Dict[str, Any], candidate: Dict[str, Any]):
        invalid: List[str] = []
        status_now = current.get("status")
        if "status" in candidate and status_now in TERMINAL_STATUSES and candidate["status"] != status_now:
            self._warn(KIND_ORDER, key, f"status cannot leave {status_now} (got {candidate['status']})")
            candidate.pop("status")
            invalid.append("status")

        if "filled" in candidate:
            filled = candidate["filled"]
            previous = current.get("filled") or _ZERO
            amount = candidate.get("amount", current.get("amount"))
            if filled is None or filled < 0:
                problem = f"filled cannot be negative ({filled})"
            elif filled < previous:
                problem = f"filled cannot decrease ({previous} -> {filled})"
            elif amount is not None and filled > amount:
                problem = f"filled {filled} exceeds amount {amount}"
            else:
                problem = ""
            if problem:
                self._warn(KIND_ORDER, key, problem)
                candidate.pop("filled")
                invalid.append("filled")

        if "amount" in candidate and "filled" not in candidate:
            filled = current.get("filled") or _ZERO
            amount = candidate["amount"]
            if amount is None or amount < filled:
                self._warn(KIND_ORDER, key, f"amount {amount} below filled {filled}")
                candidate.pop("amount")
                invalid.append("amount")
        return candidate, invalid

    # ------------------------------------------------------ order identity
    def _index_client_id(self, key: str, rec: _Record) -> None:
        client_id = rec.values.get("client_order_id")
        if client_id:
            self._client_index[str(client_id)] = key

    def _adopt_pending_order(self, key: str, patch: Dict[str, Any]) -> Optional[str]:
        """Move a still-pending optimistic order under its authoritative key."""
        client_id = (patch or {}).get("client_order_id")
        if not client_id:
            return None
        old_key = self._client_index.get(str(client_id))
        if not old_key or old_key == key:
            return None
        rec = self._maps[KIND_ORDER].get(old_key)
        if rec is None or rec.values.get("id") != PENDING_ORDER_ID:
            return None
        self._move(KIND_ORDER, old_key, key)
        return old_key

    def _move(self, kind: str, old_key: str, new_key: str) -> Optional[_Record]:
        first, second = sorted([old_key, new_key])
        events: List[Tuple[str, str, Any, Tuple[str, ...]]] = []
        with self._lock_for(kind, first), self._lock_for(kind, second):
            table = self._maps[kind]
            rec = table.pop(old_key, None)
            if rec is None:
                return None
            events.append((kind, old_key, None, ()))
            existing = table.get(new_key)
            if existing is None:
                table[new_key] = rec
                target = rec
            else:
                # The authoritative key already has data (e.g. push beat the confirmation).
                for name, value in rec.values.items():
                    theirs = existing.clocks.get(name)
                    ours = rec.clocks.get(name, (0, 0))
                    if name not in existing.values or (theirs is not None and ours > theirs):
                        existing.values[name] = value
                        existing.clocks[name] = ours
                target = existing
            if kind == KIND_ORDER:
                self._index_client_id(new_key, target)
        for event in events:
            self._notify(*event)
        return target

    def rekey(
        self,
        kind: str,
        old_key: str,
        new_key: str,
        patch: Optional[Dict[str, Any]],
        source: str,
        sequence: int,
    ) -> MergeResult:
        """Move the record at old_key to new_key, then merge `patch` into it."""
        self._check_kind(kind)
        old_key, new_key = str(old_key), str(new_key)
        if old_key != new_key:
            self._move(kind, old_key, new_key)
        return self.merge(kind, new_key, dict(patch or {}), source, sequence)

    def remove(self, kind: str, key: str) -> Any:
        """Drop a record; returns the last snapshot or None."""
        self._check_kind(kind)
        key = str(key)
        with self._lock_for(kind, key):
            rec = self._maps[kind].pop(key, None)
            if rec is None:
                return None
            if kind == KIND_ORDER:
                client_id = rec.values.get("client_order_id")
                if client_id and self._client_index.get(str(client_id)) == key:
                    del self._client_index[str(client_id)]
            snapshot = self._snapshot(kind, rec)
        self._notify(kind, key, None, ())
        return snapshot

    def prune_positions(self, now: Optional[int] = None) -> List[str]:
        """Remove zero-size positions untouched for the retention window."""
        now = self._time_fn() if now is None else int(now)
        removed: List[str] = []
        for key, rec in list(self._maps[KIND_POSITION].items()):
            size = rec.values.get("size")
            if size is None or size != 0:
                continue
            if now - rec.last_ref_ms < self.position_retention_ms:
                continue
            if self.remove(KIND_POSITION, key) is not None:
                removed.append(key)
        if removed:
            self.log.info(f"Pruned closed positions: {', '.join(removed)}")
        return removed

    # ----------------------------------------------------------------- reads
    def get(self, kind: str, key: str) -> Any:
        self._check_kind(kind)
        return self._snapshot(kind, self._maps[kind].get(str(key)))

    def sequence_of(self, kind: str, key: str) -> int:
        self._check_kind(kind)
        rec = self._maps[kind].get(str(key))
        return rec.sequence if rec is not None else 0

    def keys(self, kind: str) -> List[str]:
        self._check_kind(kind)
        return list(self._maps[kind])

    def _all(self, kind: str) -> Dict[str, Any]:
        return {key: self._snapshot(kind, rec) for key, rec in list(self._maps[kind].items())}

    def markets(self) -> Dict[str, Market]:
        return self._all(KIND_MARKET)

    def balances(self) -> Dict[str, Balance]:
        return self._all(KIND_BALANCE)

    def positions(self) -> Dict[str, Position]:
        return self._all(KIND_POSITION)

    def orders(self) -> Dict[str, Order]:
        return self._all(KIND_ORDER)

    def order_by_client_id(self, client_order_id: str) -> Optional[Order]:
        key = self._client_index.get(str(client_order_id))
        if key is None:
            return None
        return self.get(KIND_ORDER, key)

    def order_key_for_client_id(self, client_order_id: str) -> Optional[str]:
        return self._client_index.get(str(client_order_id))

    def merge_many(self, kind: str, entities: Iterable[Any], source: str, sequence: int) -> List[MergeResult]:
        """Merge a batch of snapshots (e.g. one fetch result) under one sequence."""
        results = []
        for entity in entities:
            patch = {k: v for k, v in to_patch(entity).items() if k not in CLIENT_ONLY_FIELDS}
            results.append(self.merge(kind, entity_key(kind, entity), patch, source, sequence))
        return results
