#!/usr/bin/env python3
"""Error taxonomy shared by adapters, the store and the order controller."""

from __future__ import annotations

from typing import Any, Optional


class SyncError(Exception):
    """Base class for tradesync failures surfaced to callers."""


class WalletNotConnected(SyncError):
    """Raised when a write or account query needs a wallet and none is bound."""

    def __init__(self, message: str = "Wallet not connected") -> None:
        super().__init__(message)


class MarketNotFound(SyncError):
    def __init__(self, symbol: str) -> None:
        self.symbol = symbol
        super().__init__(f"Market {symbol} not found")


class AdapterUnavailable(SyncError):
    """Transport/network failure talking to a chain backend or the venue API."""


class AdapterTimeout(SyncError):
    """Confirmation wait exceeded.

    The transaction may still land; the next fetch or push event reconciles it.
    """

    def __init__(self, message: str, tx_ref: Optional[str] = None) -> None:
        self.tx_ref = tx_ref
        super().__init__(message)


class OrderSubmissionFailed(SyncError):
    """A write operation (create/cancel/leverage) was rejected or failed."""

    def __init__(self, reason: str, operation: str = "create", tx_ref: Optional[str] = None) -> None:
        self.reason = reason
        self.operation = operation
        self.tx_ref = tx_ref
        super().__init__(f"Failed to {operation}: {reason}")


class DataIntegrityWarning(UserWarning):
    """Invariant violation detected while merging. Recorded and logged, never raised."""

    def __init__(self, kind: str, key: Any, message: str) -> None:
        self.kind = kind
        self.key = key
        self.message = message
        super().__init__(f"{kind}:{key}: {message}")
