#!/usr/bin/env python3
"""Local signing wallet backed by eth_account."""

from __future__ import annotations

from typing import Optional

from eth_account import Account
from eth_account.messages import encode_defunct

from env_utils import env_str
from logging_utils import get_logger, short_ref

DEFAULT_KEY_ENV = "TRADESYNC_WALLET_PRIVATE_KEY"

log = get_logger("wallet")


class LocalWallet:
    """Holds a private key in memory and signs EIP-191 personal messages."""

    def __init__(self, account):
        self._account = account

    @classmethod
    def from_key(cls, private_key: str) -> "LocalWallet":
        return cls(Account.from_key(private_key))

    @classmethod
    def from_env(cls, env_name: str = DEFAULT_KEY_ENV) -> Optional["LocalWallet"]:
        """Wallet from a private key env var; None when it is not set."""
        private_key = env_str(env_name, "")
        if not private_key:
            log.info(f"{env_name} not set; running without a wallet (read-only)")
            return None
        wallet = cls.from_key(private_key)
        log.info(f"Wallet bound from {env_name}: {short_ref(wallet.address)}")
        return wallet

    @property
    def address(self) -> str:
        return self._account.address

    def sign_message(self, text: str) -> str:
        signed = self._account.sign_message(encode_defunct(text=text))
        return "0x" + bytes(signed.signature).hex()

    def __repr__(self) -> str:
        return f"LocalWallet({self.address})"
