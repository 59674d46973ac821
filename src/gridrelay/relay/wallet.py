"""Wallets the relay signs origin and destination transactions with."""
from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from eth_account import Account

from ..chain.adapter import TransactionSigner
from ..exceptions import ConfigError, UserCancelledError
from ..logging_utils import mask_address

logger = logging.getLogger(__name__)

# (description, tx) -> approve?
ConfirmCallback = Callable[[str, Dict[str, Any]], Union[bool, Awaitable[bool]]]

WalletPort = TransactionSigner


class LocalAccountWallet:
    """Signs with a local private key, asking ``confirm`` before every signature."""

    def __init__(self, private_key: str, confirm: Optional[ConfirmCallback] = None):
        if not private_key:
            raise ConfigError("Wallet private key not configured")
        try:
            self._account = Account.from_key(private_key)
        except (ValueError, TypeError) as e:
            raise ConfigError(f"Invalid wallet private key: {type(e).__name__}") from e
        self._confirm = confirm

    @property
    def address(self) -> str:
        return self._account.address

    async def sign_transaction(self, tx: Dict[str, Any], description: str) -> str:
        if self._confirm is not None:
            approved = self._confirm(description, tx)
            if inspect.isawaitable(approved):
                approved = await approved
            if not approved:
                logger.info(f"{mask_address(self.address)} rejected: {description}")
                raise UserCancelledError()
        signed = self._account.sign_transaction(tx)
        return "0x" + bytes(signed.raw_transaction).hex()


__all__ = ["WalletPort", "LocalAccountWallet", "ConfirmCallback"]
