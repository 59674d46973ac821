"""
Validator commitment: hash, sign and recover.

The commitment is ``keccak256(abi.encode(address party, uint256 amount,
uint256 nonce))``. It is signed as an EIP-191 personal message over the raw
32 bytes, which is what the destination contracts recover against.
Signing is deterministic (RFC 6979), so the same key and commitment always
yield the same signature.
"""
from __future__ import annotations

import logging

from eth_abi import encode
from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from ..exceptions import ConfigError, SigningFailureError

logger = logging.getLogger(__name__)


def commitment_hash(party: str, amount: int, nonce: int) -> bytes:
    """keccak256 over the ABI encoding of ``(address, uint256, uint256)``."""
    encoded = encode(
        ["address", "uint256", "uint256"],
        [Web3.to_checksum_address(party), int(amount), int(nonce)],
    )
    return bytes(Web3.keccak(encoded))


class CommitmentSigner:
    """Holds the validator key."""

    def __init__(self, private_key: str):
        if not private_key:
            raise ConfigError("VALIDATOR_PRIVATE_KEY not set")
        try:
            self._account = Account.from_key(private_key)
        except (ValueError, TypeError) as e:
            raise ConfigError(f"Invalid validator private key: {type(e).__name__}") from e

    @property
    def address(self) -> str:
        return self._account.address

    def sign(self, party: str, amount: int, nonce: int) -> str:
        """Sign the commitment. Returns a 0x-prefixed 65-byte signature."""
        digest = commitment_hash(party, amount, nonce)
        try:
            signed = self._account.sign_message(encode_defunct(primitive=digest))
        except (ValueError, TypeError) as e:
            raise SigningFailureError("Signature failed") from e
        return "0x" + bytes(signed.signature).hex()


def recover_signer(party: str, amount: int, nonce: int, signature: str) -> str:
    """Address that produced ``signature`` over the commitment."""
    digest = commitment_hash(party, amount, nonce)
    return Account.recover_message(encode_defunct(primitive=digest), signature=signature)


__all__ = ["commitment_hash", "CommitmentSigner", "recover_signer"]
