"""
Call builders for the relay contracts and revert decoding.

Contracts consumed:
- Escrow (external chain): buyElectricity, sellElectricity, ElectricityPurchase
- Sale emitter (game chain): emitSellElectricity, ElectricitySold
- Buy receiver (game chain): handleElectricityPurchase
- World (game chain, direct path): app__buyElectricity, app__sellElectricity
- ERC-20 stablecoin: approve, allowance
"""
from __future__ import annotations

import re
from typing import Optional

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from .types import ContractCall

ERROR_STRING_SELECTOR = "0x08c379a0"
PANIC_SELECTOR = "0x4e487b71"
_REVERT_HEX = re.compile(r"0x(?:08c379a0|4e487b71)[0-9a-f]*")

DEFAULT_REVERT_MESSAGE = "An error occurred calling the contract."
INSUFFICIENT_FUNDS_MESSAGE = "Insufficient funds. Please top up your account."

# Revert reasons of a settlement whose nonce was already consumed
NONCE_CONSUMED_MARKERS = ("already processed", "nonce already used", "nonce used")

_PANIC_CODES = {
    0x01: "assertion failed",
    0x11: "arithmetic overflow or underflow",
    0x12: "division by zero",
    0x21: "invalid enum value",
    0x32: "array index out of bounds",
    0x41: "out of memory",
}


def _address(value: str) -> str:
    return Web3.to_checksum_address(value)


# -- ERC-20 ------------------------------------------------------------------

def erc20_allowance(chain_id: int, token: str, owner: str, spender: str) -> ContractCall:
    return ContractCall(
        chain_id=chain_id,
        to=_address(token),
        signature="allowance(address,address)",
        args=(_address(owner), _address(spender)),
        output_types=("uint256",),
        label="USDC allowance",
    )


def erc20_approve(chain_id: int, token: str, spender: str, amount: int) -> ContractCall:
    return ContractCall(
        chain_id=chain_id,
        to=_address(token),
        signature="approve(address,uint256)",
        args=(_address(spender), int(amount)),
        label="Approve USDC",
    )


# -- Origin submissions ------------------------------------------------------

def buy_electricity(chain_id: int, escrow: str, spend_amount: int) -> ContractCall:
    return ContractCall(
        chain_id=chain_id,
        to=_address(escrow),
        signature="buyElectricity(uint256)",
        args=(int(spend_amount),),
        label="Buy electricity",
    )


def emit_sell_electricity(chain_id: int, emitter: str, seller: str, amount: int) -> ContractCall:
    return ContractCall(
        chain_id=chain_id,
        to=_address(emitter),
        signature="emitSellElectricity(address,uint256)",
        args=(_address(seller), int(amount)),
        label="Sell electricity",
    )


# -- Destination settlements -------------------------------------------------

def handle_electricity_purchase(
    chain_id: int,
    receiver: str,
    buyer: str,
    amount: int,
    nonce: int,
    signature: bytes,
) -> ContractCall:
    return ContractCall(
        chain_id=chain_id,
        to=_address(receiver),
        signature="handleElectricityPurchase(address,uint256,uint256,bytes)",
        args=(_address(buyer), int(amount), int(nonce), bytes(signature)),
        label="Receive electricity",
    )


def sell_electricity(
    chain_id: int,
    escrow: str,
    seller: str,
    receive_amount: int,
    nonce: int,
    signature: bytes,
) -> ContractCall:
    return ContractCall(
        chain_id=chain_id,
        to=_address(escrow),
        signature="sellElectricity(address,uint256,uint256,bytes)",
        args=(_address(seller), int(receive_amount), int(nonce), bytes(signature)),
        label="Receive USDC",
    )


# -- Direct path -------------------------------------------------------------

def world_buy_electricity(chain_id: int, world: str, amount: int) -> ContractCall:
    return ContractCall(
        chain_id=chain_id,
        to=_address(world),
        signature="app__buyElectricity(uint256)",
        args=(int(amount),),
        label="Buy electricity",
    )


def world_sell_electricity(chain_id: int, world: str, amount: int) -> ContractCall:
    return ContractCall(
        chain_id=chain_id,
        to=_address(world),
        signature="app__sellElectricity(uint256)",
        args=(int(amount),),
        label="Sell electricity",
    )


# -- Reverts -----------------------------------------------------------------

def decode_revert_data(data: Optional[str]) -> Optional[str]:
    """Decode ABI revert data (``Error(string)`` or ``Panic(uint256)``)."""
    if not data or not isinstance(data, str):
        return None
    data = data.lower()
    if not data.startswith("0x"):
        data = "0x" + data
    payload = data[10:]
    try:
        if data.startswith(ERROR_STRING_SELECTOR):
            return decode(["string"], bytes.fromhex(payload))[0]
        if data.startswith(PANIC_SELECTOR):
            code = decode(["uint256"], bytes.fromhex(payload))[0]
            return f"Panic: {_PANIC_CODES.get(code, hex(code))}"
    except (DecodingError, ValueError):
        return None
    return None


def extract_revert_reason(message: str, data: Optional[str] = None) -> Optional[str]:
    """Human-readable revert reason from node error message and data."""
    reason = decode_revert_data(data)
    if reason:
        return reason

    lowered = message.lower()
    marker = "execution reverted:"
    if marker in lowered:
        reason = message[lowered.find(marker) + len(marker):].strip()
        if reason:
            return reason

    match = _REVERT_HEX.search(lowered)
    if match:
        return decode_revert_data(match.group(0))
    return None


def is_nonce_consumed(reason: Optional[str]) -> bool:
    """True when a settlement revert says the claim was already redeemed."""
    lowered = (reason or "").lower()
    return any(marker in lowered for marker in NONCE_CONSUMED_MARKERS)


def contract_error_message(reason: Optional[str], error_message: str = "") -> str:
    """User-facing message for a failed contract call."""
    if "insufficient funds" in (error_message or "").lower():
        return INSUFFICIENT_FUNDS_MESSAGE
    return reason or DEFAULT_REVERT_MESSAGE


__all__ = [
    "erc20_allowance",
    "erc20_approve",
    "buy_electricity",
    "emit_sell_electricity",
    "handle_electricity_purchase",
    "sell_electricity",
    "world_buy_electricity",
    "world_sell_electricity",
    "decode_revert_data",
    "extract_revert_reason",
    "contract_error_message",
    "is_nonce_consumed",
    "DEFAULT_REVERT_MESSAGE",
    "INSUFFICIENT_FUNDS_MESSAGE",
    "NONCE_CONSUMED_MARKERS",
]
