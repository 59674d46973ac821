"""
Amount types.

``DisplayAmount`` is what the player typed: an integer in the token's
smallest unit, used for UI and as input of the origin submission.
``SettlementAmount`` can only be produced from a decoded on-chain event,
and attestation and settlement calls only accept a ``SettlementClaim``
carrying one. Passing user input to the signature service is therefore a
``TypeError`` at runtime and a type error under mypy.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union

from web3 import Web3

from ..chain import contracts
from ..chain.events import PurchaseEvent, SaleEvent
from ..chain.types import ContractCall
from ..exceptions import ValidationError

_FROM_EVENT = object()


class Direction(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @classmethod
    def parse(cls, value: Union[str, "Direction"]) -> "Direction":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError as e:
            raise ValidationError(f"Unknown direction: {value}", field="direction") from e


@dataclass(frozen=True)
class DisplayAmount:
    units: int

    def __post_init__(self) -> None:
        if isinstance(self.units, bool) or not isinstance(self.units, int):
            raise ValidationError("Amount must be an integer", field="amount")
        if self.units <= 0:
            raise ValidationError("Amount must be positive", field="amount")

    def __str__(self) -> str:
        return str(self.units)


@dataclass(frozen=True)
class TransferRequest:
    """What the player asked for. Immutable once the origin tx is submitted."""
    direction: Direction
    amount: DisplayAmount
    counterparty: str
    origin_chain_id: int
    destination_chain_id: int

    @property
    def is_direct(self) -> bool:
        return self.origin_chain_id == self.destination_chain_id


class SettlementAmount:
    """An amount read back from a decoded on-chain event."""

    __slots__ = ("_units",)

    def __init__(self, units: int, _token: object = None):
        if _token is not _FROM_EVENT:
            raise TypeError("SettlementAmount can only be built from a decoded event")
        self._units = int(units)

    @property
    def units(self) -> int:
        return self._units

    def __eq__(self, other: object) -> bool:
        return isinstance(other, SettlementAmount) and other._units == self._units

    def __hash__(self) -> int:
        return hash(("SettlementAmount", self._units))

    def __repr__(self) -> str:
        return f"SettlementAmount({self._units})"


@dataclass(frozen=True)
class SettlementClaim:
    """Party, amount and nonce exactly as the origin event reported them."""
    direction: Direction
    party: str
    amount: SettlementAmount
    nonce: int
    origin_tx_hash: str

    @classmethod
    def from_event(cls, event: Union[PurchaseEvent, SaleEvent], origin_tx_hash: str) -> "SettlementClaim":
        if isinstance(event, PurchaseEvent):
            direction, amount = Direction.BUY, event.amount
        elif isinstance(event, SaleEvent):
            direction, amount = Direction.SELL, event.receive_amount
        else:
            raise TypeError(f"cannot settle {type(event).__name__}")
        return cls(
            direction=direction,
            party=Web3.to_checksum_address(event.party),
            amount=SettlementAmount(amount, _FROM_EVENT),
            nonce=int(event.nonce),
            origin_tx_hash=origin_tx_hash,
        )


def require_claim(claim: object) -> SettlementClaim:
    if not isinstance(claim, SettlementClaim):
        raise TypeError(
            f"expected SettlementClaim from a decoded event, got {type(claim).__name__}"
        )
    return claim


def settlement_call(
    claim: SettlementClaim,
    signature: str,
    chain_id: int,
    contract: str,
) -> ContractCall:
    """Destination call redeeming ``claim`` with the validator ``signature``."""
    claim = require_claim(claim)
    sig = bytes.fromhex(signature.removeprefix("0x"))
    if claim.direction == Direction.BUY:
        return contracts.handle_electricity_purchase(
            chain_id, contract, claim.party, claim.amount.units, claim.nonce, sig
        )
    return contracts.sell_electricity(
        chain_id, contract, claim.party, claim.amount.units, claim.nonce, sig
    )


__all__ = [
    "Direction",
    "DisplayAmount",
    "TransferRequest",
    "SettlementAmount",
    "SettlementClaim",
    "require_claim",
    "settlement_call",
]
