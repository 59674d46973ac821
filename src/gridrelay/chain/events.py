"""
Typed event schemas and log decoding.

Only the two relay events are known. A log that does not match the schema
it is decoded against becomes an ``UnknownEvent`` rather than an error, so
callers decide whether that means "mismatch" or "not found".
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Tuple, Union

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from .types import LogEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventInput:
    name: str
    type: str
    indexed: bool = False


@dataclass(frozen=True)
class EventSchema:
    """An event's ABI: name plus ordered inputs."""
    name: str
    inputs: Tuple[EventInput, ...]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(i.type for i in self.inputs)})"

    @property
    def topic0(self) -> str:
        return "0x" + bytes(Web3.keccak(text=self.signature)).hex()

    @property
    def indexed_inputs(self) -> Tuple[EventInput, ...]:
        return tuple(i for i in self.inputs if i.indexed)

    @property
    def data_inputs(self) -> Tuple[EventInput, ...]:
        return tuple(i for i in self.inputs if not i.indexed)


ELECTRICITY_PURCHASE = EventSchema(
    name="ElectricityPurchase",
    inputs=(
        EventInput("buyer", "address", indexed=True),
        EventInput("amount", "uint256"),
        EventInput("nonce", "uint256"),
    ),
)

ELECTRICITY_SOLD = EventSchema(
    name="ElectricitySold",
    inputs=(
        EventInput("seller", "address", indexed=True),
        EventInput("receiveAmount", "uint256"),
        EventInput("nonce", "uint256"),
    ),
)


@dataclass(frozen=True)
class PurchaseEvent:
    """Decoded ``ElectricityPurchase`` log."""
    buyer: str
    amount: int
    nonce: int
    contract: str = ""
    tx_hash: str = ""

    @property
    def party(self) -> str:
        return self.buyer


@dataclass(frozen=True)
class SaleEvent:
    """Decoded ``ElectricitySold`` log."""
    seller: str
    receive_amount: int
    nonce: int
    contract: str = ""
    tx_hash: str = ""

    @property
    def party(self) -> str:
        return self.seller

    @property
    def amount(self) -> int:
        return self.receive_amount


@dataclass(frozen=True)
class UnknownEvent:
    reason: str
    contract: str = ""
    tx_hash: str = ""


OnChainEvent = Union[PurchaseEvent, SaleEvent, UnknownEvent]


def _decode_topic(value_type: str, topic: str) -> Any:
    return decode([value_type], bytes.fromhex(topic.removeprefix("0x")))[0]


def decode_fields(log: LogEntry, schema: EventSchema) -> Dict[str, Any]:
    """Decode ``log`` into a name -> value mapping.

    Raises:
        ValueError: If the log is not an instance of ``schema``
    """
    if not log.topics or log.topics[0].lower() != schema.topic0.lower():
        raise ValueError(f"log topic does not match {schema.name}")
    indexed = schema.indexed_inputs
    if len(log.topics) != len(indexed) + 1:
        raise ValueError(
            f"{schema.name} expects {len(indexed)} indexed topics, got {len(log.topics) - 1}"
        )

    fields: Dict[str, Any] = {}
    try:
        for item, topic in zip(indexed, log.topics[1:]):
            fields[item.name] = _decode_topic(item.type, topic)
        data = bytes.fromhex(log.data.removeprefix("0x"))
        values = decode([i.type for i in schema.data_inputs], data)
    except (DecodingError, ValueError) as e:
        raise ValueError(f"cannot decode {schema.name}: {e}") from e
    for item, value in zip(schema.data_inputs, values):
        fields[item.name] = value

    for item in schema.inputs:
        if item.type == "address":
            fields[item.name] = Web3.to_checksum_address(fields[item.name])
    return fields


def decode_log(log: LogEntry, schema: EventSchema) -> OnChainEvent:
    """Decode a log against one known schema."""
    try:
        fields = decode_fields(log, schema)
    except ValueError as e:
        logger.debug(f"Log from {log.address} is not {schema.name}: {e}")
        return UnknownEvent(reason=str(e), contract=log.address, tx_hash=log.tx_hash)

    if schema == ELECTRICITY_PURCHASE:
        return PurchaseEvent(
            buyer=fields["buyer"],
            amount=int(fields["amount"]),
            nonce=int(fields["nonce"]),
            contract=log.address,
            tx_hash=log.tx_hash,
        )
    if schema == ELECTRICITY_SOLD:
        return SaleEvent(
            seller=fields["seller"],
            receive_amount=int(fields["receiveAmount"]),
            nonce=int(fields["nonce"]),
            contract=log.address,
            tx_hash=log.tx_hash,
        )
    return UnknownEvent(
        reason=f"no typed event for schema {schema.name}",
        contract=log.address,
        tx_hash=log.tx_hash,
    )


__all__ = [
    "EventInput",
    "EventSchema",
    "ELECTRICITY_PURCHASE",
    "ELECTRICITY_SOLD",
    "PurchaseEvent",
    "SaleEvent",
    "UnknownEvent",
    "OnChainEvent",
    "decode_fields",
    "decode_log",
]
