"""Value types shared by the chain adapter, the attestation service and the relay."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from eth_abi import encode
from web3 import Web3


def _to_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    return int(str(value), 16) if str(value).startswith("0x") else int(value)


@dataclass(frozen=True)
class LogEntry:
    """A raw event log as returned by ``eth_getTransactionReceipt``."""
    address: str
    topics: Tuple[str, ...]
    data: str
    log_index: int = 0
    tx_hash: str = ""

    @classmethod
    def from_rpc(cls, raw: Dict[str, Any]) -> "LogEntry":
        return cls(
            address=str(raw.get("address", "")),
            topics=tuple(str(t) for t in raw.get("topics", [])),
            data=str(raw.get("data") or "0x"),
            log_index=_to_int(raw.get("logIndex")) or 0,
            tx_hash=str(raw.get("transactionHash") or ""),
        )

    def emitted_by(self, address: str) -> bool:
        """Case-insensitive address match."""
        return self.address.lower() == (address or "").lower()


@dataclass(frozen=True)
class TransactionReceipt:
    """Mined transaction receipt."""
    tx_hash: str
    status: int
    block_number: int
    block_hash: str = ""
    from_address: str = ""
    to_address: Optional[str] = None
    gas_used: int = 0
    logs: Tuple[LogEntry, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.status == 1

    @classmethod
    def from_rpc(cls, raw: Dict[str, Any]) -> "TransactionReceipt":
        return cls(
            tx_hash=str(raw.get("transactionHash", "")),
            status=_to_int(raw.get("status")) or 0,
            block_number=_to_int(raw.get("blockNumber")) or 0,
            block_hash=str(raw.get("blockHash") or ""),
            from_address=str(raw.get("from") or ""),
            to_address=raw.get("to"),
            gas_used=_to_int(raw.get("gasUsed")) or 0,
            logs=tuple(LogEntry.from_rpc(log) for log in raw.get("logs", [])),
        )

    def logs_from(self, address: str) -> List[LogEntry]:
        return [log for log in self.logs if log.emitted_by(address)]


def _split_types(signature: str) -> List[str]:
    inner = signature[signature.index("(") + 1 : signature.rindex(")")]
    return [t.strip() for t in inner.split(",") if t.strip()]


@dataclass(frozen=True)
class ContractCall:
    """A contract function call bound to a chain.

    ``signature`` is the canonical Solidity signature, e.g.
    ``"approve(address,uint256)"``.
    """
    chain_id: int
    to: str
    signature: str
    args: Tuple[Any, ...] = ()
    value: int = 0
    output_types: Tuple[str, ...] = ()
    label: str = ""

    @property
    def function_name(self) -> str:
        return self.signature.split("(", 1)[0]

    @property
    def arg_types(self) -> List[str]:
        return _split_types(self.signature)

    @property
    def selector(self) -> bytes:
        return bytes(Web3.keccak(text=self.signature)[:4])

    def encode(self) -> str:
        """ABI-encode selector and arguments into calldata."""
        return "0x" + (self.selector + encode(self.arg_types, list(self.args))).hex()

    def to_tx(self, sender: Optional[str] = None) -> Dict[str, Any]:
        tx: Dict[str, Any] = {
            "to": Web3.to_checksum_address(self.to),
            "data": self.encode(),
        }
        if sender:
            tx["from"] = Web3.to_checksum_address(sender)
        if self.value:
            tx["value"] = hex(self.value)
        return tx

    def describe(self) -> str:
        return self.label or f"{self.function_name} on chain {self.chain_id}"


class SimulationResult(str, Enum):
    """Result of transaction simulation."""
    SUCCESS = "success"
    REVERTED = "reverted"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    ERROR = "error"


@dataclass
class SimulationOutput:
    """Output from a dry-run ``eth_call``."""
    result: SimulationResult
    return_data: Optional[str] = None
    revert_reason: Optional[str] = None
    error_message: Optional[str] = None
    logs: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_successful(self) -> bool:
        return self.result == SimulationResult.SUCCESS
