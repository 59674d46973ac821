"""Chain access: JSON-RPC client, event schemas, call builders and the adapter."""

from .adapter import ChainAdapter, TransactionSigner
from .events import (
    ELECTRICITY_PURCHASE,
    ELECTRICITY_SOLD,
    EventSchema,
    OnChainEvent,
    PurchaseEvent,
    SaleEvent,
    UnknownEvent,
    decode_log,
)
from .rpc_client import AllEndpointsFailedError, ChainIDMismatchError, RPCClient
from .types import (
    ContractCall,
    LogEntry,
    SimulationOutput,
    SimulationResult,
    TransactionReceipt,
)

__all__ = [
    "ChainAdapter",
    "TransactionSigner",
    "RPCClient",
    "AllEndpointsFailedError",
    "ChainIDMismatchError",
    "ContractCall",
    "LogEntry",
    "TransactionReceipt",
    "SimulationOutput",
    "SimulationResult",
    "EventSchema",
    "ELECTRICITY_PURCHASE",
    "ELECTRICITY_SOLD",
    "OnChainEvent",
    "PurchaseEvent",
    "SaleEvent",
    "UnknownEvent",
    "decode_log",
]
