"""Client-side relay: pending-transfer store, wallet, attestation client, orchestrator."""

from .amounts import Direction, DisplayAmount, SettlementAmount, SettlementClaim, TransferRequest
from .attestation_client import AttestationClient
from .orchestrator import RelayOrchestrator, RelayOutcome, RelayPath, RelayRoute, RelayState
from .store import PendingTransferRecord, PendingTransferStore
from .wallet import LocalAccountWallet, WalletPort

__all__ = [
    "Direction",
    "DisplayAmount",
    "SettlementAmount",
    "SettlementClaim",
    "TransferRequest",
    "AttestationClient",
    "RelayOrchestrator",
    "RelayOutcome",
    "RelayPath",
    "RelayRoute",
    "RelayState",
    "PendingTransferRecord",
    "PendingTransferStore",
    "LocalAccountWallet",
    "WalletPort",
]
