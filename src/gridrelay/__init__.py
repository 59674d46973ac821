"""Cross-chain electricity relay: attestation service and relay client."""

from .config import ChainConfig, GridRelaySettings, load_settings
from .exceptions import GridRelayException
from .relay.amounts import Direction, DisplayAmount
from .relay.orchestrator import RelayOrchestrator, RelayOutcome, RelayState

__version__ = "0.1.0"

__all__ = [
    "ChainConfig",
    "GridRelaySettings",
    "load_settings",
    "GridRelayException",
    "Direction",
    "DisplayAmount",
    "RelayOrchestrator",
    "RelayOutcome",
    "RelayState",
]
