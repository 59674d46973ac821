"""
Pytest configuration and fakes for gridrelay tests.
"""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

import pytest
from eth_abi import encode

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
if str(package_src) not in sys.path:
    sys.path.insert(0, str(package_src))

from eth_account import Account

from gridrelay.chain.events import EventSchema, decode_log
from gridrelay.chain.types import (
    ContractCall,
    LogEntry,
    SimulationOutput,
    SimulationResult,
    TransactionReceipt,
)
from gridrelay.config import BASE_SEPOLIA, REDSTONE, GridRelaySettings
from gridrelay.exceptions import (
    ReceiptNotFoundError,
    ReceiptPendingError,
    UserCancelledError,
)

VALIDATOR_KEY = "0x" + "11" * 32
WALLET_KEY = "0x" + "22" * 32
VALIDATOR_ADDRESS = Account.from_key(VALIDATOR_KEY).address
WALLET_ADDRESS = Account.from_key(WALLET_KEY).address

ESCROW = "0xcF490CB83152Fd01F19aD1aB3C44445B2436f14E"
SELL_EMITTER = "0x378bbc1a01D1976c5C13f2393744bFE7034457be"
BUY_RECEIVER = "0x1111111111111111111111111111111111111111"
WORLD = "0x2222222222222222222222222222222222222222"
FORGER = "0x3333333333333333333333333333333333333333"


def make_tx_hash(seed: int) -> str:
    return "0x" + f"{seed:064x}"


def make_log(
    schema: EventSchema,
    address: str,
    party: str,
    amount: int,
    nonce: int,
    tx_hash: str = "",
) -> LogEntry:
    """ABI-encode an ElectricityPurchase / ElectricitySold log."""
    return LogEntry(
        address=address,
        topics=(schema.topic0, "0x" + encode(["address"], [party]).hex()),
        data="0x" + encode(["uint256", "uint256"], [amount, nonce]).hex(),
        tx_hash=tx_hash,
    )


def make_receipt(tx_hash: str, logs: Iterable[LogEntry] = (), status: int = 1) -> TransactionReceipt:
    return TransactionReceipt(
        tx_hash=tx_hash,
        status=status,
        block_number=100,
        logs=tuple(logs),
    )


def make_settings(tmp_path: Optional[Path] = None, **overrides: Any) -> GridRelaySettings:
    values: Dict[str, Any] = {
        "validator_private_key": VALIDATOR_KEY,
        "wallet_private_key": WALLET_KEY,
        "game_chain_id": REDSTONE,
        "external_chain_id": BASE_SEPOLIA,
        "buy_receiver_addresses": {REDSTONE: BUY_RECEIVER},
        "world_addresses": {REDSTONE: WORLD},
        "lease_ttl_seconds": 60,
    }
    if tmp_path is not None:
        values["pending_store_dsn"] = f"sqlite:///{tmp_path / 'pending.db'}"
    values.update(overrides)
    return GridRelaySettings(_env_file=None, **values)


# Builds the logs a submitted call would emit: (call, tx_hash, sender) -> logs
LogFactory = Callable[[ContractCall, str, str], List[LogEntry]]


class FakeChainAdapter:
    """In-memory chain: submissions are mined instantly."""

    def __init__(self, chain_id: int):
        self.chain_id = chain_id
        self.receipts: Dict[str, TransactionReceipt] = {}
        self.receipt_requests: List[str] = []
        self.pending: Set[str] = set()
        self.submitted: List[ContractCall] = []
        self.simulated: List[ContractCall] = []
        self.confirmed: List[str] = []
        self.simulation_results: Dict[str, SimulationOutput] = {}
        self.read_results: Dict[str, tuple] = {}
        self.reads: List[ContractCall] = []
        self.emits: Dict[str, LogFactory] = {}
        self.closed = False
        self._counter = 0

    async def get_receipt(self, tx_hash: str) -> TransactionReceipt:
        self.receipt_requests.append(tx_hash)
        if tx_hash in self.receipts:
            return self.receipts[tx_hash]
        if tx_hash in self.pending:
            raise ReceiptPendingError(tx_hash, self.chain_id)
        raise ReceiptNotFoundError(tx_hash, self.chain_id)

    def decode_log(self, log: LogEntry, schema: EventSchema):
        return decode_log(log, schema)

    async def simulate(self, call: ContractCall, sender: str) -> SimulationOutput:
        self.simulated.append(call)
        return self.simulation_results.get(
            call.function_name, SimulationOutput(result=SimulationResult.SUCCESS)
        )

    async def submit(self, call: ContractCall, wallet) -> str:
        await wallet.sign_transaction({"chainId": self.chain_id, **call.to_tx()}, call.describe())
        self._counter += 1
        tx_hash = make_tx_hash(self.chain_id * 1000 + self._counter)
        self.submitted.append(call)
        factory = self.emits.get(call.function_name)
        logs = factory(call, tx_hash, wallet.address) if factory else []
        self.receipts[tx_hash] = make_receipt(tx_hash, logs)
        return tx_hash

    async def await_confirmation(
        self,
        tx_hash: str,
        confirmations: int = 1,
        timeout_seconds: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> TransactionReceipt:
        self.confirmed.append(tx_hash)
        return await self.get_receipt(tx_hash)

    async def read(self, call: ContractCall) -> tuple:
        self.reads.append(call)
        return self.read_results[call.function_name]

    async def close(self) -> None:
        self.closed = True

    def submitted_names(self) -> List[str]:
        return [c.function_name for c in self.submitted]


class FakeWallet:
    """Wallet that records prompts and rejects the ones listed in ``reject``."""

    def __init__(self, address: str = WALLET_ADDRESS, reject: Iterable[str] = ()):
        self._address = address
        self.reject = set(reject)
        self.prompts: List[str] = []

    @property
    def address(self) -> str:
        return self._address

    async def sign_transaction(self, tx: Dict[str, Any], description: str) -> str:
        self.prompts.append(description)
        if description in self.reject:
            raise UserCancelledError()
        return "0x" + "ab" * 32


class FakeAttestation:
    """Stands in for the attestation HTTP client."""

    def __init__(self, signature: str = "0x" + "cd" * 65, error: Optional[BaseException] = None):
        self.signature = signature
        self.error = error
        self.calls: List[tuple] = []

    async def request_signature(self, claim, origin_chain_id: int, destination_chain_id: int) -> str:
        self.calls.append((claim, origin_chain_id, destination_chain_id))
        if self.error is not None:
            raise self.error
        return self.signature


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def wallet():
    return FakeWallet()
