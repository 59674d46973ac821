"""
Relay orchestration for cross-chain electricity purchases and sales.

One linear coroutine per direction:

    IDLE -> SOURCE_SUBMITTED -> ATTESTATION_REQUESTED
         -> DESTINATION_SUBMITTED -> SETTLED

with CANCELLED and FAILED reachable from any non-terminal state. The
origin tx hash is persisted right after submission, so a restarted client
resumes from the stored hash instead of paying again. The record is only
removed after the destination transaction is confirmed, or by ``abandon``.

When the wallet already sits on the game chain there is nothing to bridge,
and the world contract is called directly.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Tuple,
    Union,
)

from ..chain import contracts
from ..chain.adapter import ChainAdapter, TransactionSigner
from ..chain.events import (
    ELECTRICITY_PURCHASE,
    ELECTRICITY_SOLD,
    EventSchema,
    OnChainEvent,
    PurchaseEvent,
    SaleEvent,
)
from ..chain.types import ContractCall, LogEntry, SimulationOutput, TransactionReceipt
from ..config import GridRelaySettings
from ..exceptions import (
    ContractRevertError,
    EventNotFoundError,
    GridRelayException,
    UserCancelledError,
    ValidationError,
)
from ..logging_utils import OperationType, RelayLogger, mask_address, new_correlation_id
from ..retry import ATTESTATION_RETRY_CONFIG, RetryConfig, RetryExhausted, retry_async
from .amounts import Direction, DisplayAmount, SettlementClaim, TransferRequest, settlement_call
from .attestation_client import AttestationClient
from .store import Lease, PendingTransferRecord, PendingTransferStore

logger = logging.getLogger(__name__)


class RelayState(str, Enum):
    IDLE = "IDLE"
    SOURCE_SUBMITTED = "SOURCE_SUBMITTED"
    ATTESTATION_REQUESTED = "ATTESTATION_REQUESTED"
    DESTINATION_SUBMITTED = "DESTINATION_SUBMITTED"
    SETTLED = "SETTLED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (RelayState.SETTLED, RelayState.CANCELLED, RelayState.FAILED)


class RelayPath(str, Enum):
    DIRECT = "direct"
    RELAY = "relay"


StateListener = Callable[[Direction, RelayState, Optional[str]], None]


class ChainPort(Protocol):
    @property
    def chain_id(self) -> int: ...

    async def get_receipt(self, tx_hash: str) -> TransactionReceipt: ...

    def decode_log(self, log: LogEntry, schema: EventSchema) -> OnChainEvent: ...

    async def simulate(self, call: ContractCall, sender: str) -> SimulationOutput: ...

    async def submit(self, call: ContractCall, wallet: TransactionSigner) -> str: ...

    async def await_confirmation(
        self,
        tx_hash: str,
        confirmations: int = 1,
        timeout_seconds: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> TransactionReceipt: ...

    async def read(self, call: ContractCall) -> Tuple[Any, ...]: ...


class SignaturePort(Protocol):
    async def request_signature(
        self,
        claim: SettlementClaim,
        origin_chain_id: int,
        destination_chain_id: int,
    ) -> str: ...


@dataclass(frozen=True)
class RelayRoute:
    """Chains and contract addresses of one direction."""
    direction: Direction
    origin: int
    destination: int
    origin_contract: str
    destination_contract: Optional[str] = None
    # ERC-20 spent on the origin chain; only Buy over the relay needs an allowance
    token: Optional[str] = None


@dataclass
class RelayOutcome:
    """Where a relay run ended. Errors are reported here rather than raised."""
    direction: Direction
    path: RelayPath
    state: RelayState = RelayState.IDLE
    origin_tx_hash: Optional[str] = None
    destination_tx_hash: Optional[str] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    retryable: bool = False

    @property
    def settled(self) -> bool:
        return self.state == RelayState.SETTLED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "direction": self.direction.value,
            "path": self.path.value,
            "state": self.state.value,
            "origin_tx_hash": self.origin_tx_hash,
            "destination_tx_hash": self.destination_tx_hash,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
            "retryable": self.retryable,
        }


class _Run:
    """Mutable state of one relay run."""

    def __init__(
        self,
        outcome: RelayOutcome,
        relay_logger: RelayLogger,
        listeners: List[StateListener],
    ):
        self.outcome = outcome
        self.log = relay_logger
        self._listeners = listeners

    def advance(self, state: RelayState, tx_hash: Optional[str] = None) -> None:
        old = self.outcome.state
        self.outcome.state = state
        self.log.state_changed(old.value, state.value, tx_hash)
        for listener in self._listeners:
            try:
                listener(self.outcome.direction, state, tx_hash)
            except Exception:
                logger.exception("Relay state listener failed")

    def fail(self, exc: BaseException, state: RelayState = RelayState.FAILED) -> None:
        cause = exc.original_exception if isinstance(exc, RetryExhausted) else exc
        if isinstance(cause, GridRelayException):
            self.outcome.error_kind = cause.error_code
            self.outcome.error_message = cause.message
            self.outcome.retryable = cause.retryable or isinstance(exc, RetryExhausted)
        else:
            self.outcome.error_kind = "UNEXPECTED_ERROR"
            self.outcome.error_message = str(cause) or type(cause).__name__
            self.outcome.retryable = False
        self.advance(state)


class RelayOrchestrator:
    """Drives Buy and Sell transfers for one wallet."""

    def __init__(
        self,
        *,
        settings: GridRelaySettings,
        wallet: TransactionSigner,
        adapters: Mapping[int, ChainPort],
        attestation: SignaturePort,
        store: PendingTransferStore,
        retry_config: Optional[RetryConfig] = None,
        attestation_retry_config: Optional[RetryConfig] = None,
    ) -> None:
        self._settings = settings
        self._wallet = wallet
        self._adapters = dict(adapters)
        self._attestation = attestation
        self._store = store
        self._retry = retry_config or RetryConfig(
            max_retries=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
        )
        self._attestation_retry = attestation_retry_config or ATTESTATION_RETRY_CONFIG
        self._listeners: List[StateListener] = []

    @classmethod
    def from_settings(
        cls,
        settings: GridRelaySettings,
        wallet: TransactionSigner,
    ) -> "RelayOrchestrator":
        chain_ids = {settings.game_chain_id, settings.effective_wallet_chain_id}
        adapters = {
            chain_id: ChainAdapter(
                settings.get_chain(chain_id),
                default_timeout_seconds=settings.confirmation_timeout_seconds,
                default_poll_seconds=settings.confirmation_poll_seconds,
            )
            for chain_id in chain_ids
        }
        return cls(
            settings=settings,
            wallet=wallet,
            adapters=adapters,
            attestation=AttestationClient(
                settings.attestation_url, timeout=settings.attestation_timeout_seconds
            ),
            store=PendingTransferStore(settings.pending_store_dsn),
        )

    @property
    def user_id(self) -> str:
        return self._wallet.address.lower()

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def chains_for(self, direction: Direction) -> Tuple[int, int]:
        """(origin, destination) chain ids for ``direction``."""
        wallet_chain = self._settings.effective_wallet_chain_id
        game_chain = self._settings.game_chain_id
        if Direction.parse(direction) == Direction.BUY:
            return wallet_chain, game_chain
        return game_chain, wallet_chain

    def path_for(self, direction: Direction) -> RelayPath:
        origin, destination = self.chains_for(direction)
        return RelayPath.DIRECT if origin == destination else RelayPath.RELAY

    def pending(self, direction: Direction) -> Optional[PendingTransferRecord]:
        return self._store.get(self.user_id, Direction.parse(direction))

    def abandon(self, direction: Direction) -> bool:
        """Forget the pending transfer. Funds already deposited stay on the origin chain."""
        direction = Direction.parse(direction)
        lease = self._store.acquire_lease(self.user_id, direction, self._settings.lease_ttl_seconds)
        try:
            removed = self._store.delete(self.user_id, direction)
        finally:
            self._store.release_lease(lease)
        if removed:
            logger.warning(f"Abandoned pending {direction.value} transfer for {mask_address(self.user_id)}")
        return removed

    async def start(self, direction: Direction, amount: Union[DisplayAmount, int]) -> RelayOutcome:
        """Run a transfer, resuming a stored one if it exists."""
        if not isinstance(amount, DisplayAmount):
            amount = DisplayAmount(amount)
        return await self._run(Direction.parse(direction), amount)

    async def resume(self, direction: Direction) -> RelayOutcome:
        """Continue the stored transfer for ``direction``; never submits a new origin tx."""
        return await self._run(Direction.parse(direction), None)

    async def _run(self, direction: Direction, amount: Optional[DisplayAmount]) -> RelayOutcome:
        new_correlation_id(f"relay_{direction.value.lower()}")
        origin, destination = self.chains_for(direction)
        path = self.path_for(direction)
        run = _Run(
            RelayOutcome(direction=direction, path=path),
            RelayLogger(direction.value, self.user_id),
            self._listeners,
        )
        logger.info(
            f"Starting {direction.value} ({path.value}) for {mask_address(self.user_id)}: "
            f"chain {origin} -> {destination}"
        )

        request = (
            TransferRequest(direction, amount, self._wallet.address, origin, destination)
            if amount is not None
            else None
        )
        lease: Optional[Lease] = None
        try:
            route = self.route_for(direction)
            if path == RelayPath.DIRECT:
                if request is None:
                    raise ValidationError("Nothing to resume on the direct path")
                await self._run_direct(run, request, route)
            else:
                lease = self._store.acquire_lease(
                    self.user_id, direction, self._settings.lease_ttl_seconds
                )
                await self._run_relay(run, route, request, lease)
        except asyncio.CancelledError:
            run.advance(RelayState.CANCELLED)
            raise
        except UserCancelledError as e:
            run.fail(e, RelayState.CANCELLED)
        except (GridRelayException, RetryExhausted) as e:
            logger.warning(f"{direction.value} relay failed in {run.outcome.state.value}: {e}")
            run.fail(e)
        except Exception as e:
            logger.exception(f"{direction.value} relay failed unexpectedly")
            run.fail(e)
        finally:
            if lease is not None:
                self._store.release_lease(lease)
        return run.outcome

    def route_for(self, direction: Direction) -> RelayRoute:
        """Resolve every contract address a ``direction`` run touches.

        Raises:
            AddressNotConfiguredError: An address the path needs is missing
        """
        direction = Direction.parse(direction)
        origin, destination = self.chains_for(direction)
        settings = self._settings
        if origin == destination:
            return RelayRoute(direction, origin, destination, settings.world_address(origin))
        if direction == Direction.BUY:
            return RelayRoute(
                direction,
                origin,
                destination,
                origin_contract=settings.escrow_address(origin),
                destination_contract=settings.buy_receiver_address(destination),
                token=settings.usdc_address(origin),
            )
        return RelayRoute(
            direction,
            origin,
            destination,
            origin_contract=settings.sell_emitter_address(origin),
            destination_contract=settings.escrow_address(destination),
        )

    def _adapter(self, chain_id: int) -> ChainPort:
        try:
            return self._adapters[chain_id]
        except KeyError:
            raise ValidationError(f"Unsupported chain ID: {chain_id}", field="chainId") from None

    # -- Direct path ---------------------------------------------------------

    async def _run_direct(self, run: _Run, request: TransferRequest, route: RelayRoute) -> None:
        chain_id, amount = request.origin_chain_id, request.amount
        adapter = self._adapter(chain_id)
        if request.direction == Direction.BUY:
            call = contracts.world_buy_electricity(chain_id, route.origin_contract, amount.units)
        else:
            call = contracts.world_sell_electricity(chain_id, route.origin_contract, amount.units)

        async with run.log.operation(OperationType.DIRECT_CALL, chain_id, amount=amount.units):
            await self._simulate(adapter, call)
            tx_hash = await adapter.submit(call, self._wallet)
            run.outcome.origin_tx_hash = tx_hash
            await self._confirm(adapter, tx_hash)
        run.advance(RelayState.SETTLED, tx_hash)

    # -- Relay path ----------------------------------------------------------

    async def _run_relay(
        self,
        run: _Run,
        route: RelayRoute,
        request: Optional[TransferRequest],
        lease: Lease,
    ) -> None:
        direction, origin, destination = route.direction, route.origin, route.destination
        origin_adapter = self._adapter(origin)
        destination_adapter = self._adapter(destination)
        ttl = self._settings.lease_ttl_seconds

        if request is not None and route.token is not None:
            await self._ensure_allowance(run, origin_adapter, route, request.amount)

        record = self._store.get(self.user_id, direction)
        if record is None:
            if request is None:
                raise ValidationError(f"No pending {direction.value.lower()} transfer to resume")
            record = await self._submit_origin(run, origin_adapter, route, request, lease)
        else:
            logger.info(
                f"Resuming {direction.value} from stored origin tx {record.origin_tx_hash}"
            )

        origin_tx = record.origin_tx_hash
        run.outcome.origin_tx_hash = origin_tx
        run.advance(RelayState.SOURCE_SUBMITTED, origin_tx)

        async with run.log.operation(OperationType.SOURCE_CONFIRM, origin, tx_hash=origin_tx):
            receipt = await self._confirm(origin_adapter, origin_tx)

        async with run.log.operation(OperationType.EVENT_DECODE, origin, tx_hash=origin_tx):
            event = self._origin_event(route, origin_adapter, receipt)
        claim = SettlementClaim.from_event(event, origin_tx)

        lease = self._store.renew_lease(lease, ttl)
        run.advance(RelayState.ATTESTATION_REQUESTED)
        async with run.log.operation(OperationType.ATTESTATION, origin, nonce=claim.nonce):
            signature = await retry_async(
                self._attestation.request_signature,
                claim,
                origin,
                destination,
                config=self._attestation_retry,
            )

        call = settlement_call(claim, signature, destination, route.destination_contract)
        async with run.log.operation(OperationType.DESTINATION_SUBMIT, destination):
            try:
                await self._simulate(destination_adapter, call)
            except ContractRevertError as e:
                if not contracts.is_nonce_consumed(e.reason):
                    raise
                logger.info(
                    f"{direction.value} nonce {claim.nonce} already redeemed on chain "
                    f"{destination}; treating as settled"
                )
                self._store.delete(self.user_id, direction)
                run.advance(RelayState.SETTLED)
                return
            destination_tx = await destination_adapter.submit(call, self._wallet)
        run.outcome.destination_tx_hash = destination_tx
        self._store.renew_lease(lease, ttl)
        run.advance(RelayState.DESTINATION_SUBMITTED, destination_tx)

        async with run.log.operation(
            OperationType.DESTINATION_CONFIRM, destination, tx_hash=destination_tx
        ):
            await self._confirm(destination_adapter, destination_tx)

        self._store.delete(self.user_id, direction)
        run.advance(RelayState.SETTLED, destination_tx)

    async def _submit_origin(
        self,
        run: _Run,
        adapter: ChainPort,
        route: RelayRoute,
        request: TransferRequest,
        lease: Lease,
    ) -> PendingTransferRecord:
        chain_id, amount, direction = route.origin, request.amount, route.direction
        if direction == Direction.BUY:
            call = contracts.buy_electricity(chain_id, route.origin_contract, amount.units)
        else:
            call = contracts.emit_sell_electricity(
                chain_id, route.origin_contract, request.counterparty, amount.units
            )

        async with run.log.operation(OperationType.SOURCE_SUBMIT, chain_id, amount=amount.units):
            await self._simulate(adapter, call)
            # The lease may have lapsed during the allowance step
            self._store.renew_lease(lease, self._settings.lease_ttl_seconds)
            existing = self._store.get(self.user_id, direction)
            if existing is not None:
                logger.info(
                    f"{direction.value} origin tx {existing.origin_tx_hash} appeared while "
                    f"preparing; resuming it"
                )
                return existing
            tx_hash = await adapter.submit(call, self._wallet)

        record = PendingTransferRecord(
            direction=direction, origin_tx_hash=tx_hash, submitted_at=int(time.time() * 1000)
        )
        self._store.put(self.user_id, direction, record)
        return record

    async def _ensure_allowance(
        self,
        run: _Run,
        adapter: ChainPort,
        route: RelayRoute,
        amount: DisplayAmount,
    ) -> None:
        chain_id, token, spender = route.origin, route.token, route.origin_contract
        async with run.log.operation(OperationType.ALLOWANCE, chain_id, amount=amount.units):
            (allowance,) = await retry_async(
                adapter.read,
                contracts.erc20_allowance(chain_id, token, self._wallet.address, spender),
                config=self._retry,
            )
            if int(allowance) >= amount.units:
                return
            approve = contracts.erc20_approve(chain_id, token, spender, amount.units)
            await self._simulate(adapter, approve)
            tx_hash = await adapter.submit(approve, self._wallet)
            await self._confirm(adapter, tx_hash)

    def _origin_event(
        self,
        route: RelayRoute,
        adapter: ChainPort,
        receipt: TransactionReceipt,
    ) -> Union[PurchaseEvent, SaleEvent]:
        schema = ELECTRICITY_PURCHASE if route.direction == Direction.BUY else ELECTRICITY_SOLD
        for log in receipt.logs_from(route.origin_contract):
            event = adapter.decode_log(log, schema)
            if isinstance(event, (PurchaseEvent, SaleEvent)):
                return event
        # Unknown events count as not found
        raise EventNotFoundError(schema.name, receipt.tx_hash)

    async def _simulate(self, adapter: ChainPort, call: ContractCall) -> None:
        output = await retry_async(adapter.simulate, call, self._wallet.address, config=self._retry)
        if not output.is_successful:
            message = contracts.contract_error_message(
                output.revert_reason, output.error_message or ""
            )
            logger.warning(f"Simulation of {call.describe()} failed: {message}")
            raise ContractRevertError(message)

    async def _confirm(self, adapter: ChainPort, tx_hash: str) -> TransactionReceipt:
        return await retry_async(
            adapter.await_confirmation,
            tx_hash,
            confirmations=self._settings.confirmations,
            config=self._retry,
        )

    async def close(self) -> None:
        for adapter in self._adapters.values():
            close = getattr(adapter, "close", None)
            if close is not None:
                await close()
        close = getattr(self._attestation, "close", None)
        if close is not None:
            await close()
        self._store.close()


__all__ = [
    "RelayOrchestrator",
    "RelayOutcome",
    "RelayPath",
    "RelayRoute",
    "RelayState",
    "StateListener",
    "ChainPort",
    "SignaturePort",
]
