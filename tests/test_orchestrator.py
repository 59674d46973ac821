"""
Tests for the relay orchestrator.

Tests cover:
- Buy and Sell over the relay path
- Direct path when the wallet sits on the game chain
- Resume from a stored origin transaction (including across restarts)
- Cancellation and failure classification
- Relay leases
"""
from __future__ import annotations

import asyncio

import pytest

from conftest import (
    BUY_RECEIVER,
    ESCROW,
    FORGER,
    SELL_EMITTER,
    WALLET_ADDRESS,
    FakeAttestation,
    FakeChainAdapter,
    FakeWallet,
    make_log,
    make_receipt,
    make_settings,
    make_tx_hash,
)
from gridrelay.chain.events import ELECTRICITY_PURCHASE, ELECTRICITY_SOLD
from gridrelay.chain.types import SimulationOutput, SimulationResult
from gridrelay.config import BASE_SEPOLIA, REDSTONE
from gridrelay.exceptions import RelayInProgressError, SignatureServiceError
from gridrelay.relay.amounts import Direction
from gridrelay.relay.orchestrator import RelayOrchestrator, RelayOutcome, RelayPath, RelayState
from gridrelay.relay.store import PendingTransferRecord, PendingTransferStore
from gridrelay.retry import RetryConfig

NO_RETRY = RetryConfig(max_retries=0, base_delay=0.0, jitter=0.0)


def _purchase_emitter(nonce=1, amount=None, contract=ESCROW):
    def emit(call, tx_hash, sender):
        units = call.args[0] if amount is None else amount
        return [make_log(ELECTRICITY_PURCHASE, contract, sender, units, nonce, tx_hash)]
    return emit


def _sale_emitter(nonce=9):
    def emit(call, tx_hash, sender):
        return [make_log(ELECTRICITY_SOLD, SELL_EMITTER, call.args[0], call.args[1], nonce, tx_hash)]
    return emit


@pytest.fixture
def chains():
    origin = FakeChainAdapter(BASE_SEPOLIA)
    origin.read_results["allowance"] = (0,)
    origin.emits["buyElectricity"] = _purchase_emitter()
    game = FakeChainAdapter(REDSTONE)
    game.emits["emitSellElectricity"] = _sale_emitter()
    return {BASE_SEPOLIA: origin, REDSTONE: game}


@pytest.fixture
def attestation():
    return FakeAttestation()


@pytest.fixture
def store(settings):
    s = PendingTransferStore(settings.pending_store_dsn)
    yield s
    s.close()


def _orchestrator(settings, wallet, chains, attestation, store):
    return RelayOrchestrator(
        settings=settings,
        wallet=wallet,
        adapters=chains,
        attestation=attestation,
        store=store,
        retry_config=NO_RETRY,
        attestation_retry_config=NO_RETRY,
    )


@pytest.fixture
def orchestrator(settings, wallet, chains, attestation, store):
    return _orchestrator(settings, wallet, chains, attestation, store)


def _record_states(orchestrator):
    states = []
    orchestrator.add_listener(lambda direction, state, tx_hash: states.append(state))
    return states


class TestBuy:
    """Tests for the Buy relay path."""

    @pytest.mark.asyncio
    async def test_happy_path(self, orchestrator, chains, wallet, attestation, store):
        states = _record_states(orchestrator)

        outcome = await orchestrator.start(Direction.BUY, 1920)

        assert outcome.state == RelayState.SETTLED
        assert outcome.path == RelayPath.RELAY
        assert chains[BASE_SEPOLIA].submitted_names() == ["approve", "buyElectricity"]
        assert chains[REDSTONE].submitted_names() == ["handleElectricityPurchase"]
        assert chains[REDSTONE].submitted[0].to == BUY_RECEIVER
        assert wallet.prompts == ["Approve USDC", "Buy electricity", "Receive electricity"]
        assert states == [
            RelayState.SOURCE_SUBMITTED,
            RelayState.ATTESTATION_REQUESTED,
            RelayState.DESTINATION_SUBMITTED,
            RelayState.SETTLED,
        ]
        assert store.get(WALLET_ADDRESS, Direction.BUY) is None

        claim, origin, destination = attestation.calls[0]
        assert (claim.party, claim.amount.units, claim.nonce) == (WALLET_ADDRESS, 1920, 1)
        assert (origin, destination) == (BASE_SEPOLIA, REDSTONE)
        assert outcome.origin_tx_hash == claim.origin_tx_hash

    @pytest.mark.asyncio
    async def test_sufficient_allowance_skips_approve(self, orchestrator, chains):
        chains[BASE_SEPOLIA].read_results["allowance"] = (10**12,)

        outcome = await orchestrator.start(Direction.BUY, 1920)

        assert outcome.settled
        assert chains[BASE_SEPOLIA].submitted_names() == ["buyElectricity"]

    @pytest.mark.asyncio
    async def test_settles_event_amount_not_typed_amount(self, orchestrator, chains, attestation):
        chains[BASE_SEPOLIA].emits["buyElectricity"] = _purchase_emitter(amount=1900)

        outcome = await orchestrator.start(Direction.BUY, 1920)

        assert outcome.settled
        assert attestation.calls[0][0].amount.units == 1900

    @pytest.mark.asyncio
    async def test_resumes_stored_transfer_without_paying_again(
        self, orchestrator, chains, attestation, store
    ):
        origin_tx = make_tx_hash(0xABC)
        chains[BASE_SEPOLIA].receipts[origin_tx] = _mined(origin_tx, ESCROW, ELECTRICITY_PURCHASE, 500, 7)
        store.put(WALLET_ADDRESS, Direction.BUY, PendingTransferRecord(Direction.BUY, origin_tx, 1))

        outcome = await orchestrator.start(Direction.BUY, 1920)

        assert outcome.settled
        assert outcome.origin_tx_hash == origin_tx
        assert chains[BASE_SEPOLIA].submitted_names() == ["approve"]
        assert origin_tx in chains[BASE_SEPOLIA].confirmed
        assert attestation.calls[0][0].amount.units == 500
        assert store.get(WALLET_ADDRESS, Direction.BUY) is None

    @pytest.mark.asyncio
    async def test_restart_after_persist(self, settings, wallet, chains, store):
        failing = FakeAttestation(error=SignatureServiceError("Signature service unreachable", retryable=True))
        first = _orchestrator(settings, wallet, chains, failing, store)

        outcome = await first.start(Direction.BUY, 1920)

        assert outcome.state == RelayState.FAILED
        assert outcome.error_kind == "SIGNATURE_SERVICE_ERROR"
        assert outcome.retryable
        stored = store.get(WALLET_ADDRESS, Direction.BUY)
        assert stored.origin_tx_hash == outcome.origin_tx_hash

        # New process: fresh store handle on the same database
        reopened = PendingTransferStore(settings.pending_store_dsn)
        second = _orchestrator(settings, wallet, chains, FakeAttestation(), reopened)
        try:
            resumed = await second.resume(Direction.BUY)
        finally:
            reopened.close()

        assert resumed.settled
        assert resumed.origin_tx_hash == outcome.origin_tx_hash
        assert chains[BASE_SEPOLIA].submitted_names() == ["approve", "buyElectricity"]
        assert chains[REDSTONE].submitted_names() == ["handleElectricityPurchase"]
        assert store.get(WALLET_ADDRESS, Direction.BUY) is None

    @pytest.mark.asyncio
    async def test_rejecting_approve_cancels(self, settings, chains, attestation, store):
        wallet = FakeWallet(reject={"Approve USDC"})
        orchestrator = _orchestrator(settings, wallet, chains, attestation, store)

        outcome = await orchestrator.start(Direction.BUY, 1920)

        assert outcome.state == RelayState.CANCELLED
        assert outcome.error_kind == "USER_CANCELLED"
        assert store.get(WALLET_ADDRESS, Direction.BUY) is None
        assert attestation.calls == []
        assert chains[BASE_SEPOLIA].submitted == []

    @pytest.mark.asyncio
    async def test_rejecting_destination_keeps_record(self, settings, chains, attestation, store):
        wallet = FakeWallet(reject={"Receive electricity"})
        orchestrator = _orchestrator(settings, wallet, chains, attestation, store)

        outcome = await orchestrator.start(Direction.BUY, 1920)

        assert outcome.state == RelayState.CANCELLED
        assert store.get(WALLET_ADDRESS, Direction.BUY).origin_tx_hash == outcome.origin_tx_hash

    @pytest.mark.asyncio
    async def test_forged_log_source_fails(self, orchestrator, chains, attestation):
        chains[BASE_SEPOLIA].emits["buyElectricity"] = _purchase_emitter(contract=FORGER)

        outcome = await orchestrator.start(Direction.BUY, 1920)

        assert outcome.state == RelayState.FAILED
        assert outcome.error_kind == "EVENT_NOT_FOUND"
        assert attestation.calls == []
        assert chains[REDSTONE].submitted == []

    @pytest.mark.asyncio
    async def test_simulation_revert_stops_before_submit(self, orchestrator, chains, store):
        chains[BASE_SEPOLIA].read_results["allowance"] = (10**12,)
        chains[BASE_SEPOLIA].simulation_results["buyElectricity"] = SimulationOutput(
            result=SimulationResult.REVERTED, revert_reason="Sale paused"
        )

        outcome = await orchestrator.start(Direction.BUY, 1920)

        assert outcome.state == RelayState.FAILED
        assert outcome.error_kind == "CONTRACT_REVERT"
        assert outcome.error_message == "Sale paused"
        assert chains[BASE_SEPOLIA].submitted == []
        assert store.get(WALLET_ADDRESS, Direction.BUY) is None

    @pytest.mark.asyncio
    async def test_insufficient_funds_message(self, orchestrator, chains):
        chains[BASE_SEPOLIA].read_results["allowance"] = (10**12,)
        chains[BASE_SEPOLIA].simulation_results["buyElectricity"] = SimulationOutput(
            result=SimulationResult.INSUFFICIENT_FUNDS,
            error_message="insufficient funds for gas * price + value",
        )

        outcome = await orchestrator.start(Direction.BUY, 1920)

        assert outcome.error_message == "Insufficient funds. Please top up your account."

    @pytest.mark.asyncio
    async def test_attestation_rejection_keeps_record(self, settings, wallet, chains, store):
        rejecting = FakeAttestation(error=SignatureServiceError("Event mismatch", status_code=400))
        orchestrator = _orchestrator(settings, wallet, chains, rejecting, store)

        outcome = await orchestrator.start(Direction.BUY, 1920)

        assert outcome.state == RelayState.FAILED
        assert not outcome.retryable
        assert store.get(WALLET_ADDRESS, Direction.BUY) is not None
        assert chains[REDSTONE].submitted == []

    @pytest.mark.asyncio
    async def test_resumed_start_rechecks_allowance(self, orchestrator, chains, store):
        origin_tx = make_tx_hash(0xABC)
        chains[BASE_SEPOLIA].read_results["allowance"] = (10**12,)
        chains[BASE_SEPOLIA].receipts[origin_tx] = _mined(origin_tx, ESCROW, ELECTRICITY_PURCHASE, 500, 7)
        store.put(WALLET_ADDRESS, Direction.BUY, PendingTransferRecord(Direction.BUY, origin_tx, 1))

        outcome = await orchestrator.start(Direction.BUY, 1920)

        assert outcome.settled
        assert [call.function_name for call in chains[BASE_SEPOLIA].reads] == ["allowance"]
        assert chains[BASE_SEPOLIA].submitted == []

    @pytest.mark.asyncio
    async def test_resume_has_no_allowance_step(self, orchestrator, chains, store):
        origin_tx = make_tx_hash(0xABC)
        chains[BASE_SEPOLIA].receipts[origin_tx] = _mined(origin_tx, ESCROW, ELECTRICITY_PURCHASE, 500, 7)
        store.put(WALLET_ADDRESS, Direction.BUY, PendingTransferRecord(Direction.BUY, origin_tx, 1))

        outcome = await orchestrator.resume(Direction.BUY)

        assert outcome.settled
        assert chains[BASE_SEPOLIA].reads == []

    @pytest.mark.asyncio
    async def test_missing_receiver_fails_before_anything_is_signed(
        self, tmp_path, wallet, chains, attestation
    ):
        settings = make_settings(tmp_path, buy_receiver_addresses={})
        store = PendingTransferStore(settings.pending_store_dsn)
        orchestrator = _orchestrator(settings, wallet, chains, attestation, store)

        outcome = await orchestrator.start(Direction.BUY, 1920)

        assert outcome.state == RelayState.FAILED
        assert outcome.error_kind == "ADDRESS_NOT_CONFIGURED"
        assert wallet.prompts == []
        assert chains[BASE_SEPOLIA].submitted == []
        assert chains[BASE_SEPOLIA].reads == []
        assert attestation.calls == []
        assert store.get(WALLET_ADDRESS, Direction.BUY) is None
        store.close()

    @pytest.mark.asyncio
    async def test_lease_lost_during_approval_blocks_deposit(self, tmp_path, wallet, chains, attestation):
        # Zero TTL: the lease is already stale while the approval confirms
        settings = make_settings(tmp_path, lease_ttl_seconds=0)
        store = PendingTransferStore(settings.pending_store_dsn)
        other = PendingTransferStore(settings.pending_store_dsn)
        orchestrator = _orchestrator(settings, wallet, chains, attestation, store)
        origin = chains[BASE_SEPOLIA]
        confirm = origin.await_confirmation
        taken = []

        async def slow_confirmation(tx_hash, **kwargs):
            if not taken:
                taken.append(other.acquire_lease(WALLET_ADDRESS, Direction.BUY, ttl_seconds=60))
            return await confirm(tx_hash, **kwargs)

        origin.await_confirmation = slow_confirmation
        try:
            outcome = await orchestrator.start(Direction.BUY, 1920)

            assert outcome.state == RelayState.FAILED
            assert outcome.error_kind == "RELAY_IN_PROGRESS"
            assert outcome.retryable
            assert origin.submitted_names() == ["approve"]
            assert store.get(WALLET_ADDRESS, Direction.BUY) is None
            # The run must not release a lease it no longer owns
            with pytest.raises(RelayInProgressError):
                store.acquire_lease(WALLET_ADDRESS, Direction.BUY, ttl_seconds=60)
        finally:
            other.close()
            store.close()

    @pytest.mark.asyncio
    async def test_consumed_nonce_counts_as_settled(self, orchestrator, chains, attestation, store):
        origin_tx = make_tx_hash(0xABC)
        chains[BASE_SEPOLIA].read_results["allowance"] = (10**12,)
        chains[BASE_SEPOLIA].receipts[origin_tx] = _mined(origin_tx, ESCROW, ELECTRICITY_PURCHASE, 500, 7)
        chains[REDSTONE].simulation_results["handleElectricityPurchase"] = SimulationOutput(
            result=SimulationResult.REVERTED, revert_reason="Nonce already processed"
        )
        store.put(WALLET_ADDRESS, Direction.BUY, PendingTransferRecord(Direction.BUY, origin_tx, 1))

        outcome = await orchestrator.resume(Direction.BUY)

        assert outcome.state == RelayState.SETTLED
        assert outcome.destination_tx_hash is None
        assert chains[REDSTONE].submitted == []
        assert store.get(WALLET_ADDRESS, Direction.BUY) is None

    @pytest.mark.asyncio
    async def test_other_destination_revert_keeps_record(self, orchestrator, chains, store):
        chains[REDSTONE].simulation_results["handleElectricityPurchase"] = SimulationOutput(
            result=SimulationResult.REVERTED, revert_reason="Invalid signature"
        )

        outcome = await orchestrator.start(Direction.BUY, 1920)

        assert outcome.state == RelayState.FAILED
        assert outcome.error_message == "Invalid signature"
        assert store.get(WALLET_ADDRESS, Direction.BUY) is not None


class TestSell:
    """Tests for the Sell relay path."""

    @pytest.mark.asyncio
    async def test_happy_path(self, orchestrator, chains, wallet, attestation, store):
        outcome = await orchestrator.start(Direction.SELL, 640)

        assert outcome.settled
        assert chains[REDSTONE].submitted_names() == ["emitSellElectricity"]
        assert chains[BASE_SEPOLIA].submitted_names() == ["sellElectricity"]
        assert chains[BASE_SEPOLIA].submitted[0].to == ESCROW
        assert wallet.prompts == ["Sell electricity", "Receive USDC"]

        claim, origin, destination = attestation.calls[0]
        assert (claim.direction, claim.amount.units, claim.nonce) == (Direction.SELL, 640, 9)
        assert (origin, destination) == (REDSTONE, BASE_SEPOLIA)
        assert store.get(WALLET_ADDRESS, Direction.SELL) is None

    @pytest.mark.asyncio
    async def test_buy_record_does_not_block_sell(self, orchestrator, chains, store):
        store.put(WALLET_ADDRESS, Direction.BUY, PendingTransferRecord(Direction.BUY, make_tx_hash(1), 1))

        outcome = await orchestrator.start(Direction.SELL, 640)

        assert outcome.settled
        assert store.get(WALLET_ADDRESS, Direction.BUY) is not None


class TestDirectPath:
    """Tests for same-chain transfers."""

    @pytest.mark.asyncio
    async def test_buy_calls_world_directly(self, tmp_path, wallet, attestation):
        settings = make_settings(tmp_path, wallet_chain_id=REDSTONE)
        game = FakeChainAdapter(REDSTONE)
        store = PendingTransferStore(settings.pending_store_dsn)
        orchestrator = _orchestrator(settings, wallet, {REDSTONE: game}, attestation, store)

        outcome = await orchestrator.start(Direction.BUY, 5)

        assert outcome.path == RelayPath.DIRECT
        assert outcome.settled
        assert game.submitted_names() == ["app__buyElectricity"]
        assert attestation.calls == []
        assert store.get(WALLET_ADDRESS, Direction.BUY) is None
        store.close()

    @pytest.mark.asyncio
    async def test_sell_calls_world_directly(self, tmp_path, wallet, attestation):
        settings = make_settings(tmp_path, wallet_chain_id=REDSTONE)
        game = FakeChainAdapter(REDSTONE)
        store = PendingTransferStore(settings.pending_store_dsn)
        orchestrator = _orchestrator(settings, wallet, {REDSTONE: game}, attestation, store)

        outcome = await orchestrator.start(Direction.SELL, 5)

        assert outcome.settled
        assert game.submitted_names() == ["app__sellElectricity"]
        store.close()


class TestControl:
    """Tests for leases, resume, abandon and cancellation."""

    @pytest.mark.asyncio
    async def test_lease_conflict(self, orchestrator, chains, store):
        store.acquire_lease(WALLET_ADDRESS, Direction.BUY, ttl_seconds=60)

        outcome = await orchestrator.start(Direction.BUY, 1920)

        assert outcome.state == RelayState.FAILED
        assert outcome.error_kind == "RELAY_IN_PROGRESS"
        assert outcome.retryable
        assert chains[BASE_SEPOLIA].submitted == []

    @pytest.mark.asyncio
    async def test_lease_released_after_run(self, orchestrator, store):
        await orchestrator.start(Direction.BUY, 1920)
        assert store.acquire_lease(WALLET_ADDRESS, Direction.BUY, ttl_seconds=60)

    @pytest.mark.asyncio
    async def test_resume_without_record(self, orchestrator):
        outcome = await orchestrator.resume(Direction.SELL)
        assert outcome.state == RelayState.FAILED
        assert outcome.error_kind == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_task_cancellation_propagates(self, settings, wallet, chains, store):
        attestation = FakeAttestation(error=asyncio.CancelledError())
        orchestrator = _orchestrator(settings, wallet, chains, attestation, store)
        states = _record_states(orchestrator)

        with pytest.raises(asyncio.CancelledError):
            await orchestrator.start(Direction.BUY, 1920)

        assert states[-1] == RelayState.CANCELLED
        assert store.get(WALLET_ADDRESS, Direction.BUY) is not None
        assert store.acquire_lease(WALLET_ADDRESS, Direction.BUY, ttl_seconds=60)

    @pytest.mark.asyncio
    async def test_listener_errors_do_not_break_run(self, orchestrator):
        def broken(direction, state, tx_hash):
            raise RuntimeError("ui went away")

        orchestrator.add_listener(broken)
        outcome = await orchestrator.start(Direction.BUY, 1920)
        assert outcome.settled

    def test_abandon(self, orchestrator, store):
        store.put(WALLET_ADDRESS, Direction.BUY, PendingTransferRecord(Direction.BUY, make_tx_hash(1), 1))

        assert orchestrator.abandon("buy") is True
        assert orchestrator.pending(Direction.BUY) is None
        assert orchestrator.abandon("buy") is False

    def test_chains_for(self, orchestrator):
        assert orchestrator.chains_for(Direction.BUY) == (BASE_SEPOLIA, REDSTONE)
        assert orchestrator.chains_for(Direction.SELL) == (REDSTONE, BASE_SEPOLIA)

    def test_outcome_to_dict(self):
        outcome = RelayOutcome(direction=Direction.BUY, path=RelayPath.RELAY, state=RelayState.SETTLED)
        assert outcome.to_dict()["state"] == "SETTLED"
        assert outcome.to_dict()["direction"] == "BUY"


def _mined(tx_hash, contract, schema, amount, nonce):
    return make_receipt(tx_hash, [make_log(schema, contract, WALLET_ADDRESS, amount, nonce, tx_hash)])
