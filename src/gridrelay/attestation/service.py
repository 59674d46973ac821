"""
Attestation service.

Verifies that an origin-chain transaction emitted the claimed purchase or
sale event from a whitelisted contract and, only then, signs the commitment
over the values decoded from that event. Holds no state between requests;
replay protection is the destination contract's nonce flag.
"""
from __future__ import annotations

import logging
from typing import Callable, Dict, Optional

from web3 import Web3

from ..chain.adapter import ChainAdapter
from ..chain.events import (
    ELECTRICITY_PURCHASE,
    ELECTRICITY_SOLD,
    EventSchema,
    PurchaseEvent,
    SaleEvent,
    UnknownEvent,
)
from ..config import GridRelaySettings
from ..exceptions import EventMismatchError, EventNotFoundError, ValidationError
from ..logging_utils import mask_address
from .commitment import CommitmentSigner

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("gridrelay.attestation.audit")

AdapterFactory = Callable[[int], ChainAdapter]


class AttestationService:
    """Signs commitments for verified ElectricityPurchase / ElectricitySold events."""

    def __init__(
        self,
        settings: GridRelaySettings,
        signer: Optional[CommitmentSigner] = None,
        adapter_factory: Optional[AdapterFactory] = None,
    ):
        self._settings = settings
        self._signer = signer or CommitmentSigner(settings.validator_private_key)
        self._adapter_factory = adapter_factory or self._default_adapter
        self._adapters: Dict[int, ChainAdapter] = {}

    @property
    def validator_address(self) -> str:
        return self._signer.address

    def _default_adapter(self, chain_id: int) -> ChainAdapter:
        return ChainAdapter(
            self._settings.get_chain(chain_id),
            default_timeout_seconds=self._settings.confirmation_timeout_seconds,
            default_poll_seconds=self._settings.confirmation_poll_seconds,
        )

    def _adapter(self, chain_id: int) -> ChainAdapter:
        if chain_id not in self._adapters:
            self._adapters[chain_id] = self._adapter_factory(chain_id)
        return self._adapters[chain_id]

    async def attest_purchase(
        self,
        amount: int,
        buyer: str,
        nonce: int,
        origin_tx_hash: str,
        origin_chain_id: Optional[int] = None,
        destination_chain_id: Optional[int] = None,
    ) -> str:
        """Verify an ``ElectricityPurchase`` on the escrow and sign it."""
        origin = self._resolve_chains(
            origin_chain_id, destination_chain_id, default_origin=self._settings.external_chain_id
        )
        escrow = self._settings.escrow_address(origin)
        event = await self._find_event(origin, origin_tx_hash, escrow, ELECTRICITY_PURCHASE)
        self._check_match(event, buyer, amount, nonce)
        return self._sign("BUY", event, origin, origin_tx_hash)

    async def attest_sale(
        self,
        amount: int,
        seller: str,
        nonce: int,
        origin_tx_hash: str,
        origin_chain_id: Optional[int] = None,
        destination_chain_id: Optional[int] = None,
    ) -> str:
        """Verify an ``ElectricitySold`` on the sale emitter and sign it."""
        origin = self._resolve_chains(
            origin_chain_id, destination_chain_id, default_origin=self._settings.game_chain_id
        )
        emitter = self._settings.sell_emitter_address(origin)
        event = await self._find_event(origin, origin_tx_hash, emitter, ELECTRICITY_SOLD)
        self._check_match(event, seller, amount, nonce)
        return self._sign("SELL", event, origin, origin_tx_hash)

    def _resolve_chains(
        self,
        origin_chain_id: Optional[int],
        destination_chain_id: Optional[int],
        default_origin: int,
    ) -> int:
        origin = int(origin_chain_id) if origin_chain_id is not None else default_origin
        self._settings.get_chain(origin)
        if destination_chain_id is not None:
            self._settings.get_chain(int(destination_chain_id))
        return origin

    async def _find_event(
        self,
        chain_id: int,
        tx_hash: str,
        contract: str,
        schema: EventSchema,
    ) -> PurchaseEvent | SaleEvent:
        adapter = self._adapter(chain_id)
        receipt = await adapter.get_receipt(tx_hash)

        # Logs from any other contract are never decoded
        logs = receipt.logs_from(contract)
        if not logs:
            raise EventNotFoundError(schema.name, tx_hash)

        reasons = []
        for log in logs:
            event = adapter.decode_log(log, schema)
            if isinstance(event, UnknownEvent):
                reasons.append(event.reason)
                continue
            return event

        logger.warning(
            f"Logs from {contract} in {tx_hash} do not decode as {schema.name}: {reasons}"
        )
        raise EventMismatchError(reason=f"not a {schema.name} event")

    @staticmethod
    def _check_match(
        event: PurchaseEvent | SaleEvent,
        party: str,
        amount: int,
        nonce: int,
    ) -> None:
        if event.party.lower() != party.lower():
            raise EventMismatchError(reason="party")
        if int(event.amount) != int(amount):
            raise EventMismatchError(reason="amount")
        if int(event.nonce) != int(nonce):
            raise EventMismatchError(reason="nonce")

    def _sign(
        self,
        direction: str,
        event: PurchaseEvent | SaleEvent,
        origin_chain_id: int,
        tx_hash: str,
    ) -> str:
        # Always the decoded values, never the caller's copy
        party = Web3.to_checksum_address(event.party)
        signature = self._signer.sign(party, event.amount, event.nonce)
        audit_logger.info(
            f"Issued {direction} signature for {mask_address(party)} amount={event.amount} "
            f"nonce={event.nonce} origin_chain={origin_chain_id} tx={tx_hash}",
            extra={"event": "signature_issued"},
        )
        return signature

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()
        self._adapters.clear()


def parse_uint(value: object, field: str) -> int:
    """Accept ints and decimal strings for uint256 request fields."""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {field}", field=field)
    try:
        parsed = int(str(value), 10) if isinstance(value, str) else int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid {field}", field=field) from e
    if parsed < 0 or parsed >= 2**256:
        raise ValidationError(f"Invalid {field}", field=field)
    return parsed


__all__ = ["AttestationService", "AdapterFactory", "parse_uint"]
