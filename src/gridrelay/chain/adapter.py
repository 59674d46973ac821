"""
Per-chain adapter used by the attestation service and the relay.

Wraps an ``RPCClient`` with the operations the relay needs: receipt lookup,
event decoding, eth_call simulation, signed submission, read calls and
confirmation waits.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol, Tuple, runtime_checkable

from eth_abi import decode
from web3 import Web3

from ..config import ChainConfig
from ..exceptions import (
    ConfirmationTimeoutError,
    ContractRevertError,
    NetworkError,
    ReceiptNotFoundError,
    ReceiptPendingError,
    RPCError,
)
from .contracts import contract_error_message, extract_revert_reason
from .events import EventSchema, OnChainEvent, decode_log
from .rpc_client import RPCClient
from .types import (
    ContractCall,
    LogEntry,
    SimulationOutput,
    SimulationResult,
    TransactionReceipt,
)

logger = logging.getLogger(__name__)

# Safety margin on top of eth_estimateGas
GAS_BUFFER_PERCENT = 20


@runtime_checkable
class TransactionSigner(Protocol):
    """Anything that can sign a transaction for ``address``.

    ``sign_transaction`` may raise ``UserCancelledError`` when the owner
    declines the prompt.
    """

    @property
    def address(self) -> str: ...

    async def sign_transaction(self, tx: Dict[str, Any], description: str) -> str: ...


class ChainAdapter:
    """Chain operations for one chain id."""

    def __init__(
        self,
        chain_config: ChainConfig,
        rpc_client: Optional[RPCClient] = None,
        default_timeout_seconds: float = 180.0,
        default_poll_seconds: float = 2.0,
    ):
        self._config = chain_config
        self._rpc = rpc_client or RPCClient(chain_config)
        self._default_timeout = default_timeout_seconds
        self._default_poll = default_poll_seconds

    @property
    def chain_id(self) -> int:
        return self._config.chain_id

    @property
    def chain_config(self) -> ChainConfig:
        return self._config

    async def get_receipt(self, tx_hash: str) -> TransactionReceipt:
        """Fetch a mined receipt.

        Raises:
            ReceiptPendingError: The node knows the transaction but it is not mined
            ReceiptNotFoundError: The node does not know the transaction
        """
        raw = await self._rpc.get_transaction_receipt(tx_hash)
        if raw is None:
            if await self._rpc.get_transaction(tx_hash) is not None:
                raise ReceiptPendingError(tx_hash, self.chain_id)
            raise ReceiptNotFoundError(tx_hash, self.chain_id)
        return TransactionReceipt.from_rpc(raw)

    def decode_log(self, log: LogEntry, schema: EventSchema) -> OnChainEvent:
        return decode_log(log, schema)

    async def simulate(self, call: ContractCall, sender: str) -> SimulationOutput:
        """Dry-run ``call`` from ``sender`` with eth_call.

        Reverts come back as a ``SimulationOutput``; transport failures raise.
        """
        try:
            result = await self._rpc.eth_call(call.to_tx(sender))
        except RPCError as e:
            return _parse_simulation_error(e)
        return SimulationOutput(result=SimulationResult.SUCCESS, return_data=result)

    async def read(self, call: ContractCall) -> Tuple[Any, ...]:
        """Execute a view call and decode its outputs."""
        result = await self._rpc.eth_call(call.to_tx())
        if not call.output_types:
            return ()
        return tuple(decode(list(call.output_types), bytes.fromhex(result.removeprefix("0x"))))

    async def submit(self, call: ContractCall, wallet: TransactionSigner) -> str:
        """Sign ``call`` with ``wallet`` and broadcast it. Returns the tx hash.

        Never retried here: a second broadcast would be a second payment.
        """
        sender = Web3.to_checksum_address(wallet.address)
        tx = call.to_tx(sender)
        try:
            gas = await self._rpc.estimate_gas(tx)
        except RPCError as e:
            raise _revert_from_rpc(e) from e
        tx.update(
            {
                "nonce": await self._rpc.get_nonce(sender),
                "gas": gas * (100 + GAS_BUFFER_PERCENT) // 100,
                "gasPrice": await self._rpc.get_gas_price(),
                "chainId": self.chain_id,
                "value": call.value,
                "to": Web3.to_checksum_address(call.to),
            }
        )
        tx.pop("from", None)

        raw_tx = await wallet.sign_transaction(tx, call.describe())
        try:
            tx_hash = await self._rpc.send_raw_transaction(raw_tx)
        except RPCError as e:
            raise _revert_from_rpc(e) from e

        logger.info(
            f"Submitted {call.function_name} on {self._config.name}: {tx_hash}",
            extra={"operation": {"chain_id": self.chain_id, "tx_hash": tx_hash}},
        )
        return tx_hash

    async def await_confirmation(
        self,
        tx_hash: str,
        confirmations: int = 1,
        timeout_seconds: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> TransactionReceipt:
        """Wait until ``tx_hash`` is mined with ``confirmations`` blocks.

        Raises:
            ContractRevertError: The transaction was mined but reverted
            ConfirmationTimeoutError: Not confirmed within the timeout
        """
        timeout = timeout_seconds if timeout_seconds is not None else self._default_timeout
        poll = poll_interval if poll_interval is not None else self._default_poll
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            try:
                raw = await self._rpc.get_transaction_receipt(tx_hash)
                if raw is not None:
                    receipt = TransactionReceipt.from_rpc(raw)
                    if not receipt.succeeded:
                        raise ContractRevertError(tx_hash=tx_hash)
                    current_block = await self._rpc.get_block_number()
                    depth = current_block - receipt.block_number + 1
                    if depth >= confirmations:
                        logger.info(
                            f"Transaction {tx_hash} confirmed with {depth} confirmations"
                        )
                        return receipt
            except NetworkError as e:
                if not e.retryable:
                    raise
                logger.warning(f"Confirmation poll for {tx_hash} failed: {e}")

            if loop.time() >= deadline:
                raise ConfirmationTimeoutError(tx_hash, timeout)
            await asyncio.sleep(poll)

    async def close(self) -> None:
        await self._rpc.close()


def _parse_simulation_error(error: RPCError) -> SimulationOutput:
    message = error.message
    lowered = message.lower()
    if "insufficient funds" in lowered or "insufficient balance" in lowered:
        return SimulationOutput(
            result=SimulationResult.INSUFFICIENT_FUNDS,
            error_message=message,
        )
    data = error.data if isinstance(error.data, str) else None
    if "revert" in lowered or data:
        return SimulationOutput(
            result=SimulationResult.REVERTED,
            revert_reason=extract_revert_reason(message, data),
            error_message=message,
        )
    return SimulationOutput(result=SimulationResult.ERROR, error_message=message)


def _revert_from_rpc(error: RPCError) -> ContractRevertError:
    data = error.data if isinstance(error.data, str) else None
    reason = extract_revert_reason(error.message, data)
    return ContractRevertError(contract_error_message(reason, error.message))


__all__ = ["ChainAdapter", "TransactionSigner", "GAS_BUFFER_PERCENT"]
