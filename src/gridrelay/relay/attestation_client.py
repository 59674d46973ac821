"""HTTP client for the attestation service."""
from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from ..exceptions import SignatureServiceError
from .amounts import Direction, SettlementClaim, require_claim

logger = logging.getLogger(__name__)

_PATHS = {
    Direction.BUY: "/buy-validator-signature",
    Direction.SELL: "/sell-validator-signature",
}

_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


class AttestationClient:
    """Requests validator signatures for settlement claims.

    A single attempt per call; the orchestrator wraps calls in
    ``retry_async`` and retries only errors flagged retryable.
    """

    DEFAULT_TIMEOUT = 30.0

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers={
                    "Content-Type": "application/json",
                    "User-Agent": "gridrelay/0.1.0",
                },
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def request_signature(
        self,
        claim: SettlementClaim,
        origin_chain_id: int,
        destination_chain_id: int,
    ) -> str:
        """Ask for a signature over ``claim``. Returns the 0x-prefixed signature.

        Raises:
            SignatureServiceError: Transport failure or non-2xx response
        """
        claim = require_claim(claim)
        party_field = "buyer" if claim.direction == Direction.BUY else "seller"
        payload: dict[str, Any] = {
            "amount": str(claim.amount.units),
            party_field: claim.party,
            "nonce": str(claim.nonce),
            "txHash": claim.origin_tx_hash,
            "originChainId": origin_chain_id,
            "destinationChainId": destination_chain_id,
        }

        client = await self._get_client()
        try:
            response = await client.post(_PATHS[claim.direction], json=payload)
        except httpx.TimeoutException as e:
            raise SignatureServiceError(
                f"Signature service timed out: {e}", retryable=True
            ) from e
        except httpx.RequestError as e:
            raise SignatureServiceError(
                f"Signature service unreachable: {e}", retryable=True
            ) from e

        if response.status_code >= 400:
            try:
                message = response.json().get("error") or response.text
            except (ValueError, AttributeError):
                message = response.text
            logger.warning(
                f"Signature service returned {response.status_code}: {message}",
                extra={"status_code": response.status_code},
            )
            raise SignatureServiceError(
                f"Signature service error ({response.status_code}): {message}",
                status_code=response.status_code,
                retryable=response.status_code in _RETRYABLE_STATUS,
            )

        try:
            signature = response.json()["signature"]
        except (ValueError, KeyError, TypeError) as e:
            raise SignatureServiceError("Malformed signature service response") from e
        return signature

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "AttestationClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


__all__ = ["AttestationClient"]
