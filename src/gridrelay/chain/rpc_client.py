"""
JSON-RPC client with endpoint failover and chain id validation.

Features:
- Multiple RPC endpoints per chain, tried in health order
- Chain ID validation on first use
- Node errors mapped onto the gridrelay exception hierarchy
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import httpx

from ..config import ChainConfig
from ..exceptions import ConfigError, NetworkError, RPCError

logger = logging.getLogger(__name__)

# Node error codes that mean "try another endpoint"
_FAILOVER_CODES = (-32000, -32005, -32603)


class EndpointStatus(str, Enum):
    """Health status of an RPC endpoint."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class EndpointHealth:
    """Health tracking for an RPC endpoint."""
    url: str
    priority: int = 0
    status: EndpointStatus = EndpointStatus.UNKNOWN
    consecutive_failures: int = 0
    total_requests: int = 0
    total_failures: int = 0
    last_failure: Optional[datetime] = None
    avg_latency_ms: float = 0.0
    last_error: Optional[str] = None

    max_consecutive_failures: int = 3
    degraded_latency_ms: float = 5000.0

    def record_success(self, latency_ms: float) -> None:
        self.consecutive_failures = 0
        self.total_requests += 1
        if self.avg_latency_ms == 0:
            self.avg_latency_ms = latency_ms
        else:
            self.avg_latency_ms = 0.9 * self.avg_latency_ms + 0.1 * latency_ms
        self.status = (
            EndpointStatus.DEGRADED
            if latency_ms > self.degraded_latency_ms
            else EndpointStatus.HEALTHY
        )

    def record_failure(self, error: str) -> None:
        self.consecutive_failures += 1
        self.total_requests += 1
        self.total_failures += 1
        self.last_failure = datetime.now(timezone.utc)
        self.last_error = error
        if self.consecutive_failures >= self.max_consecutive_failures:
            self.status = EndpointStatus.UNHEALTHY

    def priority_score(self) -> float:
        """Lower score = higher priority."""
        score = float(self.priority * 100)
        if self.status == EndpointStatus.UNHEALTHY:
            score += 10000
        elif self.status == EndpointStatus.DEGRADED:
            score += 1000
        score += self.avg_latency_ms / 10.0
        score += self.consecutive_failures * 100
        return score


class ChainIDMismatchError(ConfigError):
    """The node reports a different chain than the one configured."""

    error_code = "CHAIN_ID_MISMATCH"

    def __init__(self, chain: str, expected: int, received: int) -> None:
        self.expected = expected
        self.received = received
        super().__init__(
            f"Chain ID mismatch for {chain}: expected {expected}, got {received}",
            details={"expected": expected, "received": received},
        )


class AllEndpointsFailedError(NetworkError):
    """Every configured endpoint failed for one request."""

    error_code = "ALL_ENDPOINTS_FAILED"

    def __init__(self, chain: str, errors: List[Tuple[str, str]]) -> None:
        self.errors = errors
        summary = "; ".join(f"{url}: {err}" for url, err in errors[:3])
        super().__init__(f"All RPC endpoints failed for {chain}. Errors: {summary}")


class RPCClient:
    """
    JSON-RPC client for one chain.

    Transport failures and overloaded nodes fail over to the next endpoint;
    when every endpoint failed the call raises ``AllEndpointsFailedError``
    (retryable). A JSON-RPC error object that is not an overload raises
    ``RPCError`` (not retryable), since repeating it would give the same
    answer.
    """

    def __init__(
        self,
        chain_config: ChainConfig,
        validate_chain_id_on_connect: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not chain_config.rpc_urls:
            raise ConfigError(f"No RPC endpoints configured for {chain_config.name}")
        self._config = chain_config
        self._validate_chain_id = validate_chain_id_on_connect
        self._transport = transport
        self._request_id = 0
        self._http_client: Optional[httpx.AsyncClient] = None
        self._connected = False
        self._endpoints = [
            EndpointHealth(url=url, priority=i) for i, url in enumerate(chain_config.rpc_urls)
        ]

    @property
    def chain_id(self) -> int:
        return self._config.chain_id

    @property
    def chain_name(self) -> str:
        return self._config.name

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.rpc_timeout_seconds, connect=10.0),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
                transport=self._transport,
            )
        return self._http_client

    async def connect(self) -> None:
        """Validate the chain id reported by the node."""
        if self._connected:
            return
        if self._validate_chain_id:
            received = int(await self._call_internal("eth_chainId", []), 16)
            if received != self._config.chain_id:
                raise ChainIDMismatchError(self._config.name, self._config.chain_id, received)
            logger.info(f"Chain ID validated for {self._config.name}: {received}")
        self._connected = True

    async def _call_internal(self, method: str, params: List[Any]) -> Any:
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }
        errors: List[Tuple[str, str]] = []

        for health in sorted(self._endpoints, key=lambda h: h.priority_score()):
            start_time = time.time()
            try:
                response = await self._get_client().post(
                    health.url,
                    json=payload,
                    headers={"Content-Type": "application/json"},
                )
                latency_ms = (time.time() - start_time) * 1000
                response.raise_for_status()
                result = response.json()
            except (httpx.HTTPError, ValueError) as e:
                health.record_failure(str(e))
                errors.append((health.url, str(e)))
                logger.warning(f"RPC call {method} to {health.url} failed: {e}")
                continue

            if "error" in result:
                error = result["error"] or {}
                message = error.get("message", str(error))
                code = error.get("code", 0)
                if code in _FAILOVER_CODES and not _is_execution_error(message):
                    health.record_failure(message)
                    errors.append((health.url, message))
                    logger.warning(f"RPC error from {health.url}: {message}, trying next endpoint")
                    continue
                health.record_success(latency_ms)
                raise RPCError(message=message, code=code, data=error.get("data"))

            health.record_success(latency_ms)
            logger.debug(f"RPC call {method} to {health.url} succeeded in {latency_ms:.0f}ms")
            return result.get("result")

        raise AllEndpointsFailedError(chain=self._config.name, errors=errors)

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """
        Make a JSON-RPC call with automatic failover.

        Raises:
            ChainIDMismatchError: If chain ID validation fails
            RPCError: If the node returns an error
            AllEndpointsFailedError: If all endpoints fail
        """
        if not self._connected:
            await self.connect()
        return await self._call_internal(method, params or [])

    async def get_block_number(self) -> int:
        return int(await self.call("eth_blockNumber"), 16)

    async def get_gas_price(self) -> int:
        return int(await self.call("eth_gasPrice"), 16)

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        return int(await self.call("eth_estimateGas", [tx]), 16)

    async def get_nonce(self, address: str, block: str = "pending") -> int:
        return int(await self.call("eth_getTransactionCount", [address, block]), 16)

    async def send_raw_transaction(self, signed_tx: str) -> str:
        if not signed_tx.startswith("0x"):
            signed_tx = "0x" + signed_tx
        return await self.call("eth_sendRawTransaction", [signed_tx])

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getTransactionReceipt", [tx_hash])

    async def get_transaction(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getTransactionByHash", [tx_hash])

    async def eth_call(self, tx: Dict[str, Any], block: str = "latest") -> str:
        """Execute a call without creating a transaction."""
        return await self.call("eth_call", [tx, block])

    def get_endpoint_stats(self) -> List[Dict[str, Any]]:
        return [
            {
                "url": h.url,
                "status": h.status.value,
                "total_requests": h.total_requests,
                "total_failures": h.total_failures,
                "avg_latency_ms": round(h.avg_latency_ms, 2),
                "last_error": h.last_error,
            }
            for h in self._endpoints
        ]

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
        self._connected = False

    async def __aenter__(self) -> "RPCClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def _is_execution_error(message: str) -> bool:
    lowered = message.lower()
    return "revert" in lowered or "insufficient funds" in lowered


__all__ = [
    "RPCClient",
    "EndpointStatus",
    "EndpointHealth",
    "ChainIDMismatchError",
    "AllEndpointsFailedError",
]
