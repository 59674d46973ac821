"""
Configuration surface for gridrelay.

Provides centralized configuration for:
- Supported chains and their RPC endpoints (with env overrides)
- Per-chain contract addresses (escrow, sale emitter, buy receiver, world, USDC)
- Validator key for the attestation service
- Relay client settings (attestation URL, pending store, confirmations)
- Retry and logging settings
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from .exceptions import AddressNotConfiguredError, ValidationError

logger = logging.getLogger(__name__)


# Chain ids
BASE = 8453
BASE_SEPOLIA = 84532
REDSTONE = 690
GARNET = 17069
PYROPE = 695569
FOUNDRY = 31337

# Escrow contracts on the external (stablecoin) chains
ESCROW_CONTRACTS: Dict[int, str] = {
    BASE: "0x977437F82fb629FBF3028d485144Ad5666228133",
    BASE_SEPOLIA: "0xcF490CB83152Fd01F19aD1aB3C44445B2436f14E",
}

# Sale emitter contracts on the game chains
SELL_EMITTER_CONTRACTS: Dict[int, str] = {
    PYROPE: "0x745d57Ff5D45cAF46cf26c416a708B05cE59F08a",
    REDSTONE: "0x378bbc1a01D1976c5C13f2393744bFE7034457be",
}

USDC_ADDRESSES: Dict[int, str] = {
    BASE: "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
    BASE_SEPOLIA: "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
}


@dataclass
class ChainConfig:
    """Configuration for a blockchain network."""
    chain_id: int
    name: str
    display_name: str

    # RPC endpoints in priority order (primary first)
    rpc_urls: List[str] = field(default_factory=list)
    rpc_timeout_seconds: float = 30.0

    block_time_seconds: float = 2.0
    is_game_chain: bool = False
    is_testnet: bool = False
    explorer_url: str = ""

    def get_primary_rpc_url(self) -> str:
        """Get the primary (highest priority) RPC URL."""
        if not self.rpc_urls:
            raise ValueError(f"No RPC endpoints configured for {self.name}")
        return self.rpc_urls[0]

    def tx_url(self, tx_hash: str) -> Optional[str]:
        if not self.explorer_url:
            return None
        return f"{self.explorer_url}/tx/{tx_hash}"


def _build_chain_config(
    chain_id: int,
    name: str,
    display_name: str,
    default_rpc: str,
    fallback_rpcs: List[str],
    block_time: float,
    explorer_url: str,
    is_game_chain: bool = False,
    is_testnet: bool = False,
) -> ChainConfig:
    """Build a ChainConfig with environment variable overrides."""
    env_key = f"{name.upper()}_RPC_URL"
    custom_rpc = os.getenv(f"GRIDRELAY_{env_key}") or os.getenv(env_key)

    primary_url = custom_rpc or default_rpc
    urls = [primary_url] + [u for u in fallback_rpcs if u != primary_url]

    return ChainConfig(
        chain_id=chain_id,
        name=name,
        display_name=display_name,
        rpc_urls=urls,
        block_time_seconds=block_time,
        is_game_chain=is_game_chain,
        is_testnet=is_testnet,
        explorer_url=explorer_url,
    )


def build_default_chains() -> Dict[int, ChainConfig]:
    """Build the registry of supported chains, keyed by chain id."""
    chains = [
        _build_chain_config(
            chain_id=BASE,
            name="base",
            display_name="Base",
            default_rpc="https://mainnet.base.org",
            fallback_rpcs=["https://base.llamarpc.com"],
            block_time=2.0,
            explorer_url="https://basescan.org",
        ),
        _build_chain_config(
            chain_id=BASE_SEPOLIA,
            name="base_sepolia",
            display_name="Base Sepolia",
            default_rpc="https://sepolia.base.org",
            fallback_rpcs=["https://base-sepolia-rpc.publicnode.com"],
            block_time=2.0,
            explorer_url="https://sepolia.basescan.org",
            is_testnet=True,
        ),
        _build_chain_config(
            chain_id=REDSTONE,
            name="redstone",
            display_name="Redstone",
            default_rpc="https://rpc.redstonechain.com",
            fallback_rpcs=[],
            block_time=2.0,
            explorer_url="https://explorer.redstone.xyz",
            is_game_chain=True,
        ),
        _build_chain_config(
            chain_id=GARNET,
            name="garnet",
            display_name="Garnet Holesky",
            default_rpc="https://rpc.garnetchain.com",
            fallback_rpcs=[],
            block_time=2.0,
            explorer_url="https://explorer.garnetchain.com",
            is_game_chain=True,
            is_testnet=True,
        ),
        _build_chain_config(
            chain_id=PYROPE,
            name="pyrope",
            display_name="Pyrope Testnet",
            default_rpc="https://rpc.pyropechain.com",
            fallback_rpcs=[],
            block_time=2.0,
            explorer_url="https://explorer.pyropechain.com",
            is_game_chain=True,
            is_testnet=True,
        ),
        _build_chain_config(
            chain_id=FOUNDRY,
            name="foundry",
            display_name="Foundry (local)",
            default_rpc="http://127.0.0.1:8545",
            fallback_rpcs=[],
            block_time=1.0,
            explorer_url="",
            is_game_chain=True,
            is_testnet=True,
        ),
    ]
    return {c.chain_id: c for c in chains}


class GridRelaySettings(BaseSettings):
    """Main gridrelay configuration."""

    environment: Literal["dev", "test", "prod"] = "dev"
    log_level: str = "INFO"
    log_json: bool = False

    # Attestation service
    validator_private_key: str = ""
    api_host: str = "0.0.0.0"
    api_port: int = 3002
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])

    # Chain topology
    game_chain_id: int = REDSTONE
    external_chain_id: int = BASE

    # Contract address tables, keyed by chain id
    escrow_addresses: Dict[int, str] = Field(default_factory=lambda: dict(ESCROW_CONTRACTS))
    sell_emitter_addresses: Dict[int, str] = Field(default_factory=lambda: dict(SELL_EMITTER_CONTRACTS))
    buy_receiver_addresses: Dict[int, str] = Field(default_factory=dict)
    world_addresses: Dict[int, str] = Field(default_factory=dict)
    usdc_addresses: Dict[int, str] = Field(default_factory=lambda: dict(USDC_ADDRESSES))

    # Relay client
    attestation_url: str = "http://localhost:3002"
    attestation_timeout_seconds: float = 30.0
    wallet_private_key: str = ""
    wallet_chain_id: Optional[int] = None
    pending_store_dsn: str = "sqlite:///./data/pending_transfers.db"
    lease_ttl_seconds: int = 120
    confirmations: int = 1
    confirmation_timeout_seconds: float = 180.0
    confirmation_poll_seconds: float = 2.0

    # Retry around network suspension points
    retry_max_attempts: int = 4
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 20.0

    class Config:
        env_prefix = "GRIDRELAY_"
        env_nested_delimiter = "__"
        env_file = ".env"
        extra = "ignore"

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_origins(cls, v):
        """Parse comma-separated origins from env var."""
        if isinstance(v, str) and not v.strip().startswith("["):
            return [o.strip() for o in v.split(",") if o.strip()]
        return v

    @field_validator("pending_store_dsn")
    @classmethod
    def validate_store_dsn(cls, v: str) -> str:
        if not v.startswith("sqlite:///"):
            raise ValueError(f"unsupported pending store DSN: {v}")
        return v

    @property
    def chains(self) -> Dict[int, ChainConfig]:
        return _default_chains()

    @property
    def effective_wallet_chain_id(self) -> int:
        return self.wallet_chain_id if self.wallet_chain_id is not None else self.external_chain_id

    def get_chain(self, chain_id: int) -> ChainConfig:
        """Chain config for ``chain_id``; unsupported ids are a client error."""
        chain = self.chains.get(int(chain_id))
        if chain is None:
            raise ValidationError(f"Unsupported chain ID: {chain_id}", field="chainId")
        return chain

    def escrow_address(self, chain_id: int) -> str:
        return _lookup(self.escrow_addresses, "Escrow", chain_id)

    def sell_emitter_address(self, chain_id: int) -> str:
        return _lookup(self.sell_emitter_addresses, "Sell emitter", chain_id)

    def buy_receiver_address(self, chain_id: int) -> str:
        return _lookup(self.buy_receiver_addresses, "Buy receiver", chain_id)

    def world_address(self, chain_id: int) -> str:
        return _lookup(self.world_addresses, "World", chain_id)

    def usdc_address(self, chain_id: int) -> str:
        return _lookup(self.usdc_addresses, "USDC", chain_id)


def _lookup(table: Dict[int, str], contract: str, chain_id: int) -> str:
    address = (table.get(int(chain_id)) or "").strip()
    if not address:
        raise AddressNotConfiguredError(contract, int(chain_id))
    return address


@lru_cache
def _default_chains() -> Dict[int, ChainConfig]:
    return build_default_chains()


@lru_cache
def load_settings(env_file: str | None = None) -> GridRelaySettings:
    """Load GridRelaySettings once per process to keep services consistent."""
    env_path = Path(env_file) if env_file else None
    return GridRelaySettings(_env_file=env_path)


__all__ = [
    "BASE",
    "BASE_SEPOLIA",
    "REDSTONE",
    "GARNET",
    "PYROPE",
    "FOUNDRY",
    "ESCROW_CONTRACTS",
    "SELL_EMITTER_CONTRACTS",
    "USDC_ADDRESSES",
    "ChainConfig",
    "GridRelaySettings",
    "build_default_chains",
    "load_settings",
]
