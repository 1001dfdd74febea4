"""
Configuration for the gas sponsorship engine.

Provides:
- SponsorshipSettings: environment-driven settings (prefix GAS_SPONSOR_)
- NetworkConfig: per-chain parameters used for fee tiers and congestion
- A default network table with RPC URL overrides from the environment
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from typing import Dict, Literal, Optional, Tuple

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class SponsorshipSettings(BaseSettings):
    """Main engine configuration."""

    environment: Literal["dev", "staging", "prod"] = "dev"

    # Quota defaults applied when a policy carries no limit of its own
    daily_limit_default: Optional[Decimal] = None
    monthly_limit_default: Optional[Decimal] = None

    # Bound on every collaborator call (policy store, oracle, pricing)
    request_timeout_ms: int = 5000

    # Usage ledger persistence
    ledger_backend: Literal["memory", "file", "redis"] = "memory"
    ledger_path: str = "./data/gas_ledger.json"
    redis_url: str = ""

    # Policy source: a JSON file, a dashboard API, or in-memory when both empty
    policy_file: str = ""
    policy_api_url: str = ""
    policy_api_key: str = ""

    # Live native-token pricing via CoinGecko
    fiat_pricing: bool = False

    log_level: str = "INFO"
    log_json: bool = False

    model_config = SettingsConfigDict(
        env_prefix="GAS_SPONSOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("request_timeout_ms")
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("request_timeout_ms must be positive")
        return v

    @field_validator("daily_limit_default", "monthly_limit_default")
    @classmethod
    def validate_limit(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        if v is not None and v < 0:
            raise ValueError("limit defaults must not be negative")
        return v

    @property
    def request_timeout_seconds(self) -> float:
        return self.request_timeout_ms / 1000


@lru_cache
def get_settings() -> SponsorshipSettings:
    """Get cached settings instance."""
    return SponsorshipSettings()


@dataclass(frozen=True)
class NetworkConfig:
    """Configuration for a sponsorable network."""
    chain_id: int
    name: str
    display_name: str
    native_symbol: str
    rpc_url: str
    block_time_seconds: float = 2.0

    # Gas price bands (gwei) separating low/medium/high congestion
    congestion_thresholds_gwei: Tuple[Decimal, Decimal] = (Decimal("5"), Decimal("20"))

    supports_eip1559: bool = True
    is_testnet: bool = False

    def classify_congestion(self, gas_price_wei: int) -> str:
        """Classify a per-gas price against this network's bands."""
        low, high = self.congestion_thresholds_gwei
        gwei = Decimal(gas_price_wei) / Decimal(10**9)
        if gwei < low:
            return "low"
        if gwei < high:
            return "medium"
        return "high"


def _rpc_url(name: str, default: str) -> str:
    """Resolve an RPC URL, preferring <NAME>_RPC_URL from the environment."""
    env_key = f"{name.upper()}_RPC_URL"
    return os.getenv(env_key) or os.getenv(f"GAS_SPONSOR_{env_key}") or default


def build_default_networks() -> Dict[int, NetworkConfig]:
    """Build the table of supported networks keyed by chain id."""
    networks = [
        NetworkConfig(
            chain_id=56,
            name="bnb",
            display_name="BNB Smart Chain",
            native_symbol="BNB",
            rpc_url=_rpc_url("bnb", "https://bsc-dataseed.bnbchain.org"),
            block_time_seconds=3.0,
            congestion_thresholds_gwei=(Decimal("5"), Decimal("20")),
            supports_eip1559=False,
        ),
        NetworkConfig(
            chain_id=97,
            name="bnb_testnet",
            display_name="BNB Smart Chain Testnet",
            native_symbol="BNB",
            rpc_url=_rpc_url("bnb_testnet", "https://data-seed-prebsc-1-s1.bnbchain.org:8545"),
            block_time_seconds=3.0,
            congestion_thresholds_gwei=(Decimal("5"), Decimal("20")),
            supports_eip1559=False,
            is_testnet=True,
        ),
        NetworkConfig(
            chain_id=1,
            name="ethereum",
            display_name="Ethereum",
            native_symbol="ETH",
            rpc_url=_rpc_url("ethereum", "https://ethereum-rpc.publicnode.com"),
            block_time_seconds=12.0,
            congestion_thresholds_gwei=(Decimal("15"), Decimal("50")),
        ),
        NetworkConfig(
            chain_id=11155111,
            name="ethereum_sepolia",
            display_name="Ethereum Sepolia",
            native_symbol="ETH",
            rpc_url=_rpc_url("ethereum_sepolia", "https://ethereum-sepolia-rpc.publicnode.com"),
            block_time_seconds=12.0,
            congestion_thresholds_gwei=(Decimal("1"), Decimal("10")),
            is_testnet=True,
        ),
        NetworkConfig(
            chain_id=8453,
            name="base",
            display_name="Base",
            native_symbol="ETH",
            rpc_url=_rpc_url("base", "https://mainnet.base.org"),
            congestion_thresholds_gwei=(Decimal("0.0012"), Decimal("0.0045")),
        ),
        NetworkConfig(
            chain_id=84532,
            name="base_sepolia",
            display_name="Base Sepolia",
            native_symbol="ETH",
            rpc_url=_rpc_url("base_sepolia", "https://sepolia.base.org"),
            congestion_thresholds_gwei=(Decimal("0.0012"), Decimal("0.0045")),
            is_testnet=True,
        ),
        NetworkConfig(
            chain_id=137,
            name="polygon",
            display_name="Polygon",
            native_symbol="POL",
            rpc_url=_rpc_url("polygon", "https://polygon-rpc.com"),
            congestion_thresholds_gwei=(Decimal("36"), Decimal("75")),
        ),
        NetworkConfig(
            chain_id=42161,
            name="arbitrum",
            display_name="Arbitrum One",
            native_symbol="ETH",
            rpc_url=_rpc_url("arbitrum", "https://arb1.arbitrum.io/rpc"),
            block_time_seconds=1.0,
            congestion_thresholds_gwei=(Decimal("0.12"), Decimal("0.3")),
        ),
        NetworkConfig(
            chain_id=10,
            name="optimism",
            display_name="Optimism",
            native_symbol="ETH",
            rpc_url=_rpc_url("optimism", "https://mainnet.optimism.io"),
            congestion_thresholds_gwei=(Decimal("0.0012"), Decimal("0.0045")),
        ),
    ]
    return {network.chain_id: network for network in networks}


_networks: Optional[Dict[int, NetworkConfig]] = None


def get_networks() -> Dict[int, NetworkConfig]:
    """Get the network table, building it on first use."""
    global _networks
    if _networks is None:
        _networks = build_default_networks()
    return _networks


def get_network(chain_id: int) -> Optional[NetworkConfig]:
    """Look up a network by chain id; None if unsupported."""
    return get_networks().get(chain_id)


__all__ = [
    "SponsorshipSettings",
    "get_settings",
    "NetworkConfig",
    "build_default_networks",
    "get_networks",
    "get_network",
]
