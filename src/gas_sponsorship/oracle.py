"""
Gas price oracles.

An oracle turns a chain id into slow/standard/fast fee tiers. The JSON-RPC
oracle reads eth_gasPrice, the latest block's base fee and
eth_maxPriorityFeePerGas, then composes tiers from per-tier multipliers.
Networks without EIP-1559 (BNB Smart Chain) get legacy tiers scaled from the
gas price.
"""
from __future__ import annotations

import logging
import math
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple

import httpx

from .config import NetworkConfig, get_networks
from .exceptions import OracleUnavailableError
from .models import FeeEstimate, FeeTier

logger = logging.getLogger(__name__)


class GasPriceOracle(Protocol):
    async def get_fee_estimate(self, chain_id: int) -> FeeEstimate: ...


# name -> (priority multiplier, base fee headroom, legacy multiplier, blocks to inclusion, confidence)
TIER_SETTINGS: List[Tuple[str, Decimal, Decimal, Decimal, int, float]] = [
    ("slow", Decimal("0.8"), Decimal("1.0"), Decimal("0.9"), 6, 0.7),
    ("standard", Decimal("1.0"), Decimal("1.25"), Decimal("1.0"), 3, 0.9),
    ("fast", Decimal("1.5"), Decimal("2.0"), Decimal("1.2"), 1, 0.99),
]


def compose_fee_tiers(
    network: NetworkConfig,
    gas_price: int,
    base_fee: Optional[int] = None,
    priority_fee: Optional[int] = None,
) -> FeeEstimate:
    """
    Build slow/standard/fast tiers from raw fee data (all values in wei).

    Args:
        network: Network the fees belong to
        gas_price: Legacy gas price (eth_gasPrice)
        base_fee: Latest block base fee, None on legacy networks
        priority_fee: Suggested priority fee, None to derive from gas_price

    Returns:
        FeeEstimate with non-decreasing fees slow -> fast
    """
    eip1559 = network.supports_eip1559 and base_fee is not None
    if eip1559 and priority_fee is None:
        priority_fee = max(gas_price - base_fee, 0)

    tiers: Dict[str, FeeTier] = {}
    for name, priority_mult, headroom, legacy_mult, blocks, confidence in TIER_SETTINGS:
        if eip1559:
            priority = int(Decimal(priority_fee) * priority_mult)
            max_fee = int(Decimal(base_fee) * headroom) + priority
        else:
            max_fee = int(Decimal(gas_price) * legacy_mult)
            priority = max_fee
        tiers[name] = FeeTier(
            name=name,
            max_fee_per_gas=max_fee,
            max_priority_fee_per_gas=priority,
            estimated_seconds=math.ceil(blocks * network.block_time_seconds),
            confidence=confidence,
        )

    return FeeEstimate(
        slow=tiers["slow"],
        standard=tiers["standard"],
        fast=tiers["fast"],
        base_fee_per_gas=base_fee if eip1559 else None,
    )


def normalize_fee_estimate(estimate: FeeEstimate) -> FeeEstimate:
    """
    Force tier ordering on an estimate from an untrusted oracle.

    Fees and confidence are made non-decreasing and confirmation times
    non-increasing from slow to fast; priority fees are capped at max fee.
    """
    normalized: List[FeeTier] = []
    previous: Optional[FeeTier] = None
    for tier in estimate.tiers:
        max_fee = max(tier.max_fee_per_gas, 0)
        confidence = tier.confidence
        seconds = max(tier.estimated_seconds, 0)
        if previous is not None:
            max_fee = max(max_fee, previous.max_fee_per_gas)
            confidence = max(confidence, previous.confidence)
            seconds = min(seconds, previous.estimated_seconds)
        current = FeeTier(
            name=tier.name,
            max_fee_per_gas=max_fee,
            max_priority_fee_per_gas=min(max(tier.max_priority_fee_per_gas, 0), max_fee),
            estimated_seconds=seconds,
            confidence=confidence,
        )
        normalized.append(current)
        previous = current

    slow, standard, fast = normalized
    return FeeEstimate(slow=slow, standard=standard, fast=fast, base_fee_per_gas=estimate.base_fee_per_gas)


class RPCError(Exception):
    """JSON-RPC error response."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        self.code = code
        self.data = data
        super().__init__(message)


class RpcGasPriceOracle:
    """Gas price oracle backed by each network's JSON-RPC endpoint."""

    def __init__(
        self,
        networks: Optional[Mapping[int, NetworkConfig]] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 5.0,
    ):
        self._networks = networks if networks is not None else get_networks()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._request_id = 0

    async def _rpc(self, url: str, method: str, params: List[Any]) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        response = await self._client.post(url, json=payload)
        response.raise_for_status()
        data = response.json()
        if data.get("error"):
            error = data["error"]
            raise RPCError(
                f"RPC error ({method}): {error.get('message', error)}",
                code=error.get("code"),
                data=error.get("data"),
            )
        return data.get("result")

    async def get_fee_estimate(self, chain_id: int) -> FeeEstimate:
        network = self._networks.get(chain_id)
        if network is None:
            raise OracleUnavailableError(chain_id, "unsupported network")

        url = network.rpc_url
        try:
            gas_price = int(await self._rpc(url, "eth_gasPrice", []), 16)
            base_fee: Optional[int] = None
            priority_fee: Optional[int] = None

            if network.supports_eip1559:
                block = await self._rpc(url, "eth_getBlockByNumber", ["latest", False])
                if isinstance(block, dict) and block.get("baseFeePerGas"):
                    base_fee = int(block["baseFeePerGas"], 16)
                    try:
                        priority_fee = int(await self._rpc(url, "eth_maxPriorityFeePerGas", []), 16)
                    except RPCError as e:
                        # Not every node implements it; derive from gas price instead
                        logger.debug(f"eth_maxPriorityFeePerGas unavailable on {network.name}: {e}")
        except (httpx.HTTPError, RPCError, ValueError, TypeError) as e:
            raise OracleUnavailableError(chain_id, str(e)) from e

        logger.debug(
            f"Fetched fees for {network.name}: gas_price={gas_price} "
            f"base_fee={base_fee} priority_fee={priority_fee}"
        )
        return compose_fee_tiers(network, gas_price, base_fee, priority_fee)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class StaticGasPriceOracle:
    """Oracle returning fixed tiers, for local development and tests."""

    def __init__(
        self,
        estimate: Optional[FeeEstimate] = None,
        per_chain: Optional[Mapping[int, FeeEstimate]] = None,
    ):
        self._default = estimate
        self._per_chain = dict(per_chain or {})

    @classmethod
    def from_gas_price(cls, network: NetworkConfig, gas_price_wei: int) -> "StaticGasPriceOracle":
        """Build legacy-style tiers around one gas price."""
        return cls(per_chain={network.chain_id: compose_fee_tiers(network, gas_price_wei)})

    async def get_fee_estimate(self, chain_id: int) -> FeeEstimate:
        estimate = self._per_chain.get(chain_id, self._default)
        if estimate is None:
            raise OracleUnavailableError(chain_id, "no static fees configured")
        return estimate


__all__ = [
    "GasPriceOracle",
    "TIER_SETTINGS",
    "compose_fee_tiers",
    "normalize_fee_estimate",
    "RPCError",
    "RpcGasPriceOracle",
    "StaticGasPriceOracle",
]
