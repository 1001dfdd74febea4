"""Request and result types exchanged with the sponsorship accountant."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Pattern

from .exceptions import InvalidRequestError

ETH_ADDRESS_PATTERN: Pattern[str] = re.compile(r"^0x[a-fA-F0-9]{40}$")
HEX_DATA_PATTERN: Pattern[str] = re.compile(r"^0x(?:[a-fA-F0-9]{2})*$")
METHOD_SELECTOR_PATTERN: Pattern[str] = re.compile(r"^0x[a-fA-F0-9]{8}$")
TX_HASH_PATTERN: Pattern[str] = re.compile(r"^0x[a-fA-F0-9]{64}$")

WEI_PER_NATIVE = Decimal(10**18)
ZERO = Decimal("0")


class Operation(str, Enum):
    """Kind of transaction being estimated."""
    TRANSFER = "transfer"
    TOKEN_TRANSFER = "token_transfer"
    CONTRACT_CALL = "contract_call"


def validate_address(value: Any, field_name: str = "address") -> str:
    """Validate an EVM address and return it lowercased."""
    if not isinstance(value, str) or not ETH_ADDRESS_PATTERN.match(value):
        raise InvalidRequestError(f"Invalid address: {value!r}", field=field_name)
    return value.lower()


def validate_method_selector(value: Any) -> str:
    """Validate a 4-byte method selector and return it lowercased."""
    if not isinstance(value, str) or not METHOD_SELECTOR_PATTERN.match(value):
        raise InvalidRequestError(f"Invalid method selector: {value!r}", field="method_selectors")
    return value.lower()


def validate_tx_hash(value: Any) -> str:
    if not isinstance(value, str) or not TX_HASH_PATTERN.match(value):
        raise InvalidRequestError(f"Invalid transaction hash: {value!r}", field="tx_hash")
    return value.lower()


def to_decimal(value: Any, field_name: str) -> Decimal:
    """Coerce a str/int/Decimal amount to Decimal, rejecting floats and junk."""
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, str)) and not isinstance(value, bool):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise InvalidRequestError(f"Invalid decimal amount: {value!r}", field=field_name) from None
    else:
        raise InvalidRequestError(f"Invalid decimal amount: {value!r}", field=field_name)
    if not result.is_finite():
        raise InvalidRequestError(f"Amount must be finite: {value!r}", field=field_name)
    return result


def wei_to_native(wei: int) -> Decimal:
    """Convert a wei amount to native units."""
    return Decimal(wei) / WEI_PER_NATIVE


@dataclass
class GasEstimateRequest:
    """A proposed transaction to estimate and check for sponsorship."""
    from_address: str
    to_address: str
    chain_id: int
    value: Decimal = field(default_factory=lambda: Decimal("0"))
    data: Optional[str] = None
    operation: Operation = Operation.TRANSFER

    def validate(self) -> "GasEstimateRequest":
        """Return a normalized copy, raising InvalidRequestError on bad input."""
        from_address = validate_address(self.from_address, "from_address")
        to_address = validate_address(self.to_address, "to_address")

        value = to_decimal(self.value, "value")
        if value < 0:
            raise InvalidRequestError("Transaction value must not be negative", field="value")

        data = self.data
        if data in ("", "0x"):
            data = None
        if data is not None and (not isinstance(data, str) or not HEX_DATA_PATTERN.match(data)):
            raise InvalidRequestError("Call data must be 0x-prefixed hex bytes", field="data")

        try:
            operation = Operation(self.operation)
        except ValueError:
            raise InvalidRequestError(f"Unsupported operation: {self.operation!r}", field="operation") from None

        if isinstance(self.chain_id, bool) or not isinstance(self.chain_id, int):
            raise InvalidRequestError(f"Invalid chain id: {self.chain_id!r}", field="chain_id")

        return GasEstimateRequest(
            from_address=from_address,
            to_address=to_address,
            chain_id=self.chain_id,
            value=value,
            data=data.lower() if data else None,
            operation=operation,
        )

    @property
    def data_size(self) -> int:
        """Number of call data bytes."""
        if not self.data:
            return 0
        return (len(self.data) - 2) // 2

    @property
    def method_selector(self) -> Optional[str]:
        """Leading 4 bytes of call data, if any."""
        if not self.data or self.data_size < 4:
            return None
        return self.data[:10].lower()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GasEstimateRequest":
        """Build from the camelCase shape used by wallet front ends."""
        return cls(
            from_address=data.get("from", ""),
            to_address=data.get("to", ""),
            chain_id=data.get("chainId", 0),
            value=data.get("value") or Decimal("0"),
            data=data.get("data"),
            operation=data.get("operation", Operation.TRANSFER.value),
        )


@dataclass(frozen=True)
class FeeTier:
    """One speed tier of an EIP-1559 style fee quote (wei per gas)."""
    name: str
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    estimated_seconds: int
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "maxFeePerGas": str(self.max_fee_per_gas),
            "maxPriorityFeePerGas": str(self.max_priority_fee_per_gas),
            "estimatedSeconds": self.estimated_seconds,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class FeeEstimate:
    """Slow/standard/fast tiers returned by a gas price oracle."""
    slow: FeeTier
    standard: FeeTier
    fast: FeeTier
    base_fee_per_gas: Optional[int] = None

    @property
    def tiers(self) -> List[FeeTier]:
        return [self.slow, self.standard, self.fast]


@dataclass
class SponsorshipEligibility:
    """Outcome of evaluating a request against the active policy."""
    eligible: bool
    reason: str
    policy_id: Optional[str] = None
    remaining_quota: Optional[Decimal] = None
    failed_rule: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eligible": self.eligible,
            "reason": self.reason,
            "policyId": self.policy_id,
            "remainingQuota": str(self.remaining_quota) if self.remaining_quota is not None else None,
            "failedRule": self.failed_rule,
        }


@dataclass
class GasEstimate:
    """Gas estimate with sponsorship decision folded in."""
    gas_limit: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    estimated_cost: Decimal
    is_sponsored: bool
    sponsorship_reason: str
    estimated_cost_usd: Optional[Decimal] = None
    policy_id: Optional[str] = None
    tiers: List[FeeTier] = field(default_factory=list)
    network_congestion: str = "unknown"
    estimated_confirmation_seconds: Optional[int] = None
    confidence: float = 0.0
    is_fallback: bool = False

    @property
    def user_cost(self) -> Decimal:
        """What the end user pays; zero when the policy owner sponsors."""
        return ZERO if self.is_sponsored else self.estimated_cost

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "gasLimit": str(self.gas_limit),
            "maxFeePerGas": str(self.max_fee_per_gas),
            "maxPriorityFeePerGas": str(self.max_priority_fee_per_gas),
            "estimatedCost": str(self.estimated_cost),
            "userCost": str(self.user_cost),
            "isSponsored": self.is_sponsored,
            "sponsorshipReason": self.sponsorship_reason,
            "policyId": self.policy_id,
            "tiers": [tier.to_dict() for tier in self.tiers],
            "networkCongestion": self.network_congestion,
            "estimatedConfirmationSeconds": self.estimated_confirmation_seconds,
            "confidence": self.confidence,
            "isFallback": self.is_fallback,
        }
        # Omitted rather than zero so a missing price never reads as "free"
        if self.estimated_cost_usd is not None:
            result["estimatedCostUSD"] = str(self.estimated_cost_usd)
        return result


@dataclass
class UsageStats:
    """Ledger figures for a (user, network) pair with remaining quotas."""
    address: str
    chain_id: int
    total_spent: Decimal
    transaction_count: int
    daily_spent: Decimal
    monthly_spent: Decimal
    last_updated: Optional[datetime] = None
    daily_limit: Optional[Decimal] = None
    monthly_limit: Optional[Decimal] = None

    @property
    def remaining_daily(self) -> Optional[Decimal]:
        if self.daily_limit is None:
            return None
        return max(ZERO, self.daily_limit - self.daily_spent)

    @property
    def remaining_monthly(self) -> Optional[Decimal]:
        if self.monthly_limit is None:
            return None
        return max(ZERO, self.monthly_limit - self.monthly_spent)

    def to_dict(self) -> Dict[str, Any]:
        def _opt(value: Optional[Decimal]) -> Optional[str]:
            return str(value) if value is not None else None

        return {
            "address": self.address,
            "chainId": self.chain_id,
            "totalSpent": str(self.total_spent),
            "transactionCount": self.transaction_count,
            "dailySpent": str(self.daily_spent),
            "monthlySpent": str(self.monthly_spent),
            "remainingDaily": _opt(self.remaining_daily),
            "remainingMonthly": _opt(self.remaining_monthly),
            "lastUpdated": self.last_updated.isoformat() if self.last_updated else None,
        }


@dataclass
class GasOptimization:
    """Suggested fee settings for a network."""
    suggested_gas_price: int
    suggested_gas_limit: int
    estimated_confirmation_seconds: int
    network_congestion: str
    cost_savings: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "suggestedGasPrice": str(self.suggested_gas_price),
            "suggestedGasLimit": str(self.suggested_gas_limit),
            "estimatedConfirmationSeconds": self.estimated_confirmation_seconds,
            "networkCongestion": self.network_congestion,
            "costSavings": self.cost_savings,
        }
