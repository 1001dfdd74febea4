"""
Gas sponsorship accountant.

Decides whether a transaction is sponsored under its network's policy, builds
gas estimates with the decision folded in, and keeps the per-(user, network)
usage ledger that spending limits are checked against.

Failure handling:
- policy store down or empty: ineligible ("no active policy")
- gas price oracle down: fallback estimate flagged ``is_fallback``
- ledger write failed: PersistenceError carrying the in-memory stats
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import math
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, TypeVar, Union

from .config import NetworkConfig, SponsorshipSettings, get_networks
from .exceptions import InvalidRequestError, PersistenceError
from .ledger import RATE_LIMIT_WINDOW, LedgerRecord, UsageLedger, ledger_key
from .logging_utils import log_operation
from .models import (
    ZERO,
    FeeTier,
    GasEstimate,
    GasEstimateRequest,
    GasOptimization,
    Operation,
    SponsorshipEligibility,
    UsageStats,
    to_decimal,
    validate_address,
    validate_tx_hash,
    wei_to_native,
)
from .oracle import GasPriceOracle, normalize_fee_estimate
from .policy import PolicyRule, RuleContext, SponsorshipPolicy, SpendingLimitRule, evaluate_rules
from .policy_store import PolicyStore
from .pricing import PriceLookup, resolve_price, unavailable_price

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Gas limits by operation
TRANSFER_GAS_LIMIT = 21000
TOKEN_TRANSFER_GAS_LIMIT = 65000
CONTRACT_CALL_GAS_LIMIT = 100000
CALLDATA_GAS_PER_BYTE = 16

# Used when the oracle cannot answer
FALLBACK_MAX_FEE_PER_GAS = 5 * 10**9
FALLBACK_PRIORITY_FEE_PER_GAS = 1 * 10**9
FALLBACK_CONFIDENCE = 0.5

SUGGESTED_PRICE_MULTIPLIER = Decimal("1.1")
USD_QUANTUM = Decimal("0.000001")

NO_ACTIVE_POLICY = "no active policy"
LEDGER_UNAVAILABLE = "usage ledger unavailable"


def gas_limit_for(operation: Operation, data_size: int = 0) -> int:
    """Gas limit for an operation; contract calls scale with call data size."""
    if operation == Operation.TRANSFER:
        return TRANSFER_GAS_LIMIT
    if operation == Operation.TOKEN_TRANSFER:
        return TOKEN_TRANSFER_GAS_LIMIT
    return max(CONTRACT_CALL_GAS_LIMIT, CONTRACT_CALL_GAS_LIMIT // 2 + data_size * CALLDATA_GAS_PER_BYTE)


class SponsorshipAccountant:
    """
    Sponsorship decisions, gas estimates and usage accounting.

    Collaborators are injected; nothing here is a module-level singleton.
    Every collaborator call is bounded by ``settings.request_timeout_ms``.

    Args:
        policy_store: Source of per-network sponsorship policies
        oracle: Gas price oracle returning slow/standard/fast tiers
        ledger: UsageLedger, or a bare LedgerStore to wrap in one
        settings: Limits defaults and timeouts (defaults when omitted)
        networks: Supported networks keyed by chain id
        native_to_fiat_rate: ``symbol -> Decimal | None`` lookup, sync or async
        clock: Returns the current UTC time (injectable for tests)
    """

    def __init__(
        self,
        policy_store: PolicyStore,
        oracle: GasPriceOracle,
        ledger: Any,
        settings: Optional[SponsorshipSettings] = None,
        networks: Optional[Mapping[int, NetworkConfig]] = None,
        native_to_fiat_rate: PriceLookup = unavailable_price,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._policy_store = policy_store
        self._oracle = oracle
        self._ledger = ledger if isinstance(ledger, UsageLedger) else UsageLedger(ledger)
        self._settings = settings or SponsorshipSettings()
        self._networks = networks if networks is not None else get_networks()
        self._native_to_fiat_rate = native_to_fiat_rate
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def ledger(self) -> UsageLedger:
        return self._ledger

    @property
    def networks(self) -> Mapping[int, NetworkConfig]:
        return self._networks

    # ------------------------------------------------------------------ helpers

    def _now(self) -> datetime:
        return self._clock()

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self._settings.request_timeout_seconds)

    def _require_network(self, chain_id: Any) -> NetworkConfig:
        network = self._networks.get(chain_id) if isinstance(chain_id, int) else None
        if network is None:
            raise InvalidRequestError(f"Unsupported chain id: {chain_id!r}", field="chain_id")
        return network

    async def _load_policy(self, chain_id: int) -> Optional[SponsorshipPolicy]:
        """Fetch a network's policy; any failure reads as no policy."""
        try:
            async with log_operation("policy_store.get_policy", logger, chain_id=chain_id):
                return await self._bounded(self._policy_store.get_policy(chain_id))
        except asyncio.TimeoutError:
            logger.warning(f"Policy lookup for chain {chain_id} timed out; treating as no policy")
        except Exception as e:
            logger.warning(f"Policy lookup for chain {chain_id} failed; treating as no policy: {e}")
        return None

    def _effective_limits(self, policy: Optional[SponsorshipPolicy]) -> Tuple[Optional[Decimal], Optional[Decimal]]:
        """Policy-level caps, falling back to the configured defaults."""
        daily = policy.daily_limit if policy and policy.daily_limit is not None else None
        monthly = policy.monthly_limit if policy and policy.monthly_limit is not None else None
        if daily is None:
            daily = self._settings.daily_limit_default
        if monthly is None:
            monthly = self._settings.monthly_limit_default
        return daily, monthly

    def _rules(self, policy: SponsorshipPolicy) -> List[PolicyRule]:
        return policy.effective_rules(self._settings.daily_limit_default, self._settings.monthly_limit_default)

    def _quota_limits(self, policy: Optional[SponsorshipPolicy]) -> Tuple[Optional[Decimal], Optional[Decimal]]:
        """
        Caps to report remaining quota against.

        The tightest cap enforced by an enabled spending-limit rule wins. The
        policy-level (or default) caps are enforced as such a rule too.
        """
        daily, monthly = self._effective_limits(policy)
        if policy is None:
            return daily, monthly

        rules = [r for r in self._rules(policy) if isinstance(r, SpendingLimitRule) and r.enabled]
        if not rules:
            return daily, monthly

        daily_caps = [r.daily_limit if r.daily_limit is not None else daily for r in rules]
        monthly_caps = [r.monthly_limit if r.monthly_limit is not None else monthly for r in rules]
        daily_caps = [c for c in daily_caps if c is not None]
        monthly_caps = [c for c in monthly_caps if c is not None]
        return (min(daily_caps) if daily_caps else None, min(monthly_caps) if monthly_caps else None)

    def _build_stats(
        self,
        address: str,
        chain_id: int,
        record: LedgerRecord,
        policy: Optional[SponsorshipPolicy],
        at: datetime,
    ) -> UsageStats:
        daily_limit, monthly_limit = self._quota_limits(policy)
        return UsageStats(
            address=address,
            chain_id=chain_id,
            total_spent=record.total_spent,
            transaction_count=record.transaction_count,
            daily_spent=record.daily_spent(at),
            monthly_spent=record.monthly_spent(at),
            last_updated=record.last_updated,
            daily_limit=daily_limit,
            monthly_limit=monthly_limit,
        )

    async def _price_usd(self, network: NetworkConfig, cost: Decimal) -> Optional[Decimal]:
        try:
            price = await self._bounded(resolve_price(self._native_to_fiat_rate, network.native_symbol))
        except Exception as e:
            logger.debug(f"No {network.native_symbol} price: {e}")
            return None
        if price is None:
            return None
        return (cost * price).quantize(USD_QUANTUM)

    # --------------------------------------------------------------- eligibility

    async def check_eligibility(self, request: GasEstimateRequest) -> SponsorshipEligibility:
        """
        Evaluate a request against its network's active policy.

        Read-only: two calls with no usage recorded in between return the same
        result. Fails closed when the policy or ledger cannot be read.

        Raises:
            InvalidRequestError: malformed request or unsupported chain
        """
        request = request.validate()
        self._require_network(request.chain_id)

        policy = await self._load_policy(request.chain_id)
        if policy is None or not policy.active:
            logger.warning(f"No active sponsorship policy for chain {request.chain_id}")
            return SponsorshipEligibility(eligible=False, reason=NO_ACTIVE_POLICY)

        key = ledger_key(request.from_address, request.chain_id)
        now = self._now()
        try:
            record = await self._bounded(self._ledger.get(key)) or LedgerRecord()
        except Exception as e:
            logger.warning(f"Ledger read for {key} failed; denying sponsorship: {e}")
            return SponsorshipEligibility(eligible=False, reason=LEDGER_UNAVAILABLE, policy_id=policy.id)

        daily_limit, monthly_limit = self._effective_limits(policy)
        daily_spent = record.daily_spent(now)
        ctx = RuleContext(
            request=request,
            daily_spent=daily_spent,
            monthly_spent=record.monthly_spent(now),
            transactions_last_hour=record.transactions_since(now - RATE_LIMIT_WINDOW),
            daily_limit=daily_limit,
            monthly_limit=monthly_limit,
        )
        outcome = evaluate_rules(self._rules(policy), ctx)

        quota_limit, _ = self._quota_limits(policy)
        remaining = max(ZERO, quota_limit - daily_spent) if quota_limit is not None else None

        if not outcome.passed:
            logger.info(f"Sponsorship denied for {request.from_address} on chain {request.chain_id}: {outcome.reason}")
            return SponsorshipEligibility(
                eligible=False,
                reason=outcome.reason,
                policy_id=policy.id,
                remaining_quota=remaining,
                failed_rule=outcome.failed_rule,
            )

        logger.debug(f"Sponsorship approved for {request.from_address} on chain {request.chain_id}")
        return SponsorshipEligibility(
            eligible=True,
            reason=outcome.reason,
            policy_id=policy.id,
            remaining_quota=remaining,
        )

    # ---------------------------------------------------------------- estimates

    async def estimate_gas(self, request: GasEstimateRequest) -> GasEstimate:
        """
        Estimate gas for a request and fold in the sponsorship decision.

        Never raises for collaborator failures: an unreachable oracle yields
        the fallback estimate.

        Raises:
            InvalidRequestError: malformed request or unsupported chain
        """
        request = request.validate()
        network = self._require_network(request.chain_id)
        gas_limit = gas_limit_for(request.operation, request.data_size)

        eligibility = await self.check_eligibility(request)

        try:
            async with log_operation("oracle.get_fee_estimate", logger, chain_id=request.chain_id):
                fees = normalize_fee_estimate(
                    await self._bounded(self._oracle.get_fee_estimate(request.chain_id))
                )
        except asyncio.TimeoutError:
            logger.warning(f"Gas price lookup for {network.name} timed out; using fallback estimate")
            return await self._fallback_estimate(network, gas_limit, eligibility)
        except Exception as e:
            logger.warning(f"Gas price lookup for {network.name} failed; using fallback estimate: {e}")
            return await self._fallback_estimate(network, gas_limit, eligibility)

        standard = fees.standard
        cost = wei_to_native(gas_limit * standard.max_fee_per_gas)

        return GasEstimate(
            gas_limit=gas_limit,
            max_fee_per_gas=standard.max_fee_per_gas,
            max_priority_fee_per_gas=standard.max_priority_fee_per_gas,
            estimated_cost=cost,
            estimated_cost_usd=await self._price_usd(network, cost),
            is_sponsored=eligibility.eligible,
            sponsorship_reason=eligibility.reason,
            policy_id=eligibility.policy_id,
            tiers=fees.tiers,
            network_congestion=network.classify_congestion(standard.max_fee_per_gas),
            estimated_confirmation_seconds=standard.estimated_seconds,
            confidence=standard.confidence,
        )

    async def _fallback_estimate(
        self,
        network: NetworkConfig,
        gas_limit: int,
        eligibility: SponsorshipEligibility,
    ) -> GasEstimate:
        seconds = math.ceil(3 * network.block_time_seconds)
        tiers = [
            FeeTier(
                name=name,
                max_fee_per_gas=FALLBACK_MAX_FEE_PER_GAS,
                max_priority_fee_per_gas=FALLBACK_PRIORITY_FEE_PER_GAS,
                estimated_seconds=seconds,
                confidence=FALLBACK_CONFIDENCE,
            )
            for name in ("slow", "standard", "fast")
        ]
        cost = wei_to_native(gas_limit * FALLBACK_MAX_FEE_PER_GAS)
        return GasEstimate(
            gas_limit=gas_limit,
            max_fee_per_gas=FALLBACK_MAX_FEE_PER_GAS,
            max_priority_fee_per_gas=FALLBACK_PRIORITY_FEE_PER_GAS,
            estimated_cost=cost,
            estimated_cost_usd=await self._price_usd(network, cost),
            is_sponsored=eligibility.eligible,
            sponsorship_reason=eligibility.reason,
            policy_id=eligibility.policy_id,
            tiers=tiers,
            network_congestion="unknown",
            estimated_confirmation_seconds=seconds,
            confidence=FALLBACK_CONFIDENCE,
            is_fallback=True,
        )

    async def suggest_gas_settings(
        self,
        chain_id: int,
        operation: Union[Operation, str] = Operation.TRANSFER,
    ) -> GasOptimization:
        """
        Suggest fee settings for a network.

        The suggested price is the standard tier's max fee plus 10% so the
        transaction survives a small fee rise before inclusion.
        """
        network = self._require_network(chain_id)
        try:
            op = Operation(operation)
        except ValueError:
            raise InvalidRequestError(f"Unsupported operation: {operation!r}", field="operation") from None

        try:
            fees = normalize_fee_estimate(await self._bounded(self._oracle.get_fee_estimate(chain_id)))
            standard = fees.standard
            suggested = int(Decimal(standard.max_fee_per_gas) * SUGGESTED_PRICE_MULTIPLIER)
            seconds = standard.estimated_seconds
            congestion = network.classify_congestion(standard.max_fee_per_gas)
        except Exception as e:
            logger.warning(f"Gas price lookup for {network.name} failed; suggesting fallback settings: {e}")
            suggested = FALLBACK_MAX_FEE_PER_GAS
            seconds = math.ceil(3 * network.block_time_seconds)
            congestion = "unknown"

        cost_savings = None
        if await self.is_sponsorship_enabled(chain_id):
            cost_savings = f"Gas fees are sponsored on {network.display_name}: 100% savings"

        return GasOptimization(
            suggested_gas_price=suggested,
            suggested_gas_limit=gas_limit_for(op),
            estimated_confirmation_seconds=seconds,
            network_congestion=congestion,
            cost_savings=cost_savings,
        )

    # -------------------------------------------------------------------- usage

    async def record_usage(
        self,
        address: str,
        chain_id: int,
        gas_cost: Union[Decimal, str, int],
        *,
        tx_hash: Optional[str] = None,
        sponsored: bool = True,
    ) -> UsageStats:
        """
        Record the gas cost of one confirmed transaction.

        Call once per confirmed transaction. With ``tx_hash`` repeated calls
        are no-ops. ``sponsored=False`` counts the transaction without
        charging the sponsorship quota.

        Raises:
            InvalidRequestError: malformed address, hash or negative cost
            PersistenceError: durable write failed; ``stats`` holds the
                in-memory figures including this transaction, or None when
                the ledger could not be read either
        """
        address = validate_address(address)
        self._require_network(chain_id)
        cost = to_decimal(gas_cost, "gas_cost")
        if cost < 0:
            raise InvalidRequestError("Gas cost must not be negative", field="gas_cost")
        if tx_hash is not None:
            tx_hash = validate_tx_hash(tx_hash)

        key = ledger_key(address, chain_id)
        now = self._now()
        policy = await self._load_policy(chain_id)
        try:
            record, applied = await self._ledger.record(key, cost, now, tx_hash=tx_hash, sponsored=sponsored)
        except PersistenceError as e:
            if e.record is not None:
                e.stats = self._build_stats(address, chain_id, e.record, policy, now)
            raise

        if applied:
            logger.info(f"Recorded {cost} gas for {address} on chain {chain_id} (sponsored={sponsored})")
        else:
            logger.info(f"Transaction {tx_hash} already recorded for {key}; ignoring")

        return self._build_stats(address, chain_id, record, policy, now)

    async def get_usage_stats(self, address: str, chain_id: int) -> Optional[UsageStats]:
        """
        Current usage for a (user, network) pair; None when nothing recorded.

        Raises:
            InvalidRequestError: malformed address or unsupported chain
            PersistenceError: the ledger could not be read
        """
        address = validate_address(address)
        self._require_network(chain_id)
        key = ledger_key(address, chain_id)

        try:
            record = await self._bounded(self._ledger.get(key))
        except Exception as e:
            logger.error(f"Ledger read for {key} failed: {e}")
            raise PersistenceError(
                f"Failed to read usage for {key}: {e}",
                details={"key": key, "backend": self._ledger.backend},
            ) from e

        if record is None:
            return None
        policy = await self._load_policy(chain_id)
        return self._build_stats(address, chain_id, record, policy, self._now())

    # ------------------------------------------------------------------- status

    async def is_sponsorship_enabled(self, chain_id: int) -> bool:
        if chain_id not in self._networks:
            return False
        policy = await self._load_policy(chain_id)
        return policy is not None and policy.active

    async def get_status(self, chain_id: int) -> Dict[str, Any]:
        """Operational summary for a network."""
        network = self._require_network(chain_id)
        policy = await self._load_policy(chain_id)
        return {
            "chainId": chain_id,
            "network": network.display_name,
            "nativeSymbol": network.native_symbol,
            "sponsorshipEnabled": policy is not None and policy.active,
            "policyId": policy.id if policy else None,
            "ledgerBackend": self._ledger.backend,
            "pendingWrites": len(self._ledger.pending_keys()),
            "fiatPricing": self._native_to_fiat_rate is not unavailable_price,
        }

    async def close(self) -> None:
        """Close collaborators that hold connections."""
        for collaborator in (self._oracle, self._policy_store, self._native_to_fiat_rate):
            close = getattr(collaborator, "close", None)
            if close is None:
                continue
            result = close()
            if inspect.isawaitable(result):
                await result
        await self._ledger.close()


__all__ = [
    "SponsorshipAccountant",
    "gas_limit_for",
    "TRANSFER_GAS_LIMIT",
    "TOKEN_TRANSFER_GAS_LIMIT",
    "CONTRACT_CALL_GAS_LIMIT",
    "FALLBACK_MAX_FEE_PER_GAS",
    "FALLBACK_PRIORITY_FEE_PER_GAS",
    "NO_ACTIVE_POLICY",
    "LEDGER_UNAVAILABLE",
]
