"""
Sponsorship policies and rule evaluation.

A policy is an ordered list of rules combined with logical AND. Rules are
evaluated in insertion order and evaluation stops at the first failure, whose
description becomes the ineligibility reason. Disabled rules always pass.

Rule types:
- allowlist: sender must be in a set of addresses
- spending_limit: accumulated daily/monthly spend must be below the cap
- contract_method: call data must target an allowed 4-byte selector
- rate_limit: fewer than N transactions in the trailing hour
- transaction_value: native value per transaction must not exceed a cap
"""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, ClassVar, Dict, FrozenSet, Iterable, List, Optional, Tuple, Type

from .models import (
    GasEstimateRequest,
    to_decimal,
    validate_address,
    validate_method_selector,
)

logger = logging.getLogger(__name__)

POLICY_LIMIT_DESCRIPTION = "Policy spending limit"


@dataclass(frozen=True)
class RuleContext:
    """Snapshot a rule is evaluated against."""
    request: GasEstimateRequest
    daily_spent: Decimal
    monthly_spent: Decimal
    transactions_last_hour: int = 0
    # Effective policy-level caps (policy value, else configured default)
    daily_limit: Optional[Decimal] = None
    monthly_limit: Optional[Decimal] = None


@dataclass(frozen=True)
class PolicyRule:
    """Base class for sponsorship rules."""
    enabled: bool = True
    description: str = ""

    rule_type: ClassVar[str] = ""
    default_description: ClassVar[str] = ""

    @property
    def label(self) -> str:
        return self.description or self.default_description

    def check(self, ctx: RuleContext) -> Tuple[bool, str]:
        """
        Check the rule against a context.

        Returns:
            Tuple of (passed, detail)
        """
        raise NotImplementedError

    def conditions(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.rule_type,
            "enabled": self.enabled,
            "description": self.label,
            "conditions": self.conditions(),
        }


@dataclass(frozen=True)
class AllowlistRule(PolicyRule):
    """Sender must be allowlisted; no set means everyone passes."""
    addresses: Optional[FrozenSet[str]] = None

    rule_type: ClassVar[str] = "allowlist"
    default_description: ClassVar[str] = "Sender allowlist"

    def __post_init__(self) -> None:
        if self.addresses is not None:
            normalized = frozenset(validate_address(a, "addresses") for a in self.addresses)
            object.__setattr__(self, "addresses", normalized)

    def check(self, ctx: RuleContext) -> Tuple[bool, str]:
        if self.addresses is None:
            return True, "OK"
        sender = ctx.request.from_address.lower()
        if sender in self.addresses:
            return True, "OK"
        return False, f"sender {sender} is not allowlisted"

    def conditions(self) -> Dict[str, Any]:
        if self.addresses is None:
            return {}
        return {"addresses": sorted(self.addresses)}


@dataclass(frozen=True)
class SpendingLimitRule(PolicyRule):
    """Accumulated spend must be strictly below the period caps."""
    daily_limit: Optional[Decimal] = None
    monthly_limit: Optional[Decimal] = None

    rule_type: ClassVar[str] = "spending_limit"
    default_description: ClassVar[str] = "Spending limit"

    def check(self, ctx: RuleContext) -> Tuple[bool, str]:
        daily = self.daily_limit if self.daily_limit is not None else ctx.daily_limit
        monthly = self.monthly_limit if self.monthly_limit is not None else ctx.monthly_limit

        # Checked before the new transaction's cost is added
        if daily is not None and not ctx.daily_spent < daily:
            return False, f"daily limit reached (spent {ctx.daily_spent} of {daily})"
        if monthly is not None and not ctx.monthly_spent < monthly:
            return False, f"monthly limit reached (spent {ctx.monthly_spent} of {monthly})"
        return True, "OK"

    def conditions(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.daily_limit is not None:
            result["dailyLimit"] = str(self.daily_limit)
        if self.monthly_limit is not None:
            result["monthlyLimit"] = str(self.monthly_limit)
        return result


@dataclass(frozen=True)
class ContractMethodRule(PolicyRule):
    """Call data must start with an allowed selector; plain transfers pass."""
    method_selectors: FrozenSet[str] = field(default_factory=frozenset)

    rule_type: ClassVar[str] = "contract_method"
    default_description: ClassVar[str] = "Contract method allowlist"

    def __post_init__(self) -> None:
        normalized = frozenset(validate_method_selector(s) for s in self.method_selectors)
        object.__setattr__(self, "method_selectors", normalized)

    def check(self, ctx: RuleContext) -> Tuple[bool, str]:
        if not ctx.request.data:
            return True, "OK"
        selector = ctx.request.method_selector
        if selector is not None and selector in self.method_selectors:
            return True, "OK"
        return False, f"method {selector or ctx.request.data} is not sponsored"

    def conditions(self) -> Dict[str, Any]:
        return {"methodSelectors": sorted(self.method_selectors)}


@dataclass(frozen=True)
class RateLimitRule(PolicyRule):
    """Fewer than max_per_hour transactions in the trailing hour."""
    max_per_hour: int = 50

    rule_type: ClassVar[str] = "rate_limit"
    default_description: ClassVar[str] = "Rate limit"

    def check(self, ctx: RuleContext) -> Tuple[bool, str]:
        if ctx.transactions_last_hour < self.max_per_hour:
            return True, "OK"
        return False, (
            f"limit of {self.max_per_hour} transactions per hour reached "
            f"({ctx.transactions_last_hour} in the last hour)"
        )

    def conditions(self) -> Dict[str, Any]:
        return {"maxTransactionsPerHour": self.max_per_hour}


@dataclass(frozen=True)
class TransactionValueRule(PolicyRule):
    """Native value moved by a single transaction must not exceed max_value."""
    max_value: Optional[Decimal] = None

    rule_type: ClassVar[str] = "transaction_value"
    default_description: ClassVar[str] = "Per-transaction limit"

    def check(self, ctx: RuleContext) -> Tuple[bool, str]:
        if self.max_value is None or ctx.request.value <= self.max_value:
            return True, "OK"
        return False, f"value {ctx.request.value} exceeds the limit of {self.max_value}"

    def conditions(self) -> Dict[str, Any]:
        return {"maxValue": str(self.max_value)} if self.max_value is not None else {}


RULE_TYPES: Dict[str, Type[PolicyRule]] = {
    cls.rule_type: cls
    for cls in (AllowlistRule, SpendingLimitRule, ContractMethodRule, RateLimitRule, TransactionValueRule)
}


def _optional_decimal(value: Any, field_name: str) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return to_decimal(value, field_name)


def rule_from_dict(data: Dict[str, Any]) -> PolicyRule:
    """Parse a rule from the dashboard shape ``{type, enabled, description, conditions}``."""
    rule_type = data.get("type")
    if rule_type not in RULE_TYPES:
        raise ValueError(f"Unknown rule type: {rule_type!r}")

    conditions = data.get("conditions") or {}
    common = {
        "enabled": bool(data.get("enabled", True)),
        "description": data.get("description") or "",
    }

    if rule_type == AllowlistRule.rule_type:
        addresses = conditions.get("addresses")
        return AllowlistRule(addresses=frozenset(addresses) if addresses is not None else None, **common)
    if rule_type == SpendingLimitRule.rule_type:
        return SpendingLimitRule(
            daily_limit=_optional_decimal(conditions.get("dailyLimit"), "dailyLimit"),
            monthly_limit=_optional_decimal(conditions.get("monthlyLimit"), "monthlyLimit"),
            **common,
        )
    if rule_type == ContractMethodRule.rule_type:
        return ContractMethodRule(method_selectors=frozenset(conditions.get("methodSelectors") or ()), **common)
    if rule_type == RateLimitRule.rule_type:
        max_per_hour = conditions.get("maxTransactionsPerHour", conditions.get("maxPerHour"))
        if max_per_hour is None:
            raise ValueError("rate_limit rule requires maxTransactionsPerHour")
        return RateLimitRule(max_per_hour=int(max_per_hour), **common)
    return TransactionValueRule(max_value=_optional_decimal(conditions.get("maxValue"), "maxValue"), **common)


@dataclass(frozen=True)
class SponsorshipPolicy:
    """A network's sponsorship policy. Read-only for the engine."""
    id: str
    chain_id: int
    rules: Tuple[PolicyRule, ...] = ()
    active: bool = True
    daily_limit: Optional[Decimal] = None
    monthly_limit: Optional[Decimal] = None
    per_transaction_limit: Optional[Decimal] = None
    name: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "rules", tuple(self.rules))

    def effective_rules(
        self,
        daily_limit_default: Optional[Decimal] = None,
        monthly_limit_default: Optional[Decimal] = None,
    ) -> List[PolicyRule]:
        """
        Rules in evaluation order.

        The policy's own rules come first. Its daily and monthly caps (or the
        given defaults when the policy sets none) follow as a spending-limit
        rule, and the per-transaction cap is checked last.
        """
        rules = list(self.rules)
        daily = self.daily_limit if self.daily_limit is not None else daily_limit_default
        monthly = self.monthly_limit if self.monthly_limit is not None else monthly_limit_default
        if daily is not None or monthly is not None:
            rules.append(SpendingLimitRule(
                daily_limit=daily,
                monthly_limit=monthly,
                description=POLICY_LIMIT_DESCRIPTION,
            ))
        if self.per_transaction_limit is not None:
            rules.append(TransactionValueRule(max_value=self.per_transaction_limit))
        return rules

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SponsorshipPolicy":
        chain_id = data.get("networkId", data.get("chainId"))
        if chain_id is None:
            raise ValueError("policy requires networkId")
        return cls(
            id=str(data["id"]),
            chain_id=int(chain_id),
            rules=tuple(rule_from_dict(r) for r in data.get("rules") or ()),
            active=bool(data.get("active", True)),
            daily_limit=_optional_decimal(data.get("dailyLimit"), "dailyLimit"),
            monthly_limit=_optional_decimal(data.get("monthlyLimit"), "monthlyLimit"),
            per_transaction_limit=_optional_decimal(data.get("perTransactionLimit"), "perTransactionLimit"),
            name=data.get("name") or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        def _opt(value: Optional[Decimal]) -> Optional[str]:
            return str(value) if value is not None else None

        return {
            "id": self.id,
            "name": self.name,
            "networkId": self.chain_id,
            "active": self.active,
            "dailyLimit": _opt(self.daily_limit),
            "monthlyLimit": _opt(self.monthly_limit),
            "perTransactionLimit": _opt(self.per_transaction_limit),
            "rules": [rule.to_dict() for rule in self.rules],
        }


@dataclass(frozen=True)
class RuleOutcome:
    """Result of evaluating all rules of a policy."""
    passed: bool
    reason: str = "eligible"
    failed_rule: Optional[str] = None


def evaluate_rules(rules: Iterable[PolicyRule], ctx: RuleContext) -> RuleOutcome:
    """Evaluate enabled rules in order, stopping at the first failure."""
    for rule in rules:
        if not rule.enabled:
            continue
        passed, detail = rule.check(ctx)
        if not passed:
            logger.debug(f"Rule {rule.rule_type} failed for {ctx.request.from_address}: {detail}")
            return RuleOutcome(passed=False, reason=f"{rule.label}: {detail}", failed_rule=rule.rule_type)
    return RuleOutcome(passed=True)


def create_basic_policy(
    chain_id: int,
    allowed_addresses: Optional[Iterable[str]] = None,
    daily_limit: Optional[Decimal] = None,
    monthly_limit: Optional[Decimal] = None,
    policy_id: Optional[str] = None,
    name: str = "Basic gas sponsorship",
) -> SponsorshipPolicy:
    """
    Build an allowlist + spending-limit policy for a network.

    Args:
        chain_id: Network the policy applies to
        allowed_addresses: Senders to sponsor (None sponsors everyone)
        daily_limit: Daily sponsored spend cap in native units
        monthly_limit: Monthly sponsored spend cap in native units
        policy_id: Explicit id (generated when omitted)
        name: Display name

    Returns:
        An active SponsorshipPolicy
    """
    rules: List[PolicyRule] = []
    if allowed_addresses is not None:
        rules.append(AllowlistRule(addresses=frozenset(allowed_addresses)))
    rules.append(SpendingLimitRule(daily_limit=daily_limit, monthly_limit=monthly_limit))

    policy = SponsorshipPolicy(
        id=policy_id or f"policy_{secrets.token_hex(8)}",
        chain_id=chain_id,
        rules=tuple(rules),
        active=True,
        daily_limit=daily_limit,
        monthly_limit=monthly_limit,
        name=name,
    )
    logger.info(f"Created sponsorship policy {policy.id} for chain {chain_id}")
    return policy


__all__ = [
    "RuleContext",
    "PolicyRule",
    "AllowlistRule",
    "SpendingLimitRule",
    "ContractMethodRule",
    "RateLimitRule",
    "TransactionValueRule",
    "RULE_TYPES",
    "rule_from_dict",
    "SponsorshipPolicy",
    "RuleOutcome",
    "evaluate_rules",
    "create_basic_policy",
    "POLICY_LIMIT_DESCRIPTION",
]
