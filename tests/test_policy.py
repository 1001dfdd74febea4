"""
Tests for sponsorship policies and rule evaluation.
"""
from decimal import Decimal

import pytest

from gas_sponsorship.exceptions import InvalidRequestError
from gas_sponsorship.models import GasEstimateRequest
from gas_sponsorship.policy import (
    AllowlistRule,
    ContractMethodRule,
    RateLimitRule,
    RuleContext,
    SpendingLimitRule,
    SponsorshipPolicy,
    TransactionValueRule,
    create_basic_policy,
    evaluate_rules,
    rule_from_dict,
)

TRANSFER_SELECTOR = "0xa9059cbb"


def _ctx(sender, recipient, daily="0", monthly="0", tx_last_hour=0, data=None, value="0", **limits):
    request = GasEstimateRequest(
        from_address=sender,
        to_address=recipient,
        chain_id=56,
        value=Decimal(value),
        data=data,
    ).validate()
    return RuleContext(
        request=request,
        daily_spent=Decimal(daily),
        monthly_spent=Decimal(monthly),
        transactions_last_hour=tx_last_hour,
        **limits,
    )


class TestAllowlistRule:
    """Test sender allowlisting."""

    def test_allowlisted_sender_passes_case_insensitively(self, sender, recipient):
        rule = AllowlistRule(addresses=frozenset({"0x" + recipient[2:].upper()}))
        passed, _ = rule.check(_ctx(recipient, sender))
        assert passed is True

    def test_unknown_sender_fails(self, sender, recipient):
        rule = AllowlistRule(addresses=frozenset({recipient}))
        passed, detail = rule.check(_ctx(sender, recipient))
        assert passed is False
        assert "not allowlisted" in detail

    def test_no_address_set_passes_everyone(self, sender, recipient):
        passed, _ = AllowlistRule().check(_ctx(sender, recipient))
        assert passed is True

    def test_invalid_address_rejected(self):
        with pytest.raises(InvalidRequestError):
            AllowlistRule(addresses=frozenset({"0xnothex"}))


class TestSpendingLimitRule:
    """Test strictly-below spending caps."""

    def test_below_limit_passes(self, sender, recipient):
        rule = SpendingLimitRule(daily_limit=Decimal("0.1"))
        passed, _ = rule.check(_ctx(sender, recipient, daily="0.05"))
        assert passed is True

    def test_limit_reached_exactly_fails(self, sender, recipient):
        """Spend equal to the cap is already over quota."""
        rule = SpendingLimitRule(daily_limit=Decimal("0.1"))
        passed, detail = rule.check(_ctx(sender, recipient, daily="0.1"))
        assert passed is False
        assert "limit" in detail

    def test_monthly_limit(self, sender, recipient):
        rule = SpendingLimitRule(monthly_limit=Decimal("1"))
        passed, detail = rule.check(_ctx(sender, recipient, daily="0", monthly="1.5"))
        assert passed is False
        assert detail.startswith("monthly limit reached")

    def test_falls_back_to_context_limits(self, sender, recipient):
        rule = SpendingLimitRule()
        passed, _ = rule.check(_ctx(sender, recipient, daily="0.2", daily_limit=Decimal("0.2")))
        assert passed is False

    def test_uncapped_passes(self, sender, recipient):
        passed, _ = SpendingLimitRule().check(_ctx(sender, recipient, daily="1000"))
        assert passed is True


class TestContractMethodRule:
    """Test method selector allowlisting."""

    def test_allowed_selector_passes(self, sender, recipient):
        rule = ContractMethodRule(method_selectors=frozenset({TRANSFER_SELECTOR}))
        data = TRANSFER_SELECTOR + "00" * 64
        passed, _ = rule.check(_ctx(sender, recipient, data=data))
        assert passed is True

    def test_other_selector_fails(self, sender, recipient):
        rule = ContractMethodRule(method_selectors=frozenset({TRANSFER_SELECTOR}))
        passed, detail = rule.check(_ctx(sender, recipient, data="0x095ea7b3" + "00" * 64))
        assert passed is False
        assert "0x095ea7b3" in detail

    def test_no_call_data_passes(self, sender, recipient):
        rule = ContractMethodRule(method_selectors=frozenset({TRANSFER_SELECTOR}))
        passed, _ = rule.check(_ctx(sender, recipient))
        assert passed is True

    def test_short_call_data_fails(self, sender, recipient):
        rule = ContractMethodRule(method_selectors=frozenset({TRANSFER_SELECTOR}))
        passed, _ = rule.check(_ctx(sender, recipient, data="0xa905"))
        assert passed is False


class TestRateLimitAndValueRules:
    """Test rate and per-transaction value limits."""

    def test_rate_limit_below_max(self, sender, recipient):
        passed, _ = RateLimitRule(max_per_hour=3).check(_ctx(sender, recipient, tx_last_hour=2))
        assert passed is True

    def test_rate_limit_reached(self, sender, recipient):
        passed, detail = RateLimitRule(max_per_hour=3).check(_ctx(sender, recipient, tx_last_hour=3))
        assert passed is False
        assert "3 transactions per hour" in detail

    def test_value_at_cap_passes(self, sender, recipient):
        rule = TransactionValueRule(max_value=Decimal("1"))
        passed, _ = rule.check(_ctx(sender, recipient, value="1"))
        assert passed is True

    def test_value_above_cap_fails(self, sender, recipient):
        rule = TransactionValueRule(max_value=Decimal("1"))
        passed, _ = rule.check(_ctx(sender, recipient, value="1.5"))
        assert passed is False


class TestEvaluateRules:
    """Test ordered AND evaluation."""

    def test_first_failure_short_circuits(self, sender, recipient):
        rules = [
            AllowlistRule(addresses=frozenset({recipient}), description="Team wallets only"),
            SpendingLimitRule(daily_limit=Decimal("0")),
        ]
        outcome = evaluate_rules(rules, _ctx(sender, recipient))
        assert outcome.passed is False
        assert outcome.reason.startswith("Team wallets only")
        assert outcome.failed_rule == "allowlist"

    def test_disabled_rules_are_skipped(self, sender, recipient):
        rules = [AllowlistRule(addresses=frozenset({recipient}), enabled=False)]
        outcome = evaluate_rules(rules, _ctx(sender, recipient))
        assert outcome.passed is True
        assert outcome.reason == "eligible"

    def test_empty_rules_pass(self, sender, recipient):
        assert evaluate_rules([], _ctx(sender, recipient)).passed is True


class TestPolicyParsing:
    """Test dashboard-shaped policy dicts."""

    def test_from_dict(self, sender):
        policy = SponsorshipPolicy.from_dict({
            "id": "pol_1",
            "name": "BSC launch",
            "networkId": 56,
            "active": True,
            "dailyLimit": "0.1",
            "perTransactionLimit": "2",
            "rules": [
                {"type": "allowlist", "conditions": {"addresses": [sender]}},
                {"type": "rate_limit", "conditions": {"maxTransactionsPerHour": 50}},
                {"type": "contract_method", "enabled": False, "conditions": {"methodSelectors": [TRANSFER_SELECTOR]}},
            ],
        })

        assert policy.chain_id == 56
        assert policy.daily_limit == Decimal("0.1")
        assert [r.rule_type for r in policy.rules] == ["allowlist", "rate_limit", "contract_method"]
        assert policy.rules[2].enabled is False
        # per-transaction cap is evaluated last
        assert policy.effective_rules()[-1] == TransactionValueRule(max_value=Decimal("2"))

    def test_to_dict_keeps_limits_and_rules(self, sender):
        policy = create_basic_policy(56, allowed_addresses=[sender], daily_limit=Decimal("0.5"), policy_id="p")
        parsed = SponsorshipPolicy.from_dict(policy.to_dict())
        assert parsed.id == "p"
        assert parsed.daily_limit == Decimal("0.5")
        assert parsed.rules[0].addresses == frozenset({sender})
        assert parsed.rules[1].daily_limit == Decimal("0.5")

    def test_policy_caps_become_spending_rule(self):
        policy = SponsorshipPolicy(id="cap", chain_id=56, daily_limit=Decimal("0.1"))
        rules = policy.effective_rules(monthly_limit_default=Decimal("2"))
        assert rules == [
            SpendingLimitRule(
                daily_limit=Decimal("0.1"),
                monthly_limit=Decimal("2"),
                description="Policy spending limit",
            )
        ]

    def test_no_caps_adds_no_spending_rule(self):
        assert SponsorshipPolicy(id="open", chain_id=56).effective_rules() == []

    def test_unknown_rule_type(self):
        with pytest.raises(ValueError):
            rule_from_dict({"type": "geofence"})

    def test_rate_limit_requires_max(self):
        with pytest.raises(ValueError):
            rule_from_dict({"type": "rate_limit", "conditions": {}})


class TestCreateBasicPolicy:
    """Test the allowlist + spending limit convenience policy."""

    def test_with_allowlist(self, sender):
        policy = create_basic_policy(56, allowed_addresses=[sender], daily_limit=Decimal("0.1"))
        assert policy.id.startswith("policy_")
        assert policy.active is True
        assert isinstance(policy.rules[0], AllowlistRule)
        assert isinstance(policy.rules[1], SpendingLimitRule)
        assert policy.rules[1].daily_limit == Decimal("0.1")

    def test_without_allowlist(self):
        policy = create_basic_policy(97)
        assert len(policy.rules) == 1
        assert isinstance(policy.rules[0], SpendingLimitRule)
