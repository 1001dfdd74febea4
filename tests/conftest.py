"""
Pytest configuration for gas sponsorship tests.
"""
from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
if str(package_src) not in sys.path:
    sys.path.insert(0, str(package_src))

from gas_sponsorship.accountant import SponsorshipAccountant
from gas_sponsorship.config import SponsorshipSettings, get_networks
from gas_sponsorship.ledger import UsageLedger
from gas_sponsorship.ledger_store import InMemoryLedgerStore
from gas_sponsorship.oracle import StaticGasPriceOracle, compose_fee_tiers
from gas_sponsorship.policy import SpendingLimitRule, SponsorshipPolicy
from gas_sponsorship.policy_store import InMemoryPolicyStore

GWEI = 10**9


class FixedClock:
    """Clock returning a settable UTC time."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(scope="session")
def anyio_backend():
    """Use asyncio for async tests."""
    return "asyncio"


@pytest.fixture
def sender():
    """Valid sender address for testing."""
    return "0x1234567890123456789012345678901234567890"


@pytest.fixture
def recipient():
    """Valid recipient address for testing."""
    return "0xabcdefabcdefabcdefabcdefabcdefabcdefabcd"


@pytest.fixture
def bnb():
    return get_networks()[56]


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 5, 13, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    """Settings isolated from any .env file."""
    return SponsorshipSettings(_env_file=None, request_timeout_ms=500)


@pytest.fixture
def bnb_oracle(bnb):
    """Oracle quoting a 5 gwei standard fee on BNB Smart Chain."""
    return StaticGasPriceOracle(per_chain={56: compose_fee_tiers(bnb, 5 * GWEI)})


@pytest.fixture
def daily_policy():
    """BNB policy capping sponsored spend at 0.1 per day."""
    return SponsorshipPolicy(
        id="policy_daily",
        chain_id=56,
        rules=(SpendingLimitRule(daily_limit=Decimal("0.1")),),
        daily_limit=Decimal("0.1"),
        name="Daily cap",
    )


@pytest.fixture
def make_accountant(settings, clock, bnb_oracle):
    """Factory building an accountant over in-memory collaborators."""

    def _make(policies=(), oracle=None, ledger=None, **kwargs):
        return SponsorshipAccountant(
            policy_store=kwargs.pop("policy_store", None) or InMemoryPolicyStore(list(policies)),
            oracle=oracle or bnb_oracle,
            ledger=ledger or UsageLedger(InMemoryLedgerStore()),
            settings=kwargs.pop("settings", settings),
            clock=kwargs.pop("clock", clock),
            **kwargs,
        )

    return _make
