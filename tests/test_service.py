"""
Tests for the composition root.
"""
import pytest

from gas_sponsorship.config import SponsorshipSettings
from gas_sponsorship.ledger_store import InMemoryLedgerStore, JsonFileLedgerStore
from gas_sponsorship.ledger_store_redis import RedisLedgerStore
from gas_sponsorship.policy_store import InMemoryPolicyStore, JsonFilePolicyStore
from gas_sponsorship.policy_store_http import HttpPolicyStore
from gas_sponsorship.pricing import FiatPriceOracle
from gas_sponsorship.service import build_accountant, build_ledger_store, build_policy_store


def _settings(**kwargs):
    return SponsorshipSettings(_env_file=None, **kwargs)


class TestBuildLedgerStore:
    """Test ledger backend selection."""

    def test_memory_default(self):
        assert isinstance(build_ledger_store(_settings()), InMemoryLedgerStore)

    def test_file(self, tmp_path):
        store = build_ledger_store(_settings(ledger_backend="file", ledger_path=str(tmp_path / "l.json")))
        assert isinstance(store, JsonFileLedgerStore)
        assert store.path == tmp_path / "l.json"

    def test_redis(self):
        store = build_ledger_store(_settings(ledger_backend="redis", redis_url="redis://localhost:6379/0"))
        assert isinstance(store, RedisLedgerStore)

    def test_redis_requires_url(self, monkeypatch):
        monkeypatch.delenv("GAS_SPONSOR_REDIS_URL", raising=False)
        monkeypatch.delenv("REDIS_URL", raising=False)
        with pytest.raises(ValueError):
            build_ledger_store(_settings(ledger_backend="redis"))


class TestBuildPolicyStore:
    """Test policy source selection."""

    def test_api_preferred(self, tmp_path):
        store = build_policy_store(_settings(policy_api_url="https://d.example", policy_file=str(tmp_path / "p.json")))
        assert isinstance(store, HttpPolicyStore)

    def test_file(self, tmp_path):
        assert isinstance(build_policy_store(_settings(policy_file=str(tmp_path / "p.json"))), JsonFilePolicyStore)

    def test_in_memory_fallback(self):
        assert isinstance(build_policy_store(_settings()), InMemoryPolicyStore)


class TestBuildAccountant:
    """Test full wiring."""

    @pytest.mark.asyncio
    async def test_wires_settings(self):
        accountant = build_accountant(_settings(fiat_pricing=True))
        try:
            assert accountant.ledger.backend == "memory"
            assert isinstance(accountant._native_to_fiat_rate, FiatPriceOracle)
            assert 56 in accountant.networks
        finally:
            await accountant.close()
