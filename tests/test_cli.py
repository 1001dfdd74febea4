"""
Tests for the gas-sponsor CLI.
"""
import json
from decimal import Decimal

import pytest
from click.testing import CliRunner

from gas_sponsorship.cli import cli
from gas_sponsorship.ledger import UsageLedger
from gas_sponsorship.ledger_store import InMemoryLedgerStore


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    monkeypatch.setattr("gas_sponsorship.cli.setup_logging", lambda *args, **kwargs: None)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def invoke(runner, make_accountant, settings, daily_policy):
    """Invoke the CLI against in-memory collaborators sharing one ledger store."""
    store = InMemoryLedgerStore()

    def factory(_settings):
        return make_accountant([daily_policy], ledger=UsageLedger(store))

    def _invoke(*args):
        return runner.invoke(cli, list(args), obj={"settings": settings, "build_accountant": factory})

    _invoke.store = store
    return _invoke


class TestNetworksCommand:
    """Test network listing."""

    def test_lists_networks(self, invoke):
        result = invoke("networks")
        assert result.exit_code == 0
        assert "BNB Smart Chain" in result.output
        assert "11155111" in result.output

    def test_hide_testnets(self, invoke):
        result = invoke("networks", "--no-testnets")
        assert result.exit_code == 0
        assert "11155111" not in result.output


class TestStatusCommand:
    """Test network status."""

    def test_json(self, invoke):
        result = invoke("status", "--chain-id", "56", "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["sponsorshipEnabled"] is True
        assert data["policyId"] == "policy_daily"

    def test_panel(self, invoke):
        result = invoke("status")
        assert result.exit_code == 0
        assert "enabled" in result.output

    def test_unsupported_chain(self, invoke):
        result = invoke("status", "--chain-id", "999")
        assert result.exit_code == 1
        assert "Unsupported chain id" in result.output


class TestEstimateCommand:
    """Test gas estimates."""

    def test_json(self, invoke, sender, recipient):
        result = invoke("estimate", "--from", sender, "--to", recipient, "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["gasLimit"] == "21000"
        assert data["estimatedCost"] == "0.000105"
        assert data["isSponsored"] is True
        assert data["userCost"] == "0"

    def test_table(self, invoke, sender, recipient):
        result = invoke("estimate", "--from", sender, "--to", recipient, "--operation", "token_transfer")
        assert result.exit_code == 0
        assert "65000" in result.output
        assert "standard" in result.output

    def test_invalid_address(self, invoke, recipient):
        result = invoke("estimate", "--from", "0xnope", "--to", recipient)
        assert result.exit_code == 1
        assert "Error" in result.output


class TestUsageCommands:
    """Test recording and reading usage."""

    def test_record_then_usage(self, invoke, sender):
        recorded = invoke("record", sender, "--cost", "0.03")
        assert recorded.exit_code == 0
        assert "Recorded" in recorded.output

        result = invoke("usage", sender, "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["transactionCount"] == 1
        assert data["dailySpent"] == "0.03"
        assert data["remainingDaily"] == "0.07"

        stored = invoke.store.snapshot()[f"{sender}_56"]
        assert Decimal(stored["totalSpent"]) == Decimal("0.03")

    def test_usage_without_entry(self, invoke, sender):
        result = invoke("usage", sender)
        assert result.exit_code == 0
        assert "No usage recorded" in result.output

    def test_usage_without_entry_json(self, invoke, sender):
        result = invoke("usage", sender, "--json")
        assert result.exit_code == 0
        assert json.loads(result.output) is None

    def test_record_negative_cost(self, invoke, sender):
        result = invoke("record", sender, "--cost=-1")
        assert result.exit_code == 1
