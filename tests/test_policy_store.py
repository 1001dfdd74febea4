"""
Tests for policy stores.
"""
import json
from decimal import Decimal

import httpx
import pytest

from gas_sponsorship.exceptions import PolicyUnavailableError
from gas_sponsorship.policy import SponsorshipPolicy, create_basic_policy
from gas_sponsorship.policy_store import InMemoryPolicyStore, JsonFilePolicyStore, select_policy
from gas_sponsorship.policy_store_http import HttpPolicyStore

BSC_POLICY = {
    "id": "pol_bsc",
    "name": "BSC",
    "networkId": 56,
    "active": True,
    "dailyLimit": "0.1",
    "rules": [{"type": "spending_limit", "conditions": {"dailyLimit": "0.1"}}],
}


class TestSelectPolicy:
    """Test policy selection per chain."""

    def test_prefers_active(self):
        inactive = SponsorshipPolicy(id="old", chain_id=56, active=False)
        active = SponsorshipPolicy(id="new", chain_id=56)
        assert select_policy([inactive, active], 56).id == "new"

    def test_falls_back_to_inactive(self):
        inactive = SponsorshipPolicy(id="old", chain_id=56, active=False)
        assert select_policy([inactive], 56).id == "old"

    def test_other_chain_ignored(self):
        assert select_policy([SponsorshipPolicy(id="eth", chain_id=1)], 56) is None


class TestInMemoryPolicyStore:
    """Test the in-memory store."""

    @pytest.mark.asyncio
    async def test_set_get_delete(self):
        store = InMemoryPolicyStore()
        policy = create_basic_policy(56, daily_limit=Decimal("0.1"))

        await store.set_policy(policy)
        assert await store.get_policy(56) == policy

        assert await store.delete_policy(56) is True
        assert await store.delete_policy(56) is False
        assert await store.get_policy(56) is None


class TestJsonFilePolicyStore:
    """Test the JSON file store."""

    @pytest.mark.asyncio
    async def test_list_layout(self, tmp_path):
        path = tmp_path / "policies.json"
        path.write_text(json.dumps([BSC_POLICY]))
        policy = await JsonFilePolicyStore(path).get_policy(56)
        assert policy.id == "pol_bsc"
        assert policy.daily_limit == Decimal("0.1")

    @pytest.mark.asyncio
    async def test_wrapped_layout(self, tmp_path):
        path = tmp_path / "policies.json"
        path.write_text(json.dumps({"policies": [BSC_POLICY]}))
        assert (await JsonFilePolicyStore(path).get_policy(97)) is None

    @pytest.mark.asyncio
    async def test_missing_file_unavailable(self, tmp_path):
        with pytest.raises(PolicyUnavailableError):
            await JsonFilePolicyStore(tmp_path / "missing.json").get_policy(56)

    @pytest.mark.asyncio
    async def test_malformed_policy_unavailable(self, tmp_path):
        path = tmp_path / "policies.json"
        path.write_text(json.dumps([{"id": "x", "networkId": 56, "rules": [{"type": "geofence"}]}]))
        with pytest.raises(PolicyUnavailableError):
            await JsonFilePolicyStore(path).get_policy(56)


class TestHttpPolicyStore:
    """Test the dashboard API store."""

    @pytest.mark.asyncio
    async def test_fetch_with_bearer_key(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("authorization")
            seen["network"] = request.url.params["networkId"]
            return httpx.Response(200, json={"policies": [BSC_POLICY]})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        store = HttpPolicyStore("https://dashboard.example/api/", api_key="secret", client=client)

        policy = await store.get_policy(56)

        assert policy.id == "pol_bsc"
        assert seen == {"auth": "Bearer secret", "network": "56"}
        await client.aclose()

    @pytest.mark.asyncio
    async def test_single_policy_payload(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"policy": BSC_POLICY})))
        assert (await HttpPolicyStore("https://d.example", client=client).get_policy(56)).id == "pol_bsc"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_not_found_is_no_policy(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(404)))
        assert await HttpPolicyStore("https://d.example", client=client).get_policy(56) is None
        await client.aclose()

    @pytest.mark.asyncio
    async def test_server_error_unavailable(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503)))
        with pytest.raises(PolicyUnavailableError):
            await HttpPolicyStore("https://d.example", client=client).get_policy(56)
        await client.aclose()

    @pytest.mark.asyncio
    async def test_unexpected_payload_unavailable(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json="nope")))
        with pytest.raises(PolicyUnavailableError):
            await HttpPolicyStore("https://d.example", client=client).get_policy(56)
        await client.aclose()
