"""Policy store backed by a gas-sponsorship dashboard API."""
from __future__ import annotations

import logging
from typing import Any, List, Optional

import httpx

from .exceptions import PolicyUnavailableError, SponsorshipError
from .policy import SponsorshipPolicy
from .policy_store import select_policy

logger = logging.getLogger(__name__)


class HttpPolicyStore:
    """
    Fetches policies with ``GET {base_url}/policies?networkId=<chain_id>``.

    The response may be a list of policies, ``{"policies": [...]}`` or
    ``{"policy": {...}}``. A 404 means the network has no policy.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 5.0,
    ):
        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds, headers=headers)
        if client is not None and api_key:
            self._client.headers["Authorization"] = f"Bearer {api_key}"

    @staticmethod
    def _extract(payload: Any) -> List[Any]:
        if isinstance(payload, list):
            return payload
        if isinstance(payload, dict):
            if "policies" in payload:
                return list(payload["policies"] or [])
            if "policy" in payload:
                return [payload["policy"]] if payload["policy"] else []
        raise ValueError("unexpected policy payload shape")

    async def get_policy(self, chain_id: int) -> Optional[SponsorshipPolicy]:
        try:
            response = await self._client.get(f"{self._base_url}/policies", params={"networkId": chain_id})
            if response.status_code == 404:
                return None
            response.raise_for_status()
            policies = [SponsorshipPolicy.from_dict(item) for item in self._extract(response.json())]
        except (httpx.HTTPError, ValueError, KeyError, TypeError, SponsorshipError) as e:
            raise PolicyUnavailableError(chain_id, str(e)) from e

        policy = select_policy(policies, chain_id)
        logger.debug(f"Dashboard policy for chain {chain_id}: {policy.id if policy else None}")
        return policy

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = ["HttpPolicyStore"]
