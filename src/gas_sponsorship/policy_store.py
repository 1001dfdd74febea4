"""Sponsorship policy stores.

A store answers ``get_policy(chain_id)`` with the network's policy, or None
when the network has none. Stores raise PolicyUnavailableError when they
cannot answer; the accountant treats that the same as "no active policy".
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from .exceptions import PolicyUnavailableError, SponsorshipError
from .policy import SponsorshipPolicy

logger = logging.getLogger(__name__)


class PolicyStore(Protocol):
    async def get_policy(self, chain_id: int) -> Optional[SponsorshipPolicy]: ...


def select_policy(policies: List[SponsorshipPolicy], chain_id: int) -> Optional[SponsorshipPolicy]:
    """Pick the policy for a chain, preferring an active one."""
    matching = [p for p in policies if p.chain_id == chain_id]
    for policy in matching:
        if policy.active:
            return policy
    return matching[0] if matching else None


class InMemoryPolicyStore:
    """In-memory policy store (demo/dev and tests)."""

    def __init__(self, policies: Optional[List[SponsorshipPolicy]] = None) -> None:
        self._policies: Dict[int, SponsorshipPolicy] = {}
        for policy in policies or ():
            self._policies[policy.chain_id] = policy

    async def get_policy(self, chain_id: int) -> Optional[SponsorshipPolicy]:
        return self._policies.get(chain_id)

    async def set_policy(self, policy: SponsorshipPolicy) -> None:
        self._policies[policy.chain_id] = policy
        logger.info(f"Set sponsorship policy {policy.id} for chain {policy.chain_id}")

    async def delete_policy(self, chain_id: int) -> bool:
        if chain_id in self._policies:
            del self._policies[chain_id]
            return True
        return False


class JsonFilePolicyStore:
    """
    Policies read from a JSON file holding a list of dashboard-shaped policies.

    The file is re-read on every lookup so edits apply without a restart.
    """

    def __init__(self, policy_file: str | Path):
        self.policy_file = Path(policy_file)

    def load_policies(self) -> List[SponsorshipPolicy]:
        if not self.policy_file.exists():
            raise FileNotFoundError(f"Policy file not found: {self.policy_file}")

        with self.policy_file.open("r", encoding="utf-8") as fh:
            data = json.load(fh)

        if isinstance(data, dict):
            data = data.get("policies", [])
        return [SponsorshipPolicy.from_dict(item) for item in data]

    async def get_policy(self, chain_id: int) -> Optional[SponsorshipPolicy]:
        try:
            policies = self.load_policies()
        except (OSError, ValueError, KeyError, TypeError, SponsorshipError) as e:
            raise PolicyUnavailableError(chain_id, f"cannot read {self.policy_file}: {e}") from e
        return select_policy(policies, chain_id)


__all__ = [
    "PolicyStore",
    "select_policy",
    "InMemoryPolicyStore",
    "JsonFilePolicyStore",
]
