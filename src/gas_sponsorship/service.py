"""Composition root: build a SponsorshipAccountant from settings."""
from __future__ import annotations

import logging
from typing import Any, Optional

from .accountant import SponsorshipAccountant
from .config import SponsorshipSettings, get_networks, get_settings
from .ledger import UsageLedger
from .ledger_store import InMemoryLedgerStore, JsonFileLedgerStore
from .oracle import RpcGasPriceOracle
from .policy_store import InMemoryPolicyStore, JsonFilePolicyStore, PolicyStore
from .policy_store_http import HttpPolicyStore
from .pricing import FiatPriceOracle, PriceLookup, unavailable_price

logger = logging.getLogger(__name__)


def build_ledger_store(settings: SponsorshipSettings) -> Any:
    """Create the ledger backend named by ``settings.ledger_backend``."""
    if settings.ledger_backend == "redis":
        from .ledger_store_redis import RedisLedgerStore

        return RedisLedgerStore(redis_url=settings.redis_url or None)
    if settings.ledger_backend == "file":
        return JsonFileLedgerStore(settings.ledger_path)
    if settings.environment == "prod":
        logger.warning("Using in-memory usage ledger in prod; usage is lost on restart")
    return InMemoryLedgerStore()


def build_policy_store(settings: SponsorshipSettings) -> PolicyStore:
    """Dashboard API when configured, else a policy file, else in-memory."""
    timeout = settings.request_timeout_seconds
    if settings.policy_api_url:
        return HttpPolicyStore(settings.policy_api_url, api_key=settings.policy_api_key, timeout_seconds=timeout)
    if settings.policy_file:
        return JsonFilePolicyStore(settings.policy_file)
    logger.info("No policy source configured; sponsorship is disabled until policies are set")
    return InMemoryPolicyStore()


def build_accountant(settings: Optional[SponsorshipSettings] = None) -> SponsorshipAccountant:
    """
    Wire an accountant with the collaborators named in settings.

    Args:
        settings: Engine settings (cached environment settings when omitted)

    Returns:
        SponsorshipAccountant ready for use; call ``close()`` when done
    """
    settings = settings or get_settings()
    networks = get_networks()
    timeout = settings.request_timeout_seconds

    price_lookup: PriceLookup = unavailable_price
    if settings.fiat_pricing:
        price_lookup = FiatPriceOracle(timeout_seconds=timeout)

    accountant = SponsorshipAccountant(
        policy_store=build_policy_store(settings),
        oracle=RpcGasPriceOracle(networks=networks, timeout_seconds=timeout),
        ledger=UsageLedger(build_ledger_store(settings)),
        settings=settings,
        networks=networks,
        native_to_fiat_rate=price_lookup,
    )
    logger.debug(
        f"Built accountant (ledger={settings.ledger_backend}, fiat_pricing={settings.fiat_pricing}, "
        f"timeout={settings.request_timeout_ms}ms)"
    )
    return accountant


__all__ = ["build_ledger_store", "build_policy_store", "build_accountant"]
