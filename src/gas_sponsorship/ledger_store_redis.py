"""Redis-backed ledger store.

Each ledger record lives under one Redis key as JSON. ``apply`` runs an
optimistic transaction (WATCH/MULTI/EXEC) and retries when another instance
wrote the same key in between, so read-modify-write stays atomic across
processes.
"""
from __future__ import annotations

import logging
import os
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.exceptions import WatchError

from .exceptions import LedgerConflictError
from .ledger import LedgerRecord, Mutator

logger = logging.getLogger(__name__)


class RedisLedgerStore:
    """Ledger store for multi-instance deployments."""

    backend = "redis"

    KEY_PREFIX = "gas_sponsorship:ledger:"
    DEFAULT_MAX_RETRIES = 10

    def __init__(
        self,
        redis_url: Optional[str] = None,
        redis_client: Optional[Any] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ):
        """
        Initialize the store.

        Args:
            redis_url: Redis connection URL (or GAS_SPONSOR_REDIS_URL / REDIS_URL)
            redis_client: Existing redis.asyncio client (optional)
            max_retries: Optimistic transaction attempts before giving up
        """
        self._max_retries = max_retries
        if redis_client is not None:
            self._client = redis_client
        else:
            url = redis_url or os.getenv("GAS_SPONSOR_REDIS_URL") or os.getenv("REDIS_URL")
            if not url:
                raise ValueError("Redis URL required. Set GAS_SPONSOR_REDIS_URL or pass redis_url.")
            self._client = aioredis.from_url(
                url,
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
            )

    def _redis_key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}{key}"

    async def load(self, key: str) -> Optional[LedgerRecord]:
        raw = await self._client.get(self._redis_key(key))
        return LedgerRecord.from_json(raw) if raw else None

    async def put(self, key: str, record: LedgerRecord) -> None:
        await self._client.set(self._redis_key(key), record.to_json())

    async def apply(self, key: str, mutate: Mutator) -> LedgerRecord:
        redis_key = self._redis_key(key)
        for attempt in range(1, self._max_retries + 1):
            async with self._client.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(redis_key)
                    raw = await pipe.get(redis_key)
                    updated = mutate(LedgerRecord.from_json(raw) if raw else None)
                    pipe.multi()
                    pipe.set(redis_key, updated.to_json())
                    await pipe.execute()
                    return updated
                except WatchError:
                    logger.debug(f"Ledger key {key} changed during update (attempt {attempt}), retrying")
                    continue
        raise LedgerConflictError(
            f"Could not update ledger key {key} after {self._max_retries} attempts",
            details={"key": key},
        )

    async def close(self) -> None:
        await self._client.aclose()


__all__ = ["RedisLedgerStore"]
