"""
Usage ledger for sponsored gas spend.

Each (user, network) pair owns one LedgerRecord. Spend is stored in period
buckets keyed by UTC date ("2024-05-13") and month ("2024-05"), so nothing is
ever reset: the current period is looked up by key and a missing bucket reads
as zero.

UsageLedger serializes writes per key with an asyncio lock and keeps writes
whose durable write failed in memory until the next write for the key replays
them onto the durable record.
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from .exceptions import PersistenceError

logger = logging.getLogger(__name__)

# Retention for pruning old data out of a record
DAILY_BUCKET_RETENTION = timedelta(days=62)
MONTHLY_BUCKET_RETENTION = timedelta(days=731)
RATE_LIMIT_WINDOW = timedelta(hours=1)
MAX_RECORDED_TX_HASHES = 1000


def day_key(at: datetime) -> str:
    """UTC date bucket key (YYYY-MM-DD)."""
    return at.astimezone(timezone.utc).strftime("%Y-%m-%d")


def month_key(at: datetime) -> str:
    """UTC month bucket key (YYYY-MM)."""
    return at.astimezone(timezone.utc).strftime("%Y-%m")


def ledger_key(address: str, chain_id: int) -> str:
    """Storage key for a (user, network) pair."""
    return f"{address.lower()}_{chain_id}"


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class LedgerRecord:
    """Running totals for one (user, network) pair."""
    total_spent: Decimal = field(default_factory=lambda: Decimal("0"))
    transaction_count: int = 0
    daily_buckets: Dict[str, Decimal] = field(default_factory=dict)
    monthly_buckets: Dict[str, Decimal] = field(default_factory=dict)
    last_updated: Optional[datetime] = None

    # Timestamps inside the rate-limit window
    recent_transactions: List[datetime] = field(default_factory=list)
    # Bounded idempotency set, oldest first
    recorded_tx_hashes: List[str] = field(default_factory=list)

    def daily_spent(self, at: datetime) -> Decimal:
        return self.daily_buckets.get(day_key(at), Decimal("0"))

    def monthly_spent(self, at: datetime) -> Decimal:
        return self.monthly_buckets.get(month_key(at), Decimal("0"))

    def transactions_since(self, since: datetime) -> int:
        return sum(1 for ts in self.recent_transactions if ts > since)

    def has_transaction(self, tx_hash: str) -> bool:
        return tx_hash.lower() in self.recorded_tx_hashes

    def apply(
        self,
        cost: Decimal,
        at: datetime,
        tx_hash: Optional[str] = None,
        sponsored: bool = True,
    ) -> "LedgerRecord":
        """Return a new record with one transaction's cost added."""
        if cost < 0:
            raise ValueError("cost must not be negative")

        daily = dict(self.daily_buckets)
        monthly = dict(self.monthly_buckets)
        if sponsored:
            dk, mk = day_key(at), month_key(at)
            daily[dk] = daily.get(dk, Decimal("0")) + cost
            monthly[mk] = monthly.get(mk, Decimal("0")) + cost

        # Prune buckets and timestamps that can no longer be looked up
        oldest_day = day_key(at - DAILY_BUCKET_RETENTION)
        oldest_month = month_key(at - MONTHLY_BUCKET_RETENTION)
        daily = {k: v for k, v in daily.items() if k >= oldest_day}
        monthly = {k: v for k, v in monthly.items() if k >= oldest_month}

        window_start = at - RATE_LIMIT_WINDOW
        recent = [ts for ts in self.recent_transactions if ts > window_start]
        recent.append(at)

        hashes = list(self.recorded_tx_hashes)
        if tx_hash:
            hashes.append(tx_hash.lower())
            hashes = hashes[-MAX_RECORDED_TX_HASHES:]

        return replace(
            self,
            total_spent=self.total_spent + cost,
            transaction_count=self.transaction_count + 1,
            daily_buckets=daily,
            monthly_buckets=monthly,
            last_updated=at,
            recent_transactions=recent,
            recorded_tx_hashes=hashes,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalSpent": str(self.total_spent),
            "transactionCount": self.transaction_count,
            "dailyBuckets": {k: str(v) for k, v in self.daily_buckets.items()},
            "monthlyBuckets": {k: str(v) for k, v in self.monthly_buckets.items()},
            "lastUpdated": self.last_updated.isoformat() if self.last_updated else None,
            "recentTransactions": [ts.isoformat() for ts in self.recent_transactions],
            "recordedTxHashes": list(self.recorded_tx_hashes),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerRecord":
        return cls(
            total_spent=Decimal(str(data.get("totalSpent", "0"))),
            transaction_count=int(data.get("transactionCount", 0)),
            daily_buckets={k: Decimal(str(v)) for k, v in (data.get("dailyBuckets") or {}).items()},
            monthly_buckets={k: Decimal(str(v)) for k, v in (data.get("monthlyBuckets") or {}).items()},
            last_updated=_parse_datetime(data.get("lastUpdated")),
            recent_transactions=[
                ts for ts in (_parse_datetime(v) for v in data.get("recentTransactions") or ()) if ts
            ],
            recorded_tx_hashes=list(data.get("recordedTxHashes") or ()),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> "LedgerRecord":
        return cls.from_dict(json.loads(raw))


Mutator = Callable[[Optional[LedgerRecord]], LedgerRecord]


@dataclass(frozen=True)
class PendingWrite:
    """One accepted transaction that has not reached durable storage."""
    cost: Decimal
    at: datetime
    tx_hash: Optional[str] = None
    sponsored: bool = True

    def apply_to(self, record: Optional[LedgerRecord]) -> Tuple[LedgerRecord, bool]:
        current = record or LedgerRecord()
        if self.tx_hash and current.has_transaction(self.tx_hash):
            return current, False
        return current.apply(self.cost, self.at, tx_hash=self.tx_hash, sponsored=self.sponsored), True


def replay(base: Optional[LedgerRecord], writes: List[PendingWrite]) -> Tuple[LedgerRecord, bool]:
    """
    Apply writes in order on top of a base record.

    Returns:
        Tuple of (record, applied) where ``applied`` refers to the last write.
    """
    record = base or LedgerRecord()
    applied = False
    for write in writes:
        record, applied = write.apply_to(record)
    return record, applied


_UNKNOWN = object()


class UsageLedger:
    """
    Serialized read-modify-write access to a LedgerStore.

    Writes for the same key queue on a per-key lock; different keys proceed
    in parallel. Reads take no lock and may observe a value from just before
    or just after a concurrent write.

    Writes that fail to persist are kept as pending deltas rather than whole
    records. The next write for the key replays them through ``store.apply``
    on top of the durable record, so history written by earlier processes is
    never overwritten and repeated tx hashes are dropped during the replay.
    """

    def __init__(self, store: Any):
        self._store = store
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        # Last durable value seen per key (None when known to be absent)
        self._known: Dict[str, Optional[LedgerRecord]] = {}
        # Writes accepted in memory but not yet persisted, oldest first
        self._pending: Dict[str, List[PendingWrite]] = {}

    @property
    def backend(self) -> str:
        return getattr(self._store, "backend", type(self._store).__name__)

    async def _durable_base(self, key: str) -> Any:
        """Current durable record, the last one seen, or _UNKNOWN."""
        try:
            record = await self._store.load(key)
        except Exception as e:
            logger.warning(f"Ledger read for {key} failed: {e}")
            return self._known.get(key, _UNKNOWN)
        self._known[key] = record
        return record

    async def get(self, key: str) -> Optional[LedgerRecord]:
        """
        Read the current record including pending writes.

        Raises the store's error when the store is unreachable and no durable
        value for the key has been seen yet.
        """
        pending = self._pending.get(key)
        if not pending:
            record = await self._store.load(key)
            self._known[key] = record
            return record

        try:
            base = await self._store.load(key)
        except Exception:
            if key not in self._known:
                raise
            base = self._known[key]
        else:
            self._known[key] = base
        return replay(base, pending)[0]

    async def record(
        self,
        key: str,
        cost: Decimal,
        at: datetime,
        tx_hash: Optional[str] = None,
        sponsored: bool = True,
    ) -> Tuple[LedgerRecord, bool]:
        """
        Add one transaction's cost to a record.

        Returns:
            Tuple of (updated record, applied). ``applied`` is False when
            ``tx_hash`` was already recorded.

        Raises:
            ValueError: negative cost
            PersistenceError: the durable write failed; the write is kept and
                replayed on the next write for the key. ``record`` on the
                error is the in-memory view, or None when no durable value
                for the key could be read.
        """
        if cost < 0:
            raise ValueError("cost must not be negative")

        async with self._locks[key]:
            write = PendingWrite(cost=cost, at=at, tx_hash=tx_hash, sponsored=sponsored)
            pending = self._pending.get(key, [])
            writes = pending + [write]
            applied = False

            def mutate(current: Optional[LedgerRecord]) -> LedgerRecord:
                nonlocal applied
                updated, applied = replay(current, writes)
                return updated

            try:
                updated = await self._store.apply(key, mutate)
            except Exception as e:
                return await self._keep_pending(key, writes, e)

            if pending:
                logger.info(f"Re-persisted {len(pending)} pending ledger write(s) for {key}")
                del self._pending[key]
            self._known[key] = updated
            return updated, applied

    async def _keep_pending(
        self,
        key: str,
        writes: List[PendingWrite],
        error: Exception,
    ) -> Tuple[LedgerRecord, bool]:
        base = await self._durable_base(key)
        view: Optional[LedgerRecord] = None
        if base is not _UNKNOWN:
            view, applied = replay(base, writes)
            if not applied:
                return view, False

        self._pending[key] = writes
        logger.error(f"Ledger write failed for {key}; keeping update in memory: {error}")
        raise PersistenceError(
            f"Failed to persist usage for {key}: {error}",
            details={"key": key, "backend": self.backend},
            record=view,
        ) from error

    def pending_keys(self) -> List[str]:
        """Keys whose latest update has not reached durable storage."""
        return sorted(self._pending)

    async def close(self) -> None:
        await self._store.close()


__all__ = [
    "day_key",
    "month_key",
    "ledger_key",
    "replay",
    "LedgerRecord",
    "Mutator",
    "PendingWrite",
    "UsageLedger",
    "DAILY_BUCKET_RETENTION",
    "MONTHLY_BUCKET_RETENTION",
    "RATE_LIMIT_WINDOW",
    "MAX_RECORDED_TX_HASHES",
]
