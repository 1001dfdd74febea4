"""Exception hierarchy for the gas sponsorship engine.

All engine-specific exceptions inherit from SponsorshipError, so callers can
catch one type at the accountant boundary:

- InvalidRequestError: malformed input, raised before any I/O
- PolicyUnavailableError: policy store unreachable or empty (fail closed)
- OracleUnavailableError: fee lookup failed (fallback estimate)
- PersistenceError: ledger write failed after the in-memory update

Only InvalidRequestError and PersistenceError ever reach callers of the
accountant; the other two are translated into decisions and log lines.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from .ledger import LedgerRecord
    from .models import UsageStats


class SponsorshipError(Exception):
    """Base exception for all gas sponsorship errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., "INVALID_REQUEST")
        details: Optional additional context
    """

    error_code: str = "SPONSORSHIP_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a response payload."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class InvalidRequestError(SponsorshipError):
    """Malformed address, call data, amount or unsupported chain."""

    error_code = "INVALID_REQUEST"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details)


class PolicyUnavailableError(SponsorshipError):
    """Sponsorship policy could not be loaded."""

    error_code = "POLICY_UNAVAILABLE"

    def __init__(
        self,
        chain_id: int,
        reason: str = "policy store unreachable",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details["chain_id"] = chain_id
        super().__init__(f"Policy unavailable for chain {chain_id}: {reason}", details=details)
        self.chain_id = chain_id


class OracleUnavailableError(SponsorshipError):
    """Gas price oracle failed or returned unusable data."""

    error_code = "ORACLE_UNAVAILABLE"

    def __init__(
        self,
        chain_id: int,
        reason: str = "fee lookup failed",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details["chain_id"] = chain_id
        super().__init__(f"Gas price oracle unavailable for chain {chain_id}: {reason}", details=details)
        self.chain_id = chain_id


class PersistenceError(SponsorshipError):
    """Ledger write failed after the in-memory update succeeded.

    The on-chain transaction already happened, so this is a degraded state
    rather than a rollback trigger. ``record`` is the in-memory ledger record
    including the update and ``stats`` the usage figures built from it; both
    are None when no durable value for the key could be read.
    """

    error_code = "PERSISTENCE_ERROR"

    def __init__(
        self,
        message: str,
        stats: Optional["UsageStats"] = None,
        details: Optional[dict[str, Any]] = None,
        record: Optional["LedgerRecord"] = None,
    ) -> None:
        super().__init__(message, details=details)
        self.stats = stats
        self.record = record


class LedgerConflictError(SponsorshipError):
    """Optimistic ledger transaction lost too many races."""

    error_code = "LEDGER_CONFLICT"


__all__ = [
    "SponsorshipError",
    "InvalidRequestError",
    "PolicyUnavailableError",
    "OracleUnavailableError",
    "PersistenceError",
    "LedgerConflictError",
]
