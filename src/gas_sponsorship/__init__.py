"""
Gas sponsorship accountant.

Decides whether wallet transactions qualify for gas sponsorship under a
network's policy, estimates gas costs and tracks sponsored spend per user and
network against daily and monthly quotas.
"""

__version__ = "0.1.0"

from .accountant import SponsorshipAccountant, gas_limit_for
from .config import NetworkConfig, SponsorshipSettings, get_network, get_networks, get_settings
from .exceptions import (
    InvalidRequestError,
    LedgerConflictError,
    OracleUnavailableError,
    PersistenceError,
    PolicyUnavailableError,
    SponsorshipError,
)
from .ledger import LedgerRecord, UsageLedger, ledger_key
from .ledger_store import InMemoryLedgerStore, JsonFileLedgerStore
from .models import (
    FeeEstimate,
    FeeTier,
    GasEstimate,
    GasEstimateRequest,
    GasOptimization,
    Operation,
    SponsorshipEligibility,
    UsageStats,
)
from .oracle import RpcGasPriceOracle, StaticGasPriceOracle
from .policy import (
    AllowlistRule,
    ContractMethodRule,
    PolicyRule,
    RateLimitRule,
    SpendingLimitRule,
    SponsorshipPolicy,
    TransactionValueRule,
    create_basic_policy,
)
from .policy_store import InMemoryPolicyStore, JsonFilePolicyStore
from .policy_store_http import HttpPolicyStore
from .pricing import FiatPriceOracle
from .service import build_accountant

__all__ = [
    "__version__",
    "SponsorshipAccountant",
    "gas_limit_for",
    "build_accountant",
    # config
    "SponsorshipSettings",
    "NetworkConfig",
    "get_settings",
    "get_networks",
    "get_network",
    # errors
    "SponsorshipError",
    "InvalidRequestError",
    "PolicyUnavailableError",
    "OracleUnavailableError",
    "PersistenceError",
    "LedgerConflictError",
    # models
    "Operation",
    "GasEstimateRequest",
    "FeeTier",
    "FeeEstimate",
    "GasEstimate",
    "SponsorshipEligibility",
    "UsageStats",
    "GasOptimization",
    # policies
    "SponsorshipPolicy",
    "PolicyRule",
    "AllowlistRule",
    "SpendingLimitRule",
    "ContractMethodRule",
    "RateLimitRule",
    "TransactionValueRule",
    "create_basic_policy",
    "InMemoryPolicyStore",
    "JsonFilePolicyStore",
    "HttpPolicyStore",
    # ledger
    "LedgerRecord",
    "UsageLedger",
    "ledger_key",
    "InMemoryLedgerStore",
    "JsonFileLedgerStore",
    # fees
    "RpcGasPriceOracle",
    "StaticGasPriceOracle",
    "FiatPriceOracle",
]
