"""Reconciliation module for payment systems.

This module matches the app's payment ledger against a payment gateway
ledger (Stripe) for a period and county, classifies every record and
keeps an append-only history of runs.

Features:
- Configurable amount, date and fuzzy-match tolerances
- Exact matching on transaction ID or reference, then fuzzy matching
- Duplicate detection on both ledgers
- One active run per (period, county) window
- Dry-run previews, background runs and cancellation
"""

from .errors import (
    ReconciliationError,
    InvalidPolicy,
    LedgerFetchError,
    ConcurrentRunConflict,
    StorageError,
    RunNotFound,
    RunCancelled,
    InvalidRunTransition,
)
from .models import (
    RecordSource,
    ItemStatus,
    RunStatus,
    LedgerRecord,
    ReconciliationItem,
    MatchSummary,
    MatchResult,
    ReconciliationRun,
    RunSummary,
    RunFilter,
    TriggerRequest,
    ExportRequest,
    RunResult,
)
from .tolerance import TolerancePolicy
from .ledger import (
    LedgerSource,
    StaticLedgerSource,
    DatabaseAppLedger,
    StripeGatewayLedger,
    get_gateway_ledger,
)
from .matcher import Matcher
from .guard import RunGuard, InMemoryRunGuard, DatabaseRunGuard
from .store import RunStore, InMemoryRunStore, DatabaseRunStore
from .service import ReconciliationService, create_reconciliation_service

__all__ = [
    # Errors
    "ReconciliationError",
    "InvalidPolicy",
    "LedgerFetchError",
    "ConcurrentRunConflict",
    "StorageError",
    "RunNotFound",
    "RunCancelled",
    "InvalidRunTransition",
    # Models
    "RecordSource",
    "ItemStatus",
    "RunStatus",
    "LedgerRecord",
    "ReconciliationItem",
    "MatchSummary",
    "MatchResult",
    "ReconciliationRun",
    "RunSummary",
    "RunFilter",
    "TriggerRequest",
    "ExportRequest",
    "RunResult",
    # Tolerances
    "TolerancePolicy",
    # Ledgers
    "LedgerSource",
    "StaticLedgerSource",
    "DatabaseAppLedger",
    "StripeGatewayLedger",
    "get_gateway_ledger",
    # Core Components
    "Matcher",
    "RunGuard",
    "InMemoryRunGuard",
    "DatabaseRunGuard",
    "RunStore",
    "InMemoryRunStore",
    "DatabaseRunStore",
    "ReconciliationService",
    "create_reconciliation_service",
]
