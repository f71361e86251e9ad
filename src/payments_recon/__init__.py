# payments_recon package
__version__ = "0.1.0"

from .database import (
    Payment,
    PaymentStatus,
    DatabaseManager,
)

# Reconciliation exports
from .reconciliation import (
    ReconciliationService,
    ReconciliationRun,
    ReconciliationItem,
    LedgerRecord,
    TriggerRequest,
    RunStatus,
    ItemStatus,
    TolerancePolicy,
    Matcher,
    ReconciliationError,
    get_gateway_ledger,
)
