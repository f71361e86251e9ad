"""Database module for ledger and reconciliation persistence."""

from .models import (
    Base,
    Payment,
    PaymentStatus,
    ReconciliationRunRecord,
    ReconciliationItemRecord,
    RunLock,
)
from .session import (
    get_database_url,
    create_async_engine,
    get_async_session_factory,
    DatabaseManager,
)
from .repository import (
    PaymentRepository,
    ReconciliationRunRepository,
    RunLockRepository,
)

__all__ = [
    # Models
    "Base",
    "Payment",
    "PaymentStatus",
    "ReconciliationRunRecord",
    "ReconciliationItemRecord",
    "RunLock",
    # Session management
    "get_database_url",
    "create_async_engine",
    "get_async_session_factory",
    "DatabaseManager",
    # Repositories
    "PaymentRepository",
    "ReconciliationRunRepository",
    "RunLockRepository",
]
