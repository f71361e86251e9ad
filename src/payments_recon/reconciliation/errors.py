"""Error taxonomy for reconciliation runs."""

from typing import Any, Dict


class ReconciliationError(Exception):
    """Base class for structured reconciliation errors.

    Every error carries a machine-readable ``kind`` and a human-readable
    ``detail``. ``str(error)`` is the form stored on a run's ``error_message``.
    """

    kind = "reconciliation_error"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def __str__(self) -> str:
        return f"{self.kind}: {self.detail}"

    def to_dict(self) -> Dict[str, Any]:
        """Return the structured form of the error."""
        return {"kind": self.kind, "detail": self.detail}


class InvalidPolicy(ReconciliationError, ValueError):
    """Tolerance input is malformed or out of range."""

    kind = "invalid_policy"


class LedgerFetchError(ReconciliationError):
    """The app or gateway ledger could not be read."""

    kind = "ledger_fetch_error"


class ConcurrentRunConflict(ReconciliationError):
    """Another run already holds the guard for the requested window."""

    kind = "concurrent_run_conflict"


class StorageError(ReconciliationError):
    """The run store failed to read or write."""

    kind = "storage_error"


class RunNotFound(ReconciliationError, LookupError):
    """No run exists with the requested id."""

    kind = "run_not_found"


class RunCancelled(ReconciliationError):
    """An in-flight run was cancelled before persistence began."""

    kind = "run_cancelled"


class InvalidRunTransition(ReconciliationError):
    """A run was asked to move to a state its lifecycle does not allow."""

    kind = "invalid_run_transition"
