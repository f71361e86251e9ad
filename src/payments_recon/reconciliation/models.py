"""Models for payment reconciliation."""

import enum
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional, Dict, Any, List

from pydantic import BaseModel, Field, field_validator, model_validator

from .errors import InvalidRunTransition


class RecordSource(str, enum.Enum):
    """Ledger a record came from."""
    APP = "app"
    GATEWAY = "gateway"


class ItemStatus(str, enum.Enum):
    """Match outcome of a single ledger record."""
    MATCHED = "matched"
    UNMATCHED_APP = "unmatched_app"
    UNMATCHED_GATEWAY = "unmatched_gateway"
    AMOUNT_MISMATCH = "amount_mismatch"
    DUPLICATE = "duplicate"


class RunStatus(str, enum.Enum):
    """Lifecycle state of a reconciliation run."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset([RunStatus.SUCCESS, RunStatus.PARTIAL, RunStatus.FAILED])

# Allowed lifecycle transitions (current status -> next statuses)
RUN_TRANSITIONS: Dict[RunStatus, frozenset] = {
    RunStatus.PENDING: frozenset([RunStatus.RUNNING, RunStatus.FAILED]),
    RunStatus.RUNNING: TERMINAL_STATUSES,
    RunStatus.SUCCESS: frozenset(),
    RunStatus.PARTIAL: frozenset(),
    RunStatus.FAILED: frozenset(),
}


class LedgerRecord(BaseModel):
    """A transaction record from either the app or the gateway ledger."""
    transaction_id: Optional[str] = Field(None, description="Gateway transaction ID")
    reference: Optional[str] = Field(None, description="Merchant-assigned reference")
    amount: Decimal = Field(..., description="Transaction amount in major units")
    currency: str = Field(default="KES", description="Three-letter currency code")
    transaction_date: Optional[datetime] = Field(None, description="Transaction time")
    payer_name: Optional[str] = None
    payer_phone: Optional[str] = None
    payer_email: Optional[str] = None
    county: Optional[str] = None
    status: Optional[str] = Field(None, description="App or provider status")
    source: RecordSource = Field(..., description="Ledger the record came from")
    metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        frozen = True

    @field_validator("transaction_date")
    @classmethod
    def normalise_transaction_date(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Store dates as naive UTC so records from any ledger compare."""
        if v is not None and v.tzinfo is not None:
            return v.astimezone(timezone.utc).replace(tzinfo=None)
        return v

    @property
    def match_key(self) -> Optional[str]:
        """Key used by the exact pass: transaction ID, else reference."""
        return self.transaction_id or self.reference or None


class ReconciliationItem(BaseModel):
    """A ledger record together with its match outcome."""
    item_id: str = Field(..., description="Identifier of the item within its run")
    source: RecordSource
    transaction_id: Optional[str] = None
    reference: Optional[str] = None
    amount: Decimal
    currency: str = "KES"
    transaction_date: Optional[datetime] = None
    payer_name: Optional[str] = None
    payer_phone: Optional[str] = None
    payer_email: Optional[str] = None
    county: Optional[str] = None
    record_status: Optional[str] = Field(None, description="Status reported by the ledger")
    reconciliation_status: ItemStatus
    match_reference: Optional[str] = Field(None, description="item_id of the counterpart")
    discrepancy_amount: Optional[Decimal] = Field(None, description="app - gateway, mismatches only")
    notes: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_record(
        cls,
        item_id: str,
        record: LedgerRecord,
        reconciliation_status: ItemStatus,
        match_reference: Optional[str] = None,
        discrepancy_amount: Optional[Decimal] = None,
        notes: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "ReconciliationItem":
        """Build an item from a ledger record and its classification."""
        item_metadata = dict(record.metadata)
        if metadata:
            item_metadata.update(metadata)
        return cls(
            item_id=item_id,
            source=record.source,
            transaction_id=record.transaction_id,
            reference=record.reference,
            amount=record.amount,
            currency=record.currency,
            transaction_date=record.transaction_date,
            payer_name=record.payer_name,
            payer_phone=record.payer_phone,
            payer_email=record.payer_email,
            county=record.county,
            record_status=record.status,
            reconciliation_status=reconciliation_status,
            match_reference=match_reference,
            discrepancy_amount=discrepancy_amount,
            notes=notes,
            metadata=item_metadata,
        )


class MatchSummary(BaseModel):
    """Counters and amount totals produced by the matcher.

    ``matched`` and ``amount_mismatch`` count pairs, the other counters
    count records.
    """
    matched: int = 0
    amount_mismatch: int = 0
    unmatched_app: int = 0
    unmatched_gateway: int = 0
    duplicate_app: int = 0
    duplicate_gateway: int = 0
    total_app_amount: Decimal = Decimal("0")
    total_gateway_amount: Decimal = Decimal("0")
    total_discrepancy: Decimal = Decimal("0")

    @property
    def duplicate(self) -> int:
        return self.duplicate_app + self.duplicate_gateway

    @property
    def is_clean(self) -> bool:
        """True when every record ended up in a matched pair."""
        return (
            self.amount_mismatch == 0
            and self.unmatched_app == 0
            and self.unmatched_gateway == 0
            and self.duplicate == 0
        )


class MatchResult(BaseModel):
    """Output of one matcher invocation."""
    items: List[ReconciliationItem] = Field(default_factory=list)
    summary: MatchSummary = Field(default_factory=MatchSummary)
    cancelled: bool = False


class ReconciliationRun(BaseModel):
    """One execution of the matcher over a period/county window."""
    run_id: str = Field(..., description="Opaque unique run identifier")
    status: RunStatus = Field(default=RunStatus.PENDING)
    period_start: date
    period_end: date
    county: Optional[str] = None
    dry_run: bool = False

    # Statistics
    total_matched: int = 0
    total_unmatched_app: int = 0
    total_unmatched_gateway: int = 0
    total_amount_mismatch: int = 0
    total_duplicate: int = 0
    total_app_amount: Decimal = Decimal("0")
    total_gateway_amount: Decimal = Decimal("0")
    total_discrepancy: Decimal = Decimal("0")

    tolerance_config_used: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def transition_to(self, status: RunStatus, error_message: Optional[str] = None) -> None:
        """Move the run to a new lifecycle state.

        Raises:
            InvalidRunTransition: If the lifecycle does not allow the move.
        """
        if status not in RUN_TRANSITIONS[self.status]:
            raise InvalidRunTransition(
                f"Run {self.run_id} cannot move from {self.status.value} to {status.value}"
            )
        now = datetime.utcnow()
        if status == RunStatus.RUNNING:
            self.started_at = now
        if status.is_terminal:
            self.completed_at = now
            self.error_message = error_message
        self.status = status

    def apply_summary(self, summary: MatchSummary) -> None:
        """Copy matcher counters and totals onto the run."""
        self.total_matched = summary.matched
        self.total_unmatched_app = summary.unmatched_app
        self.total_unmatched_gateway = summary.unmatched_gateway
        self.total_amount_mismatch = summary.amount_mismatch
        self.total_duplicate = summary.duplicate
        self.total_app_amount = summary.total_app_amount
        self.total_gateway_amount = summary.total_gateway_amount
        self.total_discrepancy = summary.total_discrepancy

    def to_summary_dict(self) -> Dict[str, Any]:
        """Return a JSON-friendly summary of the run."""
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "county": self.county,
            "dry_run": self.dry_run,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "statistics": {
                "total_matched": self.total_matched,
                "total_unmatched_app": self.total_unmatched_app,
                "total_unmatched_gateway": self.total_unmatched_gateway,
                "total_amount_mismatch": self.total_amount_mismatch,
                "total_duplicate": self.total_duplicate,
                "total_app_amount": str(self.total_app_amount),
                "total_gateway_amount": str(self.total_gateway_amount),
                "total_discrepancy": str(self.total_discrepancy),
            },
            "tolerance_config_used": self.tolerance_config_used,
            "error_message": self.error_message,
        }


class RunSummary(BaseModel):
    """List view of a run, without its items."""
    run_id: str
    status: RunStatus
    period_start: date
    period_end: date
    county: Optional[str] = None
    total_matched: int = 0
    total_unmatched_app: int = 0
    total_unmatched_gateway: int = 0
    total_amount_mismatch: int = 0
    total_duplicate: int = 0
    total_discrepancy: Decimal = Decimal("0")
    error_message: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_run(cls, run: ReconciliationRun) -> "RunSummary":
        return cls(**{name: getattr(run, name) for name in cls.model_fields})


class RunFilter(BaseModel):
    """Filters for listing stored runs."""
    status: Optional[RunStatus] = None
    county: Optional[str] = None
    period_start: Optional[date] = Field(None, description="Runs whose period starts on or after")
    period_end: Optional[date] = Field(None, description="Runs whose period ends on or before")
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


class TriggerRequest(BaseModel):
    """Request model for starting a reconciliation run.

    Tolerance fields are left unconstrained here; ``TolerancePolicy``
    validates them so that bad values surface as ``InvalidPolicy``.
    """
    dry_run: bool = Field(default=False, description="Preview without persisting")
    sync: bool = Field(default=True, description="Run inline instead of in the background")
    period_start: date
    period_end: date
    county: Optional[str] = Field(None, max_length=255)
    amount_percentage_tolerance: Optional[float] = None
    amount_absolute_tolerance: Optional[Decimal] = None
    date_tolerance: Optional[int] = None
    fuzzy_match_threshold: Optional[int] = None

    @model_validator(mode="after")
    def _check_period(self) -> "TriggerRequest":
        if self.period_start > self.period_end:
            raise ValueError("period_start must not be after period_end")
        return self

    @property
    def window_key(self) -> str:
        """Key of the (period_start, period_end, county) exclusivity window."""
        county = self.county.strip().lower() if self.county else "*"
        return f"{self.period_start.isoformat()}|{self.period_end.isoformat()}|{county}"

    def tolerance_overrides(self) -> Dict[str, Any]:
        return {
            "amount_percentage_tolerance": self.amount_percentage_tolerance,
            "amount_absolute_tolerance": self.amount_absolute_tolerance,
            "date_tolerance_days": self.date_tolerance,
            "fuzzy_match_threshold": self.fuzzy_match_threshold,
        }


class ExportRequest(BaseModel):
    """Request model for exporting the items of a stored run."""
    run_id: str = Field(..., min_length=1)
    status: Optional[ItemStatus] = None


class RunResult(BaseModel):
    """Outcome of a trigger call."""
    run: ReconciliationRun
    items: List[ReconciliationItem] = Field(default_factory=list)
    persisted: bool = False
