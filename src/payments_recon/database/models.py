"""SQLAlchemy models for ledger and reconciliation persistence."""

import uuid
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List

from sqlalchemy import (
    Boolean,
    Date,
    String,
    Integer,
    Numeric,
    DateTime,
    ForeignKey,
    Text,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column
import enum


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class PaymentStatus(str, enum.Enum):
    """Statuses recorded on app ledger payments."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


def _load_json(value: Optional[str]) -> Optional[Dict[str, Any]]:
    if value:
        return json.loads(value)
    return None


def _dump_json(value: Optional[Dict[str, Any]]) -> Optional[str]:
    if value is not None:
        return json.dumps(value, default=str)
    return None


class Payment(Base):
    """App ledger payment as recorded by the application."""
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    provider_transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False, default="stripe")
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=PaymentStatus.PENDING.value)
    amount: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="KES")

    # Payer details used for fuzzy matching
    payer_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payer_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    payer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    county: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    transaction_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    extra_data_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_payments_status", "status"),
        Index("ix_payments_transaction_date", "transaction_date"),
        Index("ix_payments_county", "county"),
    )

    @property
    def extra_data(self) -> Optional[Dict[str, Any]]:
        """Get extra data as dictionary."""
        return _load_json(self.extra_data_json)

    @extra_data.setter
    def extra_data(self, value: Optional[Dict[str, Any]]) -> None:
        """Set extra data from dictionary."""
        self.extra_data_json = _dump_json(value)

    def to_dict(self) -> Dict[str, Any]:
        """Convert payment to dictionary representation."""
        return {
            "id": self.id,
            "reference": self.reference,
            "provider_transaction_id": self.provider_transaction_id,
            "provider": self.provider,
            "status": self.status,
            "amount": str(self.amount),
            "currency": self.currency,
            "payer_name": self.payer_name,
            "payer_phone": self.payer_phone,
            "payer_email": self.payer_email,
            "county": self.county,
            "transaction_date": self.transaction_date.isoformat() if self.transaction_date else None,
            "extra_data": self.extra_data,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class ReconciliationRunRecord(Base):
    """Stored reconciliation run with its statistics."""
    __tablename__ = "reconciliation_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    county: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    dry_run: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Statistics
    total_matched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_unmatched_app: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_unmatched_gateway: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount_mismatch: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_duplicate: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_app_amount: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False, default=Decimal("0"))
    total_gateway_amount: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False, default=Decimal("0"))
    total_discrepancy: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False, default=Decimal("0"))

    tolerance_config_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Set by external retention jobs, never by the engine
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    items: Mapped[List["ReconciliationItemRecord"]] = relationship(
        "ReconciliationItemRecord",
        back_populates="run",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ReconciliationItemRecord.position",
    )

    __table_args__ = (
        Index("ix_reconciliation_runs_status", "status"),
        Index("ix_reconciliation_runs_created_at", "created_at"),
        Index("ix_reconciliation_runs_period", "period_start", "period_end"),
    )

    @property
    def tolerance_config(self) -> Optional[Dict[str, Any]]:
        """Get the tolerance snapshot as dictionary."""
        return _load_json(self.tolerance_config_json)

    @tolerance_config.setter
    def tolerance_config(self, value: Optional[Dict[str, Any]]) -> None:
        """Set the tolerance snapshot from dictionary."""
        self.tolerance_config_json = _dump_json(value)


class ReconciliationItemRecord(Base):
    """Stored match outcome for one ledger record of a run."""
    __tablename__ = "reconciliation_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("reconciliation_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    item_id: Mapped[str] = mapped_column(String(64), nullable=False)
    # Emission order of the item within its run
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)

    transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="KES")
    transaction_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    payer_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payer_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    payer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    county: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    record_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    reconciliation_status: Mapped[str] = mapped_column(String(30), nullable=False)
    match_reference: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    discrepancy_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 6), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    item_metadata_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    run: Mapped["ReconciliationRunRecord"] = relationship("ReconciliationRunRecord", back_populates="items")

    __table_args__ = (
        UniqueConstraint("run_id", "item_id", name="uq_reconciliation_items_run_item"),
        Index("ix_reconciliation_items_status", "reconciliation_status"),
    )

    @property
    def item_metadata(self) -> Optional[Dict[str, Any]]:
        """Get item metadata as dictionary."""
        return _load_json(self.item_metadata_json)

    @item_metadata.setter
    def item_metadata(self, value: Optional[Dict[str, Any]]) -> None:
        """Set item metadata from dictionary."""
        self.item_metadata_json = _dump_json(value)


class RunLock(Base):
    """Lease held by the run reconciling a (period, county) window."""
    __tablename__ = "reconciliation_locks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    window_key: Mapped[str] = mapped_column(String(300), nullable=False, unique=True, index=True)
    run_id: Mapped[str] = mapped_column(String(36), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_reconciliation_locks_expires_at", "expires_at"),
    )

    def is_expired(self) -> bool:
        """Check if the lease has lapsed."""
        return datetime.utcnow() > self.expires_at
