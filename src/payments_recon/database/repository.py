"""Repository layer for ledger and reconciliation persistence operations."""

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Optional, Dict, Any, List, Sequence

from sqlalchemy import select, delete, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .models import (
    Payment,
    PaymentStatus,
    ReconciliationRunRecord,
    ReconciliationItemRecord,
    RunLock,
)

logger = logging.getLogger(__name__)


class PaymentRepository:
    """Repository for app ledger Payment operations."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create(
        self,
        amount: Decimal,
        currency: str = "KES",
        reference: Optional[str] = None,
        provider_transaction_id: Optional[str] = None,
        provider: str = "stripe",
        status: str = PaymentStatus.COMPLETED.value,
        payer_name: Optional[str] = None,
        payer_phone: Optional[str] = None,
        payer_email: Optional[str] = None,
        county: Optional[str] = None,
        transaction_date: Optional[datetime] = None,
        extra_data: Optional[Dict[str, Any]] = None,
    ) -> Payment:
        """Create a new payment record.

        Args:
            amount: Payment amount in major units.
            currency: Three-letter currency code.
            reference: Merchant-assigned reference.
            provider_transaction_id: Gateway transaction identifier, once known.
            provider: Payment provider name.
            status: Payment status.
            payer_name: Payer's name.
            payer_phone: Payer's phone number.
            payer_email: Payer's email address.
            county: County the payment belongs to.
            transaction_date: When the payment happened.
            extra_data: Optional extra data dictionary.

        Returns:
            Created Payment instance.
        """
        payment = Payment(
            amount=amount,
            currency=currency.upper(),
            reference=reference,
            provider_transaction_id=provider_transaction_id,
            provider=provider,
            status=status,
            payer_name=payer_name,
            payer_phone=payer_phone,
            payer_email=payer_email,
            county=county,
            transaction_date=transaction_date,
        )
        if extra_data:
            payment.extra_data = extra_data

        self.session.add(payment)
        await self.session.flush()

        logger.info(f"Created payment {payment.id} with status {status}")
        return payment

    async def get_by_id(self, payment_id: str) -> Optional[Payment]:
        """Get a payment by its ID.

        Args:
            payment_id: Payment ID.

        Returns:
            Payment instance if found, None otherwise.
        """
        result = await self.session.execute(
            select(Payment).where(Payment.id == payment_id)
        )
        return result.scalar_one_or_none()

    async def list_for_period(
        self,
        start: datetime,
        end: datetime,
        county: Optional[str] = None,
    ) -> List[Payment]:
        """List payments with a transaction date in [start, end).

        Args:
            start: Inclusive lower bound.
            end: Exclusive upper bound.
            county: Optional county, compared case-insensitively.

        Returns:
            Payments ordered by transaction date, then ID.
        """
        query = select(Payment).where(
            Payment.transaction_date >= start,
            Payment.transaction_date < end,
        )
        if county:
            query = query.where(func.lower(Payment.county) == county.strip().lower())
        query = query.order_by(Payment.transaction_date, Payment.created_at, Payment.id)

        result = await self.session.execute(query)
        return list(result.scalars().all())


class ReconciliationRunRepository:
    """Repository for reconciliation runs and their items."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create(
        self,
        run: ReconciliationRunRecord,
        items: Sequence[ReconciliationItemRecord] = (),
    ) -> ReconciliationRunRecord:
        """Add a run and its items to the session.

        Args:
            run: Run record to store.
            items: Item records belonging to the run.

        Returns:
            The stored run record.
        """
        for position, item in enumerate(items):
            item.position = position
            run.items.append(item)

        self.session.add(run)
        await self.session.flush()

        logger.info(f"Stored reconciliation run {run.id} with {len(items)} items")
        return run

    async def get_by_id(self, run_id: str) -> Optional[ReconciliationRunRecord]:
        """Get a non-deleted run by its ID, with its items loaded.

        Args:
            run_id: Run ID.

        Returns:
            ReconciliationRunRecord instance if found, None otherwise.
        """
        result = await self.session.execute(
            select(ReconciliationRunRecord)
            .options(selectinload(ReconciliationRunRecord.items))
            .where(
                ReconciliationRunRecord.id == run_id,
                ReconciliationRunRecord.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def exists(self, run_id: str) -> bool:
        """Check whether a non-deleted run exists."""
        result = await self.session.execute(
            select(func.count()).select_from(ReconciliationRunRecord).where(
                ReconciliationRunRecord.id == run_id,
                ReconciliationRunRecord.deleted_at.is_(None),
            )
        )
        return result.scalar_one() > 0

    async def list_runs(
        self,
        status: Optional[str] = None,
        county: Optional[str] = None,
        period_start: Optional[date] = None,
        period_end: Optional[date] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[ReconciliationRunRecord]:
        """List non-deleted runs, newest first.

        Args:
            status: Optional run status filter.
            county: Optional county filter (case-insensitive).
            period_start: Only runs whose period starts on or after this date.
            period_end: Only runs whose period ends on or before this date.
            limit: Maximum number of results.
            offset: Number of results to skip.

        Returns:
            List of run records without their items.
        """
        query = select(ReconciliationRunRecord).where(
            ReconciliationRunRecord.deleted_at.is_(None)
        )
        if status:
            query = query.where(ReconciliationRunRecord.status == status)
        if county:
            query = query.where(
                func.lower(ReconciliationRunRecord.county) == county.strip().lower()
            )
        if period_start:
            query = query.where(ReconciliationRunRecord.period_start >= period_start)
        if period_end:
            query = query.where(ReconciliationRunRecord.period_end <= period_end)

        query = (
            query.order_by(
                ReconciliationRunRecord.created_at.desc(),
                ReconciliationRunRecord.id.desc(),
            )
            .limit(limit)
            .offset(offset)
        )

        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def list_items(
        self,
        run_id: str,
        reconciliation_status: Optional[str] = None,
    ) -> List[ReconciliationItemRecord]:
        """List the items of a run in emission order.

        Args:
            run_id: Run ID.
            reconciliation_status: Optional item status filter.

        Returns:
            List of item records.
        """
        query = select(ReconciliationItemRecord).where(
            ReconciliationItemRecord.run_id == run_id
        )
        if reconciliation_status:
            query = query.where(
                ReconciliationItemRecord.reconciliation_status == reconciliation_status
            )
        query = query.order_by(ReconciliationItemRecord.position)

        result = await self.session.execute(query)
        return list(result.scalars().all())


class RunLockRepository:
    """Repository for reconciliation window leases."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def get_by_key(self, window_key: str) -> Optional[RunLock]:
        """Get the lease for a window key.

        Args:
            window_key: The window key string.

        Returns:
            RunLock instance if found, None otherwise.
        """
        result = await self.session.execute(
            select(RunLock).where(RunLock.window_key == window_key)
        )
        return result.scalar_one_or_none()

    async def acquire(self, window_key: str, run_id: str, ttl_seconds: int) -> bool:
        """Take the lease for a window unless a live one exists.

        An expired lease is removed and replaced. Concurrent inserts for the
        same key surface as ``IntegrityError`` from the unique constraint.

        Args:
            window_key: The window key string.
            run_id: Run taking the lease.
            ttl_seconds: Lease lifetime in seconds.

        Returns:
            True if the lease was taken, False if another run holds it.
        """
        existing = await self.get_by_key(window_key)

        if existing is not None:
            if not existing.is_expired():
                logger.warning(
                    f"Window {window_key} is held by run {existing.run_id}"
                )
                return False
            # Lapsed lease from a holder that never released it
            logger.warning(
                f"Replacing expired lease on {window_key} held by run {existing.run_id}"
            )
            await self.session.delete(existing)
            await self.session.flush()

        lock = RunLock(
            window_key=window_key,
            run_id=run_id,
            expires_at=datetime.utcnow() + timedelta(seconds=ttl_seconds),
        )
        self.session.add(lock)
        await self.session.flush()

        logger.debug(f"Run {run_id} acquired lease on {window_key}")
        return True

    async def release(self, window_key: str, run_id: str) -> int:
        """Drop the lease for a window if the run still holds it.

        Returns:
            Number of deleted records.
        """
        result = await self.session.execute(
            delete(RunLock).where(
                RunLock.window_key == window_key,
                RunLock.run_id == run_id,
            )
        )
        await self.session.flush()
        return result.rowcount

    async def delete_expired(self) -> int:
        """Delete lapsed leases.

        Returns:
            Number of deleted records.
        """
        result = await self.session.execute(
            delete(RunLock).where(RunLock.expires_at < datetime.utcnow())
        )
        await self.session.flush()
        return result.rowcount
