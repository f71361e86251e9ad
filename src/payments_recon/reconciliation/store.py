"""Run store: durable, append-only history of reconciliation runs."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database import (
    ReconciliationItemRecord,
    ReconciliationRunRecord,
    ReconciliationRunRepository,
)
from .errors import RunNotFound, StorageError
from .models import (
    ItemStatus,
    ReconciliationItem,
    ReconciliationRun,
    RecordSource,
    RunFilter,
    RunStatus,
    RunSummary,
)

logger = logging.getLogger(__name__)


class RunStore(ABC):
    """Persistence interface for runs and their items.

    ``save`` is atomic: either the run and all its items are stored or
    nothing is. Stored runs are never modified.
    """

    @abstractmethod
    async def save(self, run: ReconciliationRun, items: Sequence[ReconciliationItem] = ()) -> None:
        """Store a run with its items.

        Raises:
            StorageError: If the backend fails or the run is already stored.
        """
        raise NotImplementedError

    @abstractmethod
    async def get(self, run_id: str) -> Tuple[ReconciliationRun, List[ReconciliationItem]]:
        """Load a run and its items.

        Raises:
            RunNotFound: If no run has this ID.
            StorageError: If the backend fails.
        """
        raise NotImplementedError

    @abstractmethod
    async def list(self, run_filter: Optional[RunFilter] = None) -> List[RunSummary]:
        """List stored runs, newest first."""
        raise NotImplementedError

    @abstractmethod
    async def export(
        self,
        run_id: str,
        status: Optional[ItemStatus] = None,
    ) -> List[ReconciliationItem]:
        """Return a run's items, optionally filtered by status.

        Raises:
            RunNotFound: If no run has this ID.
            StorageError: If the backend fails.
        """
        raise NotImplementedError


def _sort_key(run: ReconciliationRun):
    return (run.created_at, run.run_id)


class InMemoryRunStore(RunStore):
    """Run store kept in process memory. Copies on the way in and out."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._runs: Dict[str, Tuple[ReconciliationRun, List[ReconciliationItem]]] = {}

    async def save(self, run: ReconciliationRun, items: Sequence[ReconciliationItem] = ()) -> None:
        async with self._lock:
            if run.run_id in self._runs:
                raise StorageError(f"Run {run.run_id} is already stored")
            self._runs[run.run_id] = (
                run.model_copy(deep=True),
                [item.model_copy(deep=True) for item in items],
            )
        logger.info(f"Stored reconciliation run {run.run_id} with {len(items)} items")

    async def get(self, run_id: str) -> Tuple[ReconciliationRun, List[ReconciliationItem]]:
        async with self._lock:
            stored = self._runs.get(run_id)
        if stored is None:
            raise RunNotFound(f"Run {run_id} not found")
        run, items = stored
        return run.model_copy(deep=True), [item.model_copy(deep=True) for item in items]

    async def list(self, run_filter: Optional[RunFilter] = None) -> List[RunSummary]:
        run_filter = run_filter or RunFilter()
        async with self._lock:
            runs = [run for run, _ in self._runs.values()]

        county = run_filter.county.strip().lower() if run_filter.county else None
        selected = [
            run for run in runs
            if (run_filter.status is None or run.status == run_filter.status)
            and (county is None or (run.county or "").lower() == county)
            and (run_filter.period_start is None or run.period_start >= run_filter.period_start)
            and (run_filter.period_end is None or run.period_end <= run_filter.period_end)
        ]
        selected.sort(key=_sort_key, reverse=True)
        page = selected[run_filter.offset:run_filter.offset + run_filter.limit]
        return [RunSummary.from_run(run) for run in page]

    async def export(
        self,
        run_id: str,
        status: Optional[ItemStatus] = None,
    ) -> List[ReconciliationItem]:
        _, items = await self.get(run_id)
        if status is None:
            return items
        return [item for item in items if item.reconciliation_status == status]


def _run_to_record(run: ReconciliationRun) -> ReconciliationRunRecord:
    record = ReconciliationRunRecord(
        id=run.run_id,
        status=run.status.value,
        period_start=run.period_start,
        period_end=run.period_end,
        county=run.county,
        dry_run=run.dry_run,
        total_matched=run.total_matched,
        total_unmatched_app=run.total_unmatched_app,
        total_unmatched_gateway=run.total_unmatched_gateway,
        total_amount_mismatch=run.total_amount_mismatch,
        total_duplicate=run.total_duplicate,
        total_app_amount=run.total_app_amount,
        total_gateway_amount=run.total_gateway_amount,
        total_discrepancy=run.total_discrepancy,
        error_message=run.error_message,
        notes=run.notes,
        created_by=run.created_by,
        created_at=run.created_at,
        started_at=run.started_at,
        completed_at=run.completed_at,
    )
    record.tolerance_config = run.tolerance_config_used
    return record


def _record_to_run(record: ReconciliationRunRecord) -> ReconciliationRun:
    return ReconciliationRun(
        run_id=record.id,
        status=RunStatus(record.status),
        period_start=record.period_start,
        period_end=record.period_end,
        county=record.county,
        dry_run=record.dry_run,
        total_matched=record.total_matched,
        total_unmatched_app=record.total_unmatched_app,
        total_unmatched_gateway=record.total_unmatched_gateway,
        total_amount_mismatch=record.total_amount_mismatch,
        total_duplicate=record.total_duplicate,
        total_app_amount=record.total_app_amount,
        total_gateway_amount=record.total_gateway_amount,
        total_discrepancy=record.total_discrepancy,
        tolerance_config_used=record.tolerance_config or {},
        error_message=record.error_message,
        notes=record.notes,
        created_by=record.created_by,
        created_at=record.created_at,
        started_at=record.started_at,
        completed_at=record.completed_at,
    )


def _item_to_record(item: ReconciliationItem) -> ReconciliationItemRecord:
    record = ReconciliationItemRecord(
        item_id=item.item_id,
        source=item.source.value,
        transaction_id=item.transaction_id,
        reference=item.reference,
        amount=item.amount,
        currency=item.currency,
        transaction_date=item.transaction_date,
        payer_name=item.payer_name,
        payer_phone=item.payer_phone,
        payer_email=item.payer_email,
        county=item.county,
        record_status=item.record_status,
        reconciliation_status=item.reconciliation_status.value,
        match_reference=item.match_reference,
        discrepancy_amount=item.discrepancy_amount,
        notes=item.notes,
    )
    record.item_metadata = item.metadata
    return record


def _record_to_item(record: ReconciliationItemRecord) -> ReconciliationItem:
    return ReconciliationItem(
        item_id=record.item_id,
        source=RecordSource(record.source),
        transaction_id=record.transaction_id,
        reference=record.reference,
        amount=record.amount,
        currency=record.currency,
        transaction_date=record.transaction_date,
        payer_name=record.payer_name,
        payer_phone=record.payer_phone,
        payer_email=record.payer_email,
        county=record.county,
        record_status=record.record_status,
        reconciliation_status=ItemStatus(record.reconciliation_status),
        match_reference=record.match_reference,
        discrepancy_amount=record.discrepancy_amount,
        notes=record.notes,
        metadata=record.item_metadata or {},
    )


class DatabaseRunStore(RunStore):
    """Run store on the SQLAlchemy async session layer."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def save(self, run: ReconciliationRun, items: Sequence[ReconciliationItem] = ()) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await ReconciliationRunRepository(session).create(
                        _run_to_record(run),
                        [_item_to_record(item) for item in items],
                    )
        except SQLAlchemyError as e:
            logger.error(f"Failed to store run {run.run_id}: {type(e).__name__}")
            raise StorageError(f"Unable to store run {run.run_id}: {e}") from e

    async def get(self, run_id: str) -> Tuple[ReconciliationRun, List[ReconciliationItem]]:
        try:
            async with self._session_factory() as session:
                record = await ReconciliationRunRepository(session).get_by_id(run_id)
                if record is None:
                    raise RunNotFound(f"Run {run_id} not found")
                return _record_to_run(record), [_record_to_item(i) for i in record.items]
        except SQLAlchemyError as e:
            logger.error(f"Failed to load run {run_id}: {type(e).__name__}")
            raise StorageError(f"Unable to load run {run_id}: {e}") from e

    async def list(self, run_filter: Optional[RunFilter] = None) -> List[RunSummary]:
        run_filter = run_filter or RunFilter()
        try:
            async with self._session_factory() as session:
                records = await ReconciliationRunRepository(session).list_runs(
                    status=run_filter.status.value if run_filter.status else None,
                    county=run_filter.county,
                    period_start=run_filter.period_start,
                    period_end=run_filter.period_end,
                    limit=run_filter.limit,
                    offset=run_filter.offset,
                )
        except SQLAlchemyError as e:
            logger.error(f"Failed to list runs: {type(e).__name__}")
            raise StorageError(f"Unable to list runs: {e}") from e
        return [RunSummary.from_run(_record_to_run(record)) for record in records]

    async def export(
        self,
        run_id: str,
        status: Optional[ItemStatus] = None,
    ) -> List[ReconciliationItem]:
        try:
            async with self._session_factory() as session:
                repository = ReconciliationRunRepository(session)
                if not await repository.exists(run_id):
                    raise RunNotFound(f"Run {run_id} not found")
                records = await repository.list_items(
                    run_id,
                    reconciliation_status=status.value if status else None,
                )
        except SQLAlchemyError as e:
            logger.error(f"Failed to export run {run_id}: {type(e).__name__}")
            raise StorageError(f"Unable to export run {run_id}: {e}") from e
        return [_record_to_item(record) for record in records]
