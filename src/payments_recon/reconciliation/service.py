"""Service layer orchestrating reconciliation runs."""

import asyncio
import threading
import uuid
import logging
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .. import config
from .errors import (
    ConcurrentRunConflict,
    LedgerFetchError,
    ReconciliationError,
    RunCancelled,
    StorageError,
)
from .guard import DatabaseRunGuard, InMemoryRunGuard, RunGuard
from .ledger import DatabaseAppLedger, LedgerSource, get_gateway_ledger
from .matcher import Matcher
from .models import (
    ExportRequest,
    LedgerRecord,
    ReconciliationItem,
    ReconciliationRun,
    RunFilter,
    RunResult,
    RunStatus,
    RunSummary,
    TriggerRequest,
)
from .store import DatabaseRunStore, RunStore
from .tolerance import TolerancePolicy

logger = logging.getLogger(__name__)

# Finished background results kept for wait() and get_run()
MAX_RECENT_RESULTS = 100


class _ActiveRun:
    """Book-keeping for a run between guard acquisition and release."""

    __slots__ = ("run", "window_key", "cancel_event", "persisting", "task")

    def __init__(self, run: ReconciliationRun, window_key: str):
        self.run = run
        self.window_key = window_key
        self.cancel_event = threading.Event()
        self.persisting = False
        self.task: Optional[asyncio.Task] = None


class ReconciliationService:
    """Drives reconciliation runs from trigger to terminal state.

    Each trigger builds a tolerance policy, takes the window guard, loads
    both ledgers, runs the matcher in a worker thread and persists the run
    with its items unless it is a dry run. The guard is released on every
    path.
    """

    def __init__(
        self,
        app_ledger: LedgerSource,
        gateway_ledger: LedgerSource,
        store: RunStore,
        guard: Optional[RunGuard] = None,
        default_policy: Optional[TolerancePolicy] = None,
        fetch_timeout: Optional[float] = None,
        persist_timeout: Optional[float] = None,
    ):
        """Initialize the reconciliation service.

        Args:
            app_ledger: Source of app ledger records.
            gateway_ledger: Source of gateway ledger records.
            store: Run store receiving terminal runs.
            guard: Window guard. Defaults to a process-local guard.
            default_policy: Tolerances used when a trigger does not override them.
            fetch_timeout: Seconds allowed per ledger fetch, None for no limit.
            persist_timeout: Seconds allowed for the store commit, None for no limit.
        """
        self.app_ledger = app_ledger
        self.gateway_ledger = gateway_ledger
        self.store = store
        self.guard = guard or InMemoryRunGuard()
        self.default_policy = default_policy or TolerancePolicy()
        self.fetch_timeout = fetch_timeout
        self.persist_timeout = persist_timeout
        self._active: Dict[str, _ActiveRun] = {}
        self._recent: "OrderedDict[str, RunResult]" = OrderedDict()

    async def trigger(
        self,
        request: TriggerRequest,
        created_by: Optional[str] = None,
    ) -> RunResult:
        """Start a reconciliation run.

        Args:
            request: Period, county, mode and tolerance overrides.
            created_by: Operator starting the run.

        Returns:
            The terminal run and its items for sync requests, or the
            pending run for async requests.

        Raises:
            InvalidPolicy: If the tolerance overrides are invalid.
            ConcurrentRunConflict: If a run is active for the same window.
        """
        policy = self.default_policy.with_overrides(**request.tolerance_overrides())

        run = ReconciliationRun(
            run_id=str(uuid.uuid4()),
            period_start=request.period_start,
            period_end=request.period_end,
            county=request.county,
            dry_run=request.dry_run,
            tolerance_config_used=policy.to_dict(),
            created_by=created_by,
        )
        window_key = request.window_key

        if not await self.guard.acquire(window_key, run.run_id):
            logger.warning(f"Rejected run for {window_key}: another run is active")
            raise ConcurrentRunConflict(f"A reconciliation run is already active for {window_key}")

        active = _ActiveRun(run, window_key)
        self._active[run.run_id] = active

        logger.info(
            f"Starting reconciliation run {run.run_id} for {window_key} "
            f"(dry_run={run.dry_run}, sync={request.sync})"
        )

        if request.sync:
            return await self._execute(active, policy)

        active.task = asyncio.create_task(self._execute(active, policy, background=True))
        return RunResult(run=run.model_copy(deep=True), items=[], persisted=False)

    async def cancel(self, run_id: str) -> bool:
        """Flag an in-flight run for cancellation.

        Returns:
            False if the run is unknown, finished or already persisting.
        """
        active = self._active.get(run_id)
        if active is None or active.persisting:
            return False
        active.cancel_event.set()
        logger.warning(f"Cancellation requested for run {run_id}")
        return True

    async def wait(self, run_id: str) -> RunResult:
        """Wait for a background run to finish and return its result.

        Raises:
            RunNotFound: If the run is neither in flight nor known.
        """
        active = self._active.get(run_id)
        if active is not None and active.task is not None:
            return await asyncio.shield(active.task)
        if run_id in self._recent:
            return self._recent[run_id].model_copy(deep=True)
        run, items = await self.store.get(run_id)
        return RunResult(run=run, items=items, persisted=True)

    async def get_run(self, run_id: str) -> ReconciliationRun:
        """Get a run, including runs still in flight.

        Raises:
            RunNotFound: If no such run exists.
        """
        active = self._active.get(run_id)
        if active is not None:
            return active.run.model_copy(deep=True)
        if run_id in self._recent:
            return self._recent[run_id].run.model_copy(deep=True)
        run, _ = await self.store.get(run_id)
        return run

    async def list_runs(self, run_filter: Optional[RunFilter] = None) -> List[RunSummary]:
        """List stored runs, newest first."""
        return await self.store.list(run_filter)

    async def export(self, request: ExportRequest) -> List[ReconciliationItem]:
        """Export the items of a stored run.

        Raises:
            RunNotFound: If the run is not stored.
        """
        return await self.store.export(request.run_id, request.status)

    async def shutdown(self) -> None:
        """Cancel background runs still in flight."""
        tasks = [a.task for a in self._active.values() if a.task is not None and not a.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} background reconciliation runs")

    async def _fetch(self, ledger: LedgerSource, run: ReconciliationRun) -> List[LedgerRecord]:
        try:
            return await asyncio.wait_for(
                ledger.fetch_records(run.period_start, run.period_end, run.county),
                timeout=self.fetch_timeout,
            )
        except asyncio.TimeoutError as e:
            raise LedgerFetchError(
                f"{ledger.source.value} ledger fetch timed out after {self.fetch_timeout}s"
            ) from e

    async def _persist(self, run: ReconciliationRun, items: List[ReconciliationItem]) -> None:
        try:
            await asyncio.wait_for(self.store.save(run, items), timeout=self.persist_timeout)
        except asyncio.TimeoutError as e:
            raise StorageError(f"Run store commit timed out after {self.persist_timeout}s") from e

    def _check_cancelled(self, active: _ActiveRun) -> None:
        if active.cancel_event.is_set():
            raise RunCancelled(f"Run {active.run.run_id} was cancelled")

    async def _save_failed_run(self, run: ReconciliationRun) -> bool:
        """Best-effort save of a failed run without its items."""
        if run.dry_run:
            return False
        try:
            await self._persist(run, [])
        except Exception as e:
            logger.error(f"Could not store failed run {run.run_id}: {e}")
            return False
        return True

    async def _match(
        self,
        active: _ActiveRun,
        policy: TolerancePolicy,
    ) -> Tuple[ReconciliationRun, List[ReconciliationItem]]:
        """Fetch, match and aggregate. Returns the completed run and its items."""
        run = active.run
        app_records = await self._fetch(self.app_ledger, run)
        gateway_records = await self._fetch(self.gateway_ledger, run)
        logger.info(
            f"Run {run.run_id}: {len(app_records)} app records, "
            f"{len(gateway_records)} gateway records"
        )
        self._check_cancelled(active)

        result = await asyncio.to_thread(
            Matcher(policy).match,
            app_records,
            gateway_records,
            active.cancel_event.is_set,
        )
        if result.cancelled:
            raise RunCancelled(f"Run {run.run_id} was cancelled during matching")
        self._check_cancelled(active)

        run.apply_summary(result.summary)
        completed = run.model_copy(deep=True)
        completed.transition_to(RunStatus.SUCCESS if result.summary.is_clean else RunStatus.PARTIAL)
        return completed, result.items

    async def _execute(
        self,
        active: _ActiveRun,
        policy: TolerancePolicy,
        background: bool = False,
    ) -> RunResult:
        run = active.run
        items: List[ReconciliationItem] = []
        persisted = False

        try:
            run.transition_to(RunStatus.RUNNING)
            completed, items = await self._match(active, policy)

            active.persisting = True
            if not run.dry_run:
                await self._persist(completed, items)
                persisted = True
            active.run = run = completed

            logger.info(
                f"Reconciliation run {run.run_id} finished with status {run.status.value}: "
                f"{run.total_matched} matched, {run.total_amount_mismatch} amount mismatches, "
                f"{run.total_unmatched_app} unmatched app, "
                f"{run.total_unmatched_gateway} unmatched gateway, "
                f"{run.total_duplicate} duplicates"
            )
        except StorageError as e:
            # Items stay with the caller, the run is recorded as failed
            logger.error(f"Reconciliation run {run.run_id} failed to persist: {e}")
            run.transition_to(RunStatus.FAILED, str(e))
            await self._save_failed_run(run)
        except RunCancelled as e:
            logger.warning(f"Reconciliation run {run.run_id} cancelled")
            items = []
            run.transition_to(RunStatus.FAILED, str(e))
            persisted = await self._save_failed_run(run)
        except ReconciliationError as e:
            logger.error(f"Reconciliation run {run.run_id} failed: {e}")
            items = []
            run.transition_to(RunStatus.FAILED, str(e))
            persisted = await self._save_failed_run(run)
        except asyncio.CancelledError:
            logger.warning(f"Reconciliation run {run.run_id} interrupted by shutdown")
            if not run.status.is_terminal:
                run.transition_to(
                    RunStatus.FAILED, str(RunCancelled("service shut down before completion"))
                )
            raise
        except Exception as e:
            logger.error(f"Reconciliation run {run.run_id} failed unexpectedly: {e}")
            items = []
            if not run.status.is_terminal:
                run.transition_to(RunStatus.FAILED, f"unexpected_error: {e}")
            persisted = await self._save_failed_run(run)
        finally:
            await self.guard.release(active.window_key, run.run_id)
            self._active.pop(run.run_id, None)

        result = RunResult(run=run.model_copy(deep=True), items=items, persisted=persisted)
        if background:
            self._remember(result)
        return result

    def _remember(self, result: RunResult) -> None:
        self._recent[result.run.run_id] = result
        while len(self._recent) > MAX_RECENT_RESULTS:
            self._recent.popitem(last=False)


def create_reconciliation_service(
    session_factory: async_sessionmaker[AsyncSession],
    app_ledger: Optional[LedgerSource] = None,
    gateway_ledger: Optional[LedgerSource] = None,
    provider: Optional[str] = None,
) -> ReconciliationService:
    """Build a database-backed service configured from the environment.

    Args:
        session_factory: Session factory for the store, guard and app ledger.
        app_ledger: App ledger override. Defaults to the ``payments`` table.
        gateway_ledger: Gateway ledger override. Defaults to the provider fetcher.
        provider: Gateway provider. Defaults to RECONCILIATION_GATEWAY_PROVIDER.

    Raises:
        InvalidPolicy: If the environment tolerances are invalid.
        ValueError: If the gateway provider is unsupported or unconfigured.
    """
    default_policy = TolerancePolicy().with_overrides(**config.get_tolerance_overrides())
    return ReconciliationService(
        app_ledger=app_ledger or DatabaseAppLedger(session_factory),
        gateway_ledger=gateway_ledger or get_gateway_ledger(provider or config.get_gateway_provider()),
        store=DatabaseRunStore(session_factory),
        guard=DatabaseRunGuard(session_factory, ttl_seconds=config.get_lock_ttl_seconds()),
        default_policy=default_policy,
        fetch_timeout=config.get_fetch_timeout(),
        persist_timeout=config.get_persist_timeout(),
    )
