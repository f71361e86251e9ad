"""Tests for database models, repositories and the initial migration."""

import importlib.util
import pytest
from datetime import date, datetime, timedelta
from decimal import Decimal
from pathlib import Path

from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import create_engine, inspect, select
from sqlalchemy.exc import IntegrityError

import payments_recon.database as database
from payments_recon.database import (
    Base,
    Payment,
    PaymentStatus,
    ReconciliationItemRecord,
    ReconciliationRunRecord,
    RunLock,
    PaymentRepository,
    ReconciliationRunRepository,
    RunLockRepository,
    DatabaseManager,
    get_database_url,
)


def make_run_record(run_id="run-1", **kwargs) -> ReconciliationRunRecord:
    values = dict(
        id=run_id,
        status="success",
        period_start=date(2025, 1, 1),
        period_end=date(2025, 1, 31),
        county="Nairobi",
    )
    values.update(kwargs)
    return ReconciliationRunRecord(**values)


def make_item_record(item_id="app-0", **kwargs) -> ReconciliationItemRecord:
    values = dict(
        item_id=item_id,
        source="app",
        amount=Decimal("100.00"),
        reconciliation_status="matched",
    )
    values.update(kwargs)
    return ReconciliationItemRecord(**values)


class TestPaymentModel:
    """Tests for the Payment model."""

    async def test_create_payment(self, test_db_session):
        """Test creating a payment record."""
        payment = Payment(amount=Decimal("1500.50"), status=PaymentStatus.COMPLETED.value)
        test_db_session.add(payment)
        await test_db_session.flush()

        assert payment.id is not None
        assert payment.currency == "KES"
        assert payment.provider == "stripe"
        assert payment.created_at is not None
        assert payment.updated_at is not None

    async def test_extra_data_property(self, test_db_session):
        """Test that extra data is stored as JSON text."""
        payment = Payment(amount=Decimal("10"))
        payment.extra_data = {"channel": "mpesa", "till": 12345}
        test_db_session.add(payment)
        await test_db_session.flush()

        assert payment.extra_data == {"channel": "mpesa", "till": 12345}
        assert payment.extra_data_json is not None

    def test_to_dict(self):
        """Test dictionary conversion."""
        payment = Payment(
            id="pay-1",
            amount=Decimal("20.00"),
            currency="KES",
            provider="stripe",
            status="completed",
            reference="INV-1",
            transaction_date=datetime(2025, 1, 10, 8, 0),
        )
        data = payment.to_dict()
        assert data["id"] == "pay-1"
        assert data["amount"] == "20.00"
        assert data["transaction_date"] == "2025-01-10T08:00:00"
        assert data["extra_data"] is None


class TestPaymentRepository:
    """Tests for PaymentRepository."""

    async def test_create_and_get(self, test_db_session):
        """Test creating and loading a payment."""
        repo = PaymentRepository(test_db_session)
        payment = await repo.create(amount=Decimal("99.99"), currency="kes", reference="INV-9")

        loaded = await repo.get_by_id(payment.id)
        assert loaded is not None
        assert loaded.currency == "KES"
        assert loaded.status == "completed"
        assert await repo.get_by_id("missing") is None

    async def test_list_for_period(self, test_db_session):
        """Test half-open period bounds and case-insensitive county."""
        repo = PaymentRepository(test_db_session)
        start, end = datetime(2025, 1, 1), datetime(2025, 2, 1)
        await repo.create(amount=Decimal("1"), reference="first", county="Nairobi", transaction_date=start)
        await repo.create(amount=Decimal("2"), reference="last", county="nairobi", transaction_date=end - timedelta(seconds=1))
        await repo.create(amount=Decimal("3"), reference="excluded", county="Nairobi", transaction_date=end)
        await repo.create(amount=Decimal("4"), reference="undated", county="Nairobi")
        await repo.create(amount=Decimal("5"), reference="mombasa", county="Mombasa", transaction_date=start)

        payments = await repo.list_for_period(start, end, county="NAIROBI")
        assert [p.reference for p in payments] == ["first", "last"]

        every_county = await repo.list_for_period(start, end)
        assert len(every_county) == 3


class TestReconciliationRunRepository:
    """Tests for ReconciliationRunRepository."""

    async def test_create_assigns_positions(self, test_db_session):
        """Test that items keep their emission order."""
        repo = ReconciliationRunRepository(test_db_session)
        run = make_run_record()
        run.tolerance_config = {"date_tolerance_days": 3}
        await repo.create(run, [make_item_record("gateway-0", source="gateway"), make_item_record("app-0")])
        await test_db_session.commit()

        loaded = await repo.get_by_id("run-1")
        assert loaded.tolerance_config == {"date_tolerance_days": 3}
        assert [(i.item_id, i.position) for i in loaded.items] == [("gateway-0", 0), ("app-0", 1)]

        items = await repo.list_items("run-1")
        assert [i.item_id for i in items] == ["gateway-0", "app-0"]

    async def test_list_items_by_status(self, test_db_session):
        """Test filtering items by reconciliation status."""
        repo = ReconciliationRunRepository(test_db_session)
        await repo.create(make_run_record(), [
            make_item_record("app-0"),
            make_item_record("app-1", reconciliation_status="unmatched_app"),
        ])

        items = await repo.list_items("run-1", reconciliation_status="unmatched_app")
        assert [i.item_id for i in items] == ["app-1"]

    async def test_duplicate_item_id_rejected(self, test_db_session):
        """Test the (run_id, item_id) uniqueness constraint."""
        repo = ReconciliationRunRepository(test_db_session)
        with pytest.raises(IntegrityError):
            await repo.create(make_run_record(), [make_item_record("app-0"), make_item_record("app-0")])

    async def test_exists_and_soft_delete(self, test_db_session):
        """Test that soft-deleted runs are hidden."""
        repo = ReconciliationRunRepository(test_db_session)
        await repo.create(make_run_record("kept"))
        await repo.create(make_run_record("deleted", deleted_at=datetime.utcnow()))

        assert await repo.exists("kept")
        assert not await repo.exists("deleted")
        assert await repo.get_by_id("deleted") is None
        assert [r.id for r in await repo.list_runs()] == ["kept"]

    async def test_list_runs_filters(self, test_db_session):
        """Test status, county and period filters with paging."""
        repo = ReconciliationRunRepository(test_db_session)
        base = datetime(2025, 2, 1)
        await repo.create(make_run_record("a", created_at=base))
        await repo.create(make_run_record("b", status="failed", county="Kisumu", created_at=base + timedelta(minutes=1)))
        await repo.create(make_run_record(
            "c", created_at=base + timedelta(minutes=2),
            period_start=date(2025, 2, 1), period_end=date(2025, 2, 28),
        ))

        assert [r.id for r in await repo.list_runs()] == ["c", "b", "a"]
        assert [r.id for r in await repo.list_runs(status="failed")] == ["b"]
        assert [r.id for r in await repo.list_runs(county="nairobi")] == ["c", "a"]
        assert [r.id for r in await repo.list_runs(period_start=date(2025, 2, 1))] == ["c"]
        assert [r.id for r in await repo.list_runs(period_end=date(2025, 1, 31))] == ["b", "a"]
        assert [r.id for r in await repo.list_runs(limit=2, offset=1)] == ["b", "a"]

    async def test_items_deleted_with_run(self, test_db_session):
        """Test that deleting a run cascades to its items."""
        repo = ReconciliationRunRepository(test_db_session)
        run = await repo.create(make_run_record(), [make_item_record("app-0")])
        await test_db_session.commit()

        await test_db_session.delete(run)
        await test_db_session.commit()

        result = await test_db_session.execute(select(ReconciliationItemRecord))
        assert result.scalars().all() == []


class TestRunLockRepository:
    """Tests for RunLockRepository."""

    async def test_acquire_held_window(self, test_db_session):
        """Test that a live lease blocks other runs."""
        repo = RunLockRepository(test_db_session)
        assert await repo.acquire("window", "run-1", ttl_seconds=60)
        assert not await repo.acquire("window", "run-2", ttl_seconds=60)

        lock = await repo.get_by_key("window")
        assert lock.run_id == "run-1"
        assert not lock.is_expired()

    async def test_release_only_by_holder(self, test_db_session):
        """Test that release by another run deletes nothing."""
        repo = RunLockRepository(test_db_session)
        await repo.acquire("window", "run-1", ttl_seconds=60)

        assert await repo.release("window", "run-2") == 0
        assert await repo.release("window", "run-1") == 1
        assert await repo.get_by_key("window") is None

    def test_is_expired(self):
        """Test lease expiry check."""
        assert RunLock(expires_at=datetime.utcnow() - timedelta(seconds=1)).is_expired()
        assert not RunLock(expires_at=datetime.utcnow() + timedelta(hours=1)).is_expired()


class TestSessionHelpers:
    """Tests for session management helpers."""

    def test_database_url_rewrites_postgres(self, monkeypatch):
        """Test that sync PostgreSQL URLs get the asyncpg driver."""
        monkeypatch.setenv("DATABASE_URL", "postgres://user:pw@db/recon")
        assert get_database_url() == "postgresql+asyncpg://user:pw@db/recon"
        monkeypatch.setenv("DATABASE_URL", "postgresql://user:pw@db/recon")
        assert get_database_url() == "postgresql+asyncpg://user:pw@db/recon"

    def test_default_database_url(self, monkeypatch):
        """Test the SQLite default."""
        monkeypatch.delenv("DATABASE_URL", raising=False)
        assert get_database_url().startswith("sqlite+aiosqlite:///")

    async def test_database_manager_lifecycle(self):
        """Test initialize, session and shutdown."""
        manager = DatabaseManager(database_url="sqlite+aiosqlite:///:memory:")
        with pytest.raises(RuntimeError):
            manager.session_factory

        await manager.initialize()
        async with manager.session() as session:
            await PaymentRepository(session).create(amount=Decimal("5"))
        async with manager.session() as session:
            result = await session.execute(select(Payment))
            assert len(result.scalars().all()) == 1

        await manager.shutdown()
        with pytest.raises(RuntimeError):
            manager.session_factory


class TestInitialMigration:
    """Tests for the initial Alembic revision."""

    def load_migration(self):
        path = Path(database.__file__).parent / "migrations" / "versions" / "001_initial.py"
        spec = importlib.util.spec_from_file_location("migration_001_initial", path)
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        return module

    def test_upgrade_matches_models(self):
        """Test that the migration creates every mapped table and column."""
        migration = self.load_migration()
        engine = create_engine("sqlite://")

        with engine.begin() as conn:
            with Operations.context(MigrationContext.configure(conn)):
                migration.upgrade()

            inspector = inspect(conn)
            assert set(inspector.get_table_names()) == set(Base.metadata.tables)
            for name, table in Base.metadata.tables.items():
                columns = {column["name"] for column in inspector.get_columns(name)}
                assert columns == set(table.columns.keys()), name

        engine.dispose()

    def test_downgrade_drops_tables(self):
        """Test that downgrade removes every table."""
        migration = self.load_migration()
        engine = create_engine("sqlite://")

        with engine.begin() as conn:
            with Operations.context(MigrationContext.configure(conn)):
                migration.upgrade()
                migration.downgrade()
            assert inspect(conn).get_table_names() == []

        engine.dispose()
