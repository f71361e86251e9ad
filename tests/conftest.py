"""Shared test fixtures and configuration."""

import os
import pytest
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from unittest.mock import patch

# Set up test environment variables before importing modules
os.environ.setdefault("STRIPE_API_KEY", "sk_test_dummy_key_for_testing")
os.environ.setdefault("API_KEY", "test_api_key_12345")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from payments_recon.reconciliation import LedgerRecord, RecordSource


def make_record(
    source: RecordSource,
    amount: Any = "1000",
    transaction_id: Optional[str] = None,
    reference: Optional[str] = None,
    transaction_date: Optional[datetime] = datetime(2025, 1, 10, 12, 0),
    **fields: Any,
) -> LedgerRecord:
    """Build a ledger record with sensible defaults."""
    return LedgerRecord(
        source=source,
        amount=Decimal(str(amount)),
        transaction_id=transaction_id,
        reference=reference,
        transaction_date=transaction_date,
        **fields,
    )


def app_record(**kwargs: Any) -> LedgerRecord:
    return make_record(RecordSource.APP, **kwargs)


def gateway_record(**kwargs: Any) -> LedgerRecord:
    return make_record(RecordSource.GATEWAY, **kwargs)


@pytest.fixture
def mock_api_key():
    """Set up mock API key for authentication."""
    with patch.dict(os.environ, {"API_KEY": "test_api_key_12345", "RECONCILIATION_API_KEYS": ""}):
        yield "test_api_key_12345"


@pytest.fixture
def auth_headers(mock_api_key) -> Dict[str, str]:
    """Return headers with authentication."""
    return {"Authorization": f"Bearer {mock_api_key}"}


@pytest.fixture
def trigger_body() -> Dict[str, Any]:
    """Return a valid trigger request body."""
    return {
        "period_start": "2025-01-01",
        "period_end": "2025-01-31",
        "county": "Nairobi",
    }


# Database fixtures for integration tests
@pytest.fixture
async def test_db_engine():
    """Create an in-memory SQLite database for testing."""
    from payments_recon.database import Base, create_async_engine

    engine = create_async_engine(
        database_url="sqlite+aiosqlite:///:memory:",
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def test_session_factory(test_db_engine):
    """Create a session factory bound to the test engine."""
    from payments_recon.database import get_async_session_factory

    return get_async_session_factory(test_db_engine)


@pytest.fixture
async def test_db_session(test_session_factory):
    """Create a database session for testing."""
    async with test_session_factory() as session:
        yield session
