"""Ledger sources supplying app and gateway records for a reconciliation window."""

import asyncio
import json
import os
import logging
from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

import stripe
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database import Payment, PaymentRepository
from .errors import LedgerFetchError
from .models import LedgerRecord, RecordSource

logger = logging.getLogger(__name__)


def period_bounds(period_start: date, period_end: date) -> tuple:
    """Return the [start, end) datetimes covering whole days of the period."""
    start = datetime.combine(period_start, time.min)
    end = datetime.combine(period_end + timedelta(days=1), time.min)
    return start, end


def _to_unix(value: datetime) -> int:
    """Unix timestamp of a naive UTC datetime."""
    return int(value.replace(tzinfo=timezone.utc).timestamp())


def county_matches(record_county: Optional[str], county: Optional[str]) -> bool:
    if not county:
        return True
    return (record_county or "").strip().lower() == county.strip().lower()


class LedgerSource(ABC):
    """Read-only provider of ledger records for a period and county filter."""

    source: RecordSource

    @abstractmethod
    async def fetch_records(
        self,
        period_start: date,
        period_end: date,
        county: Optional[str] = None,
    ) -> List[LedgerRecord]:
        """Fetch all records in the period (inclusive) for the county.

        Raises:
            LedgerFetchError: If the ledger cannot be read.
        """
        raise NotImplementedError


class StaticLedgerSource(LedgerSource):
    """Ledger backed by an in-memory list of records.

    Used for file-based runs and tests. Records without a transaction date
    are always returned since they cannot be placed in a period.
    """

    def __init__(self, records: Iterable[LedgerRecord], source: RecordSource):
        self.source = source
        self._records = list(records)

    @classmethod
    def from_json_file(cls, path: str, source: RecordSource) -> "StaticLedgerSource":
        """Load records from a JSON file holding a list of objects.

        A ``date`` key is accepted as an alias for ``transaction_date``.
        """
        try:
            with open(path) as f:
                rows = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise LedgerFetchError(f"Unable to read {source.value} ledger file {path}: {e}") from e

        if not isinstance(rows, list):
            raise LedgerFetchError(f"{source.value} ledger file {path} must contain a JSON list")

        records = []
        for position, row in enumerate(rows):
            data = dict(row)
            if "transaction_date" not in data and "date" in data:
                data["transaction_date"] = data.pop("date")
            data["source"] = source
            try:
                records.append(LedgerRecord.model_validate(data))
            except ValidationError as e:
                raise LedgerFetchError(
                    f"Invalid record at position {position} in {path}: {e}"
                ) from e

        logger.info(f"Loaded {len(records)} {source.value} records from {path}")
        return cls(records, source)

    async def fetch_records(
        self,
        period_start: date,
        period_end: date,
        county: Optional[str] = None,
    ) -> List[LedgerRecord]:
        start, end = period_bounds(period_start, period_end)
        return [
            r for r in self._records
            if (r.transaction_date is None or start <= r.transaction_date < end)
            and county_matches(r.county, county)
        ]


class DatabaseAppLedger(LedgerSource):
    """App ledger read from the ``payments`` table."""

    source = RecordSource.APP

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @staticmethod
    def _convert_payment(payment: Payment) -> LedgerRecord:
        return LedgerRecord(
            transaction_id=payment.provider_transaction_id,
            reference=payment.reference,
            amount=payment.amount,
            currency=payment.currency,
            transaction_date=payment.transaction_date,
            payer_name=payment.payer_name,
            payer_phone=payment.payer_phone,
            payer_email=payment.payer_email,
            county=payment.county,
            status=payment.status,
            source=RecordSource.APP,
            metadata={"payment_id": payment.id, **(payment.extra_data or {})},
        )

    async def fetch_records(
        self,
        period_start: date,
        period_end: date,
        county: Optional[str] = None,
    ) -> List[LedgerRecord]:
        start, end = period_bounds(period_start, period_end)
        try:
            async with self._session_factory() as session:
                payments = await PaymentRepository(session).list_for_period(
                    start=start,
                    end=end,
                    county=county,
                )
        except SQLAlchemyError as e:
            logger.error(f"Failed to read app ledger: {type(e).__name__}")
            raise LedgerFetchError(f"App ledger unavailable: {e}") from e

        records = [self._convert_payment(p) for p in payments]
        logger.info(f"Fetched {len(records)} app ledger records")
        return records


class StripeGatewayLedger(LedgerSource):
    """Gateway ledger built from Stripe PaymentIntents."""

    source = RecordSource.GATEWAY

    # Currencies Stripe reports without minor units
    ZERO_DECIMAL_CURRENCIES = frozenset([
        "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
        "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
    ])

    # Currencies Stripe reports in thousandths
    THREE_DECIMAL_CURRENCIES = frozenset(["bhd", "jod", "kwd", "omr", "tnd"])

    def __init__(self, api_key: Optional[str] = None, page_size: int = 100):
        """Initialize the Stripe ledger.

        Args:
            api_key: Stripe API key. Falls back to STRIPE_API_KEY env var.
            page_size: PaymentIntents per list call (Stripe max is 100).

        Raises:
            ValueError: If no API key is provided or found.
        """
        self._api_key = api_key or os.getenv("STRIPE_API_KEY")
        if not self._api_key:
            raise ValueError(
                "STRIPE_API_KEY must be provided either as argument or environment variable"
            )
        self.page_size = min(page_size, 100)

    def _map_stripe_status(self, status: str) -> str:
        """Map a Stripe PaymentIntent status to a ledger status."""
        status_mapping = {
            "requires_payment_method": "pending",
            "requires_confirmation": "pending",
            "requires_action": "pending",
            "processing": "pending",
            "requires_capture": "pending",
            "succeeded": "completed",
            "canceled": "failed",
        }
        return status_mapping.get(status, status)

    def _convert_amount(self, amount: int, currency: str) -> Decimal:
        if currency.lower() in self.ZERO_DECIMAL_CURRENCIES:
            return Decimal(amount)
        if currency.lower() in self.THREE_DECIMAL_CURRENCIES:
            return Decimal(amount) / Decimal(1000)
        return Decimal(amount) / Decimal(100)

    def _convert_payment_intent(self, payment_intent: Any) -> LedgerRecord:
        """Convert a Stripe PaymentIntent to a gateway LedgerRecord."""
        metadata: Dict[str, Any] = dict(payment_intent.metadata or {})
        return LedgerRecord(
            transaction_id=payment_intent.id,
            reference=metadata.get("reference"),
            amount=self._convert_amount(payment_intent.amount, payment_intent.currency),
            currency=payment_intent.currency.upper(),
            transaction_date=datetime.fromtimestamp(payment_intent.created, tz=timezone.utc).replace(tzinfo=None),
            payer_name=metadata.get("payer_name"),
            payer_phone=metadata.get("payer_phone"),
            payer_email=payment_intent.receipt_email,
            county=metadata.get("county"),
            status=self._map_stripe_status(payment_intent.status),
            source=RecordSource.GATEWAY,
            metadata={"stripe_status": payment_intent.status},
        )

    def _list_payment_intents(self, start: datetime, end: datetime) -> List[LedgerRecord]:
        stripe.api_key = self._api_key
        records: List[LedgerRecord] = []

        logger.info(
            f"Fetching Stripe PaymentIntents from {start.isoformat()} to {end.isoformat()}"
        )

        try:
            payment_intents = stripe.PaymentIntent.list(
                created={
                    "gte": _to_unix(start),
                    "lt": _to_unix(end),
                },
                limit=self.page_size,
            )
            for pi in payment_intents.auto_paging_iter():
                records.append(self._convert_payment_intent(pi))
        except stripe.error.AuthenticationError as e:
            logger.error("Stripe authentication failed")
            raise LedgerFetchError("Invalid Stripe API key") from e
        except stripe.error.APIConnectionError as e:
            logger.error("Failed to connect to Stripe API")
            raise LedgerFetchError("Failed to connect to Stripe API") from e
        except stripe.error.StripeError as e:
            logger.error(f"Stripe API error: {type(e).__name__}")
            raise LedgerFetchError(f"Stripe API error: {e}") from e

        logger.info(f"Fetched {len(records)} PaymentIntents from Stripe")
        return records

    async def fetch_records(
        self,
        period_start: date,
        period_end: date,
        county: Optional[str] = None,
    ) -> List[LedgerRecord]:
        start, end = period_bounds(period_start, period_end)
        records = await asyncio.to_thread(self._list_payment_intents, start, end)
        return [r for r in records if county_matches(r.county, county)]


def get_gateway_ledger(provider: str = "stripe", api_key: Optional[str] = None) -> LedgerSource:
    """Factory function to get the gateway ledger for a provider.

    Args:
        provider: Gateway provider name.
        api_key: Optional API key for the provider.

    Returns:
        LedgerSource implementation for the provider.

    Raises:
        ValueError: If the provider is not supported.
    """
    ledgers = {
        "stripe": StripeGatewayLedger,
    }

    ledger_class = ledgers.get(provider.lower())
    if not ledger_class:
        raise ValueError(f"Unsupported gateway provider: {provider}")

    return ledger_class(api_key=api_key)
