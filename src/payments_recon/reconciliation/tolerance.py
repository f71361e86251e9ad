"""Tolerance policy for comparing app and gateway ledger records."""

from dataclasses import dataclass, fields, replace
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Union

from .errors import InvalidPolicy

Number = Union[int, float, str, Decimal]

DEFAULT_AMOUNT_PERCENTAGE_TOLERANCE = Decimal("0.01")
DEFAULT_AMOUNT_ABSOLUTE_TOLERANCE = Decimal("0")
DEFAULT_DATE_TOLERANCE_DAYS = 3
DEFAULT_FUZZY_MATCH_THRESHOLD = 80


def _to_decimal(name: str, value: Any) -> Decimal:
    if value is None or isinstance(value, bool):
        raise InvalidPolicy(f"{name} must be a number, got {value!r}")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise InvalidPolicy(f"{name} must be a number, got {value!r}") from e
    if not result.is_finite():
        raise InvalidPolicy(f"{name} must be finite, got {value!r}")
    return result


def _to_int(name: str, value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    result = _to_decimal(name, value)
    if result != result.to_integral_value():
        raise InvalidPolicy(f"{name} must be a whole number, got {value!r}")
    return int(result)


def _as_date(value: Union[date, datetime]) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


@dataclass(frozen=True)
class TolerancePolicy:
    """Amount, date and fuzzy-match tolerances applied to one run.

    Values are validated and normalised on construction: percentages and
    absolute amounts become ``Decimal``, day and threshold values become
    ``int``. Anything out of range raises ``InvalidPolicy``.
    """

    amount_percentage_tolerance: Decimal = DEFAULT_AMOUNT_PERCENTAGE_TOLERANCE
    amount_absolute_tolerance: Decimal = DEFAULT_AMOUNT_ABSOLUTE_TOLERANCE
    date_tolerance_days: int = DEFAULT_DATE_TOLERANCE_DAYS
    fuzzy_match_threshold: int = DEFAULT_FUZZY_MATCH_THRESHOLD

    def __post_init__(self) -> None:
        percentage = _to_decimal("amount_percentage_tolerance", self.amount_percentage_tolerance)
        if percentage < 0 or percentage > 1:
            raise InvalidPolicy(
                f"amount_percentage_tolerance must be between 0 and 1, got {percentage}"
            )

        absolute = _to_decimal("amount_absolute_tolerance", self.amount_absolute_tolerance)
        if absolute < 0:
            raise InvalidPolicy(
                f"amount_absolute_tolerance must not be negative, got {absolute}"
            )

        date_days = _to_int("date_tolerance_days", self.date_tolerance_days)
        if date_days < 0:
            raise InvalidPolicy(f"date_tolerance_days must not be negative, got {date_days}")

        threshold = _to_int("fuzzy_match_threshold", self.fuzzy_match_threshold)
        if threshold < 0 or threshold > 100:
            raise InvalidPolicy(
                f"fuzzy_match_threshold must be between 0 and 100, got {threshold}"
            )

        object.__setattr__(self, "amount_percentage_tolerance", percentage)
        object.__setattr__(self, "amount_absolute_tolerance", absolute)
        object.__setattr__(self, "date_tolerance_days", date_days)
        object.__setattr__(self, "fuzzy_match_threshold", threshold)

    def effective_amount_tolerance(self, app_amount: Decimal, gateway_amount: Decimal) -> Decimal:
        """Return the allowed amount difference for a candidate pair.

        The larger of the absolute tolerance and the percentage tolerance
        applied to the larger of the two amounts.
        """
        reference_amount = max(abs(app_amount), abs(gateway_amount))
        return max(
            self.amount_absolute_tolerance,
            self.amount_percentage_tolerance * reference_amount,
        )

    def amounts_match(self, app_amount: Decimal, gateway_amount: Decimal) -> bool:
        """Check if two amounts are within tolerance."""
        difference = abs(app_amount - gateway_amount)
        return difference <= self.effective_amount_tolerance(app_amount, gateway_amount)

    @staticmethod
    def date_delta_days(
        first: Optional[Union[date, datetime]],
        second: Optional[Union[date, datetime]],
    ) -> Optional[int]:
        """Whole calendar days between two dates, or None if either is missing."""
        if first is None or second is None:
            return None
        return abs((_as_date(first) - _as_date(second)).days)

    def within_date_window(
        self,
        first: Optional[Union[date, datetime]],
        second: Optional[Union[date, datetime]],
    ) -> bool:
        """Check if two dates are within the date tolerance.

        A missing date is never inside the window.
        """
        delta = self.date_delta_days(first, second)
        return delta is not None and delta <= self.date_tolerance_days

    def with_overrides(self, **overrides: Any) -> "TolerancePolicy":
        """Return a new policy with the given fields replaced.

        ``None`` values are ignored so that unset request fields fall back
        to this policy's values.
        """
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise InvalidPolicy(f"Unknown tolerance fields: {', '.join(sorted(unknown))}")
        changes = {name: value for name, value in overrides.items() if value is not None}
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Snapshot of the policy, suitable for JSON storage."""
        return {
            "amount_percentage_tolerance": str(self.amount_percentage_tolerance),
            "amount_absolute_tolerance": str(self.amount_absolute_tolerance),
            "date_tolerance_days": self.date_tolerance_days,
            "fuzzy_match_threshold": self.fuzzy_match_threshold,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TolerancePolicy":
        """Rebuild a policy from a ``to_dict`` snapshot."""
        return cls().with_overrides(**data)
