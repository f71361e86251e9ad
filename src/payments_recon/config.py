"""Environment configuration for the reconciliation engine."""

import os
import logging
from typing import Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_GATEWAY_PROVIDER = "stripe"
DEFAULT_FETCH_TIMEOUT_SECONDS = 60.0
DEFAULT_PERSIST_TIMEOUT_SECONDS = 30.0
DEFAULT_LOCK_TTL_SECONDS = 3600
DEFAULT_TRIGGER_RATE_LIMIT = "30/minute"
DEFAULT_OPERATOR = "admin"

# Environment variable -> TolerancePolicy field
TOLERANCE_ENV_VARS = {
    "RECONCILIATION_AMOUNT_PERCENTAGE_TOLERANCE": "amount_percentage_tolerance",
    "RECONCILIATION_AMOUNT_ABSOLUTE_TOLERANCE": "amount_absolute_tolerance",
    "RECONCILIATION_DATE_TOLERANCE": "date_tolerance_days",
    "RECONCILIATION_FUZZY_MATCH_THRESHOLD": "fuzzy_match_threshold",
}


def _get_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {value!r}") from e


def get_gateway_provider() -> str:
    """Get the gateway provider used when no gateway file is given."""
    return os.getenv("RECONCILIATION_GATEWAY_PROVIDER", DEFAULT_GATEWAY_PROVIDER)


def get_tolerance_overrides() -> Dict[str, str]:
    """Get tolerance defaults set in the environment.

    Values are returned unparsed; ``TolerancePolicy`` validates them and
    raises ``InvalidPolicy`` on bad input.
    """
    overrides = {}
    for env_var, field_name in TOLERANCE_ENV_VARS.items():
        value = os.getenv(env_var)
        if value:
            overrides[field_name] = value
    return overrides


def get_fetch_timeout() -> float:
    """Seconds allowed for each ledger fetch."""
    return _get_float("RECONCILIATION_FETCH_TIMEOUT", DEFAULT_FETCH_TIMEOUT_SECONDS)


def get_persist_timeout() -> float:
    """Seconds allowed for the run store commit."""
    return _get_float("RECONCILIATION_PERSIST_TIMEOUT", DEFAULT_PERSIST_TIMEOUT_SECONDS)


def get_lock_ttl_seconds() -> int:
    """Lifetime of a database run lease."""
    return int(_get_float("RECONCILIATION_LOCK_TTL_SECONDS", DEFAULT_LOCK_TTL_SECONDS))


def get_trigger_rate_limit() -> str:
    """slowapi rate limit applied to run triggers."""
    return os.getenv("RECONCILIATION_TRIGGER_RATE_LIMIT", DEFAULT_TRIGGER_RATE_LIMIT)


def get_api_keys() -> Dict[str, str]:
    """Get the configured API keys mapped to their operator names.

    ``RECONCILIATION_API_KEYS`` holds ``operator:key`` pairs separated by
    commas. When unset, ``API_KEY`` is accepted for the ``admin`` operator.
    """
    keys: Dict[str, str] = {}
    raw = os.getenv("RECONCILIATION_API_KEYS", "")
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        operator, sep, key = entry.partition(":")
        if not sep or not operator.strip() or not key.strip():
            logger.warning("Ignoring malformed entry in RECONCILIATION_API_KEYS")
            continue
        keys[key.strip()] = operator.strip()

    if not keys:
        fallback: Optional[str] = os.getenv("API_KEY")
        if fallback:
            keys[fallback] = DEFAULT_OPERATOR
    return keys
