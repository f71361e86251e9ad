"""Authentication and rate limiting helpers for the API."""

import secrets
import logging

from fastapi import HTTPException, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import get_api_keys

logger = logging.getLogger(__name__)

security = HTTPBearer()

# Rate limiter
limiter = Limiter(key_func=get_remote_address)


async def verify_api_key(credentials: HTTPAuthorizationCredentials = Security(security)) -> str:
    """Verify the API key from the Authorization header.

    Args:
        credentials: HTTP Bearer credentials from the request.

    Returns:
        The operator name the key belongs to.

    Raises:
        HTTPException: If API key is invalid or none is configured.
    """
    api_key = credentials.credentials
    expected_keys = get_api_keys()
    if not expected_keys:
        logger.error("Neither RECONCILIATION_API_KEYS nor API_KEY is configured")
        raise HTTPException(status_code=500, detail="Server configuration error")

    operator = None
    # Compare against every key so timing does not reveal which one matched
    for expected_key, name in expected_keys.items():
        if secrets.compare_digest(api_key.encode(), expected_key.encode()):
            operator = name
    if operator is None:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return operator
