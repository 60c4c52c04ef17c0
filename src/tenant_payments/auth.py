"""Authentication and rate limiting helpers for the API."""

import os
import secrets
import logging

from fastapi import HTTPException, Request, Security
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

logger = logging.getLogger(__name__)

security = HTTPBearer()

# Rate limiter
limiter = Limiter(key_func=get_remote_address)

# Session operations are user-driven; status checks may be issued by a polling UI
SESSION_RATE_LIMIT = "60/minute"
CHECK_RATE_LIMIT = "120/minute"


async def verify_api_key(credentials: HTTPAuthorizationCredentials = Security(security)) -> str:
    """Verify the API key from the Authorization header.

    Args:
        credentials: HTTP Bearer credentials from the request.

    Returns:
        The verified API key.

    Raises:
        HTTPException: If API key is invalid or not configured.
    """
    api_key = credentials.credentials
    expected_key = os.getenv("API_KEY")
    if not expected_key:
        logger.error("API_KEY environment variable is not configured")
        raise HTTPException(status_code=500, detail="Server configuration error")
    if not secrets.compare_digest(api_key, expected_key):
        logger.warning("Rejected request with an invalid API key")
        raise HTTPException(status_code=401, detail="Invalid API key")
    return api_key


async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return a JSON 429 when a client exceeds its rate limit."""
    logger.warning(f"Rate limit exceeded for {get_remote_address(request)} on {request.url.path}")
    return JSONResponse(
        status_code=429,
        content={"detail": f"Rate limit exceeded: {exc.detail}"},
    )
