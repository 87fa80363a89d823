"""Authentication and rate limiting helpers for the API."""

import base64
import hashlib
import hmac
import os
import secrets
import logging

from fastapi import HTTPException, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from slowapi import Limiter
from slowapi.util import get_remote_address

logger = logging.getLogger(__name__)

security = HTTPBearer()

# Rate limiter
limiter = Limiter(key_func=get_remote_address)


def _check_bearer(token: str, env_var: str) -> str:
    expected = os.getenv(env_var)
    if not expected:
        logger.error(f"{env_var} environment variable is not configured")
        raise HTTPException(status_code=500, detail="Server configuration error")
    if not secrets.compare_digest(token, expected):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return token


async def verify_api_key(credentials: HTTPAuthorizationCredentials = Security(security)) -> str:
    """Verify the API key from the Authorization header.

    Args:
        credentials: HTTP Bearer credentials from the request.

    Returns:
        The verified API key.

    Raises:
        HTTPException: If API key is invalid or not configured.
    """
    return _check_bearer(credentials.credentials, "API_KEY")


async def verify_cron_token(credentials: HTTPAuthorizationCredentials = Security(security)) -> str:
    """Verify the shared secret the scheduler sends to the cron endpoints.

    Raises:
        HTTPException: If the token is invalid or CRON_SECRET is not configured.
    """
    return _check_bearer(credentials.credentials, "CRON_SECRET")


def compute_line_signature(channel_secret: str, body: bytes) -> str:
    digest = hmac.new(channel_secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_line_signature(channel_secret: str, body: bytes, signature: str) -> bool:
    """Check an ``X-Line-Signature`` header against the raw request body."""
    if not signature:
        return False
    return hmac.compare_digest(compute_line_signature(channel_secret, body), signature)
