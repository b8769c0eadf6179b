"""Bearer-token guards for admin and cron endpoints."""

import secrets

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings


auth_scheme = HTTPBearer(auto_error=False)


def _check_token(credentials: HTTPAuthorizationCredentials, expected: str, label: str) -> None:
    expected = (expected or "").strip()
    if not expected:
        # Token not configured: open access (local/debug deployments).
        return
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail=f"Missing Bearer {label} token.")
    if not secrets.compare_digest(credentials.credentials, expected):
        raise HTTPException(status_code=401, detail=f"Invalid {label} token.")


async def require_admin(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> None:
    """Admin routes accept the admin token only."""
    _check_token(credentials, settings.ADMIN_API_TOKEN, "admin")


async def require_cron(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> None:
    """Cron routes accept the cron secret, or the admin token for manual runs."""
    cron_secret = (settings.CRON_SECRET or "").strip()
    admin_token = (settings.ADMIN_API_TOKEN or "").strip()
    if not cron_secret:
        _check_token(credentials, admin_token, "cron")
        return
    if credentials and admin_token and secrets.compare_digest(credentials.credentials, admin_token):
        return
    _check_token(credentials, cron_secret, "cron")
