# core/auth.py
import hmac
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from servicepay.core.config import settings

logger = logging.getLogger("servicepay.auth")
bearer_scheme = HTTPBearer(auto_error=False)


def _matches(token: str, secret: Optional[str]) -> bool:
    return bool(secret) and hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8"))


async def require_admin(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    x_admin_user: Optional[str] = Header(None),
) -> str:
    """
    Admin guard. The session layer in front of the console is out of scope;
    here an API key stands in for it. Returns the acting admin's identity.
    """
    if not credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    if not _matches(credentials.credentials, settings.ADMIN_API_KEY):
        logger.warning("Rejected admin request with an invalid key")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid authentication token")
    return x_admin_user or "admin"


async def require_admin_or_cron(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    x_admin_user: Optional[str] = Header(None),
) -> str:
    """Cleanup can be triggered by an admin or by the external scheduler."""
    if credentials and _matches(credentials.credentials, settings.CRON_SECRET):
        return "cron"
    return await require_admin(credentials, x_admin_user)
