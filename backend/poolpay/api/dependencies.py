"""
API dependencies for the admin token check.
"""
from typing import Optional
from fastapi import Header, HTTPException, status
from poolpay.core.config import settings


async def require_admin(x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token")) -> None:
    """Reject requests without the configured admin token; open when no token is configured."""
    if not settings.ADMIN_API_TOKEN:
        return
    if x_admin_token != settings.ADMIN_API_TOKEN:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token"
        )
