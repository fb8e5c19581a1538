"""
Admin key authentication.

Only the learning endpoints are protected. The classification endpoint sits
behind the routing layer and carries no credentials of its own.

  - Missing X-Admin-Key → 401
  - Wrong key           → 403 (constant-time comparison)
"""

import hmac

from fastapi import HTTPException, Security
from fastapi.security import APIKeyHeader

from app.config import get_settings

import structlog

logger = structlog.get_logger()

admin_key_header = APIKeyHeader(name="X-Admin-Key", auto_error=False)


async def require_admin(admin_key: str | None = Security(admin_key_header)) -> None:
    if not admin_key:
        raise HTTPException(
            status_code=401,
            detail="Missing admin key. Include X-Admin-Key header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )
    if not hmac.compare_digest(admin_key.encode(), get_settings().admin_key.encode()):
        logger.warning("admin_key_rejected")
        raise HTTPException(status_code=403, detail="Invalid admin key")
