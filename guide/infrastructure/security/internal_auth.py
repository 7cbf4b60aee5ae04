"""
Request identity helpers.

End-user authentication happens upstream of this service; the authenticated
user id arrives in the X-User-Id header. Admin debug routes are guarded by a
shared internal API key.
"""

from typing import Optional
import hmac

import structlog
from fastapi import Header, HTTPException, Request

logger = structlog.get_logger(__name__)


def verify_internal_key(provided: Optional[str], expected: Optional[str]) -> bool:
    """Constant-time comparison; an unconfigured key rejects everything"""

    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


async def require_internal_key(
    request: Request,
    x_internal_api_key: Optional[str] = Header(None)
) -> str:
    """FastAPI dependency for admin routes; returns the caller's admin id"""

    settings = request.app.state.container.settings
    if not verify_internal_key(x_internal_api_key, settings.internal_api_key):
        logger.warning("Internal API key rejected", path=request.url.path)
        raise HTTPException(status_code=401, detail="Unauthorized")

    return request.headers.get("X-Admin-Id") or "internal"


async def require_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id.strip()
