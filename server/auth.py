import hmac
from typing import Optional

from fastapi import HTTPException, Header

from config import config
from observability import structured_logger, metrics


def verify_admin_key(admin_key: str) -> bool:
    """
    Compare a presented admin key with ADMIN_KEY.
    With no ADMIN_KEY configured every caller is accepted (development mode,
    reported by config.validate() at startup).
    """
    expected_key = config.get_admin_key()
    if not expected_key:
        return True
    return hmac.compare_digest(admin_key.encode(), expected_key.encode())


async def require_admin(x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key")):
    """FastAPI dependency guarding the admin routes."""
    if not verify_admin_key(x_admin_key or ""):
        metrics.inc_counter("admin_auth_failures_total", {"reason": "missing" if not x_admin_key else "invalid"})
        structured_logger.log_event(
            "auth.admin_key.failed",
            level="WARN",
            reason="missing_header" if not x_admin_key else "invalid_key"
        )
        raise HTTPException(status_code=401, detail="Admin key required")

    return {"admin_key_verified": True}
