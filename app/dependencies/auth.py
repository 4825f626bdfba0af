"""
Authentication dependencies for FastAPI.

Admin routes are guarded by a shared operator token (ADMIN_API_TOKEN).
"""
import hmac

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.config import settings


# Security scheme
security = HTTPBearer(auto_error=False)


def require_admin(
    credentials: HTTPAuthorizationCredentials | None = Depends(security)
) -> str:
    """
    Dependency that requires the admin bearer token.

    Returns the token if valid, raises 401 if missing or wrong and 503 if
    no token is configured.

    Usage:
        @router.post("/admin/thing")
        async def admin_route(_: str = Depends(require_admin)):
            ...
    """
    expected = settings.ADMIN_API_TOKEN
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API is not configured"
        )

    if credentials is None or not hmac.compare_digest(
        credentials.credentials.encode(), expected.encode()
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return credentials.credentials
