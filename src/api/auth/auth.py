import secrets
from typing import Optional

from fastapi import Header, HTTPException, status

from src.config import LedgerSettings


def verify_service_token(provided: Optional[str], expected: Optional[str]) -> bool:
    """Constant-time comparison of a caller token against the configured one."""
    if not provided or not expected:
        return False
    return secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def require_service_token(
    x_service_token: Optional[str] = Header(default=None),
) -> None:
    """Dependency guarding internal billing routes.

    Ad delivery and the dashboard backend call these routes with the shared
    LEDGER_SERVICE_TOKEN in the X-Service-Token header.
    """
    settings = LedgerSettings.from_env()
    if settings.service_token is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Billing API is not configured",
        )
    if not verify_service_token(x_service_token, settings.service_token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid service token",
        )
