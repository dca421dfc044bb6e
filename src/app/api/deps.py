"""FastAPI dependency injection for authentication and the deal core.

These dependencies are used in endpoint function signatures to inject the
authenticated actor id and the DealLifecycleManager built at startup.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from src.app.core.security import verify_token
from src.app.deals.lifecycle import DealLifecycleManager

_bearer = HTTPBearer(auto_error=False)


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> str:
    """Extract the acting user id from a Bearer JWT.

    The identity collaborator owns users; the deal core only needs the
    ``sub`` claim to resolve the actor's role per deal.

    Raises:
        HTTPException(401): If no valid token is provided.
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    payload = verify_token(credentials.credentials, token_type="access")
    return str(payload["sub"])


def get_lifecycle_manager(request: Request) -> DealLifecycleManager:
    """Retrieve DealLifecycleManager from app.state, 503 if not available."""
    manager = getattr(request.app.state, "deal_manager", None)
    if manager is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Deal management not initialized",
        )
    return manager
