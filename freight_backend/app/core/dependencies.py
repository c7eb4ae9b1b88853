"""
Request dependencies for FastAPI.

Caller identity, database sessions and the shared dispatch core.
"""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from freight_backend.app.core.jwt import decode_access_token
from freight_backend.app.models.enums import UserRole

# HTTP Bearer security scheme
security = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> dict:
    """
    FastAPI dependency decoding the caller's bearer token.

    Returns:
        Decoded token payload containing ``user_id`` and ``role``

    Raises:
        HTTPException: 401 if the token is invalid or lacks an identity
    """
    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("user_id")
    role = payload.get("role")
    if not user_id or role not in {r.value for r in UserRole}:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return payload


def get_dispatch_core(request: Request):
    """The DispatchCore built by the application lifespan."""
    return request.app.state.dispatch_core


async def get_session(core=Depends(get_dispatch_core)):
    """
    FastAPI dependency for database sessions bound to the dispatch core's engine.

    Yields an async database session and ensures it's properly closed.
    """
    async with core.session_factory() as session:
        try:
            yield session
        finally:
            await session.close()
