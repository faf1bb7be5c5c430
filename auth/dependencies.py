"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Access tokens arrive as "Authorization: Bearer <token>". The token is
verified by AuthService.authenticate(), which also loads the user, so a
token whose user no longer resolves is rejected like any bad token.

bearer_token() is the soft variant (returns None when the header is absent).
get_current_user() raises HTTP 401 if the request is not authenticated.

Layer rule: no imports from notify/ or core/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.errors import AuthenticationError
from auth.models import User
from auth.service import AuthService


def get_auth_service(request: Request) -> AuthService:
    """Return the AuthService built in the application lifespan."""
    return request.app.state.auth_service


def bearer_token(request: Request) -> str | None:
    """Extract the bearer token from the Authorization header, if any."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_user(request: Request) -> User:
    """Require a valid bearer access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    token = bearer_token(request)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return get_auth_service(request).authenticate(token)
    except AuthenticationError as exc:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": exc.message},
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
