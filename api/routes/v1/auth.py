"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /auth/register                      -- create account; 201 + tokens
  POST /auth/login                         -- password login; tokens
  POST /auth/logout                        -- best-effort revocation; always 204
  GET  /auth/verify-email/{token}          -- consume verification token; user
  POST /auth/resend-verification           -- new verification email; 204
  POST /auth/refresh                       -- rotate refresh token; tokens
  GET  /auth/validate-reset-token/{token}  -- check reset token without using it; 204
  POST /auth/forgot-password               -- start reset; always 204
  POST /auth/reset-password                -- finish reset; 204
  GET  /auth/me                            -- current user (requires auth)

Handlers are thin: parse the body, call AuthService, shape the response.
AuthServiceError subclasses propagate to the exception handler in
api/main.py, which renders the error envelope and status code.

Security:
  POST /login, /register, /forgot-password, /resend-verification are
  rate-limited per client IP.
  Cache-Control: no-store on every response that carries tokens.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from api.limiter import limiter
from api.models import (
    AuthResponse,
    EmailRequest,
    LoginRequest,
    LogoutRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    UserResponse,
)
from auth.dependencies import bearer_token, get_auth_service, get_current_user
from auth.models import RegistrationInput, User
from auth.service import AuthService
from core.config import get_settings

# Auth policy:
# - GET /auth/me: requires a bearer access token (get_current_user)
# - everything else: public; the token or credentials in the body are the proof
router = APIRouter()


def _login_rate_limit() -> str:
    return get_settings().login_rate_limit


def _no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"


# ---------------------------------------------------------------------------
# Account creation and sessions
# ---------------------------------------------------------------------------


@limiter.limit("5/minute")  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(
    request: Request,
    response: Response,
    body: RegisterRequest,
    service: AuthService = Depends(get_auth_service),
) -> AuthResponse:
    """Create an account and return the user with a fresh token pair.

    A verification email is sent; if that fails the account still exists and
    the failure shows up in `warnings`.
    """
    result = service.register(
        RegistrationInput(
            email=body.email,
            password=body.password,
            first_name=body.first_name,
            last_name=body.last_name,
        )
    )
    _no_store(response)
    return AuthResponse.from_result(result)


@limiter.limit(_login_rate_limit)  # brute-force mitigation
@router.post("/auth/login", response_model=AuthResponse)
def login(
    request: Request,
    response: Response,
    body: LoginRequest,
    service: AuthService = Depends(get_auth_service),
) -> AuthResponse:
    """Authenticate with email and password.

    Unknown email and wrong password produce the same 401 body.
    """
    result = service.login(body.email, body.password)
    _no_store(response)
    return AuthResponse.from_result(result)


@router.post("/auth/logout", status_code=204)
def logout(
    request: Request,
    body: Optional[LogoutRequest] = None,
    refresh_token: Optional[str] = Query(default=None, max_length=512),
    service: AuthService = Depends(get_auth_service),
) -> Response:
    """Revoke the presented refresh token and the bearer's sessions. Always 204.

    The refresh token may come in the JSON body or as ?refresh_token=.
    """
    presented = (body.refresh_token if body else None) or refresh_token
    service.logout(access_token=bearer_token(request), refresh_token=presented)
    return Response(status_code=204)


@router.post("/auth/refresh", response_model=AuthResponse)
def refresh(
    response: Response,
    body: RefreshRequest,
    service: AuthService = Depends(get_auth_service),
) -> AuthResponse:
    """Exchange a refresh token for a new token pair. The old refresh token dies."""
    result = service.refresh(body.refresh_token)
    _no_store(response)
    return AuthResponse.from_result(result)


@router.get("/auth/me", response_model=UserResponse)
def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return the user the bearer access token belongs to."""
    return UserResponse.from_user(current_user)


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


@router.get("/auth/verify-email/{token}", response_model=UserResponse)
def verify_email(token: str, service: AuthService = Depends(get_auth_service)) -> UserResponse:
    """Consume a verification link token. A token works exactly once."""
    return UserResponse.from_user(service.verify_email(token))


@limiter.limit("5/minute")
@router.post("/auth/resend-verification", status_code=204)
def resend_verification(
    request: Request,
    body: EmailRequest,
    service: AuthService = Depends(get_auth_service),
) -> Response:
    """Send a new verification link; the previous link stops working."""
    service.resend_verification(body.email)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@limiter.limit("5/minute")
@router.post("/auth/forgot-password", status_code=204)
def forgot_password(
    request: Request,
    body: EmailRequest,
    service: AuthService = Depends(get_auth_service),
) -> Response:
    """Start a password reset. The response never reveals whether the account exists."""
    service.forgot_password(body.email)
    return Response(status_code=204)


@router.get("/auth/validate-reset-token/{token}", status_code=204)
def validate_reset_token(token: str, service: AuthService = Depends(get_auth_service)) -> Response:
    """Check whether a reset link is still usable without consuming it."""
    service.validate_reset_token(token)
    return Response(status_code=204)


@router.post("/auth/reset-password", status_code=204)
def reset_password(body: ResetPasswordRequest, service: AuthService = Depends(get_auth_service)) -> Response:
    """Set a new password with a reset token. Signs the user out everywhere."""
    service.reset_password(body.token, body.new_password)
    return Response(status_code=204)
