"""
api/routes/v1/auth.py -- Authentication and session management REST endpoints.

Routes:
  POST   /api/v1/auth/register                -- create a pending account, email a verification token
  POST   /api/v1/auth/verify-email            -- activate a pending account
  POST   /api/v1/auth/resend-verification     -- always the same generic 200
  POST   /api/v1/auth/login                   -- password login; returns access + refresh tokens
  POST   /api/v1/auth/refresh                 -- rotate the token pair (refresh token is single-use)
  POST   /api/v1/auth/logout                  -- end the session of the presented access token
  POST   /api/v1/auth/logout/all              -- end every session of the current account
  GET    /api/v1/auth/me                      -- current account (requires auth)
  POST   /api/v1/auth/validate                -- check an access token (public, idempotent)
  POST   /api/v1/auth/forgot-password         -- always the same generic 200
  POST   /api/v1/auth/reset-password          -- set a new password with a reset token
  POST   /api/v1/auth/reset-password/validate -- check a reset token without consuming it
  GET    /api/v1/auth/sessions                -- list own sessions (requires auth)
  DELETE /api/v1/auth/sessions/{id}           -- revoke one own session (requires auth)
  DELETE /api/v1/auth/accounts/{id}           -- delete an account (admin only)

Security:
  POST /login, POST /forgot-password and POST /resend-verification carry
  slowapi limits (LOGIN_RATE_LIMIT, FORGOT_PASSWORD_RATE_LIMIT). These are
  per-request throttles on top of the per-account lockout and per-ip block
  done by the Security Monitor.
  Cache-Control: no-store on every response that carries tokens.
  IDOR guard: DELETE /sessions/{id} passes the caller's account id to the
  store; the store checks ownership.
  Domain failures raise AuthError subclasses; api/main.py renders them.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.limiter import limiter
from api.models import (
    AccountResponse,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutAllResponse,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResendVerificationRequest,
    ResetPasswordRequest,
    ResetTokenValidationResponse,
    SessionResponse,
    TokenRequest,
    TokenResponse,
    TokenValidationResponse,
    ValidateTokenRequest,
)
from auth.dependencies import get_current_account, require_admin
from auth.models import Account, LoginResult, Session
from auth.service import AuthService
from core.clock import to_iso
from core.config import get_settings

_settings = get_settings()

# Auth policy:
# - POST   /auth/register, /auth/verify-email, /auth/resend-verification: public
# - POST   /auth/login, /auth/refresh:                public (credentials in body)
# - POST   /auth/validate:                            public -- token is the body
# - POST   /auth/forgot-password, /auth/reset-password[/validate]: public
# - POST   /auth/logout, /auth/logout/all:            requires auth (get_current_account)
# - GET    /auth/me, /auth/sessions:                  requires auth (get_current_account)
# - DELETE /auth/sessions/{id}:                       requires auth + ownership check in store
# - DELETE /auth/accounts/{id}:                       requires admin (require_admin)
router = APIRouter()


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _user_agent(request: Request) -> str:
    return request.headers.get("User-Agent", "")


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=AccountResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> AccountResponse:
    """Create a pending_verification account and send its verification email."""
    account = _service(request).register(
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        tenant_id=body.tenant_id,
    )
    return _account_to_response(account)


@router.post("/auth/verify-email", response_model=AccountResponse)
def verify_email(request: Request, body: TokenRequest) -> AccountResponse:
    return _account_to_response(_service(request).verify_email(body.token))


@router.post("/auth/resend-verification", response_model=MessageResponse)
@limiter.limit(_settings.forgot_password_rate_limit)
def resend_verification(request: Request, body: ResendVerificationRequest) -> MessageResponse:
    """Send a new verification email. The answer never reveals the account state."""
    return MessageResponse(message=_service(request).resend_verification(body.email, _client_ip(request)))


# ---------------------------------------------------------------------------
# Login / token lifecycle
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=TokenResponse)
@limiter.limit(_settings.login_rate_limit)
def login(request: Request, response: Response, body: LoginRequest) -> TokenResponse:
    """Authenticate with email and password; return a fresh token pair.

    Unknown email and wrong password produce the same invalid_credentials
    error. A locked account answers account_locked even for the right
    password, and a blocked ip answers rate_limited with Retry-After.
    """
    result = _service(request).login(
        body.email,
        body.password,
        ip=_client_ip(request),
        user_agent=_user_agent(request),
        device=body.device,
    )
    response.headers["Cache-Control"] = "no-store"
    return _tokens_to_response(result)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, response: Response, body: RefreshRequest) -> TokenResponse:
    """Rotate the token pair. The presented refresh token stops working."""
    result = _service(request).refresh(body.refresh_token, _client_ip(request), _user_agent(request))
    response.headers["Cache-Control"] = "no-store"
    return _tokens_to_response(result)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, current: Account = Depends(get_current_account)) -> MessageResponse:
    """End the session the presented access token belongs to."""
    session_id = request.state.token_payload["sid"]
    _service(request).logout(session_id, account_id=current.id, ip=_client_ip(request))
    return MessageResponse(message="Logged out.")


@router.post("/auth/logout/all", response_model=LogoutAllResponse)
def logout_all(request: Request, current: Account = Depends(get_current_account)) -> LogoutAllResponse:
    revoked = _service(request).logout_all(current.id, ip=_client_ip(request))
    return LogoutAllResponse(message="Logged out of all sessions.", revoked=revoked)


@router.post("/auth/validate", response_model=TokenValidationResponse)
def validate_token(request: Request, body: ValidateTokenRequest) -> TokenValidationResponse:
    payload = _service(request).validate_token(body.token)
    return TokenValidationResponse(valid=payload is not None, payload=payload)


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/auth/forgot-password", response_model=MessageResponse)
@limiter.limit(_settings.forgot_password_rate_limit)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    """Request a reset email. The answer is identical whether or not the email exists."""
    message = _service(request).forgot_password(body.email, _client_ip(request), _user_agent(request))
    return MessageResponse(message=message)


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    _service(request).reset_password(body.token, body.new_password, _client_ip(request), _user_agent(request))
    return MessageResponse(message="Password has been reset.")


@router.post("/auth/reset-password/validate", response_model=ResetTokenValidationResponse)
def validate_reset_token(request: Request, body: TokenRequest) -> ResetTokenValidationResponse:
    return ResetTokenValidationResponse(valid=_service(request).validate_reset_token(body.token))


# ---------------------------------------------------------------------------
# Account and sessions (authenticated)
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=AccountResponse)
def me(current: Account = Depends(get_current_account)) -> AccountResponse:
    """Return the currently authenticated account."""
    return _account_to_response(current)


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(request: Request, current: Account = Depends(get_current_account)) -> list[SessionResponse]:
    return [_session_to_response(s) for s in _service(request).list_sessions(current.id)]


@router.delete("/auth/sessions/{session_id}", status_code=204)
def revoke_session(
    request: Request,
    session_id: str,
    current: Account = Depends(get_current_account),
) -> Response:
    """Revoke one of the caller's sessions. Ownership is verified server-side [IDOR guard]."""
    if not _service(request).revoke_session(current.id, session_id, ip=_client_ip(request)):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Session not found."},
        )
    return Response(status_code=204)


@router.delete("/auth/accounts/{account_id}", status_code=204)
def delete_account(
    request: Request,
    account_id: int,
    current: Account = Depends(require_admin),
) -> Response:
    """Delete an account with its sessions and reset tokens. Admin only."""
    if account_id == current.id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deletion", "message": "You cannot delete your own account."},
        )
    if not _service(request).delete_account(account_id, actor_id=current.id):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Account not found."},
        )
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _account_to_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        email=account.email,
        first_name=account.first_name,
        last_name=account.last_name,
        role=account.role,
        status=account.status.value,
        tenant_id=account.tenant_id,
        mfa_enabled=account.mfa_enabled,
        last_login_at=to_iso(account.last_login_at),
        created_at=to_iso(account.created_at),
    )


def _session_to_response(session: Session) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        device=session.device,
        ip=session.ip,
        user_agent=session.user_agent,
        created_at=to_iso(session.created_at),
        last_active_at=to_iso(session.last_active_at),
        current=session.current,
        flagged=session.flagged,
    )


def _tokens_to_response(result: LoginResult) -> TokenResponse:
    return TokenResponse(
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
        expires_in=result.tokens.expires_in,
        session_id=result.tokens.session_id,
        account=_account_to_response(result.account),
    )
