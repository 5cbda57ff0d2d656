"""
API request and response models for AuthGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: one "@" with something on both sides and a dot in the
# domain. Deliverability is proven by the verification email, not a regex.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# 64 hex chars -- the shape of every reset and verification token we issue.
TOKEN_PATTERN = r"^[0-9a-fA-F]{64}$"


class _EmailBody(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return v.lower()


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(_EmailBody):
    """Request body for POST /api/v1/auth/register.

    Password strength is checked by the service, not here, so the caller gets
    the weak_password error with the list of unmet rules.
    """

    password: str = Field(min_length=1, max_length=256)
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)
    tenant_id: Optional[str] = Field(default=None, max_length=64)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    The email is not pattern-checked: a malformed address is just an unknown
    account, and it must reach the credential validator so the failure is
    counted against the caller.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=256)
    device: Optional[str] = Field(default=None, max_length=30)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


class ValidateTokenRequest(BaseModel):
    token: str = Field(min_length=1)


class ForgotPasswordRequest(_EmailBody):
    pass


class ResendVerificationRequest(_EmailBody):
    pass


class TokenRequest(BaseModel):
    """Body carrying a one-time token (email verification, reset validation)."""

    token: str = Field(pattern=TOKEN_PATTERN)


class ResetPasswordRequest(BaseModel):
    token: str = Field(pattern=TOKEN_PATTERN)
    new_password: str = Field(min_length=1, max_length=256)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountResponse(BaseModel):
    """Public view of an account. Never carries hashes or MFA secrets."""

    id: int
    email: str
    first_name: str
    last_name: str
    role: str
    status: str
    tenant_id: Optional[str] = None
    mfa_enabled: bool = False
    last_login_at: Optional[str] = None
    created_at: Optional[str] = None


class TokenResponse(BaseModel):
    """Response for POST /login and POST /refresh."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    session_id: str
    account: AccountResponse


class SessionResponse(BaseModel):
    id: str
    device: str
    ip: str
    user_agent: str
    created_at: Optional[str] = None
    last_active_at: Optional[str] = None
    current: bool
    flagged: bool


class TokenValidationResponse(BaseModel):
    """Response for POST /validate. payload is None when valid is False."""

    valid: bool
    payload: Optional[dict] = None


class ResetTokenValidationResponse(BaseModel):
    valid: bool


class MessageResponse(BaseModel):
    message: str


class LogoutAllResponse(BaseModel):
    message: str
    revoked: int


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
