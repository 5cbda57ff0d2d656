"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Requests authenticate with an "Authorization: Bearer <access token>" header.
The token must verify AND its session must still exist, so a logout or a
revoked session stops working immediately rather than at token expiry.

try_get_current_account() is the soft variant (returns None on failure).
get_current_account() wraps it and raises HTTP 401 if unauthenticated.
require_role(*roles) builds a dependency that also raises HTTP 403 when the
account's role is not in roles; require_admin is require_role("admin").

auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, HTTPException, Request

from auth.models import Account


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_current_account(request: Request) -> Account | None:
    """Authenticate the request from its Bearer token.

    Returns the Account on success, None on any failure. On success the token
    payload is left on request.state.token_payload for routes that need the
    session id.
    Never raises -- callers that need a hard 401 should use get_current_account().
    """
    token = _bearer_token(request)
    if not token:
        return None
    resolved = request.app.state.auth_service.authenticate(token)
    if resolved is None:
        return None
    account, payload = resolved
    request.state.token_payload = payload
    return account


def get_current_account(request: Request) -> Account:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(account: Account = Depends(get_current_account)): ...
    """
    account = try_get_current_account(request)
    if account is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return account


def require_role(*roles: str) -> Callable[..., Account]:
    """Build a dependency that admits only accounts whose role is in roles.

    Use as a FastAPI dependency:
        @router.post("/reports")
        async def route(account: Account = Depends(require_role("admin", "manager"))): ...
    """
    allowed = frozenset(roles)

    def dependency(account: Account = Depends(get_current_account)) -> Account:
        if account.role not in allowed:
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "Insufficient role for this operation."},
            )
        return account

    return dependency


require_admin = require_role("admin")
