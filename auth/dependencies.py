"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two places an access token can arrive, checked in priority order:
  1. "access_token" cookie -- set by POST /auth/login for browser clients.
  2. Authorization: Bearer <token> header -- API clients.

Both converge on AuthGate.authenticate(), which never touches the store.

try_get_identity() is the soft variant (returns None on failure).
get_current_identity() wraps it and raises HTTP 401 if unauthenticated.

auth/dependencies.py may import from fastapi (for HTTPException/Request)
because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.errors import Unauthenticated
from auth.gate import AuthGate
from auth.models import Identity


def bearer_or_cookie_token(request: Request) -> str | None:
    token: str | None = request.cookies.get("access_token")
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


def try_get_identity(request: Request) -> Identity | None:
    """Authenticate the request via cookie or Bearer header. Never raises."""
    token = bearer_or_cookie_token(request)
    if not token:
        return None
    gate: AuthGate = request.app.state.gate
    try:
        return gate.authenticate(token)
    except Unauthenticated:
        return None


def get_current_identity(request: Request) -> Identity:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(identity: Identity = Depends(get_current_identity)): ...
    """
    identity = try_get_identity(request)
    if identity is None:
        raise HTTPException(
            status_code=401,
            detail={"code": Unauthenticated.code, "message": Unauthenticated.default_message},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity
