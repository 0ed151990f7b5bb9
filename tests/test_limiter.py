"""
tests/test_limiter.py -- Which routes carry the shared per-IP limit.

The limiter is disabled for the rest of the suite (conftest.py), so these
tests only inspect the registrations made by @limiter.limit().
"""

from __future__ import annotations

from api.limiter import AUTH_RATE_LIMIT, limiter
from core.config import get_settings

_LIMITED = {"login", "refresh", "register", "resend_verification", "request_password_reset"}


def _limited_routes() -> set[str]:
    return {key.rsplit(".", 1)[-1] for key in limiter._route_limits if key.startswith("api.routes.v1.auth.")}


def test_credential_routes_are_limited():
    assert _limited_routes() == _LIMITED


def test_limit_comes_from_settings():
    assert AUTH_RATE_LIMIT == get_settings().login_rate_limit
