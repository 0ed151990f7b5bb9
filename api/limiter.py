"""
api/limiter.py -- Per-IP rate limiting for the credential endpoints.

Limited routes (all share AUTH_RATE_LIMIT, set by LOGIN_RATE_LIMIT in the
environment, default "10/minute"):
  POST /auth/login            -- password guessing
  POST /auth/refresh          -- replaying stolen refresh tokens
  POST /auth/register         -- account flooding
  POST /auth/verification     -- mail bombing through verification resends
  POST /auth/password-reset   -- mail bombing through reset requests

Token confirmations and logout are not limited.

Counters live in process memory, so each worker process enforces the limit on
its own. api/main.py mounts SlowAPIMiddleware on this instance; the routes
decorate themselves with @limiter.limit(AUTH_RATE_LIMIT). tests/conftest.py
switches it off with limiter.enabled = False.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

AUTH_RATE_LIMIT = get_settings().login_rate_limit

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
