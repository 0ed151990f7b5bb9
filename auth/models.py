"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the store, the services, and the routes do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class AccountState(str, Enum):
    unverified = "unverified"
    verified = "verified"
    locked = "locked"


class TokenPurpose(str, Enum):
    """What a token grants. Access tokens are signed JWTs; the rest are opaque secrets."""

    access = "access"
    refresh = "refresh"
    email_verification = "email_verification"
    password_reset = "password_reset"


@dataclass
class User:
    """A registered identity.

    email is stored trimmed and lower-cased; the store's UNIQUE index relies on
    that normalization, so every lookup must normalize the same way.
    hashed_password is a bcrypt hash and is never logged or returned by the API.
    """

    email: str
    hashed_password: str
    state: AccountState = AccountState.unverified
    id: int | None = None
    display_name: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_login: datetime | None = None


@dataclass
class ActionToken:
    """A single-use, time-bounded grant for email verification or password reset.

    Security design:
    - token_hash is HMAC-SHA256(SECRET_KEY, raw_secret). The raw secret only
      ever exists in the outgoing email; a leaked database cannot be replayed
      as links without also knowing SECRET_KEY.
    - consumed_at is None while the token is usable. The store flips it with a
      conditional UPDATE so two concurrent confirmations cannot both succeed.
    """

    user_id: int
    purpose: TokenPurpose
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    id: int | None = None
    consumed_at: datetime | None = None

    @property
    def consumed(self) -> bool:
        return self.consumed_at is not None


@dataclass
class LoginSession:
    """A refresh-token session opened by a successful login.

    Security design:
    - refresh_hash is HMAC-SHA256(SECRET_KEY, refresh_secret), same as action
      tokens. Every refresh rotates the secret, so a copied refresh token stops
      working as soon as its owner refreshes.
    - revoked_at is set by logout, by password change/reset, and by the admin
      lock. Access tokens already handed out stay valid until they expire.
    """

    id: str
    user_id: int
    refresh_hash: str
    created_at: datetime
    last_active_at: datetime
    expires_at: datetime
    revoked_at: datetime | None = None
    device_info: str | None = None
    ip_address: str | None = None

    @property
    def active(self) -> bool:
        return self.revoked_at is None


@dataclass(frozen=True)
class Identity:
    """The authenticated principal recovered from an access token."""

    email: str
    user_id: int | None = None
    session_id: str | None = None


@dataclass(frozen=True)
class AccessTokenGrant:
    access_token: str
    expires_in: int
    expires_at: datetime
    identity: Identity
    refresh_token: str | None = None
    refresh_expires_in: int | None = None
