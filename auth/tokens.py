"""
auth/tokens.py -- Token codec: signed access tokens and opaque secrets.

Security design decisions:
  Access tokens: python-jose with HS256. Tokens are signed with SECRET_KEY and
       carry sub (email), uid, purpose="access", iat, exp, and a random jti.
       They are never persisted; validity is signature + expiry only, so a
       short TTL is the only revocation mechanism.

  Access tokens issued by login also carry sid, the id of the refresh session
       they belong to, so logout can find the session from the access token.

  Opaque secrets (refresh, email verification, password reset):
       secrets.token_urlsafe(32) gives 256 bits of entropy and carries no
       claims at all. A signed token would let anyone holding
       SECRET_KEY-derived material mint links for any purpose; an opaque secret
       can only be checked against the store. The short prefix ("rt_" / "ev_"
       / "pr_") is a routing tag, not a claim -- forging it gains nothing
       because the store lookup still has to succeed.

  Storage: the store keeps HMAC-SHA256(SECRET_KEY, raw_secret), same approach
       as deterministic API key hashing -- O(1) lookup without bcrypt's
       intentional slowness, and a leaked table cannot be replayed as links.

  SECRET_KEY is passed into TokenCodec once at startup and never changes for
  the lifetime of the instance.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import re
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import ExpiredSignatureError, JWTError, jwt
from jose.exceptions import JWTClaimsError

from auth.errors import PurposeMismatch, SignatureInvalid, TokenExpired, TokenMalformed
from auth.models import TokenPurpose

_ALGORITHM = "HS256"
_ISSUER = "authkeep"

# Purpose tag prepended to opaque secrets. Two characters plus "_" keeps links short.
_OPAQUE_PREFIXES: dict[TokenPurpose, str] = {
    TokenPurpose.refresh: "rt",
    TokenPurpose.email_verification: "ev",
    TokenPurpose.password_reset: "pr",
}
_PREFIX_TO_PURPOSE = {prefix: purpose for purpose, prefix in _OPAQUE_PREFIXES.items()}

# token_urlsafe(32) -> 43 chars of base64url without padding
_OPAQUE_BODY_RE = re.compile(r"^[A-Za-z0-9_-]{43}$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class IssuedToken:
    value: str
    purpose: TokenPurpose
    subject: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class VerifiedToken:
    """Result of TokenCodec.verify().

    Access tokens: subject/user_id/session_id/expires_at come from the signed claims.
    Opaque secrets: subject is None (no embedded claims); lookup_key is the
    digest the store indexes the record by.
    """

    purpose: TokenPurpose
    subject: str | None = None
    user_id: int | None = None
    session_id: str | None = None
    expires_at: datetime | None = None
    lookup_key: str | None = None


class TokenCodec:
    """Issue and verify every kind of token the service hands out.

    Usage:
        codec = TokenCodec(settings.secret_key)
        issued = codec.issue("a@x.com", TokenPurpose.access, 900, user_id=1)
        claims = codec.verify(issued.value, TokenPurpose.access)
    """

    def __init__(self, secret_key: str, issuer: str = _ISSUER) -> None:
        if len(secret_key) < 32:
            raise ValueError("Signing secret must be at least 32 characters.")
        self._secret_key = secret_key
        self._issuer = issuer

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    def issue(
        self,
        subject: str,
        purpose: TokenPurpose,
        ttl_seconds: int,
        user_id: int | None = None,
        now: datetime | None = None,
        session_id: str | None = None,
    ) -> IssuedToken:
        """Produce an unguessable token bound to subject, purpose, and expiry."""
        issued_at = now or utcnow()
        expires_at = issued_at + timedelta(seconds=ttl_seconds)
        if purpose is TokenPurpose.access:
            value = self._encode_access(subject, user_id, session_id, issued_at, expires_at)
        else:
            value = f"{_OPAQUE_PREFIXES[purpose]}_{secrets.token_urlsafe(32)}"
        return IssuedToken(
            value=value,
            purpose=purpose,
            subject=subject,
            issued_at=issued_at,
            expires_at=expires_at,
        )

    def verify(self, token: str, expected_purpose: TokenPurpose) -> VerifiedToken:
        """Check token structure, signature, expiry, and purpose.

        Raises TokenMalformed, SignatureInvalid, TokenExpired, or
        PurposeMismatch. Opaque secrets are only checked structurally here --
        their expiry lives in the store record.
        """
        if not isinstance(token, str) or not token:
            raise TokenMalformed()
        if expected_purpose is TokenPurpose.access:
            return self._decode_access(token)
        return self._parse_opaque(token, expected_purpose)

    def digest(self, secret: str) -> str:
        """Return HMAC-SHA256(SECRET_KEY, secret) as a hex string."""
        return hmac.new(self._secret_key.encode(), secret.encode(), hashlib.sha256).hexdigest()

    # ------------------------------------------------------------------
    # Access tokens (JWT)
    # ------------------------------------------------------------------

    def _encode_access(
        self,
        subject: str,
        user_id: int | None,
        session_id: str | None,
        issued_at: datetime,
        expires_at: datetime,
    ) -> str:
        payload = {
            "sub": subject,
            "uid": user_id,
            "purpose": TokenPurpose.access.value,
            "iss": self._issuer,
            "iat": issued_at,
            "exp": expires_at,
            "jti": uuid.uuid4().hex,
        }
        if session_id is not None:
            payload["sid"] = session_id
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def _decode_access(self, token: str) -> VerifiedToken:
        if _looks_like_opaque_secret(token):
            raise PurposeMismatch()
        # Structural check first so a truncated or garbage token reports
        # TokenMalformed rather than a signature failure.
        try:
            jwt.get_unverified_header(token)
            jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise TokenMalformed() from exc

        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                issuer=self._issuer,
                options={"verify_aud": False},
            )
        except ExpiredSignatureError as exc:
            raise TokenExpired() from exc
        except JWTClaimsError as exc:
            raise TokenMalformed() from exc
        except JWTError as exc:
            raise SignatureInvalid() from exc

        if payload.get("purpose") != TokenPurpose.access.value:
            raise PurposeMismatch()
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise TokenMalformed()
        uid = payload.get("uid")
        sid = payload.get("sid")
        return VerifiedToken(
            purpose=TokenPurpose.access,
            subject=subject,
            user_id=uid if isinstance(uid, int) else None,
            session_id=sid if isinstance(sid, str) else None,
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    # ------------------------------------------------------------------
    # Opaque secrets (refresh, email verification, password reset)
    # ------------------------------------------------------------------

    def _parse_opaque(self, token: str, expected_purpose: TokenPurpose) -> VerifiedToken:
        prefix, sep, body = token.partition("_")
        purpose = _PREFIX_TO_PURPOSE.get(prefix) if sep else None
        if purpose is None:
            # A JWT handed to an opaque-token endpoint is a purpose mismatch, anything else is junk.
            if _has_jwt_header(token):
                raise PurposeMismatch()
            raise TokenMalformed()
        if purpose is not expected_purpose:
            raise PurposeMismatch()
        if not _OPAQUE_BODY_RE.match(body):
            raise TokenMalformed()
        return VerifiedToken(purpose=purpose, lookup_key=self.digest(token))


def _looks_like_opaque_secret(token: str) -> bool:
    prefix, sep, body = token.partition("_")
    return bool(sep) and prefix in _PREFIX_TO_PURPOSE and bool(_OPAQUE_BODY_RE.match(body))


def _has_jwt_header(token: str) -> bool:
    if token.count(".") != 2:
        return False
    try:
        jwt.get_unverified_header(token)
    except JWTError:
        return False
    return True
