"""
auth/gate.py -- Login and access-token authentication.

login() is the only place passwords are checked against the store.
authenticate() is the only place access tokens are accepted, and it never
touches the store: a token is valid if its signature and expiry check out.
The trade-off is that a token cannot be revoked early; the short default
ACCESS_TOKEN_EXPIRE_SECONDS bounds the exposure.

When a SessionService is wired in, login() also opens a refresh-token session
and refresh() trades its secret for a new access token. Revoking the session
stops further refreshes but not the access token already handed out.

Enumeration [C1]: unknown email, wrong password, and locked account all raise
the same InvalidCredentials, and all three run exactly one bcrypt comparison
so response time does not separate them either.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from auth.errors import AccountUnverified, AuthError, InvalidCredentials, Unauthenticated
from auth.models import AccessTokenGrant, AccountState, Identity, LoginSession, TokenPurpose, User
from auth.passwords import burn_password_check, normalize_email, verify_password
from auth.sessions import SessionService
from auth.store import CredentialStore
from auth.tokens import TokenCodec, utcnow

logger = logging.getLogger("authkeep.auth.gate")


class AuthGate:
    def __init__(
        self,
        store: CredentialStore,
        codec: TokenCodec,
        access_ttl_seconds: int = 900,
        clock: Callable[[], datetime] = utcnow,
        sessions: SessionService | None = None,
    ) -> None:
        self._store = store
        self._codec = codec
        self._access_ttl = access_ttl_seconds
        self._clock = clock
        self._sessions = sessions

    def login(
        self,
        email: str,
        password: str,
        device_info: str | None = None,
        ip_address: str | None = None,
    ) -> AccessTokenGrant:
        """Check credentials and issue an access token (plus a refresh token when sessions are on).

        Raises InvalidCredentials or AccountUnverified. The unverified check
        runs only after the password matched, so it reveals nothing to someone
        who does not already know the password.
        """
        user = self._store.find_user_by_email(normalize_email(email))
        if user is None:
            # Equalize timing -- do NOT return early before running bcrypt [C1]
            burn_password_check(password)
            raise InvalidCredentials()
        if not verify_password(password, user.hashed_password):
            logger.info("Failed login for user id=%s", user.id)
            raise InvalidCredentials()
        if user.state is AccountState.locked:
            logger.info("Login attempt on locked user id=%s", user.id)
            raise InvalidCredentials()
        if user.state is AccountState.unverified:
            raise AccountUnverified()

        session = refresh = None
        if self._sessions is not None:
            session, refresh = self._sessions.open(user, device_info=device_info, ip_address=ip_address)
        self._store.touch_last_login(user.id)
        logger.info("Login succeeded for user id=%s", user.id)
        return self._grant(user, session, refresh.value if refresh else None)

    def refresh(self, refresh_token: str) -> AccessTokenGrant:
        """Rotate a refresh token and issue a new access token for the same session.

        Raises Unauthenticated for an unknown, reused, expired, or revoked
        refresh token, and for an account that has been locked since login.
        """
        if self._sessions is None:
            raise Unauthenticated()
        user, session, refresh = self._sessions.rotate(refresh_token)
        return self._grant(user, session, refresh.value)

    def authenticate(self, access_token: str) -> Identity:
        """Return the identity carried by a valid access token.

        Any codec failure (expired, malformed, bad signature, wrong purpose)
        becomes Unauthenticated; the specific reason is logged at debug level
        only.
        """
        try:
            claims = self._codec.verify(access_token, TokenPurpose.access)
        except AuthError as exc:
            logger.debug("Access token rejected: %s", exc.code)
            raise Unauthenticated() from exc
        return Identity(email=claims.subject, user_id=claims.user_id, session_id=claims.session_id)

    def _grant(self, user: User, session: LoginSession | None, refresh_token: str | None) -> AccessTokenGrant:
        session_id = session.id if session is not None else None
        issued = self._codec.issue(
            user.email,
            TokenPurpose.access,
            self._access_ttl,
            user_id=user.id,
            now=self._clock(),
            session_id=session_id,
        )
        return AccessTokenGrant(
            access_token=issued.value,
            expires_in=self._access_ttl,
            expires_at=issued.expires_at,
            identity=Identity(email=user.email, user_id=user.id, session_id=session_id),
            refresh_token=refresh_token,
            refresh_expires_in=self._sessions.refresh_ttl_seconds if refresh_token else None,
        )
