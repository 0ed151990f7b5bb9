"""
auth/sessions.py -- Refresh-token sessions: open, rotate, list, revoke.

Access tokens stay stateless (AuthGate.authenticate() never reads the store).
A session is the store-backed half of a login: it holds the digest of a
refresh secret that can be traded for a fresh access token until the session
expires or is revoked.

Rotation: every refresh replaces the secret. rotate_session() matches on the
old digest, so a secret works exactly once; replaying it after its owner has
refreshed is rejected as Unauthenticated.

Revocation: logout revokes the caller's session; password change, password
reset, and the admin lock revoke every session of the user. Access tokens
that were already issued keep working until they expire -- the short access
TTL bounds that window.

Failures on the refresh path all collapse to Unauthenticated, like
AuthGate.authenticate(); the reason is logged at debug level only.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime

from auth.errors import AuthError, SessionNotFound, TokenAlreadyUsed, Unauthenticated
from auth.models import AccountState, LoginSession, TokenPurpose, User
from auth.store import CredentialStore
from auth.tokens import IssuedToken, TokenCodec, utcnow

logger = logging.getLogger("authkeep.auth.sessions")

_MAX_DEVICE_INFO = 200


class SessionService:
    def __init__(
        self,
        store: CredentialStore,
        codec: TokenCodec,
        refresh_ttl_seconds: int = 14 * 24 * 3600,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._codec = codec
        self._ttl = refresh_ttl_seconds
        self._clock = clock

    @property
    def refresh_ttl_seconds(self) -> int:
        return self._ttl

    def open(
        self,
        user: User,
        device_info: str | None = None,
        ip_address: str | None = None,
    ) -> tuple[LoginSession, IssuedToken]:
        """Start a session for a user who just proved their password."""
        now = self._clock()
        refresh = self._codec.issue(user.email, TokenPurpose.refresh, self._ttl, user_id=user.id, now=now)
        session = LoginSession(
            id=uuid.uuid4().hex,
            user_id=user.id,
            refresh_hash=self._codec.digest(refresh.value),
            created_at=now,
            last_active_at=now,
            expires_at=refresh.expires_at,
            device_info=device_info[:_MAX_DEVICE_INFO] if device_info else None,
            ip_address=ip_address,
        )
        self._store.create_session(session)
        logger.info("Opened session %s for user id=%s", session.id, user.id)
        return session, refresh

    def rotate(self, refresh_secret: str) -> tuple[User, LoginSession, IssuedToken]:
        """Trade a refresh secret for a new one. Raises Unauthenticated on any failure.

        A session whose user has since been locked is revoked here rather than
        refreshed.
        """
        try:
            lookup_key = self._codec.verify(refresh_secret, TokenPurpose.refresh).lookup_key
        except AuthError as exc:
            logger.debug("Refresh token rejected: %s", exc.code)
            raise Unauthenticated() from exc

        now = self._clock()
        try:
            with self._store.atomic() as uow:
                session = uow.find_session_by_refresh_hash(lookup_key)
                if session is None or not session.active or session.expires_at <= now:
                    raise Unauthenticated()
                user = uow.find_user_by_id(session.user_id)
                if user is not None and user.state is AccountState.verified:
                    replacement = self._codec.issue(
                        user.email, TokenPurpose.refresh, self._ttl, user_id=user.id, now=now
                    )
                    new_hash = self._codec.digest(replacement.value)
                    uow.rotate_session(session.id, lookup_key, new_hash, now, replacement.expires_at)
                else:
                    uow.revoke_session(session.id, now)
        except TokenAlreadyUsed as exc:
            logger.info("Refresh token already rotated or session revoked concurrently")
            raise Unauthenticated() from exc

        if user is None or user.state is not AccountState.verified:
            logger.info("Revoked session %s: account no longer active", session.id)
            raise Unauthenticated()

        session.refresh_hash = new_hash
        session.last_active_at = now
        session.expires_at = replacement.expires_at
        logger.info("Rotated session %s for user id=%s", session.id, user.id)
        return user, session, replacement

    def end(self, refresh_secret: str | None = None, session_id: str | None = None) -> bool:
        """Revoke the session named by a refresh secret or, failing that, by id.

        Used by logout, which must succeed whatever the client sends, so an
        unknown or malformed secret is simply reported as False. Store outages
        still propagate.
        """
        now = self._clock()
        if refresh_secret:
            try:
                lookup_key = self._codec.verify(refresh_secret, TokenPurpose.refresh).lookup_key
            except AuthError:
                lookup_key = None
            if lookup_key is not None:
                session = self._store.find_session_by_refresh_hash(lookup_key)
                if session is not None:
                    session_id = session.id
        if not session_id:
            return False
        revoked = self._store.revoke_session(session_id, now)
        if revoked:
            logger.info("Session %s ended by logout", session_id)
        return revoked

    def revoke(self, user_id: int, session_id: str) -> None:
        """Revoke one of the caller's own sessions. Raises SessionNotFound for anyone else's."""
        session = self._store.find_session(session_id)
        if session is None or session.user_id != user_id or not session.active:
            raise SessionNotFound()
        self._store.revoke_session(session_id, self._clock())
        logger.info("Session %s revoked by user id=%s", session_id, user_id)

    def revoke_all(self, user_id: int) -> int:
        removed = self._store.revoke_user_sessions(user_id, self._clock())
        logger.info("Revoked %d session(s) for user id=%s", removed, user_id)
        return removed

    def list_active(self, user_id: int) -> list[LoginSession]:
        return self._store.list_active_sessions(user_id, self._clock())

    def sweep_expired_sessions(self) -> int:
        """Delete expired and revoked sessions. Returns the number removed."""
        removed = self._store.purge_expired_sessions(self._clock())
        if removed:
            logger.info("Swept %d expired or revoked session(s)", removed)
        return removed
