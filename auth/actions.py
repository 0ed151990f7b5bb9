"""
auth/actions.py -- Issue, dispatch, and consume single-use action tokens.

ActionTokenService drives the two emailed flows:
  email verification: request_verification() -> confirm_verification()
  password reset:     request_password_reset() -> confirm_password_reset()

Issuance: inside one store transaction, delete the user's unconsumed tokens of
the same purpose and insert the new one. Only one link per purpose is ever live;
an older link fails with TokenNotFound. A concurrent issuer that loses the
race on the partial unique index gets Conflict and is retried here.

Consumption: codec structural check, then one transaction that looks the token
up, rejects consumed/expired records, marks it consumed with a conditional
UPDATE, and applies the account change. Any failure inside rolls the whole
thing back -- never "consumed but not applied".

Enumeration: request_* never raise for unknown users or already-verified
accounts. The RequestOutcome is for logs and tests; the API answers identically
regardless of it.

Mail delivery failure is non-fatal: the token stays issued and the outcome is
mail_failed, distinct from StoreUnavailable which propagates.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from urllib.parse import urlencode

from auth.errors import (
    Conflict,
    MailTransientFailure,
    PurposeMismatch,
    TokenAlreadyUsed,
    TokenExpired,
    TokenNotFound,
)
from auth.mail import MailSender
from auth.models import AccountState, ActionToken, TokenPurpose, User
from auth.passwords import PasswordPolicy, hash_password, normalize_email
from auth.state import AccountEvent, transition
from auth.store import CredentialStore, CredentialUnitOfWork
from auth.tokens import IssuedToken, TokenCodec, utcnow

logger = logging.getLogger("authkeep.auth.actions")

_MAX_ISSUE_ATTEMPTS = 3

_LINK_PATHS: dict[TokenPurpose, str] = {
    TokenPurpose.email_verification: "/verify-email",
    TokenPurpose.password_reset: "/reset-password",
}


class RequestOutcome(str, Enum):
    sent = "sent"
    mail_failed = "mail_failed"
    user_not_found = "user_not_found"
    already_verified = "already_verified"
    locked = "locked"
    issue_failed = "issue_failed"


@dataclass(frozen=True)
class IssueResult:
    outcome: RequestOutcome
    expires_at: datetime | None = None

    @property
    def issued(self) -> bool:
        return self.expires_at is not None


class ActionTokenService:
    def __init__(
        self,
        store: CredentialStore,
        codec: TokenCodec,
        mail_sender: MailSender,
        password_policy: PasswordPolicy,
        verification_ttl_seconds: int = 24 * 3600,
        reset_ttl_seconds: int = 3600,
        frontend_base_url: str = "http://localhost:3000",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._codec = codec
        self._mail = mail_sender
        self._policy = password_policy
        self._ttl = {
            TokenPurpose.email_verification: verification_ttl_seconds,
            TokenPurpose.password_reset: reset_ttl_seconds,
        }
        self._base_url = frontend_base_url.rstrip("/")
        self._clock = clock

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def request_verification(self, user_id: int) -> IssueResult:
        """Issue a fresh verification link for user_id and mail it.

        Unknown users and accounts that are not awaiting verification are soft
        failures: logged and reported in the outcome, never raised.
        """
        user = self._store.find_user_by_id(user_id)
        if user is None:
            logger.info("Verification requested for unknown user id=%s", user_id)
            return IssueResult(RequestOutcome.user_not_found)
        return self._request_verification_for(user)

    def request_verification_by_email(self, email: str) -> IssueResult:
        """Same as request_verification(), keyed by email for the unauthenticated resend form."""
        user = self._store.find_user_by_email(normalize_email(email))
        if user is None:
            logger.info("Verification requested for unregistered email")
            return IssueResult(RequestOutcome.user_not_found)
        return self._request_verification_for(user)

    def confirm_verification(self, secret: str) -> User:
        """Consume a verification token and mark the account verified.

        Raises TokenMalformed, PurposeMismatch, TokenNotFound, TokenExpired, or
        TokenAlreadyUsed. Confirming for an account that is already verified
        (or locked) consumes the token and leaves the state alone.
        """
        lookup_key = self._codec.verify(secret, TokenPurpose.email_verification).lookup_key
        now = self._clock()
        with self._store.atomic() as uow:
            _, user = self._claim(uow, lookup_key, TokenPurpose.email_verification, now)
            step = transition(user.state, AccountEvent.verify_email)
            if step.changed:
                uow.update_user_state(user.id, step.current)
                user.state = step.current
        logger.info("Email verified for user id=%s (changed=%s)", user.id, step.changed)
        return user

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str) -> IssueResult:
        """Issue and mail a reset link if the email is registered.

        Returns normally either way; callers must respond identically for every
        outcome so the endpoint cannot be used to discover accounts.
        """
        user = self._store.find_user_by_email(normalize_email(email))
        if user is None:
            logger.info("Password reset requested for unregistered email")
            return IssueResult(RequestOutcome.user_not_found)
        issued = self._issue(user, TokenPurpose.password_reset)
        return self._dispatch(user, issued)

    def confirm_password_reset(self, secret: str, new_password: str) -> User:
        """Replace the user's password and consume the reset token atomically.

        The new password is checked against the policy before anything is
        touched, so a rejected password leaves the link usable. Every login
        session of the user is revoked in the same transaction.

        The account state is left alone: an account leaves unverified only by
        consuming a verification link. An unverified user who resets still has
        to confirm their email before logging in.
        """
        lookup_key = self._codec.verify(secret, TokenPurpose.password_reset).lookup_key
        self._policy.validate(new_password)
        # bcrypt is deliberately slow; hash outside the transaction.
        hashed = hash_password(new_password)
        now = self._clock()
        with self._store.atomic() as uow:
            _, user = self._claim(uow, lookup_key, TokenPurpose.password_reset, now)
            step = transition(user.state, AccountEvent.update_password)
            uow.update_password(user.id, hashed)
            if step.changed:
                uow.update_user_state(user.id, step.current)
            revoked = uow.revoke_user_sessions(user.id, now)
            user.hashed_password = hashed
        logger.info("Password reset completed for user id=%s (sessions revoked=%d)", user.id, revoked)
        return user

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep_expired_tokens(self) -> int:
        """Delete every action token past its expiry. Returns the number removed."""
        removed = self._store.purge_expired_tokens(self._clock())
        if removed:
            logger.info("Swept %d expired action token(s)", removed)
        return removed

    def action_link(self, purpose: TokenPurpose, secret: str) -> str:
        return f"{self._base_url}{_LINK_PATHS[purpose]}?{urlencode({'token': secret})}"

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _request_verification_for(self, user: User) -> IssueResult:
        if user.state is AccountState.verified:
            logger.info("Verification requested for already verified user id=%s", user.id)
            return IssueResult(RequestOutcome.already_verified)
        if user.state is AccountState.locked:
            logger.info("Verification requested for locked user id=%s", user.id)
            return IssueResult(RequestOutcome.locked)
        issued = self._issue(user, TokenPurpose.email_verification)
        return self._dispatch(user, issued)

    def _issue(self, user: User, purpose: TokenPurpose) -> IssuedToken:
        """Replace the user's active token of this purpose with a new one."""
        attempt = 0
        while True:
            attempt += 1
            issued = self._codec.issue(user.email, purpose, self._ttl[purpose], user_id=user.id, now=self._clock())
            record = ActionToken(
                user_id=user.id,
                purpose=purpose,
                token_hash=self._codec.digest(issued.value),
                issued_at=issued.issued_at,
                expires_at=issued.expires_at,
            )
            try:
                with self._store.atomic() as uow:
                    replaced = uow.invalidate_active_tokens(user.id, purpose)
                    uow.create_action_token(record)
            except Conflict:
                if attempt == _MAX_ISSUE_ATTEMPTS:
                    raise
                logger.info("Concurrent %s issue for user id=%s, retrying", purpose.value, user.id)
                continue
            logger.info("Issued %s token for user id=%s (replaced=%d)", purpose.value, user.id, replaced)
            return issued

    def _dispatch(self, user: User, issued: IssuedToken) -> IssueResult:
        link = self.action_link(issued.purpose, issued.value)
        try:
            self._mail.send(user.email, issued.purpose, link)
        except MailTransientFailure:
            logger.warning("Could not mail %s link to user id=%s; token remains valid", issued.purpose.value, user.id)
            return IssueResult(RequestOutcome.mail_failed, issued.expires_at)
        return IssueResult(RequestOutcome.sent, issued.expires_at)

    def _claim(
        self,
        uow: CredentialUnitOfWork,
        lookup_key: str,
        purpose: TokenPurpose,
        now: datetime,
    ) -> tuple[ActionToken, User]:
        """Validate and consume a token inside the caller's transaction."""
        token = uow.find_action_token(lookup_key)
        if token is None:
            raise TokenNotFound()
        if token.purpose is not purpose:
            raise PurposeMismatch()
        if token.consumed:
            raise TokenAlreadyUsed()
        if token.expires_at <= now:
            raise TokenExpired()
        user = uow.find_user_by_id(token.user_id)
        if user is None:
            raise TokenNotFound()
        uow.mark_action_token_consumed(token.id, now)
        return token, user
