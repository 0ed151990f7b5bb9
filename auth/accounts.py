"""
auth/accounts.py -- Registration, authenticated password change, and locking.

register() creates the user in the unverified state and immediately asks
ActionTokenService for a verification link. Neither a mail failure nor a store
outage while issuing that link undoes the registration: the user row is
already committed, so the user asks for another link instead of registering
again.

lock_account() is administrative only: it is reachable from the CLI, never
from the HTTP API. Locking, like a password change, revokes every login
session of the user.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from auth.actions import ActionTokenService, IssueResult, RequestOutcome
from auth.errors import InvalidCredentials, InvalidInput, StoreUnavailable, UserNotFound
from auth.models import AccountState, User
from auth.passwords import PasswordPolicy, hash_password, normalize_email, validate_email, verify_password
from auth.state import AccountEvent, Transition, transition
from auth.store import CredentialStore
from auth.tokens import utcnow

logger = logging.getLogger("authkeep.auth.accounts")

_MAX_DISPLAY_NAME = 100


class AccountService:
    def __init__(
        self,
        store: CredentialStore,
        actions: ActionTokenService,
        password_policy: PasswordPolicy,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._actions = actions
        self._policy = password_policy
        self._clock = clock

    def register(
        self,
        email: str,
        password: str,
        display_name: str | None = None,
        send_verification: bool = True,
    ) -> tuple[User, IssueResult | None]:
        """Create an unverified account and send the first verification link.

        Raises InvalidInput for a bad email/password/name and Conflict if the
        email is already registered. Once the user row is committed, a
        StoreUnavailable while issuing the link is reported as the
        issue_failed outcome.
        """
        normalized = validate_email(email)
        self._policy.validate(password)
        if display_name is not None:
            display_name = display_name.strip() or None
            if display_name and len(display_name) > _MAX_DISPLAY_NAME:
                raise InvalidInput(f"Name must not be more than {_MAX_DISPLAY_NAME} characters.")

        user = User(
            email=normalized,
            hashed_password=hash_password(password),
            state=AccountState.unverified,
            display_name=display_name,
        )
        user.id = self._store.create_user(user)
        logger.info("Registered user id=%s", user.id)

        if not send_verification:
            return user, None
        try:
            result = self._actions.request_verification(user.id)
        except StoreUnavailable:
            logger.warning("Registered user id=%s but could not issue a verification link", user.id)
            result = IssueResult(RequestOutcome.issue_failed)
        return user, result

    def change_password(self, user_id: int, current_password: str, new_password: str) -> None:
        """Replace the password of a logged-in user after re-checking the current one.

        Every login session of the user, including the caller's, is revoked in
        the same transaction; the caller logs in again with the new password.
        """
        user = self._store.find_user_by_id(user_id)
        if user is None:
            raise UserNotFound()
        if not verify_password(current_password, user.hashed_password):
            raise InvalidCredentials()
        self._policy.validate(new_password)
        hashed = hash_password(new_password)
        with self._store.atomic() as uow:
            uow.update_password(user.id, hashed)
            revoked = uow.revoke_user_sessions(user.id, self._clock())
        logger.info("Password changed for user id=%s (sessions revoked=%d)", user.id, revoked)

    def lock_account(self, email: str) -> Transition:
        """Move an account to locked. Locking a locked account is a no-op."""
        with self._store.atomic() as uow:
            user = uow.find_user_by_email(normalize_email(email))
            if user is None:
                raise UserNotFound()
            step = transition(user.state, AccountEvent.lock)
            if step.changed:
                uow.update_user_state(user.id, step.current)
            uow.revoke_user_sessions(user.id, self._clock())
        logger.info("Lock requested for user id=%s (changed=%s)", user.id, step.changed)
        return step

    def mark_verified(self, email: str) -> Transition:
        """Administrative verification without a token (CLI create-user --verified)."""
        with self._store.atomic() as uow:
            user = uow.find_user_by_email(normalize_email(email))
            if user is None:
                raise UserNotFound()
            step = transition(user.state, AccountEvent.verify_email)
            if step.changed:
                uow.update_user_state(user.id, step.current)
        return step
