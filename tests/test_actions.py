"""Unit tests for ActionTokenService (auth/actions.py).

Covers:
- Verification: issue + mail, confirm, single use, supersession, expiry boundary
- Soft outcomes for unknown, already verified, and locked accounts (no raise, no mail)
- Mail failure is non-fatal: token stays valid, outcome is mail_failed
- Password reset: new password takes effect, state unchanged (an unverified
  account still cannot log in), policy checked first, sessions revoked
- Atomicity: a failure after consume rolls the consume back
- Concurrency: two confirmations of one token, exactly one wins
- Issue retry when a concurrent issuer wins the active-token slot
- Sweep of expired tokens
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from urllib.parse import urlsplit

import pytest

from auth import store as store_module
from auth.actions import ActionTokenService, RequestOutcome
from auth.errors import (
    AccountUnverified,
    Conflict,
    InvalidInput,
    PurposeMismatch,
    StoreUnavailable,
    TokenAlreadyUsed,
    TokenExpired,
    TokenMalformed,
    TokenNotFound,
    Unauthenticated,
)
from auth.models import AccountState, TokenPurpose
from auth.passwords import verify_password

EMAIL = "alice@example.com"


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


class TestRequestVerification:
    def test_issues_token_and_mails_link(self, actions, make_user, mailbox, store) -> None:
        user = make_user(EMAIL, AccountState.unverified)
        result = actions.request_verification(user.id)

        assert result.outcome is RequestOutcome.sent
        assert result.issued
        mail = mailbox.last(EMAIL, TokenPurpose.email_verification)
        parts = urlsplit(mail.link)
        assert f"{parts.scheme}://{parts.netloc}{parts.path}" == "https://app.example.com/verify-email"
        assert mail.token.startswith("ev_")
        assert len(store.list_action_tokens(user.id)) == 1

    def test_raw_secret_is_not_stored(self, actions, make_user, mailbox, store) -> None:
        user = make_user(EMAIL, AccountState.unverified)
        actions.request_verification(user.id)
        secret = mailbox.last_token(EMAIL, TokenPurpose.email_verification)
        [record] = store.list_action_tokens(user.id)
        assert record.token_hash != secret
        assert secret not in record.token_hash

    def test_by_email_is_case_insensitive(self, actions, make_user, mailbox) -> None:
        make_user(EMAIL, AccountState.unverified)
        result = actions.request_verification_by_email("  ALICE@example.com ")
        assert result.outcome is RequestOutcome.sent
        assert mailbox.sent

    def test_unknown_user_is_soft(self, actions, mailbox) -> None:
        assert actions.request_verification(12345).outcome is RequestOutcome.user_not_found
        assert actions.request_verification_by_email("ghost@example.com").outcome is RequestOutcome.user_not_found
        assert mailbox.sent == []

    def test_already_verified_is_soft(self, actions, make_user, mailbox, store) -> None:
        user = make_user(EMAIL, AccountState.verified)
        result = actions.request_verification(user.id)
        assert result.outcome is RequestOutcome.already_verified
        assert not result.issued
        assert mailbox.sent == []
        assert store.list_action_tokens(user.id) == []

    def test_locked_is_soft(self, actions, make_user, mailbox) -> None:
        user = make_user(EMAIL, AccountState.locked)
        assert actions.request_verification(user.id).outcome is RequestOutcome.locked
        assert mailbox.sent == []

    def test_mail_failure_keeps_token_valid(self, actions, make_user, mailbox, store) -> None:
        user = make_user(EMAIL, AccountState.unverified)
        mailbox.fail = True
        result = actions.request_verification(user.id)

        assert result.outcome is RequestOutcome.mail_failed
        assert result.issued
        assert len(store.list_action_tokens(user.id)) == 1

    def test_store_outage_propagates(self, actions, make_user, monkeypatch) -> None:
        user = make_user(EMAIL, AccountState.unverified)

        def _down(*args, **kwargs):
            raise StoreUnavailable()

        monkeypatch.setattr(store_module._SqlUnitOfWork, "create_action_token", _down)
        with pytest.raises(StoreUnavailable):
            actions.request_verification(user.id)


class TestConfirmVerification:
    def test_confirm_marks_account_verified(self, actions, make_user, mailbox, store) -> None:
        user = make_user(EMAIL, AccountState.unverified)
        actions.request_verification(user.id)

        confirmed = actions.confirm_verification(mailbox.last_token(EMAIL, TokenPurpose.email_verification))

        assert confirmed.state is AccountState.verified
        assert store.find_user_by_id(user.id).state is AccountState.verified

    def test_second_use_raises_already_used(self, actions, make_user, mailbox) -> None:
        user = make_user(EMAIL, AccountState.unverified)
        actions.request_verification(user.id)
        token = mailbox.last_token(EMAIL, TokenPurpose.email_verification)
        actions.confirm_verification(token)
        with pytest.raises(TokenAlreadyUsed):
            actions.confirm_verification(token)

    def test_reissue_supersedes_previous_link(self, actions, make_user, mailbox, store) -> None:
        user = make_user(EMAIL, AccountState.unverified)
        actions.request_verification(user.id)
        old = mailbox.last_token(EMAIL, TokenPurpose.email_verification)
        actions.request_verification(user.id)
        new = mailbox.last_token(EMAIL, TokenPurpose.email_verification)

        assert old != new
        assert len(store.list_action_tokens(user.id)) == 1
        with pytest.raises(TokenNotFound):
            actions.confirm_verification(old)
        actions.confirm_verification(new)

    def test_expired_token_is_rejected_and_state_unchanged(self, actions, make_user, mailbox, clock, store) -> None:
        user = make_user(EMAIL, AccountState.unverified)
        actions.request_verification(user.id)
        token = mailbox.last_token(EMAIL, TokenPurpose.email_verification)

        clock.advance(24 * 3600 + 1)

        with pytest.raises(TokenExpired):
            actions.confirm_verification(token)
        assert store.find_user_by_id(user.id).state is AccountState.unverified

    def test_token_is_expired_at_exactly_its_expiry(self, actions, make_user, mailbox, clock) -> None:
        user = make_user(EMAIL, AccountState.unverified)
        actions.request_verification(user.id)
        token = mailbox.last_token(EMAIL, TokenPurpose.email_verification)
        clock.advance(24 * 3600)
        with pytest.raises(TokenExpired):
            actions.confirm_verification(token)

    def test_token_is_valid_just_before_expiry(self, actions, make_user, mailbox, clock) -> None:
        user = make_user(EMAIL, AccountState.unverified)
        actions.request_verification(user.id)
        token = mailbox.last_token(EMAIL, TokenPurpose.email_verification)
        clock.advance(24 * 3600 - 1)
        assert actions.confirm_verification(token).state is AccountState.verified

    def test_reset_token_cannot_verify_email(self, actions, make_user, mailbox, store) -> None:
        user = make_user(EMAIL, AccountState.unverified)
        actions.request_password_reset(EMAIL)
        reset_token = mailbox.last_token(EMAIL, TokenPurpose.password_reset)

        with pytest.raises(PurposeMismatch):
            actions.confirm_verification(reset_token)
        assert store.find_user_by_id(user.id).state is AccountState.unverified

    def test_unknown_well_formed_token_is_not_found(self, actions) -> None:
        with pytest.raises(TokenNotFound):
            actions.confirm_verification("ev_" + "A" * 43)

    def test_garbage_is_malformed(self, actions) -> None:
        with pytest.raises(TokenMalformed):
            actions.confirm_verification("definitely not a token")

    def test_confirm_after_admin_verification_is_noop_success(self, actions, make_user, mailbox, store) -> None:
        user = make_user(EMAIL, AccountState.unverified)
        actions.request_verification(user.id)
        token = mailbox.last_token(EMAIL, TokenPurpose.email_verification)
        store.update_user_state(user.id, AccountState.verified)

        assert actions.confirm_verification(token).state is AccountState.verified

    def test_confirm_for_locked_account_leaves_it_locked(self, actions, make_user, mailbox, store) -> None:
        user = make_user(EMAIL, AccountState.unverified)
        actions.request_verification(user.id)
        token = mailbox.last_token(EMAIL, TokenPurpose.email_verification)
        store.update_user_state(user.id, AccountState.locked)

        actions.confirm_verification(token)
        assert store.find_user_by_id(user.id).state is AccountState.locked


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


class TestPasswordReset:
    def test_unknown_email_is_soft(self, actions, mailbox) -> None:
        result = actions.request_password_reset("ghost@example.com")
        assert result.outcome is RequestOutcome.user_not_found
        assert mailbox.sent == []

    def test_reset_link_points_at_reset_page(self, actions, make_user, mailbox) -> None:
        make_user(EMAIL)
        actions.request_password_reset(EMAIL)
        mail = mailbox.last(EMAIL, TokenPurpose.password_reset)
        assert urlsplit(mail.link).path == "/reset-password"
        assert mail.token.startswith("pr_")

    def test_confirm_replaces_password(self, actions, make_user, mailbox, store, password) -> None:
        user = make_user(EMAIL)
        actions.request_password_reset(EMAIL)
        actions.confirm_password_reset(mailbox.last_token(EMAIL, TokenPurpose.password_reset), "N3w-password")

        stored = store.find_user_by_id(user.id)
        assert verify_password("N3w-password", stored.hashed_password)
        assert not verify_password(password, stored.hashed_password)

    def test_reset_does_not_change_state(self, actions, make_user, mailbox, store) -> None:
        user = make_user(EMAIL, AccountState.unverified)
        actions.request_password_reset(EMAIL)
        actions.confirm_password_reset(mailbox.last_token(EMAIL, TokenPurpose.password_reset), "N3w-password")
        assert store.find_user_by_id(user.id).state is AccountState.unverified

    def test_unverified_account_still_cannot_log_in_after_reset(self, actions, gate, make_user, mailbox) -> None:
        make_user(EMAIL, AccountState.unverified)
        actions.request_password_reset(EMAIL)
        actions.confirm_password_reset(mailbox.last_token(EMAIL, TokenPurpose.password_reset), "N3w-password")

        with pytest.raises(AccountUnverified):
            gate.login(EMAIL, "N3w-password")

    def test_reset_revokes_sessions(self, actions, gate, make_user, mailbox, sessions, password) -> None:
        user = make_user(EMAIL)
        grant = gate.login(EMAIL, password)
        actions.request_password_reset(EMAIL)
        actions.confirm_password_reset(mailbox.last_token(EMAIL, TokenPurpose.password_reset), "N3w-password")

        assert sessions.list_active(user.id) == []
        with pytest.raises(Unauthenticated):
            gate.refresh(grant.refresh_token)

    def test_weak_password_leaves_token_usable(self, actions, make_user, mailbox) -> None:
        make_user(EMAIL)
        actions.request_password_reset(EMAIL)
        token = mailbox.last_token(EMAIL, TokenPurpose.password_reset)

        with pytest.raises(InvalidInput):
            actions.confirm_password_reset(token, "short")
        actions.confirm_password_reset(token, "N3w-password")

    def test_reset_token_is_single_use(self, actions, make_user, mailbox) -> None:
        make_user(EMAIL)
        actions.request_password_reset(EMAIL)
        token = mailbox.last_token(EMAIL, TokenPurpose.password_reset)
        actions.confirm_password_reset(token, "N3w-password")
        with pytest.raises(TokenAlreadyUsed):
            actions.confirm_password_reset(token, "An0ther-password")

    def test_verification_and_reset_tokens_are_independent(self, actions, make_user, mailbox) -> None:
        user = make_user(EMAIL, AccountState.unverified)
        actions.request_verification(user.id)
        actions.request_password_reset(EMAIL)
        actions.confirm_verification(mailbox.last_token(EMAIL, TokenPurpose.email_verification))
        actions.confirm_password_reset(mailbox.last_token(EMAIL, TokenPurpose.password_reset), "N3w-password")

    def test_failure_after_consume_rolls_back(self, actions, make_user, mailbox, store, monkeypatch, password) -> None:
        user = make_user(EMAIL)
        actions.request_password_reset(EMAIL)
        token = mailbox.last_token(EMAIL, TokenPurpose.password_reset)
        original = store_module._SqlUnitOfWork.update_password

        def _fail(self, user_id, hashed_password):
            raise StoreUnavailable()

        monkeypatch.setattr(store_module._SqlUnitOfWork, "update_password", _fail)
        with pytest.raises(StoreUnavailable):
            actions.confirm_password_reset(token, "N3w-password")

        [record] = store.list_action_tokens(user.id)
        assert not record.consumed
        assert verify_password(password, store.find_user_by_id(user.id).hashed_password)

        monkeypatch.setattr(store_module._SqlUnitOfWork, "update_password", original)
        actions.confirm_password_reset(token, "N3w-password")


# ---------------------------------------------------------------------------
# Concurrency and maintenance
# ---------------------------------------------------------------------------


class TestConcurrency:
    def test_concurrent_confirmations_exactly_one_wins(self, actions, make_user, mailbox, store) -> None:
        user = make_user(EMAIL, AccountState.unverified)
        actions.request_verification(user.id)
        token = mailbox.last_token(EMAIL, TokenPurpose.email_verification)

        def _attempt():
            try:
                actions.confirm_verification(token)
            except TokenAlreadyUsed:
                return "used"
            return "ok"

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = sorted(pool.map(lambda _: _attempt(), range(2)))

        assert results == ["ok", "used"]
        assert store.find_user_by_id(user.id).state is AccountState.verified

    def test_issue_retries_after_losing_active_slot(self, actions, make_user, mailbox, monkeypatch) -> None:
        user = make_user(EMAIL, AccountState.unverified)
        original = store_module._SqlUnitOfWork.create_action_token
        calls = {"n": 0}

        def _lose_once(self, token):
            calls["n"] += 1
            if calls["n"] == 1:
                raise Conflict("An active token of this purpose already exists.")
            return original(self, token)

        monkeypatch.setattr(store_module._SqlUnitOfWork, "create_action_token", _lose_once)
        result = actions.request_verification(user.id)

        assert result.outcome is RequestOutcome.sent
        assert calls["n"] == 2
        assert len(mailbox.sent) == 1

    def test_issue_gives_up_after_repeated_conflicts(self, actions, make_user, mailbox, monkeypatch) -> None:
        user = make_user(EMAIL, AccountState.unverified)

        def _always_lose(self, token):
            raise Conflict()

        monkeypatch.setattr(store_module._SqlUnitOfWork, "create_action_token", _always_lose)
        with pytest.raises(Conflict):
            actions.request_verification(user.id)
        assert mailbox.sent == []


class TestSweep:
    def test_sweep_removes_expired_tokens(self, actions, make_user, clock, store) -> None:
        user = make_user(EMAIL, AccountState.unverified)
        actions.request_verification(user.id)
        actions.request_password_reset(EMAIL)

        clock.advance(2 * 3600)  # reset (1h) expired, verification (24h) not

        assert actions.sweep_expired_tokens() == 1
        [remaining] = store.list_action_tokens(user.id)
        assert remaining.purpose is TokenPurpose.email_verification

    def test_sweep_with_nothing_expired(self, actions) -> None:
        assert actions.sweep_expired_tokens() == 0


def test_action_link_strips_trailing_slash(store, codec, mailbox, policy) -> None:
    service = ActionTokenService(store, codec, mailbox, policy, frontend_base_url="https://x.example/")
    link = service.action_link(TokenPurpose.password_reset, "pr_abc")
    assert link == "https://x.example/reset-password?token=pr_abc"
