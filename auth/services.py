"""
auth/services.py -- Build the core service graph from Settings.

Both entry points (api/main.py and the admin CLI in main.py) call
build_services() once at startup. Nothing below this module reads settings:
every TTL, the signing secret, and the password policy are passed in here.
"""

from __future__ import annotations

from dataclasses import dataclass

from auth.accounts import AccountService
from auth.actions import ActionTokenService
from auth.gate import AuthGate
from auth.mail import MailSender, build_mail_sender
from auth.passwords import PasswordPolicy
from auth.sessions import SessionService
from auth.store import SqlCredentialStore
from auth.tokens import TokenCodec
from core.config import Settings


@dataclass(frozen=True)
class Services:
    store: SqlCredentialStore
    codec: TokenCodec
    actions: ActionTokenService
    sessions: SessionService
    gate: AuthGate
    accounts: AccountService


def password_policy_from(settings: Settings) -> PasswordPolicy:
    return PasswordPolicy(
        min_length=settings.password_min_length,
        max_length=settings.password_max_length,
        require_letter=settings.password_require_letter,
        require_digit=settings.password_require_digit,
        require_symbol=settings.password_require_symbol,
    )


def build_services(
    settings: Settings,
    store: SqlCredentialStore | None = None,
    mail_sender: MailSender | None = None,
) -> Services:
    """Wire store, codec, sessions, and services. Opens settings.database_url unless a store is given."""
    if store is None:
        store = SqlCredentialStore(settings.database_url, timeout_seconds=settings.store_timeout_seconds)
    codec = TokenCodec(settings.secret_key)
    policy = password_policy_from(settings)
    actions = ActionTokenService(
        store,
        codec,
        mail_sender if mail_sender is not None else build_mail_sender(settings),
        policy,
        verification_ttl_seconds=settings.verification_token_ttl_seconds,
        reset_ttl_seconds=settings.reset_token_ttl_seconds,
        frontend_base_url=settings.frontend_base_url,
    )
    sessions = SessionService(store, codec, refresh_ttl_seconds=settings.refresh_token_expire_seconds)
    return Services(
        store=store,
        codec=codec,
        actions=actions,
        sessions=sessions,
        gate=AuthGate(store, codec, access_ttl_seconds=settings.access_token_expire_seconds, sessions=sessions),
        accounts=AccountService(store, actions, policy),
    )
