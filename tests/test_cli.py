"""Tests for the admin CLI in main.py.

Covers:
- create-user (mailed link vs --verified), duplicate -> exit 1
- lock (revokes sessions), show (tokens and sessions), sweep-tokens
- No command prints help
"""

from __future__ import annotations

import pytest

from auth.models import AccountState, TokenPurpose
from auth.services import Services
from main import main

EMAIL = "ops@example.com"


@pytest.fixture
def services(store, codec, actions, sessions, gate, accounts) -> Services:
    return Services(store=store, codec=codec, actions=actions, sessions=sessions, gate=gate, accounts=accounts)


def test_create_user_sends_verification(services, mailbox, capsys) -> None:
    code = main(["create-user", EMAIL, "--password", "Correct-horse-9"], services=services)
    assert code == 0
    assert "unverified" in capsys.readouterr().out
    assert mailbox.last(EMAIL, TokenPurpose.email_verification)


def test_create_user_verified(services, mailbox, store) -> None:
    code = main(["create-user", EMAIL, "--password", "Correct-horse-9", "--verified"], services=services)
    assert code == 0
    assert store.find_user_by_email(EMAIL).state is AccountState.verified
    assert mailbox.sent == []


def test_create_user_prompts_for_password(services, monkeypatch, store) -> None:
    monkeypatch.setattr("main.getpass.getpass", lambda prompt="": "Correct-horse-9")
    assert main(["create-user", EMAIL], services=services) == 0
    assert store.find_user_by_email(EMAIL) is not None


def test_create_duplicate_user_fails(services, capsys) -> None:
    main(["create-user", EMAIL, "--password", "Correct-horse-9"], services=services)
    code = main(["create-user", EMAIL, "--password", "Correct-horse-9"], services=services)
    assert code == 1
    assert "[!]" in capsys.readouterr().out


def test_lock(services, make_user, store, capsys) -> None:
    user = make_user(EMAIL)
    assert main(["lock", EMAIL], services=services) == 0
    assert store.find_user_by_id(user.id).state is AccountState.locked
    assert main(["lock", EMAIL], services=services) == 0
    assert "already locked" in capsys.readouterr().out


def test_lock_revokes_sessions(services, make_user, gate, sessions, password) -> None:
    user = make_user(EMAIL)
    gate.login(EMAIL, password)
    assert main(["lock", EMAIL], services=services) == 0
    assert sessions.list_active(user.id) == []


def test_lock_unknown_user(services) -> None:
    assert main(["lock", "ghost@example.com"], services=services) == 1


def test_show_lists_tokens(services, make_user, actions, capsys) -> None:
    make_user(EMAIL)
    actions.request_password_reset(EMAIL)
    assert main(["show", EMAIL], services=services) == 0
    out = capsys.readouterr().out
    assert "verified" in out
    assert "password_reset" in out


def test_show_lists_sessions(services, make_user, gate, password, capsys) -> None:
    make_user(EMAIL)
    grant = gate.login(EMAIL, password, ip_address="203.0.113.7")
    assert main(["show", EMAIL], services=services) == 0
    out = capsys.readouterr().out
    assert "1 active" in out
    assert grant.identity.session_id in out
    assert "203.0.113.7" in out


def test_show_unknown_user(services) -> None:
    assert main(["show", "ghost@example.com"], services=services) == 1


def test_sweep_tokens(services, make_user, actions, clock, capsys) -> None:
    make_user(EMAIL)
    actions.request_password_reset(EMAIL)
    clock.advance(2 * 3600)
    assert main(["sweep-tokens"], services=services) == 0
    assert "Removed 1" in capsys.readouterr().out


def test_no_command_prints_help(capsys) -> None:
    assert main([]) == 2
    assert "usage" in capsys.readouterr().out.lower()
