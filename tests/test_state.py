"""Unit tests for the account lifecycle state machine in auth/state.py.

Covers:
- The three legal transitions
- update_password never changes state
- Every illegal pair is a no-op, never an exception
"""

import pytest

from auth.models import AccountState
from auth.state import AccountEvent, transition


@pytest.mark.parametrize(
    "state, event, expected",
    [
        (AccountState.unverified, AccountEvent.verify_email, AccountState.verified),
        (AccountState.unverified, AccountEvent.lock, AccountState.locked),
        (AccountState.verified, AccountEvent.lock, AccountState.locked),
    ],
)
def test_legal_transitions_change_state(state, event, expected):
    step = transition(state, event)
    assert step.current is expected
    assert step.previous is state
    assert step.changed


@pytest.mark.parametrize("state", list(AccountState))
def test_update_password_keeps_state(state):
    step = transition(state, AccountEvent.update_password)
    assert step.current is state
    assert not step.changed


@pytest.mark.parametrize(
    "state, event",
    [
        (AccountState.verified, AccountEvent.verify_email),
        (AccountState.locked, AccountEvent.verify_email),
        (AccountState.locked, AccountEvent.lock),
    ],
)
def test_illegal_transitions_are_noops(state, event):
    """Repeating or out-of-order events leave the state alone instead of raising."""
    step = transition(state, event)
    assert step.current is state
    assert not step.changed


def test_locked_is_terminal():
    for event in AccountEvent:
        assert transition(AccountState.locked, event).current is AccountState.locked
