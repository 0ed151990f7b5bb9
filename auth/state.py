"""
auth/state.py -- Account lifecycle state machine.

Transitions:
  unverified --verify_email-->    verified
  unverified --lock-->            locked
  verified   --lock-->            locked
  <any>      --update_password--> <same state>   (credential replaced, state untouched)

Every other (state, event) pair is an idempotent no-op: transition() returns
the current state with changed=False rather than raising. Verifying an
already-verified account is the common case (a user clicking the email link
twice) and must look exactly like success to the caller, otherwise the
response would reveal the account's state.

Pure functions only -- callers persist the result through the store.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from auth.models import AccountState

logger = logging.getLogger("authkeep.auth.state")


class AccountEvent(str, Enum):
    verify_email = "verify_email"
    lock = "lock"
    update_password = "update_password"


_TRANSITIONS: dict[tuple[AccountState, AccountEvent], AccountState] = {
    (AccountState.unverified, AccountEvent.verify_email): AccountState.verified,
    (AccountState.unverified, AccountEvent.lock): AccountState.locked,
    (AccountState.verified, AccountEvent.lock): AccountState.locked,
}


@dataclass(frozen=True)
class Transition:
    previous: AccountState
    current: AccountState
    event: AccountEvent

    @property
    def changed(self) -> bool:
        return self.previous is not self.current


def transition(state: AccountState, event: AccountEvent) -> Transition:
    """Apply event to state. Illegal pairs return the unchanged state."""
    if event is AccountEvent.update_password:
        return Transition(previous=state, current=state, event=event)
    target = _TRANSITIONS.get((state, event))
    if target is None:
        logger.debug("No-op transition: %s on %s", event.value, state.value)
        return Transition(previous=state, current=state, event=event)
    return Transition(previous=state, current=target, event=event)
