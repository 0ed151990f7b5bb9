"""
auth/passwords.py -- Password hashing, password policy, and email normalization.

Passwords: bcrypt, used directly rather than through passlib. passlib's
internal wrap-bug detection creates a password longer than 72 bytes, which
bcrypt 4.x rejects with an explicit error. Direct bcrypt usage has no
compatibility shim and is actively maintained.

bcrypt only reads the first 72 bytes of its input. The policy rejects longer
passwords outright instead of letting two different passwords share a hash.

The _DUMMY_HASH constant enables timing equalization in AuthGate.login() so
response time does not reveal whether an email is registered [C1].

Layer rule: no imports from api/.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

import bcrypt

from auth.errors import InvalidInput

_BCRYPT_MAX_BYTES = 72
_EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_MAX_EMAIL_LENGTH = 254


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones. Always verify against this when the email does
# not exist [C1].
_DUMMY_HASH: str = hash_password("authkeep_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Spend one bcrypt comparison against the dummy hash. Result is discarded."""
    verify_password(plain, _DUMMY_HASH)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def validate_email(email: str) -> str:
    """Normalize and validate an email address. Raises InvalidInput."""
    normalized = normalize_email(email)
    if len(normalized) > _MAX_EMAIL_LENGTH or not _EMAIL_RE.match(normalized):
        raise InvalidInput("Enter a valid email address.")
    return normalized


@dataclass(frozen=True)
class PasswordPolicy:
    """Minimum password requirements. Built from Settings at startup."""

    min_length: int = 8
    max_length: int = 128
    require_letter: bool = True
    require_digit: bool = True
    require_symbol: bool = False

    def validate(self, password: str) -> None:
        """Raise InvalidInput naming the first rule the password breaks."""
        if not password:
            raise InvalidInput("Password cannot be empty.")
        if len(password) < self.min_length:
            raise InvalidInput(f"Password must be at least {self.min_length} characters.")
        if len(password) > self.max_length:
            raise InvalidInput(f"Password must not be more than {self.max_length} characters.")
        if len(password.encode("utf-8")) > _BCRYPT_MAX_BYTES:
            raise InvalidInput(f"Password must not be more than {_BCRYPT_MAX_BYTES} bytes.")
        if self.require_letter and not any(c.isalpha() for c in password):
            raise InvalidInput("Password must contain a letter.")
        if self.require_digit and not any(c.isdigit() for c in password):
            raise InvalidInput("Password must contain a digit.")
        if self.require_symbol and all(c.isalnum() for c in password):
            raise InvalidInput("Password must contain a symbol.")
