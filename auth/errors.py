"""
auth/errors.py -- Typed error taxonomy for the credential lifecycle core.

Every failure the core can report is an AuthError subclass with a stable
`code` string. The API layer maps classes to HTTP status codes in one place
(api/main.py) and renders `code` + message in the shared error envelope, so
route handlers never build error responses for domain failures themselves.

UserNotFound is enumeration-sensitive: the store raises it, but the request_*
methods of ActionTokenService report it (and an already verified account) as a
RequestOutcome instead, so neither can reach a client.

Layer rule: stdlib only.
"""

from __future__ import annotations

__all__ = [
    "AuthError",
    "InvalidInput",
    "NotFound",
    "UserNotFound",
    "TokenNotFound",
    "SessionNotFound",
    "Conflict",
    "TokenExpired",
    "TokenAlreadyUsed",
    "TokenMalformed",
    "SignatureInvalid",
    "PurposeMismatch",
    "InvalidCredentials",
    "Unauthenticated",
    "AccountUnverified",
    "StoreUnavailable",
    "MailTransientFailure",
]


class AuthError(Exception):
    """Base class for every per-request failure raised by the core."""

    code = "auth_error"
    default_message = "Authentication error."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class InvalidInput(AuthError):
    """Malformed email or a password that fails the configured policy."""

    code = "invalid_input"
    default_message = "The submitted values are not valid."


class NotFound(AuthError):
    code = "not_found"
    default_message = "Record not found."


class UserNotFound(NotFound):
    code = "user_not_found"
    default_message = "User not found."


class TokenNotFound(NotFound):
    """No stored action token matches the secret (never issued, or superseded)."""

    code = "token_not_found"
    default_message = "The link is invalid."


class SessionNotFound(NotFound):
    """No session with that id belongs to the caller."""

    code = "session_not_found"
    default_message = "Session not found."


class Conflict(AuthError):
    code = "conflict"
    default_message = "A user with that email already exists."


class TokenExpired(AuthError):
    code = "token_expired"
    default_message = "The token has expired."


class TokenAlreadyUsed(AuthError):
    code = "token_already_used"
    default_message = "The link has already been used."


class TokenMalformed(AuthError):
    code = "token_malformed"
    default_message = "The token is malformed."


class SignatureInvalid(AuthError):
    code = "signature_invalid"
    default_message = "The token signature is invalid."


class PurposeMismatch(AuthError):
    code = "purpose_mismatch"
    default_message = "The token was issued for a different purpose."


class InvalidCredentials(AuthError):
    """Unknown email, wrong password, or locked account -- deliberately indistinguishable."""

    code = "invalid_credentials"
    default_message = "Invalid email or password."


class Unauthenticated(AuthError):
    code = "unauthenticated"
    default_message = "Authentication required."


class AccountUnverified(AuthError):
    code = "account_unverified"
    default_message = "Verify your email address before logging in."


class StoreUnavailable(AuthError):
    """Transient persistence failure. Safe for the caller to retry with backoff."""

    code = "store_unavailable"
    default_message = "The credential store is temporarily unavailable."


class MailTransientFailure(AuthError):
    """The mail sender could not hand off a message. Never fatal to token issuance."""

    code = "mail_unavailable"
    default_message = "The email could not be sent."
