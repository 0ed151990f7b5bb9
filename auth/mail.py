"""
auth/mail.py -- Outbound mail for verification and password-reset links.

The core only needs one operation: send(to_email, purpose, action_link).
Any delivery failure is raised as MailTransientFailure so callers can tell it
apart from store errors; ActionTokenService treats it as non-fatal (the token
already exists and the user can ask for another email).

Backends:
  LogMailSender  -- development default. Logs that a message would be sent.
                    The link itself is logged only when reveal_links=True
                    (set from DEBUG), since it is a live credential.
  SmtpMailSender -- stdlib smtplib with optional STARTTLS and login.
  HttpMailSender -- JSON POST to a transactional mail API via requests.

Bodies are plain text. Template rendering is not this service's job.
"""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from typing import Protocol
from urllib.parse import urlsplit

import requests

from auth.errors import MailTransientFailure
from auth.models import TokenPurpose
from core.config import Settings

logger = logging.getLogger("authkeep.mail")

_SUBJECTS: dict[TokenPurpose, str] = {
    TokenPurpose.email_verification: "Verify your email address",
    TokenPurpose.password_reset: "Reset your password",
}

_BODIES: dict[TokenPurpose, str] = {
    TokenPurpose.email_verification: (
        "Confirm your email address by opening the link below:\n\n{link}\n\n"
        "The link can be used once and expires in {ttl}."
    ),
    TokenPurpose.password_reset: (
        "Someone asked to reset the password for this account. "
        "If it was you, open the link below:\n\n{link}\n\n"
        "The link can be used once and expires in {ttl}. "
        "If you did not ask for this, ignore this message."
    ),
}


def render_body(purpose: TokenPurpose, action_link: str, ttl_seconds: int) -> str:
    hours, rem = divmod(ttl_seconds, 3600)
    ttl = f"{hours} hour{'s' if hours != 1 else ''}" if hours and not rem else f"{ttl_seconds // 60} minutes"
    return _BODIES[purpose].format(link=action_link, ttl=ttl)


class MailSender(Protocol):
    def send(self, to_email: str, purpose: TokenPurpose, action_link: str) -> None: ...


class LogMailSender:
    """Write outgoing mail to the log instead of delivering it."""

    def __init__(self, reveal_links: bool = False) -> None:
        self.reveal_links = reveal_links

    def send(self, to_email: str, purpose: TokenPurpose, action_link: str) -> None:
        if self.reveal_links:
            logger.info("Mail (%s) to %s: %s", purpose.value, to_email, action_link)
        else:
            logger.info("Mail (%s) to %s via %s", purpose.value, to_email, urlsplit(action_link).netloc)


class SmtpMailSender:
    def __init__(
        self,
        host: str,
        port: int,
        mail_from: str,
        username: str = "",
        password: str = "",
        use_tls: bool = True,
        timeout: int = 10,
        ttl_seconds: dict[TokenPurpose, int] | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.mail_from = mail_from
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout
        self.ttl_seconds = ttl_seconds or {}

    def send(self, to_email: str, purpose: TokenPurpose, action_link: str) -> None:
        msg = EmailMessage()
        msg["Subject"] = _SUBJECTS[purpose]
        msg["From"] = self.mail_from
        msg["To"] = to_email
        msg.set_content(render_body(purpose, action_link, self.ttl_seconds.get(purpose, 3600)))
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("SMTP delivery to %s failed: %s", self.host, exc.__class__.__name__)
            raise MailTransientFailure() from exc


class HttpMailSender:
    """POST {to, from, subject, text} as JSON to a mail provider's send endpoint."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        mail_from: str,
        timeout: int = 10,
        ttl_seconds: dict[TokenPurpose, int] | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.mail_from = mail_from
        self.timeout = timeout
        self.ttl_seconds = ttl_seconds or {}
        # Shared session for connection pooling. max_redirects=3 instead of
        # the requests default of 30 -- a mail API has no business redirecting.
        self._session = session or requests.Session()
        self._session.max_redirects = 3

    def send(self, to_email: str, purpose: TokenPurpose, action_link: str) -> None:
        payload = {
            "from": self.mail_from,
            "to": to_email,
            "subject": _SUBJECTS[purpose],
            "text": render_body(purpose, action_link, self.ttl_seconds.get(purpose, 3600)),
        }
        try:
            resp = self._session.post(
                self.api_url,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Mail API request failed: %s", exc.__class__.__name__)
            raise MailTransientFailure() from exc


def build_mail_sender(settings: Settings) -> MailSender:
    """Return the MailSender selected by MAIL_BACKEND."""
    ttl_seconds = {
        TokenPurpose.email_verification: settings.verification_token_ttl_seconds,
        TokenPurpose.password_reset: settings.reset_token_ttl_seconds,
    }
    if settings.mail_backend == "smtp":
        return SmtpMailSender(
            host=settings.smtp_host,
            port=settings.smtp_port,
            mail_from=settings.mail_from,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            timeout=settings.mail_timeout_seconds,
            ttl_seconds=ttl_seconds,
        )
    if settings.mail_backend == "http":
        if not settings.mail_api_url:
            raise ValueError("MAIL_API_URL is required when MAIL_BACKEND=http.")
        return HttpMailSender(
            api_url=settings.mail_api_url,
            api_key=settings.mail_api_key,
            mail_from=settings.mail_from,
            timeout=settings.mail_timeout_seconds,
            ttl_seconds=ttl_seconds,
        )
    return LogMailSender(reveal_links=settings.debug)
