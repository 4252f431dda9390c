from __future__ import annotations

import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from html import escape
from typing import Optional

from credvault.logging import get_logger

logger = get_logger(__name__)

_SMTP_TIMEOUT_SECONDS = 30


@dataclass(frozen=True)
class _LinkMail:
    subject: str
    heading: str
    intro: str
    action: str
    outro: str
    path: str


_VERIFICATION = _LinkMail(
    subject="Verify your {product} email",
    heading="Confirm your email address",
    intro="Thanks for signing up. Confirm this address to finish setting up your account.",
    action="Verify email",
    outro="If you did not create an account you can ignore this message.",
    path="/verify-email/{token}",
)

_PASSWORD_RESET = _LinkMail(
    subject="Reset your {product} password",
    heading="Choose a new password",
    intro="Someone (hopefully you) asked to reset the password for this account.",
    action="Reset password",
    outro="If you did not ask for this, your password stays unchanged.",
    path="/reset-password/{token}",
)


def redact_address(address: str) -> str:
    local, sep, domain = address.partition("@")
    return f"{local[:2]}***@{domain}" if sep else "redacted"


class EmailService:
    """Sends verification and password reset links over SMTP.

    Without ``smtp_host``/``from_email`` the service only logs that a mail
    would have gone out; the link itself is never logged. Send methods return
    False on delivery failure instead of raising.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Credvault",
        base_url: Optional[str] = None,
        link_ttl_minutes: int = 20,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.link_ttl_minutes = link_ttl_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def send_email_verification(self, to_email: str, token: str, *, name: Optional[str] = None) -> bool:
        return self._send_link(_VERIFICATION, to_email, token, name)

    def send_password_reset(self, to_email: str, token: str, *, name: Optional[str] = None) -> bool:
        return self._send_link(_PASSWORD_RESET, to_email, token, name)

    def build_message(self, mail: _LinkMail, to_email: str, token: str, name: Optional[str]) -> EmailMessage:
        url = self.base_url + mail.path.format(token=token)
        greeting = f"Hi {name or 'there'},"
        expiry = f"The link expires in {self.link_ttl_minutes} minutes."

        msg = EmailMessage()
        msg["Subject"] = mail.subject.format(product=self.from_name)
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.set_content(
            f"{greeting}\n\n{mail.intro}\n\n{url}\n\n{expiry}\n\n{mail.outro}\n\n-- \n{self.from_name}\n"
        )
        msg.add_alternative(
            "<!DOCTYPE html><html><body style=\"font-family: sans-serif; color: #1f2933;\">"
            f"<h1>{escape(mail.heading)}</h1>"
            f"<p>{escape(greeting)}</p>"
            f"<p>{escape(mail.intro)}</p>"
            f"<p><a href=\"{escape(url)}\" style=\"background: #2f6fdf; color: #fff; padding: 12px 24px;"
            f" border-radius: 8px; text-decoration: none;\">{escape(mail.action)}</a></p>"
            f"<p>{escape(expiry)}</p>"
            f"<p>{escape(mail.outro)}</p>"
            f"<p style=\"font-size: 12px; color: #5b6470;\">{escape(url)}</p>"
            "</body></html>",
            subtype="html",
        )
        return msg

    def _send_link(self, mail: _LinkMail, to_email: str, token: str, name: Optional[str]) -> bool:
        subject = mail.subject.format(product=self.from_name)
        if not self.is_configured:
            logger.info("email_dev_mode", to=redact_address(to_email), subject=subject)
            return True
        msg = self.build_message(mail, to_email, token, name)
        try:
            self._deliver(msg)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", host=self.smtp_host, smtp_code=exc.smtp_code)
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=redact_address(to_email))
            return False
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error", host=self.smtp_host, error_type=type(exc).__name__, error=str(exc)
            )
            return False
        except (ssl.SSLError, OSError) as exc:
            logger.error(
                "email_transport_error",
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("email_sent", to=redact_address(to_email), subject=subject)
        return True

    def _deliver(self, msg: EmailMessage) -> None:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=_SMTP_TIMEOUT_SECONDS)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=_SMTP_TIMEOUT_SECONDS
            )
        with server:
            if self.smtp_use_tls:
                server.starttls(context=context)
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
            server.send_message(msg)
