from __future__ import annotations

import html
import smtplib
import ssl
from email.message import EmailMessage
from typing import List, Optional

from accountcore.config import Settings
from accountcore.logging import get_logger, sanitize_error_message

logger = get_logger(__name__)


def redact_address(email: str) -> str:
    if "@" not in (email or ""):
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailService:
    """SMTP sender for account-security mail.

    When no SMTP host is configured the message is logged instead of sent,
    which is the normal state for local development and tests.
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
        from_name: str = "Marketplace",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _render(
        self,
        title: str,
        paragraphs: List[str],
        *,
        action_url: Optional[str] = None,
        action_label: Optional[str] = None,
    ) -> tuple[str, str]:
        text_parts = [title, ""] + paragraphs
        html_parts = [f"<h1>{html.escape(title)}</h1>"]
        html_parts += [f"<p>{html.escape(p)}</p>" for p in paragraphs]
        if action_url:
            text_parts += ["", action_url]
            html_parts.append(
                f'<p><a href="{html.escape(action_url, quote=True)}">{html.escape(action_label or action_url)}</a></p>'
            )
        text_parts += ["", "---", self.from_name]
        html_body = (
            '<!DOCTYPE html><html><head><meta charset="utf-8"></head>'
            '<body style="font-family: sans-serif; line-height: 1.6;">'
            + "".join(html_parts)
            + f"<p style=\"font-size: 12px\">{html.escape(self.from_name)}</p></body></html>"
        )
        return html_body, "\n".join(text_parts)

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        """Send one message; False on any SMTP failure (already logged)."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_address(to_email),
                subject=subject,
                body_preview=text_body[:200],
            )
            return True

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.set_content(text_body)
        msg.add_alternative(html_body, subtype="html")

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.send_message(msg)
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.send_message(msg)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                to=redact_address(to_email),
                host=self.smtp_host,
                smtp_code=getattr(exc, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=redact_address(to_email))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=redact_address(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            return False

        logger.info("email_sent", to=redact_address(to_email), subject=subject)
        return True

    def send_email_verification(self, to_email: str, token: str, *, ttl_hours: int = 24) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        html_body, text_body = self._render(
            "Verify your email",
            [
                "Thanks for signing up! Please confirm your email address.",
                f"This link will expire in {ttl_hours} hours.",
            ],
            action_url=verify_url,
            action_label="Verify email",
        )
        return self._send_email(to_email, "Verify your email address", html_body, text_body)

    def send_password_reset(self, to_email: str, token: str, *, ttl_minutes: int = 60) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        html_body, text_body = self._render(
            "Reset your password",
            [
                "We received a request to reset your password.",
                f"This link will expire in {ttl_minutes} minutes.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            action_url=reset_url,
            action_label="Reset password",
        )
        return self._send_email(to_email, "Reset your password", html_body, text_body)

    def send_welcome(self, to_email: str, first_name: Optional[str] = None) -> bool:
        greeting = f"Welcome, {first_name}!" if first_name else "Welcome!"
        html_body, text_body = self._render(
            greeting,
            ["Your email address is verified and your account is ready to use."],
            action_url=self.base_url,
            action_label="Sign in",
        )
        return self._send_email(to_email, "Welcome aboard", html_body, text_body)

    def send_two_factor_enabled(self, to_email: str) -> bool:
        html_body, text_body = self._render(
            "Two-factor authentication enabled",
            [
                "Two-factor authentication is now enabled on your account.",
                "You will need a code from your authenticator app when signing in.",
                "If you didn't make this change, please contact support immediately.",
            ],
        )
        return self._send_email(to_email, "Two-factor authentication enabled", html_body, text_body)

    def send_account_locked(self, to_email: str, *, retry_after_seconds: int) -> bool:
        minutes = max(1, (retry_after_seconds + 59) // 60)
        html_body, text_body = self._render(
            "Your account was temporarily locked",
            [
                "We locked your account after several failed sign-in attempts.",
                f"You can try again in about {minutes} minutes.",
                "If this wasn't you, consider resetting your password.",
            ],
            action_url=f"{self.base_url}/forgot-password",
            action_label="Reset password",
        )
        return self._send_email(to_email, "Account temporarily locked", html_body, text_body)
