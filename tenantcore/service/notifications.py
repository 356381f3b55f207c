from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable, Dict, Optional, Set, Tuple

from tenantcore.logging import get_logger

logger = get_logger(__name__)

Rendered = Tuple[str, str, str]


def _layout(title: str, body_html: str, action_url: str, action_label: str) -> str:
    action_url = html.escape(action_url, quote=True)
    return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {body_html}
        <p style="margin: 30px 0;">
            <a href="{action_url}" class="button">{action_label}</a>
        </p>
        <div class="footer">
            <p>If the button doesn't work, copy and paste this URL: {action_url}</p>
        </div>
    </div>
</body>
</html>
"""


def render_magic_link(data: Dict[str, Any]) -> Rendered:
    url = data["url"]
    minutes = data.get("expires_in_minutes", 15)
    subject = "Your sign-in link"
    body = (
        "<p>Click the button below to sign in. No password needed.</p>"
        f"<p>This link expires in {minutes} minutes and can be used once.</p>"
    )
    text = (
        "Sign in\n\nUse the link below to sign in:\n\n"
        f"{url}\n\nThis link expires in {minutes} minutes and can be used once.\n"
        "If you didn't request this, you can safely ignore this email.\n"
    )
    return subject, _layout("Sign in", body, url, "Sign in"), text


def render_tenant_invite(data: Dict[str, Any]) -> Rendered:
    url = data["url"]
    tenant_name = html.escape(data.get("tenant_name") or "a workspace")
    role_name = html.escape(data.get("role_name") or "member")
    inviter = html.escape(data.get("inviter_name") or "A teammate")
    message = data.get("message")
    subject = f"You've been invited to join {data.get('tenant_name') or 'a workspace'}"
    body = f"<p>{inviter} invited you to join <strong>{tenant_name}</strong> as {role_name}.</p>"
    if message:
        body += f"<blockquote>{html.escape(message)}</blockquote>"
    body += f"<p>This invitation expires in {data.get('expires_in_days', 7)} days.</p>"
    text = (
        f"{data.get('inviter_name') or 'A teammate'} invited you to join "
        f"{data.get('tenant_name') or 'a workspace'} as {data.get('role_name') or 'member'}.\n\n"
    )
    if message:
        text += f"\"{message}\"\n\n"
    text += f"Accept the invitation:\n\n{url}\n"
    return subject, _layout("You're invited", body, url, "Accept invitation"), text


def render_tenant_invite_resend(data: Dict[str, Any]) -> Rendered:
    subject, html_body, text = render_tenant_invite(data)
    return f"Reminder: {subject}", html_body, text


TEMPLATES: Dict[str, Callable[[Dict[str, Any]], Rendered]] = {
    "magic_link": render_magic_link,
    "tenant_invite": render_tenant_invite,
    "tenant_invite_resend": render_tenant_invite_resend,
}


class EmailService:
    """SMTP delivery for transactional templates.

    Falls back to logging when SMTP is not configured (dev mode).
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
        from_name: str = "TenantCore",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def send_template(self, template: str, to_email: str, data: Dict[str, Any]) -> bool:
        renderer = TEMPLATES.get(template)
        if renderer is None:
            raise ValueError(f"unknown notification template {template}")
        subject, html_body, text_body = renderer(data)
        return self._send_email(to_email, subject, html_body, text_body)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            # Dev mode: log the email instead of sending. Bodies carry live
            # links, so only the subject is logged.
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False


class NotificationDispatcher:
    """Fire-and-forget delivery of templated notifications.

    ``dispatch`` returns immediately. Delivery runs on a worker thread and
    its outcome is only logged; callers never observe a delivery failure.
    """

    def __init__(self, email: EmailService) -> None:
        self.email = email
        self._pending: Set[asyncio.Task] = set()

    def dispatch(self, template: str, to: str, data: Dict[str, Any]) -> None:
        if template not in TEMPLATES:
            raise ValueError(f"unknown notification template {template}")
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._deliver(template, to, data)
            return
        task = loop.create_task(asyncio.to_thread(self._deliver, template, to, data))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _deliver(self, template: str, to: str, data: Dict[str, Any]) -> None:
        try:
            sent = self.email.send_template(template, to, data)
        except Exception as exc:
            logger.error(
                "notification_delivery_error",
                template=template,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if not sent:
            logger.warning("notification_not_delivered", template=template)

    async def drain(self) -> None:
        """Wait for in-flight deliveries, used on shutdown."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
