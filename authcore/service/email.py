from __future__ import annotations

import asyncio
import html
import re
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum
from typing import Mapping, Optional

from authcore.logging import get_logger
from authcore.service.errors import ResponseCode
from authcore.service.results import Result

logger = get_logger(__name__)


class EmailTemplate(str, Enum):
    VERIFY_EMAIL = "verify_email"
    RESET_PASSWORD = "reset_password"
    SET_NEW_PASSWORD = "set_new_password"
    VERIFY_LOGIN = "verify_login"
    NOTIFICATION = "notification"
    CONTACT_SUPPORT = "contact_support"
    CONTACT_SUPPORT_SUCCESS = "contact_support_success"


_HEADER = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .button { display: inline-block; background: #10a37f; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }
        .code { font-size: 32px; letter-spacing: 8px; font-weight: 700; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
    </style>
</head>
<body>
    <div class="container">
"""

_FOOTER = """        <div class="footer">
            <p>{{app_name}}</p>
            <p>If you didn't request this, you can safely ignore this email.</p>
        </div>
    </div>
</body>
</html>
"""

# (html body, text body) per template; wrapped in the shared header and footer
_TEMPLATES: dict[EmailTemplate, tuple[str, str]] = {
    EmailTemplate.VERIFY_EMAIL: (
        """        <h1>Verify your email</h1>
        <p>Thanks for signing up! Please verify your email address by clicking the button below:</p>
        <p style="margin: 30px 0;"><a href="{{link}}" class="button">Verify Email</a></p>
        <p>If the button doesn't work, copy and paste this URL: {{link}}</p>
""",
        """Verify your email

Thanks for signing up! Please verify your email address by visiting the link below:

{{link}}
""",
    ),
    EmailTemplate.RESET_PASSWORD: (
        """        <h1>Reset your password</h1>
        <p>We received a request to reset your password. Click the button below to choose a new password:</p>
        <p style="margin: 30px 0;"><a href="{{link}}" class="button">Reset Password</a></p>
        <p>If the button doesn't work, copy and paste this URL: {{link}}</p>
""",
        """Reset your password

We received a request to reset your password. Visit the link below to choose a new password:

{{link}}
""",
    ),
    EmailTemplate.SET_NEW_PASSWORD: (
        """        <h1>Set your password</h1>
        <p>An account has been created for you. Click the button below to choose your password:</p>
        <p style="margin: 30px 0;"><a href="{{link}}" class="button">Set Password</a></p>
        <p>If the button doesn't work, copy and paste this URL: {{link}}</p>
""",
        """Set your password

An account has been created for you. Visit the link below to choose your password:

{{link}}
""",
    ),
    EmailTemplate.VERIFY_LOGIN: (
        """        <h1>Your login code</h1>
        <p>Use the code below to finish signing in. It expires in {{expires_minutes}} minutes.</p>
        <p class="code">{{code}}</p>
""",
        """Your login code

Use the code below to finish signing in. It expires in {{expires_minutes}} minutes.

{{code}}
""",
    ),
    EmailTemplate.NOTIFICATION: (
        """        <h1>{{title}}</h1>
        <p>{{content}}</p>
        <p style="margin: 30px 0;"><a href="{{link}}" class="button">Open notifications</a></p>
""",
        """{{title}}

{{content}}

{{link}}
""",
    ),
    EmailTemplate.CONTACT_SUPPORT: (
        """        <h1>Support request #{{request_id}}</h1>
        <p>From: {{first_name}} {{last_name}} &lt;{{email}}&gt;</p>
        <p>Subject: {{subject}}</p>
        <p style="white-space: pre-wrap;">{{message}}</p>
""",
        """Support request #{{request_id}}

From: {{first_name}} {{last_name}} <{{email}}>
Subject: {{subject}}

{{message}}
""",
    ),
    EmailTemplate.CONTACT_SUPPORT_SUCCESS: (
        """        <h1>We received your message</h1>
        <p>Hi {{first_name}}, thanks for getting in touch. Our team will reply to this address soon.</p>
        <p>Subject: {{subject}}</p>
        <p>Need us sooner? Call {{support_phone}}.</p>
""",
        """We received your message

Hi {{first_name}}, thanks for getting in touch. Our team will reply to this address soon.

Subject: {{subject}}

Need us sooner? Call {{support_phone}}.
""",
    ),
}

_PLACEHOLDER = re.compile(r"{{(\w+)}}")


def render_template(template: str, data: Mapping[str, object], *, escape: bool = False) -> str:
    """Replace ``{{key}}`` placeholders; unknown keys render as empty strings.

    With ``escape`` the values are HTML-escaped, for templates that carry
    user-supplied text.
    """

    def _value(match: re.Match) -> str:
        value = str(data.get(match.group(1), "") or "")
        return html.escape(value) if escape else value

    return _PLACEHOLDER.sub(_value, template)


class EmailService:
    """Transactional email over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Templated verification, reset, onboarding, login-code, notification
      and support emails
    - Fallback to logging when not configured and ``dev_mode`` is set; an
      unconfigured production sender reports every send as failed
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
        from_name: str = "AuthCore",
        base_url: Optional[str] = None,
        dev_mode: bool = False,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.dev_mode = dev_mode

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def link(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def render(
        self, template: EmailTemplate, data: Mapping[str, object]
    ) -> tuple[str, str]:
        html_body, text_body = _TEMPLATES[EmailTemplate(template)]
        merged = {"app_name": self.from_name, **data}
        html_out = render_template(_HEADER + html_body + _FOOTER, merged, escape=True)
        text = render_template(text_body + "\n---\n{{app_name}}\n", merged)
        return html_out, text

    async def send(
        self,
        template: EmailTemplate,
        to: str,
        subject: str,
        data: Mapping[str, object],
    ) -> Result[None]:
        """Render and deliver ``template``; FAILED_DEPENDENCY when delivery fails."""
        html_body, text_body = self.render(template, data)
        sent = await asyncio.to_thread(self._send_email, to, subject, html_body, text_body)
        if not sent:
            return Result.failure(ResponseCode.FAILED_DEPENDENCY, template=template.value)
        return Result.success()

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
            if not self.dev_mode:
                logger.error(
                    "email_not_configured", to=self._redact_email(to_email), subject=subject
                )
                return False
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
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
                smtp_code=getattr(e, "smtp_code", None),
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
            # Covers connection refusal and socket timeouts
            logger.error(
                "email_transport_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
