from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum
from typing import Optional

from tasknest.logging import get_logger, redact_email

logger = get_logger(__name__)


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    SKIPPED = "skipped"
    FAILED = "failed"


_CODE_EMAIL_HTML = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 32px; letter-spacing: 8px; font-weight: 700; color: #2563eb; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        <p>{intro}</p>
        <p class="code">{code}</p>
        <p>This code expires in {ttl_minutes} minutes.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        <div class="footer">
            <p>{app_name}</p>
        </div>
    </div>
</body>
</html>
"""

_CODE_EMAIL_TEXT = """{heading}

{intro}

    {code}

This code expires in {ttl_minutes} minutes.

If you didn't request this, you can safely ignore this email.

---
{app_name}
"""


class EmailService:
    """Outbound mail for verification and password-reset codes.

    Built once by the runtime and handed to the services that need it.
    When no SMTP host is configured the message is logged instead of sent
    and the send is reported as ``skipped``.
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
        from_name: str = "TaskNest",
        timeout: float = 30,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _build_message(
        self, to_email: str, subject: str, text_body: str, html_body: Optional[str]
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        if html_body:
            msg.attach(MIMEText(html_body, "html"))
        return msg

    def _deliver(self, to_email: str, msg: MIMEMultipart) -> None:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        else:
            with smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
            ) as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())

    def send(
        self,
        to_email: str,
        subject: str,
        text_body: str,
        html_body: Optional[str] = None,
    ) -> DeliveryStatus:
        """Send one message. Never raises; failures are logged and reported."""
        if not self.is_configured:
            # Dev mode: the body (and any code in it) only reaches the server log
            logger.info(
                "email_dev_mode",
                recipient=redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200],
            )
            return DeliveryStatus.SKIPPED

        try:
            msg = self._build_message(to_email, subject, text_body, html_body)
            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                recipient=redact_email(to_email),
            )
            self._deliver(to_email, msg)
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                recipient=redact_email(to_email),
                host=self.smtp_host,
                smtp_code=getattr(e, "smtp_code", None),
            )
            return DeliveryStatus.FAILED
        except smtplib.SMTPConnectError as e:
            logger.error(
                "email_connect_failed",
                recipient=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return DeliveryStatus.FAILED
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", recipient=redact_email(to_email))
            return DeliveryStatus.FAILED
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                recipient=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return DeliveryStatus.FAILED
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                recipient=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return DeliveryStatus.FAILED
        except OSError as e:
            # Includes timeouts and refused connections
            logger.error(
                "email_network_error",
                recipient=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return DeliveryStatus.FAILED

        logger.info("email_sent", recipient=redact_email(to_email), subject=subject)
        return DeliveryStatus.DELIVERED

    def _send_code(
        self, to_email: str, *, subject: str, heading: str, intro: str, code: str, ttl_minutes: int
    ) -> DeliveryStatus:
        values = {
            "heading": heading,
            "intro": intro,
            "code": code,
            "ttl_minutes": ttl_minutes,
            "app_name": self.from_name,
        }
        return self.send(
            to_email,
            subject,
            _CODE_EMAIL_TEXT.format(**values),
            _CODE_EMAIL_HTML.format(**values),
        )

    def send_verification_code(
        self, to_email: str, code: str, *, ttl_minutes: int = 5
    ) -> DeliveryStatus:
        return self._send_code(
            to_email,
            subject=f"Verify your {self.from_name} account",
            heading="Verify your email",
            intro="Thanks for signing up! Enter this code to confirm your email address:",
            code=code,
            ttl_minutes=ttl_minutes,
        )

    def send_password_reset_code(
        self, to_email: str, code: str, *, ttl_minutes: int = 10
    ) -> DeliveryStatus:
        return self._send_code(
            to_email,
            subject=f"Reset your {self.from_name} password",
            heading="Reset your password",
            intro="We received a request to reset your password. Enter this code to choose a new one:",
            code=code,
            ttl_minutes=ttl_minutes,
        )
