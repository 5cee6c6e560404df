from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from farmgate.logging import get_logger, redact_email
from farmgate.storage.models import OtpPurpose

logger = get_logger(__name__)

_OTP_SUBJECTS = {
    OtpPurpose.EMAIL_CONFIRMATION.value: "Confirm Your Email - Farm Management System",
    OtpPurpose.PASSWORD_RESET.value: "Reset Your Password - Farm Management System",
}
_DEFAULT_OTP_SUBJECT = "Verification Code - Farm Management System"


def _code_block(code: str, color: str) -> str:
    return (
        f"<h3 style='color: {color}; font-size: 24px; letter-spacing: 3px;'>{code}</h3>"
    )


def render_otp_email(code: str, purpose: str, *, ttl_minutes: int = 15) -> tuple[str, str, str]:
    """Return (subject, html_body, text_body) for a one-time code message."""
    subject = _OTP_SUBJECTS.get(purpose, _DEFAULT_OTP_SUBJECT)
    expiry = f"<p>This code will expire in {ttl_minutes} minutes.</p>"
    if purpose == OtpPurpose.EMAIL_CONFIRMATION.value:
        html_body = (
            "<h2>Welcome to Farm Management System!</h2>"
            "<p>Please confirm your email address by using the following verification code:</p>"
            f"{_code_block(code, '#2E7D32')}{expiry}"
            "<p>If you didn't create an account, please ignore this email.</p>"
        )
    elif purpose == OtpPurpose.PASSWORD_RESET.value:
        html_body = (
            "<h2>Password Reset Request</h2>"
            "<p>You requested to reset your password. Use the following verification code:</p>"
            f"{_code_block(code, '#D32F2F')}{expiry}"
            "<p>If you didn't request this, please ignore this email.</p>"
        )
    else:
        html_body = (
            "<h2>Verification Code</h2>"
            "<p>Your verification code is:</p>"
            f"{_code_block(code, '#1976D2')}{expiry}"
        )
    text_body = (
        f"{subject}\n\nYour verification code is: {code}\n\n"
        f"This code will expire in {ttl_minutes} minutes.\n"
    )
    return subject, html_body, text_body


class EmailService:
    """Outbound mail for verification codes.

    Without SMTP settings nothing is sent: messages are logged when
    ``dev_log_fallback`` is set and reported undelivered otherwise.
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
        from_name: str = "Farm Management System",
        otp_ttl_minutes: int = 15,
        dev_log_fallback: bool = False,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.otp_ttl_minutes = otp_ttl_minutes
        self.dev_log_fallback = dev_log_fallback

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def send_email(
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
            if not self.dev_log_fallback:
                logger.warning(
                    "email_not_configured", to=redact_email(to_email), subject=subject
                )
                return False
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
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

            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=redact_email(to_email),
            )

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

            logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_otp_email(self, to_email: str, code: str, purpose: str) -> bool:
        subject, html_body, text_body = render_otp_email(
            code, purpose, ttl_minutes=self.otp_ttl_minutes
        )
        return self.send_email(to_email, subject, html_body, text_body)
