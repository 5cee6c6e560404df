"""Tests for OTP email rendering and the SMTP sender."""

import smtplib
from unittest.mock import MagicMock, patch

from farmgate.logging import redact_email
from farmgate.service.email import EmailService, render_otp_email
from farmgate.service.runtime import get_runtime


class TestRenderOtpEmail:
    def test_confirmation_message(self):
        subject, html, text = render_otp_email("123456", "EmailConfirmation")

        assert subject == "Confirm Your Email - Farm Management System"
        assert "123456" in html
        assert "#2E7D32" in html
        assert "expire in 15 minutes" in text

    def test_password_reset_message(self):
        subject, html, _ = render_otp_email("654321", "PasswordReset", ttl_minutes=10)

        assert subject == "Reset Your Password - Farm Management System"
        assert "#D32F2F" in html
        assert "expire in 10 minutes" in html

    def test_unknown_purpose_uses_generic_template(self):
        subject, html, _ = render_otp_email("111111", "Other")
        assert subject == "Verification Code - Farm Management System"
        assert "111111" in html


class TestEmailService:
    def test_unconfigured_service_reports_undelivered(self):
        service = EmailService()
        assert service.is_configured is False

        with patch("farmgate.service.email.smtplib.SMTP") as smtp:
            assert (
                service.send_otp_email("grower@farm.io", "123456", "EmailConfirmation")
                is False
            )
            smtp.assert_not_called()

    def test_dev_fallback_logs_the_code(self):
        service = EmailService(dev_log_fallback=True)

        with patch("farmgate.service.email.logger") as mock_logger:
            assert service.send_otp_email("grower@farm.io", "123456", "EmailConfirmation")

        event, kwargs = mock_logger.info.call_args[0][0], mock_logger.info.call_args[1]
        assert event == "email_dev_mode"
        assert kwargs["to"] == "gr***@farm.io"
        assert "123456" in kwargs["body_preview"]

    def test_runtime_mailer_uses_dev_fallback_in_test_mode(self):
        assert get_runtime().email.dev_log_fallback is True

    def test_sends_over_starttls(self):
        service = EmailService(
            smtp_host="smtp.farm.io",
            smtp_user="mailer@farm.io",
            smtp_password="pw",
            from_email="noreply@farm.io",
        )
        server = MagicMock()
        with patch("farmgate.service.email.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value = server
            assert service.send_otp_email("grower@farm.io", "123456", "EmailConfirmation")

        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer@farm.io", "pw")
        sender, recipient, _ = server.sendmail.call_args[0]
        assert (sender, recipient) == ("noreply@farm.io", "grower@farm.io")

    def test_smtp_failure_returns_false(self):
        service = EmailService(smtp_host="smtp.farm.io", from_email="noreply@farm.io")
        with patch("farmgate.service.email.smtplib.SMTP") as smtp:
            smtp.side_effect = smtplib.SMTPConnectError(421, "busy")
            assert service.send_email("grower@farm.io", "subject", "<p>x</p>") is False

    def test_redacts_addresses(self):
        assert redact_email("grower@farm.io") == "gr***@farm.io"
        assert redact_email("not-an-address") == "redacted"
