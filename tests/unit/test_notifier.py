#!/usr/bin/env python3
"""
Unit tests for notifier.py module.
"""

import smtplib
from dataclasses import replace

import pytest

from mailvault.config import MIB
from mailvault.models import AlertStatus, AlertType, MailboxAlert
from mailvault.notifier import Notifier, format_alert


@pytest.fixture
def alert():
    return MailboxAlert(
        id=7,
        mailbox="alice",
        current_size_bytes=1200 * MIB,
        threshold_bytes=1000 * MIB,
        alert_type=AlertType.PURGE_REQUIRED,
        status=AlertStatus.ACTIVE,
        acknowledged_by=None,
        acknowledged_at=None,
        resolved_at=None,
        alert_date=None,
        notes=None,
    )


@pytest.fixture
def smtp_settings(test_settings):
    return replace(test_settings, smtp_host="smtp.example.com", alert_recipients=("ops@example.com",),
                   smtp_user="u", smtp_password="p")


class TestFormatAlert:
    """Tests for format_alert."""

    def test_subject_and_body(self, alert):
        subject, body = format_alert(alert)
        assert subject == "[mailvault] purge required: alice"
        assert "120.0%" in body
        assert "purge-old" in body


class TestNotifier:
    """Tests for Notifier.send."""

    def test_unconfigured_only_logs(self, test_settings, alert, mocker):
        smtp = mocker.patch("mailvault.notifier.smtplib.SMTP")
        assert Notifier(test_settings).send(alert) is True
        smtp.assert_not_called()

    def test_sends_mail(self, smtp_settings, alert, mocker):
        smtp = mocker.patch("mailvault.notifier.smtplib.SMTP")
        conn = smtp.return_value.__enter__.return_value

        assert Notifier(smtp_settings).send(alert) is True

        smtp.assert_called_once_with("smtp.example.com", 587, timeout=30)
        conn.starttls.assert_called_once()
        conn.login.assert_called_once_with("u", "p")
        msg = conn.send_message.call_args[0][0]
        assert msg["To"] == "ops@example.com"
        assert msg["Subject"] == "[mailvault] purge required: alice"

    def test_smtp_failure_returns_false(self, smtp_settings, alert, mocker):
        smtp = mocker.patch("mailvault.notifier.smtplib.SMTP")
        smtp.return_value.__enter__.return_value.send_message.side_effect = smtplib.SMTPException("refused")

        assert Notifier(smtp_settings).send(alert) is False
