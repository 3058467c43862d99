#!/usr/bin/env python3

"""
notifier.py

Alert notifications. Sends an email over SMTP when a host and recipients are
configured, otherwise only logs the message. Failures are logged, never raised.
"""

from __future__ import annotations

import smtplib
from email.message import EmailMessage

from mailvault.config import Settings
from mailvault.logger import get_logger
from mailvault.models import MailboxAlert
from mailvault.utils import format_bytes


def format_alert(alert: MailboxAlert) -> tuple[str, str]:
    subject = f"[mailvault] {alert.alert_type.value.replace('_', ' ')}: {alert.mailbox}"
    body = (
        f"Mailbox {alert.mailbox} is at {alert.usage_percent}% of its threshold.\n"
        f"Current size: {format_bytes(alert.current_size_bytes)}\n"
        f"Threshold: {format_bytes(alert.threshold_bytes)}\n"
        f"Alert id: {alert.id}\n"
    )
    if alert.alert_type.value == "purge_required":
        body += "\nThe mailbox is over its threshold. Run purge-old after verifying backups.\n"
    return subject, body


class Notifier:

    def __init__(self, settings: Settings):
        self.settings = settings
        self.logger = get_logger(__name__)

    def send(self, alert: MailboxAlert) -> bool:
        subject, body = format_alert(alert)
        recipients = list(self.settings.alert_recipients)

        if not self.settings.smtp_host or not recipients:
            self.logger.warning(f"[ALERT] {subject} ({alert.usage_percent}%)")
            return True

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.settings.smtp_from
        msg["To"] = ", ".join(recipients)
        msg.set_content(body)

        try:
            with smtplib.SMTP(self.settings.smtp_host, self.settings.smtp_port, timeout=30) as s:
                if self.settings.smtp_starttls:
                    s.starttls()
                if self.settings.smtp_user and self.settings.smtp_password:
                    s.login(self.settings.smtp_user, self.settings.smtp_password)
                s.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            self.logger.error(f"Failed to send alert notification for {alert.mailbox}: {e}")
            return False

        self.logger.info(f"Alert notification sent for {alert.mailbox} to {len(recipients)} recipient(s)")
        return True
