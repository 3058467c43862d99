#!/usr/bin/env python3

"""
alerts.py

Mailbox size alerts.

Severity by usage (current / threshold * 100), with the configured bands:
    < warning          no alert
    < critical         size_warning
    < 100              size_critical
    >= 100             purge_required

Lifecycle:
    active -> acknowledged -> resolved
    active -> resolved
    active | acknowledged -> ignored
    resolved | ignored -> active

A mailbox has at most one alert in active/acknowledged at any time. A repeat
breach updates that alert in place.
"""

from __future__ import annotations

import sqlite3
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from mailvault import db
from mailvault.config import Settings
from mailvault.errors import InvalidAlertTransition
from mailvault.logger import get_logger
from mailvault.models import AlertStatus, AlertType, MailboxAlert
from mailvault.notifier import Notifier

TRANSITIONS: Dict[AlertStatus, FrozenSet[AlertStatus]] = {
    AlertStatus.ACTIVE: frozenset({AlertStatus.ACKNOWLEDGED, AlertStatus.RESOLVED, AlertStatus.IGNORED}),
    AlertStatus.ACKNOWLEDGED: frozenset({AlertStatus.RESOLVED, AlertStatus.IGNORED}),
    AlertStatus.RESOLVED: frozenset({AlertStatus.ACTIVE}),
    AlertStatus.IGNORED: frozenset({AlertStatus.ACTIVE}),
}


class CheckOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    RESOLVED = "resolved"
    NONE = "none"


def classify(current_bytes: int, threshold_bytes: int, warning_pct: float = 80.0,
             critical_pct: float = 95.0) -> Optional[AlertType]:
    if threshold_bytes <= 0:
        return None
    usage = current_bytes / threshold_bytes * 100
    if usage < warning_pct:
        return None
    if usage < critical_pct:
        return AlertType.SIZE_WARNING
    if usage < 100:
        return AlertType.SIZE_CRITICAL
    return AlertType.PURGE_REQUIRED


class AlertEngine:

    def __init__(self, settings: Settings, notifier: Optional[Notifier] = None):
        self.settings = settings
        self.notifier = notifier or Notifier(settings)
        self.logger = get_logger(__name__)

    def classify(self, current_bytes: int, threshold_bytes: int) -> Optional[AlertType]:
        return classify(current_bytes, threshold_bytes, self.settings.warning_pct, self.settings.critical_pct)

    def get(self, alert_id: int) -> MailboxAlert:
        row = db.get_alert(self.settings.db_path, alert_id)
        if row is None:
            raise KeyError(f"Alert {alert_id} not found")
        return MailboxAlert.from_row(row)

    def open_alert(self, mailbox: str) -> Optional[MailboxAlert]:
        row = db.find_open_alert(self.settings.db_path, mailbox)
        return MailboxAlert.from_row(row) if row else None

    def list(self, mailbox: Optional[str] = None, status: Optional[AlertStatus] = None) -> List[MailboxAlert]:
        rows = db.fetch_alerts(self.settings.db_path, mailbox, status.value if status else None)
        return [MailboxAlert.from_row(r) for r in rows]

    def check_mailbox(
            self,
            mailbox: str,
            size_bytes: int,
            threshold_bytes: int,
            alert: bool = True,
            resolve: bool = True,
    ) -> CheckOutcome:
        alert_type = self.classify(size_bytes, threshold_bytes)
        existing = self.open_alert(mailbox)

        if alert_type is None:
            if existing is not None and resolve:
                usage = round(size_bytes / threshold_bytes * 100, 2) if threshold_bytes else 0
                db.set_alert_status(self.settings.db_path, existing.id, AlertStatus.RESOLVED.value,
                                    notes=f"Automatically resolved at {usage}% usage", size_bytes=size_bytes)
                self.logger.info(f"Resolved alert {existing.id} for {mailbox} ({usage}%)")
                return CheckOutcome.RESOLVED
            return CheckOutcome.NONE

        if existing is not None:
            db.update_alert_breach(self.settings.db_path, existing.id, size_bytes, threshold_bytes, alert_type.value)
            self.logger.debug(f"Updated alert {existing.id} for {mailbox}: {alert_type.value}")
            return CheckOutcome.UPDATED

        if not alert:
            return CheckOutcome.NONE

        try:
            alert_id = db.create_alert(self.settings.db_path, mailbox, size_bytes, threshold_bytes, alert_type.value)
        except sqlite3.IntegrityError:
            # Another check opened one first; fold into it
            existing = self.open_alert(mailbox)
            if existing is None:
                raise
            db.update_alert_breach(self.settings.db_path, existing.id, size_bytes, threshold_bytes, alert_type.value)
            return CheckOutcome.UPDATED

        created = self.get(alert_id)
        self.logger.warning(f"New {alert_type.value} alert for {mailbox} ({created.usage_percent}%)")
        self._notify(created)
        return CheckOutcome.CREATED

    def _notify(self, alert: MailboxAlert) -> None:
        try:
            self.notifier.send(alert)
        except Exception as e:
            self.logger.error(f"Notifier failed for alert {alert.id}: {e}")

    # ------------------------------------------------------------------
    # Operator transitions
    # ------------------------------------------------------------------
    def transition(
            self,
            alert_id: int,
            target: AlertStatus,
            acknowledged_by: Optional[str] = None,
            notes: Optional[str] = None,
    ) -> MailboxAlert:
        current = self.get(alert_id)
        if target not in TRANSITIONS[current.status]:
            raise InvalidAlertTransition(alert_id, current.status.value, target.value)
        if target == AlertStatus.ACTIVE:
            other = self.open_alert(current.mailbox)
            if other is not None and other.id != alert_id:
                raise InvalidAlertTransition(alert_id, current.status.value, target.value)
        db.set_alert_status(self.settings.db_path, alert_id, target.value, acknowledged_by=acknowledged_by,
                            notes=notes)
        self.logger.info(f"Alert {alert_id} ({current.mailbox}): {current.status.value} -> {target.value}")
        return self.get(alert_id)

    def acknowledge(self, alert_id: int, acknowledged_by: str, notes: Optional[str] = None) -> MailboxAlert:
        return self.transition(alert_id, AlertStatus.ACKNOWLEDGED, acknowledged_by=acknowledged_by, notes=notes)

    def resolve(self, alert_id: int, notes: Optional[str] = None) -> MailboxAlert:
        return self.transition(alert_id, AlertStatus.RESOLVED, notes=notes)

    def ignore(self, alert_id: int, notes: Optional[str] = None) -> MailboxAlert:
        return self.transition(alert_id, AlertStatus.IGNORED, notes=notes)

    def reopen(self, alert_id: int, notes: Optional[str] = None) -> MailboxAlert:
        return self.transition(alert_id, AlertStatus.ACTIVE, notes=notes)
