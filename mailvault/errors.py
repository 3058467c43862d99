#!/usr/bin/env python3

"""
errors.py

Exception taxonomy for mailvault.

Per-file errors are caught at the file boundary by the engines and turned into
outcomes; only errors raised while starting or enumerating an operation fail it.
"""

from __future__ import annotations

from typing import Optional


class MailVaultError(Exception):
    """Base class for all mailvault errors."""


class Unauthenticated(MailVaultError):
    """No usable access token. Terminal until an operator re-authenticates."""

    def __init__(self, principal: str, message: str = "re-authentication required"):
        super().__init__(f"{principal}: {message}")
        self.principal = principal


class AuthExchangeError(MailVaultError):
    """The identity provider rejected an authorization-code exchange."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RefreshError(AuthExchangeError):
    """The identity provider rejected a refresh-token grant."""


class TransportError(MailVaultError):
    """Network or HTTP failure talking to the cloud store."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ChunkUploadExhausted(TransportError):
    """A chunk kept failing after every retry attempt."""

    def __init__(self, start: int, end: int, attempts: int, last_error: Optional[BaseException] = None):
        super().__init__(f"chunk bytes {start}-{end} failed after {attempts} attempts: {last_error}")
        self.start = start
        self.end = end
        self.attempts = attempts
        self.last_error = last_error


class ChecksumMismatchUnresolved(MailVaultError):
    """Checksum could not be compared. Logged and swallowed by reconciliation."""


class PurgeEligibilityViolation(MailVaultError):
    """A file failed a purge safety check."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class InvalidAlertTransition(MailVaultError):
    """An alert status change outside the allowed transition graph."""

    def __init__(self, alert_id: int, current: str, target: str):
        super().__init__(f"alert {alert_id}: cannot move from {current} to {target}")
        self.alert_id = alert_id
        self.current = current
        self.target = target


class MailboxLocked(MailVaultError):
    """Another operation holds the lease on this mailbox."""

    def __init__(self, mailbox: str, owner: Optional[str] = None):
        super().__init__(f"mailbox {mailbox} is locked by {owner or 'another operation'}")
        self.mailbox = mailbox
        self.owner = owner
