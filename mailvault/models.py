#!/usr/bin/env python3

"""
models.py

Typed records and value objects shared across mailvault.

Rows coming out of sqlite and JSON coming back from Graph are converted into
these dataclasses at the boundary so the engines never handle loose dicts.
"""

from __future__ import annotations

import datetime
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from mailvault.errors import TransportError
from mailvault.utils import from_iso


class BackupStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PURGED = "purged"


class AlertType(str, Enum):
    SIZE_WARNING = "size_warning"
    SIZE_CRITICAL = "size_critical"
    PURGE_REQUIRED = "purge_required"


class AlertStatus(str, Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    IGNORED = "ignored"


OPEN_ALERT_STATUSES = (AlertStatus.ACTIVE, AlertStatus.ACKNOWLEDGED)


class OperationType(str, Enum):
    INITIAL_BACKUP = "initial_backup"
    SYNC_NEW = "sync_new"
    FORCE_SYNC = "force_sync"
    PURGE = "purge"
    SIZE_CHECK = "size_check"
    RESTORE = "restore"


class OperationStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"


class ReconcileOutcome(str, Enum):
    REPAIRED = "repaired"
    UPDATED = "updated"
    VERIFIED = "verified"
    FAILED = "failed"


class PurgeOutcome(str, Enum):
    PURGED = "purged"
    WOULD_PURGE = "would_purge"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class FileDescriptor:
    path: Path
    size: int
    modified_time: datetime.datetime
    mailbox: str

    @property
    def source_path(self) -> str:
        return str(self.path)


@dataclass(frozen=True)
class RemoteItem:
    id: str
    path: str
    size: int
    checksum: Optional[str] = None

    @classmethod
    def from_response(cls, payload: Any, path: str, algorithm: str = "sha1") -> RemoteItem:
        """Validate a Graph driveItem response; an item without an id is a transport error."""
        if not isinstance(payload, dict) or not payload.get("id"):
            raise TransportError(f"Malformed drive item response for {path}")
        hashes = (payload.get("file") or {}).get("hashes") or {}
        return cls(
            id=str(payload["id"]),
            path=path,
            size=int(payload.get("size") or 0),
            checksum=_pick_hash(hashes, algorithm),
        )


@dataclass(frozen=True)
class RemoteMetadata:
    id: str
    name: str
    size: int
    hashes: Dict[str, str] = field(default_factory=dict)
    last_modified: Optional[datetime.datetime] = None

    @classmethod
    def from_response(cls, payload: Any, path: str) -> RemoteMetadata:
        if not isinstance(payload, dict) or not payload.get("id"):
            raise TransportError(f"Malformed metadata response for {path}")
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name") or ""),
            size=int(payload.get("size") or 0),
            hashes=dict((payload.get("file") or {}).get("hashes") or {}),
            last_modified=from_iso(payload.get("lastModifiedDateTime")),
        )

    def checksum(self, algorithm: str = "sha1") -> Optional[str]:
        return _pick_hash(self.hashes, algorithm)


def _pick_hash(hashes: Dict[str, Any], algorithm: str) -> Optional[str]:
    value = hashes.get(f"{algorithm}Hash")
    return str(value).lower() if value else None


@dataclass(frozen=True)
class OAuthToken:
    principal: str
    provider: str
    access_token: str
    refresh_token: Optional[str]
    expires_at: datetime.datetime
    scopes: str = ""
    token_type: str = "Bearer"

    def is_valid(self, now: datetime.datetime, skew: int = 0) -> bool:
        return now < self.expires_at - datetime.timedelta(seconds=skew)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> OAuthToken:
        return cls(
            principal=row["principal"],
            provider=row["provider"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=from_iso(row["expires_at"]),
            scopes=row["scopes"] or "",
            token_type=row["token_type"] or "Bearer",
        )


@dataclass(frozen=True)
class BackupRecord:
    source_path: str
    mailbox: str
    cloud_path: Optional[str]
    status: BackupStatus
    size: int
    checksum: Optional[str]
    retry_count: int
    error_message: Optional[str]
    last_verified_at: Optional[datetime.datetime]
    created_at: Optional[datetime.datetime]
    updated_at: Optional[datetime.datetime]

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> BackupRecord:
        return cls(
            source_path=row["source_path"],
            mailbox=row["mailbox"],
            cloud_path=row["cloud_path"],
            status=BackupStatus(row["status"]),
            size=row["size"] or 0,
            checksum=row["checksum"],
            retry_count=row["retry_count"] or 0,
            error_message=row["error_message"],
            last_verified_at=from_iso(row["last_verified_at"]),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )


@dataclass(frozen=True)
class MailboxAlert:
    id: int
    mailbox: str
    current_size_bytes: int
    threshold_bytes: int
    alert_type: AlertType
    status: AlertStatus
    acknowledged_by: Optional[str]
    acknowledged_at: Optional[datetime.datetime]
    resolved_at: Optional[datetime.datetime]
    alert_date: Optional[datetime.datetime]
    notes: Optional[str]

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_ALERT_STATUSES

    @property
    def usage_percent(self) -> float:
        if self.threshold_bytes <= 0:
            return 0.0
        return round(self.current_size_bytes / self.threshold_bytes * 100, 2)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> MailboxAlert:
        return cls(
            id=row["id"],
            mailbox=row["mailbox"],
            current_size_bytes=row["current_size_bytes"],
            threshold_bytes=row["threshold_bytes"],
            alert_type=AlertType(row["alert_type"]),
            status=AlertStatus(row["status"]),
            acknowledged_by=row["acknowledged_by"],
            acknowledged_at=from_iso(row["acknowledged_at"]),
            resolved_at=from_iso(row["resolved_at"]),
            alert_date=from_iso(row["alert_date"]),
            notes=row["notes"],
        )


@dataclass(frozen=True)
class BackupResult:
    success: bool
    cloud_path: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False


@dataclass
class BatchCounts:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0

    def add(self, other: BatchCounts) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.skipped += other.skipped


@dataclass(frozen=True)
class OperationResult:
    operation: OperationType
    total: int
    succeeded: int
    failed: int
    log_id: int
    status: OperationStatus
    details: Dict[str, Any] = field(default_factory=dict)
