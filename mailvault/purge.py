#!/usr/bin/env python3

"""
purge.py

Safe deletion of local mail that is already backed up.

A file is deleted only when all of these hold at deletion time:
(a) it is older than the retention cutoff
(b) its backup record is `completed`
(c) the cloud store confirms the object exists

Dry-run runs the same path and stops right before the delete.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List

from mailvault import db
from mailvault.config import Settings
from mailvault.errors import PurgeEligibilityViolation, TransportError, Unauthenticated
from mailvault.filesystem import FileEnumerator
from mailvault.logger import get_logger
from mailvault.models import BackupRecord, BackupStatus, FileDescriptor, PurgeOutcome
from mailvault.transport import GraphTransport
from mailvault.utils import format_bytes, utcnow


@dataclass
class PurgeCounts:
    processed: int = 0
    purged: int = 0
    would_purge: int = 0
    skipped: int = 0
    failed: int = 0
    bytes: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def eligible(self) -> int:
        return self.purged + self.would_purge

    @property
    def succeeded(self) -> int:
        return self.processed - self.failed


class PurgeEngine:

    def __init__(
            self,
            settings: Settings,
            transport: GraphTransport,
            enumerator: FileEnumerator,
            clock: Callable[[], datetime.datetime] = utcnow,
    ):
        self.settings = settings
        self.transport = transport
        self.enumerator = enumerator
        self.clock = clock
        self.logger = get_logger(__name__)

    def cutoff(self, days: int) -> datetime.datetime:
        return self.clock() - datetime.timedelta(days=days)

    def check_eligible(self, file: FileDescriptor) -> BackupRecord:
        """Return the record backing `file` or raise PurgeEligibilityViolation."""
        row = db.find_backup(self.settings.db_path, file.source_path)
        if row is None:
            raise PurgeEligibilityViolation(file.source_path, "no backup record")
        record = BackupRecord.from_row(row)
        if record.status != BackupStatus.COMPLETED:
            raise PurgeEligibilityViolation(file.source_path, f"backup status is {record.status.value}")
        if not record.cloud_path:
            raise PurgeEligibilityViolation(file.source_path, "backup record has no cloud path")
        try:
            present = self.transport.exists(record.cloud_path)
        except (TransportError, Unauthenticated) as e:
            raise PurgeEligibilityViolation(file.source_path, f"cloud check failed: {e}") from e
        if not present:
            raise PurgeEligibilityViolation(file.source_path, f"cloud object missing at {record.cloud_path}")
        return record

    def purge_file(self, file: FileDescriptor, cutoff: datetime.datetime, dry_run: bool = False) -> PurgeOutcome:
        if file.modified_time >= cutoff:
            return PurgeOutcome.SKIPPED

        try:
            record = self.check_eligible(file)
        except PurgeEligibilityViolation as e:
            self.logger.warning(f"Not purging {e.path}: {e.reason}")
            return PurgeOutcome.FAILED

        if dry_run:
            self.logger.info(f"[dry-run] Would purge {file.path} (backed up at {record.cloud_path})")
            return PurgeOutcome.WOULD_PURGE

        if not self.enumerator.delete(file.path):
            self.logger.error(f"Could not delete {file.path}; record left completed")
            return PurgeOutcome.FAILED

        db.mark_backup_purged(self.settings.db_path, file.source_path)
        self.logger.info(f"Purged {file.path} (backed up at {record.cloud_path})")
        return PurgeOutcome.PURGED

    def purge(self, files: Iterable[FileDescriptor], cutoff: datetime.datetime, dry_run: bool = False) -> PurgeCounts:
        counts = PurgeCounts()
        for file in files:
            counts.processed += 1
            try:
                outcome = self.purge_file(file, cutoff, dry_run)
            except (KeyboardInterrupt, InterruptedError):
                raise
            except Exception as e:
                self.logger.error(f"Purge failed for {file.path}: {e}")
                outcome = PurgeOutcome.FAILED

            if outcome == PurgeOutcome.PURGED:
                counts.purged += 1
                counts.bytes += file.size
            elif outcome == PurgeOutcome.WOULD_PURGE:
                counts.would_purge += 1
                counts.bytes += file.size
            elif outcome == PurgeOutcome.SKIPPED:
                counts.skipped += 1
            else:
                counts.failed += 1
                counts.errors.append({"path": file.source_path, "error": "not eligible or delete failed"})

        verb = "Would free" if dry_run else "Freed"
        self.logger.info(f"{verb} {format_bytes(counts.bytes)} across {counts.eligible} files "
                         f"({counts.failed} failed, {counts.skipped} too new)")
        return counts
