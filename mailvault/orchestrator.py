#!/usr/bin/env python3

"""
orchestrator.py

Per-file backup and the batch drivers built on it:
- deterministic date-partitioned cloud paths
- backup_file: idempotent upload + record state transitions
- perform_initial_backup / sync_new: sequential batch loops with counts
"""

from __future__ import annotations

import datetime
from typing import Callable, Iterable, Optional

from mailvault import db
from mailvault.config import Settings
from mailvault.logger import get_logger
from mailvault.models import BackupRecord, BackupResult, BackupStatus, BatchCounts, FileDescriptor
from mailvault.transport import GraphTransport
from mailvault.utils import file_checksum, sanitize, utcnow


class BackupOrchestrator:

    def __init__(
            self,
            settings: Settings,
            transport: GraphTransport,
            clock: Callable[[], datetime.datetime] = utcnow,
    ):
        self.settings = settings
        self.transport = transport
        self.clock = clock
        self.logger = get_logger(__name__)

    def cloud_path_for(self, file: FileDescriptor, when: Optional[datetime.datetime] = None) -> str:
        when = when or self.clock()
        return (
            f"{self.settings.cloud_base_path}/{when:%Y}/{when:%m}/{when:%d}/"
            f"{sanitize(file.mailbox)}/{sanitize(file.path.name)}"
        )

    def find_record(self, file: FileDescriptor) -> Optional[BackupRecord]:
        row = db.find_backup(self.settings.db_path, file.source_path)
        return BackupRecord.from_row(row) if row else None

    def backup_file(self, file: FileDescriptor, force: bool = False) -> BackupResult:
        """
        Upload one file unless it is already backed up.

        A completed record short-circuits as success. Otherwise the record goes
        processing -> completed, or processing -> failed with the error message.
        """
        record = self.find_record(file)
        if record is not None and record.status == BackupStatus.COMPLETED and not force:
            self.logger.debug(f"Already backed up: {file.path}")
            return BackupResult(success=True, cloud_path=record.cloud_path, skipped=True)

        cloud_path = record.cloud_path if record is not None and record.cloud_path else self.cloud_path_for(file)
        return self.upload_and_record(file, cloud_path)

    def upload_and_record(self, file: FileDescriptor, cloud_path: str) -> BackupResult:
        db.mark_backup_processing(self.settings.db_path, file.source_path, file.mailbox, cloud_path, file.size)
        try:
            self.transport.upload(file.path, cloud_path)
            checksum = file_checksum(file.path, self.settings.checksum_algorithm)
        except (KeyboardInterrupt, InterruptedError):
            db.mark_backup_failed(self.settings.db_path, file.source_path, "interrupted")
            self.logger.error(f"Interrupted while uploading {file.path}")
            raise
        except Exception as e:
            self.logger.error(f"Backup failed for {file.path} -> {cloud_path}: {e}")
            db.mark_backup_failed(self.settings.db_path, file.source_path, str(e))
            return BackupResult(success=False, cloud_path=cloud_path, error=str(e))

        db.mark_backup_completed(self.settings.db_path, file.source_path, cloud_path, file.size, checksum)
        self.logger.info(f"Backed up {file.path} -> {cloud_path}")
        return BackupResult(success=True, cloud_path=cloud_path)

    def perform_initial_backup(self, files: Iterable[FileDescriptor], force: bool = False) -> BatchCounts:
        counts = BatchCounts()
        for file in files:
            counts.processed += 1
            self._record(counts, file, lambda f: self.backup_file(f, force=force))
        return counts

    def sync_new(self, files: Iterable[FileDescriptor], since: Optional[datetime.datetime] = None) -> BatchCounts:
        """Back up new files and re-upload completed ones modified after their last update."""
        counts = BatchCounts()
        for file in files:
            if since is not None and file.modified_time <= since:
                continue
            counts.processed += 1
            record = self.find_record(file)
            completed = record is not None and record.status == BackupStatus.COMPLETED
            if completed and record.updated_at is not None and file.modified_time <= record.updated_at:
                counts.succeeded += 1
                counts.skipped += 1
                continue
            self._record(counts, file, lambda f: self.backup_file(f, force=completed))
        return counts

    def _record(self, counts: BatchCounts, file: FileDescriptor, fn: Callable[[FileDescriptor], BackupResult]) -> None:
        try:
            result = fn(file)
        except (KeyboardInterrupt, InterruptedError):
            raise
        except Exception as e:
            self.logger.error(f"Unexpected error backing up {file.path}: {e}", exc_info=True)
            counts.failed += 1
            return
        if result.success:
            counts.succeeded += 1
            if result.skipped:
                counts.skipped += 1
        else:
            counts.failed += 1
