#!/usr/bin/env python3

"""
restore.py

Download backed-up files from the cloud store back to disk.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from mailvault import db
from mailvault.config import Settings
from mailvault.logger import get_logger
from mailvault.models import BackupRecord, BackupStatus
from mailvault.transport import GraphTransport

RESTORABLE = (BackupStatus.COMPLETED, BackupStatus.PURGED)


@dataclass
class RestoreCounts:
    processed: int = 0
    restored: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return self.restored + self.skipped


class RestoreEngine:

    def __init__(self, settings: Settings, transport: GraphTransport):
        self.settings = settings
        self.transport = transport
        self.logger = get_logger(__name__)

    def target_for(self, record: BackupRecord, target_dir: Optional[Path]) -> Path:
        """Restore in place when no target directory is given."""
        source = Path(record.source_path)
        if target_dir is None:
            return source
        return target_dir / record.mailbox / source.name

    def restore_file(self, source_path: str, target_dir: Optional[Path] = None, overwrite: bool = False) -> str:
        """Returns 'restored', 'skipped' or raises LookupError / OSError for failures."""
        row = db.find_backup(self.settings.db_path, source_path)
        if row is None:
            raise LookupError(f"No backup record for {source_path}")
        record = BackupRecord.from_row(row)
        if record.status not in RESTORABLE or not record.cloud_path:
            raise LookupError(f"Backup of {source_path} is {record.status.value}, not restorable")

        target = self.target_for(record, target_dir)
        if target.exists() and not overwrite:
            self.logger.info(f"Skipping restore of {source_path}: {target} exists")
            return "skipped"

        if not self.transport.download(record.cloud_path, target):
            raise OSError(f"Download of {record.cloud_path} failed")

        if record.status == BackupStatus.PURGED and target == Path(record.source_path):
            db.mark_backup_restored(self.settings.db_path, source_path)
        self.logger.info(f"Restored {record.cloud_path} -> {target}")
        return "restored"

    def restore(self, source_paths: Iterable[str], target_dir: Optional[Path] = None,
                overwrite: bool = False) -> RestoreCounts:
        counts = RestoreCounts()
        for source_path in source_paths:
            counts.processed += 1
            try:
                result = self.restore_file(source_path, target_dir, overwrite)
            except (KeyboardInterrupt, InterruptedError):
                raise
            except Exception as e:
                self.logger.error(f"Restore failed for {source_path}: {e}")
                counts.failed += 1
                counts.errors.append({"path": source_path, "error": str(e)})
                continue
            if result == "restored":
                counts.restored += 1
            else:
                counts.skipped += 1
        return counts
