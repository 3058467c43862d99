#!/usr/bin/env python3

"""
reconcile.py

Three-way reconciliation (force sync) between the local file, its backup
record and the cloud object.

The checks are an ordered rule table. Rules run in order and the first one
that returns an outcome decides the file:

1. missing_record    no record            -> upload, repaired
2. cloud_missing     cloud object absent  -> re-upload (repaired) or failed if repair is off
3. modified_locally  mtime > record update -> re-upload, updated
4. checksum_mismatch hashes differ        -> re-upload, repaired
5. verified          nothing to do        -> verified
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from mailvault import db
from mailvault.errors import ChecksumMismatchUnresolved, TransportError
from mailvault.logger import get_logger
from mailvault.models import BackupRecord, FileDescriptor, ReconcileOutcome
from mailvault.orchestrator import BackupOrchestrator
from mailvault.utils import file_checksum

RuleFn = Callable[["ReconciliationEngine", FileDescriptor, Optional[BackupRecord]], Optional[ReconcileOutcome]]


@dataclass(frozen=True)
class ReconcileOptions:
    repair_missing: bool = True
    update_modified: bool = True
    verify_checksums: bool = True


@dataclass
class ReconcileCounts:
    processed: int = 0
    outcomes: Dict[ReconcileOutcome, int] = field(default_factory=dict)
    errors: List[Dict[str, str]] = field(default_factory=list)

    def add(self, outcome: ReconcileOutcome) -> None:
        self.processed += 1
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1

    def __getitem__(self, outcome: ReconcileOutcome) -> int:
        return self.outcomes.get(outcome, 0)

    @property
    def failed(self) -> int:
        return self[ReconcileOutcome.FAILED]

    @property
    def succeeded(self) -> int:
        return self.processed - self.failed


def _reupload(engine: ReconciliationEngine, file: FileDescriptor, record: BackupRecord,
              outcome: ReconcileOutcome) -> ReconcileOutcome:
    result = engine.orchestrator.upload_and_record(file, record.cloud_path or engine.orchestrator.cloud_path_for(file))
    if not result.success:
        engine.last_error = result.error
        return ReconcileOutcome.FAILED
    return outcome


def missing_record(engine, file, record):
    if record is not None:
        return None
    engine.logger.info(f"No backup record for {file.path}; uploading")
    result = engine.orchestrator.backup_file(file)
    if not result.success:
        engine.last_error = result.error
        return ReconcileOutcome.FAILED
    return ReconcileOutcome.REPAIRED


def cloud_missing(engine, file, record):
    if record.cloud_path and engine.orchestrator.transport.exists(record.cloud_path):
        return None
    if not engine.options.repair_missing:
        engine.logger.warning(f"Cloud object missing for {file.path} ({record.cloud_path}); repair disabled")
        engine.last_error = "cloud missing, repair disabled"
        return ReconcileOutcome.FAILED
    engine.logger.info(f"Cloud object missing for {file.path}; re-uploading to {record.cloud_path}")
    return _reupload(engine, file, record, ReconcileOutcome.REPAIRED)


def modified_locally(engine, file, record):
    if not engine.options.update_modified or record.updated_at is None:
        return None
    if file.modified_time <= record.updated_at:
        return None
    engine.logger.info(f"{file.path} modified since last backup; updating")
    return _reupload(engine, file, record, ReconcileOutcome.UPDATED)


def checksum_mismatch(engine, file, record):
    if not engine.options.verify_checksums:
        return None
    try:
        local, remote = engine.compare_checksums(file, record)
    except ChecksumMismatchUnresolved as e:
        engine.logger.warning(f"Checksum check skipped for {file.path}: {e}")
        return None
    if remote is None or local == remote:
        return None
    engine.logger.warning(f"Checksum mismatch for {file.path}: local {local} != remote {remote}; re-uploading")
    return _reupload(engine, file, record, ReconcileOutcome.REPAIRED)


def verified(engine, file, record):
    db.mark_backup_verified(engine.settings.db_path, file.source_path)
    return ReconcileOutcome.VERIFIED


RULES: Tuple[Tuple[str, RuleFn], ...] = (
    ("missing_record", missing_record),
    ("cloud_missing", cloud_missing),
    ("modified_locally", modified_locally),
    ("checksum_mismatch", checksum_mismatch),
    ("verified", verified),
)


class ReconciliationEngine:

    def __init__(
            self,
            orchestrator: BackupOrchestrator,
            options: ReconcileOptions = ReconcileOptions(),
            rules: Tuple[Tuple[str, RuleFn], ...] = RULES,
    ):
        self.orchestrator = orchestrator
        self.settings = orchestrator.settings
        self.options = options
        self.rules = rules
        self.last_error: Optional[str] = None
        self.logger = get_logger(__name__)

    def compare_checksums(self, file: FileDescriptor, record: BackupRecord) -> Tuple[str, Optional[str]]:
        """Return (local, remote) hashes, lower-cased. Remote is None when the store reports none."""
        algorithm = self.settings.checksum_algorithm
        try:
            local = file_checksum(file.path, algorithm).lower()
            remote = self.orchestrator.transport.checksum(record.cloud_path)
        except (OSError, TransportError) as e:
            raise ChecksumMismatchUnresolved(str(e)) from e
        return local, remote.lower() if remote else None

    def reconcile_file(self, file: FileDescriptor) -> Tuple[ReconcileOutcome, str]:
        """Run the rule table for one file. Returns the outcome and the rule that produced it."""
        self.last_error = None
        try:
            record = self.orchestrator.find_record(file)
            for name, rule in self.rules:
                outcome = rule(self, file, record)
                if outcome is not None:
                    self.logger.debug(f"{file.path}: {name} -> {outcome.value}")
                    return outcome, name
        except (KeyboardInterrupt, InterruptedError):
            raise
        except Exception as e:
            self.logger.error(f"Reconciliation failed for {file.path}: {e}")
            self.last_error = str(e)
            return ReconcileOutcome.FAILED, "error"
        # Only reachable with a custom rule table lacking a fallback rule
        return ReconcileOutcome.VERIFIED, "none"

    def reconcile(self, files: Iterable[FileDescriptor]) -> ReconcileCounts:
        counts = ReconcileCounts()
        for file in files:
            outcome, _ = self.reconcile_file(file)
            counts.add(outcome)
            if outcome == ReconcileOutcome.FAILED:
                counts.errors.append({"path": file.source_path, "error": self.last_error or "unknown error"})
        return counts
