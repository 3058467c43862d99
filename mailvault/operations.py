#!/usr/bin/env python3

"""
operations.py

Entry points for each orchestrated operation:
- initial_backup
- sync_new
- force_sync
- purge_old
- check_sizes
- restore
- status_report (read-only, no operation log)

Every operation opens an operation log and takes leases on the mailboxes whose
files or records it changes. Work is split into batches that run on the
managed executor, and the log is closed exactly once with its terminal status.
"""

from __future__ import annotations

import datetime
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import requests

from mailvault import db
from mailvault.alerts import AlertEngine, CheckOutcome
from mailvault.config import MIB, Settings
from mailvault.executor import TaskResult, run_batches
from mailvault.filesystem import FileEnumerator
from mailvault.locks import MailboxLock, default_owner
from mailvault.logger import get_logger, operation_context
from mailvault.models import (
    BatchCounts,
    FileDescriptor,
    OperationResult,
    OperationType,
    ReconcileOutcome,
)
from mailvault.notifier import Notifier
from mailvault.oauth import TokenStore
from mailvault.oplog import OperationLog
from mailvault.orchestrator import BackupOrchestrator
from mailvault.purge import PurgeCounts, PurgeEngine
from mailvault.reconcile import ReconcileCounts, ReconcileOptions, ReconciliationEngine
from mailvault.restore import RestoreCounts, RestoreEngine
from mailvault.statistics import StatKey, StatusThread, ThreadSafeStats, create_stats, log_status
from mailvault.transport import GraphTransport
from mailvault.utils import chunked, utcnow

Batch = Tuple[str, List[FileDescriptor]]

MAX_LOGGED_ERRORS = 100


@dataclass
class Services:
    """Everything an operation needs, wired once from Settings."""
    settings: Settings
    tokens: TokenStore
    transport: GraphTransport
    enumerator: FileEnumerator
    orchestrator: BackupOrchestrator
    alerts: AlertEngine
    locks: MailboxLock
    clock: Callable[[], datetime.datetime] = utcnow
    sleep: Callable[[float], None] = time.sleep


def build_services(
        settings: Settings,
        session: Optional[requests.Session] = None,
        clock: Callable[[], datetime.datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
        notifier: Optional[Notifier] = None,
) -> Services:
    tokens = TokenStore(settings, session=session, clock=clock)
    transport = GraphTransport(settings, tokens, session=session, sleep=sleep)
    return Services(
        settings=settings,
        tokens=tokens,
        transport=transport,
        enumerator=FileEnumerator(settings.mail_root),
        orchestrator=BackupOrchestrator(settings, transport, clock=clock),
        alerts=AlertEngine(settings, notifier),
        locks=MailboxLock(settings, clock=lambda: clock().timestamp()),
        clock=clock,
        sleep=sleep,
    )


# ----------------------------------------------------------------------
# Shared plumbing
# ----------------------------------------------------------------------
def _select_mailboxes(services: Services, mailbox: Optional[str]) -> List[str]:
    if mailbox:
        services.enumerator.mailbox_path(mailbox)
        return [mailbox]
    return services.enumerator.mailboxes()


def _batches(files_by_mailbox: Dict[str, List[FileDescriptor]], batch_size: int) -> List[Batch]:
    return [(mb, chunk) for mb, files in files_by_mailbox.items() for chunk in chunked(files, batch_size)]


def _run_operation(
        services: Services,
        operation: OperationType,
        parameters: Dict[str, Any],
        body: Callable[[ThreadSafeStats], Dict[str, Any]],
) -> OperationResult:
    """
    Run `body` inside an operation log. `body` returns a details dict holding at
    least total/succeeded/failed. Any exception it raises fails the operation
    and is re-raised after the log is closed.
    """
    logger = get_logger(__name__)
    settings = services.settings
    oplog = OperationLog(settings, operation, {"parameters": parameters})
    stats = create_stats()
    status_thread = StatusThread(settings.status_interval, stats)
    status_thread.start()
    try:
        with operation_context(operation.value, oplog.id):
            details = body(stats)
    except BaseException as e:
        oplog.fail(e, {"parameters": parameters, "counts": stats.as_details()})
        raise
    finally:
        status_thread.stop()

    details["parameters"] = parameters
    status = oplog.complete(details, failed=details["failed"])
    log_status(stats, operation.value)
    logger.info(f"{operation.value}: {details['total']} processed, {details['succeeded']} succeeded, "
                f"{details['failed']} failed")
    return OperationResult(
        operation=operation,
        total=details["total"],
        succeeded=details["succeeded"],
        failed=details["failed"],
        log_id=oplog.id,
        status=status,
        details=details,
    )


def _count_failed_batch(stats: ThreadSafeStats, task_res: TaskResult, errors: List[Dict[str, str]]) -> None:
    mailbox, files = task_res.item
    stats.increment(StatKey.PROCESSED, len(files))
    stats.increment(StatKey.FAILED, len(files))
    errors.append({"mailbox": mailbox, "error": f"batch of {len(files)} failed: {task_res.exception}"})


def _dispatch(services: Services, name: str, batches: List[Batch], task: Callable[[Batch], Any],
              on_result: Callable[[TaskResult], None]) -> None:
    settings = services.settings
    run_batches(
        batches,
        task,
        max_workers=settings.max_batch_workers,
        name=name,
        on_result=on_result,
        retries=settings.task_retries,
        retry_delay=settings.task_retry_delay,
        sleep=services.sleep,
    )


def _backup_details(stats: ThreadSafeStats, errors: List[Dict[str, str]], **extra: Any) -> Dict[str, Any]:
    details = {
        "total": stats[StatKey.PROCESSED],
        "succeeded": stats[StatKey.SUCCEEDED],
        "failed": stats[StatKey.FAILED],
        "skipped": stats[StatKey.SKIPPED],
        "errors": errors[:MAX_LOGGED_ERRORS],
    }
    details.update(extra)
    return details


def _apply_batch_counts(stats: ThreadSafeStats, errors: List[Dict[str, str]]) -> Callable[[TaskResult], None]:
    def on_result(task_res: TaskResult[BatchCounts]) -> None:
        if not task_res.success:
            _count_failed_batch(stats, task_res, errors)
            return
        counts = task_res.result
        stats.increment(StatKey.PROCESSED, counts.processed)
        stats.increment(StatKey.SUCCEEDED, counts.succeeded)
        stats.increment(StatKey.FAILED, counts.failed)
        stats.increment(StatKey.SKIPPED, counts.skipped)

    return on_result


# ----------------------------------------------------------------------
# Operations
# ----------------------------------------------------------------------
def initial_backup(
        services: Services,
        mailbox: Optional[str] = None,
        batch_size: int = 100,
        force: bool = False,
) -> OperationResult:
    params = {"mailbox": mailbox, "batch_size": batch_size, "force": force}

    def body(stats: ThreadSafeStats) -> Dict[str, Any]:
        errors: List[Dict[str, str]] = []
        mailboxes = _select_mailboxes(services, mailbox)
        with services.locks.hold(mailboxes, default_owner("initial_backup")):
            files = {mb: services.enumerator.list(mb) for mb in mailboxes}
            batches = _batches(files, batch_size)
            _dispatch(services, "InitialBackup", batches,
                      lambda b: services.orchestrator.perform_initial_backup(b[1], force=force),
                      _apply_batch_counts(stats, errors))
        return _backup_details(stats, errors, mailboxes=len(mailboxes), batches=len(batches))

    return _run_operation(services, OperationType.INITIAL_BACKUP, params, body)


def sync_new(
        services: Services,
        mailbox: Optional[str] = None,
        since: Optional[datetime.datetime] = None,
        batch_size: int = 50,
) -> OperationResult:
    since = since or services.clock() - datetime.timedelta(hours=24)
    params = {"mailbox": mailbox, "since": since.isoformat(), "batch_size": batch_size}

    def body(stats: ThreadSafeStats) -> Dict[str, Any]:
        errors: List[Dict[str, str]] = []
        mailboxes = _select_mailboxes(services, mailbox)
        with services.locks.hold(mailboxes, default_owner("sync_new")):
            files = {mb: services.enumerator.list(mb, since=since) for mb in mailboxes}
            batches = _batches(files, batch_size)
            _dispatch(services, "SyncNew", batches,
                      lambda b: services.orchestrator.sync_new(b[1], since=since),
                      _apply_batch_counts(stats, errors))
        return _backup_details(stats, errors, mailboxes=len(mailboxes), batches=len(batches))

    return _run_operation(services, OperationType.SYNC_NEW, params, body)


def force_sync(
        services: Services,
        mailbox: Optional[str] = None,
        verify: bool = True,
        batch_size: int = 50,
        repair_missing: bool = True,
        update_modified: bool = True,
) -> OperationResult:
    options = ReconcileOptions(repair_missing=repair_missing, update_modified=update_modified,
                               verify_checksums=verify)
    params = {"mailbox": mailbox, "verify": verify, "batch_size": batch_size,
              "repair_missing": repair_missing, "update_modified": update_modified}

    def task(batch: Batch) -> ReconcileCounts:
        # One engine per batch; it keeps the last error of the file in flight
        return ReconciliationEngine(services.orchestrator, options).reconcile(batch[1])

    def body(stats: ThreadSafeStats) -> Dict[str, Any]:
        errors: List[Dict[str, str]] = []

        def on_result(task_res: TaskResult[ReconcileCounts]) -> None:
            if not task_res.success:
                _count_failed_batch(stats, task_res, errors)
                return
            counts = task_res.result
            stats.increment(StatKey.PROCESSED, counts.processed)
            stats.increment(StatKey.SUCCEEDED, counts.succeeded)
            stats.increment(StatKey.FAILED, counts.failed)
            stats.increment(StatKey.REPAIRED, counts[ReconcileOutcome.REPAIRED])
            stats.increment(StatKey.UPDATED, counts[ReconcileOutcome.UPDATED])
            stats.increment(StatKey.VERIFIED, counts[ReconcileOutcome.VERIFIED])
            errors.extend(counts.errors)

        mailboxes = _select_mailboxes(services, mailbox)
        with services.locks.hold(mailboxes, default_owner("force_sync")):
            files = {mb: services.enumerator.list(mb) for mb in mailboxes}
            batches = _batches(files, batch_size)
            _dispatch(services, "ForceSync", batches, task, on_result)

        return {
            "total": stats[StatKey.PROCESSED],
            "succeeded": stats[StatKey.SUCCEEDED],
            "failed": stats[StatKey.FAILED],
            "repaired": stats[StatKey.REPAIRED],
            "updated": stats[StatKey.UPDATED],
            "verified": stats[StatKey.VERIFIED],
            "errors": errors[:MAX_LOGGED_ERRORS],
            "mailboxes": len(mailboxes),
        }

    return _run_operation(services, OperationType.FORCE_SYNC, params, body)


def purge_old(
        services: Services,
        mailbox: Optional[str] = None,
        days: Optional[int] = None,
        dry_run: bool = False,
        batch_size: int = 100,
) -> OperationResult:
    settings = services.settings
    days = days if days is not None else settings.retention_days
    engine = PurgeEngine(settings, services.transport, services.enumerator, clock=services.clock)
    cutoff = engine.cutoff(days)
    params = {"mailbox": mailbox, "days": days, "dry_run": dry_run, "batch_size": batch_size,
              "cutoff": cutoff.isoformat()}

    def body(stats: ThreadSafeStats) -> Dict[str, Any]:
        errors: List[Dict[str, str]] = []
        per_mailbox: Dict[str, List[int]] = {}

        def on_result(task_res: TaskResult[PurgeCounts]) -> None:
            if not task_res.success:
                _count_failed_batch(stats, task_res, errors)
                return
            mb = task_res.item[0]
            counts = task_res.result
            stats.increment(StatKey.PROCESSED, counts.processed)
            stats.increment(StatKey.SUCCEEDED, counts.succeeded)
            stats.increment(StatKey.FAILED, counts.failed)
            stats.increment(StatKey.SKIPPED, counts.skipped)
            stats.increment(StatKey.PURGED, counts.purged)
            stats.increment(StatKey.WOULD_PURGE, counts.would_purge)
            stats.increment(StatKey.BYTES_FREED, counts.bytes)
            totals = per_mailbox.setdefault(mb, [0, 0])
            totals[0] += counts.purged
            totals[1] += counts.bytes if not dry_run else 0
            errors.extend(counts.errors)

        mailboxes = _select_mailboxes(services, mailbox)
        with services.locks.hold(mailboxes, default_owner("purge")):
            files = {mb: services.enumerator.older_than(mb, cutoff) for mb in mailboxes}
            batches = _batches(files, batch_size)
            _dispatch(services, "Purge", batches, lambda b: engine.purge(b[1], cutoff, dry_run), on_result)

        if not dry_run:
            for mb, (purged_files, purged_bytes) in per_mailbox.items():
                if purged_files:
                    db.record_purge_history(settings.db_path, mb, purged_files, purged_bytes)

        return {
            "total": stats[StatKey.PROCESSED],
            "succeeded": stats[StatKey.SUCCEEDED],
            "failed": stats[StatKey.FAILED],
            "eligible": stats[StatKey.PURGED] + stats[StatKey.WOULD_PURGE],
            "purged": stats[StatKey.PURGED],
            "would_purge": stats[StatKey.WOULD_PURGE],
            "bytes": stats[StatKey.BYTES_FREED],
            "dry_run": dry_run,
            "errors": errors[:MAX_LOGGED_ERRORS],
        }

    return _run_operation(services, OperationType.PURGE, params, body)


def check_sizes(
        services: Services,
        mailbox: Optional[str] = None,
        threshold_mb: Optional[int] = None,
        alert: bool = True,
        resolve_alerts: bool = True,
) -> OperationResult:
    """
    Check every mailbox against its threshold. An explicit threshold_mb wins
    over per-mailbox patterns, which win over the default.
    """
    settings = services.settings
    params = {"mailbox": mailbox, "threshold_mb": threshold_mb, "alert": alert, "resolve_alerts": resolve_alerts}

    def task(mb: str) -> Tuple[CheckOutcome, int, int]:
        size = services.enumerator.mailbox_size(mb)
        threshold = (threshold_mb if threshold_mb is not None else settings.threshold_for(mb)) * MIB
        return services.alerts.check_mailbox(mb, size, threshold, alert=alert, resolve=resolve_alerts), size, threshold

    def body(stats: ThreadSafeStats) -> Dict[str, Any]:
        errors: List[Dict[str, str]] = []
        sizes: Dict[str, Dict[str, Any]] = {}

        def on_result(task_res: TaskResult) -> None:
            stats.increment(StatKey.PROCESSED)
            if not task_res.success:
                stats.increment(StatKey.FAILED)
                errors.append({"mailbox": task_res.item, "error": str(task_res.exception)})
                return
            outcome, size, threshold = task_res.result
            stats.increment(StatKey.SUCCEEDED)
            key = {
                CheckOutcome.CREATED: StatKey.ALERTS_CREATED,
                CheckOutcome.UPDATED: StatKey.ALERTS_UPDATED,
                CheckOutcome.RESOLVED: StatKey.ALERTS_RESOLVED,
            }.get(outcome)
            if key is not None:
                stats.increment(key)
            sizes[task_res.item] = {"size_bytes": size, "threshold_bytes": threshold, "outcome": outcome.value}

        mailboxes = _select_mailboxes(services, mailbox)
        run_batches(mailboxes, task, max_workers=settings.max_batch_workers, name="SizeCheck",
                    on_result=on_result)
        return {
            "total": stats[StatKey.PROCESSED],
            "succeeded": stats[StatKey.SUCCEEDED],
            "failed": stats[StatKey.FAILED],
            "alerts_created": stats[StatKey.ALERTS_CREATED],
            "alerts_updated": stats[StatKey.ALERTS_UPDATED],
            "alerts_resolved": stats[StatKey.ALERTS_RESOLVED],
            "mailboxes": sizes,
            "errors": errors[:MAX_LOGGED_ERRORS],
        }

    return _run_operation(services, OperationType.SIZE_CHECK, params, body)


def restore(
        services: Services,
        source_paths: Iterable[str],
        target_dir: Optional[Path] = None,
        overwrite: bool = False,
) -> OperationResult:
    """
    Download backed-up files. Leases are taken on the mailboxes of the
    records being restored; paths without a record still count as failed.
    """
    settings = services.settings
    paths = list(source_paths)
    params = {"paths": len(paths), "target_dir": str(target_dir) if target_dir else None, "overwrite": overwrite}
    engine = RestoreEngine(settings, services.transport)

    def body(stats: ThreadSafeStats) -> Dict[str, Any]:
        rows = [db.find_backup(settings.db_path, p) for p in paths]
        mailboxes = {row["mailbox"] for row in rows if row is not None}
        with services.locks.hold(mailboxes, default_owner("restore")):
            counts: RestoreCounts = engine.restore(paths, target_dir, overwrite)
        stats.increment(StatKey.PROCESSED, counts.processed)
        stats.increment(StatKey.RESTORED, counts.restored)
        stats.increment(StatKey.SKIPPED, counts.skipped)
        stats.increment(StatKey.FAILED, counts.failed)
        return {
            "total": counts.processed,
            "succeeded": counts.succeeded,
            "failed": counts.failed,
            "restored": counts.restored,
            "skipped": counts.skipped,
            "errors": counts.errors[:MAX_LOGGED_ERRORS],
        }

    return _run_operation(services, OperationType.RESTORE, params, body)


def restorable_paths(services: Services, mailbox: str) -> List[str]:
    """Source paths of every completed or purged record of a mailbox."""
    db_path = services.settings.db_path
    rows = db.fetch_backups(db_path, mailbox, "completed") + db.fetch_backups(db_path, mailbox, "purged")
    return sorted(row["source_path"] for row in rows)


def status_report(services: Services, mailbox: Optional[str] = None) -> Dict[str, Any]:
    """
    Read-only summary: backup record counts, current mailbox sizes against
    their thresholds, open alerts and purge history. No operation log is written.
    """
    settings = services.settings
    mailboxes: Dict[str, Dict[str, Any]] = {}
    for mb in _select_mailboxes(services, mailbox):
        size = services.enumerator.mailbox_size(mb)
        threshold = settings.threshold_for(mb) * MIB
        alert = services.alerts.open_alert(mb)
        mailboxes[mb] = {
            "size_bytes": size,
            "threshold_bytes": threshold,
            "usage_percent": round(size / threshold * 100, 2) if threshold else 0.0,
            "backups": db.backup_status_counts(settings.db_path, mb),
            "open_alert": alert.alert_type.value if alert else None,
        }
    return {
        "backups": db.backup_status_counts(settings.db_path, mailbox),
        "mailboxes": mailboxes,
        "open_alerts": [
            {"id": a.id, "mailbox": a.mailbox, "type": a.alert_type.value, "status": a.status.value}
            for a in services.alerts.list(mailbox) if a.is_open
        ],
        "purge_history": [
            {"mailbox": r["mailbox"], "purged_files": r["purged_files"], "purged_bytes": r["purged_bytes"],
             "purged_at": r["purged_at"]}
            for r in db.fetch_purge_history(settings.db_path, mailbox)
        ],
    }
