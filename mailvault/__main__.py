#!/usr/bin/env python3
"""
__main__.py

Top-level CLI for mailvault.
Parses arguments, wires the services and delegates to the operation entry points.
"""

from __future__ import annotations

import argparse
import datetime
import json
import sys
import time
from pathlib import Path
from typing import List, Optional

from mailvault import db, operations
from mailvault.config import load_settings
from mailvault.errors import AuthExchangeError, InvalidAlertTransition, MailboxLocked, MailVaultError
from mailvault.executor import get_interrupt_manager
from mailvault.logger import get_logger, setup_logger
from mailvault.models import AlertStatus
from mailvault.utils import ensure_dirs, from_iso, install_signal_handlers


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="mailvault – back up mail server files to OneDrive")
    p.add_argument("--config", type=Path, help="Path to config file")
    sub = p.add_subparsers(dest="action", required=True)

    s = sub.add_parser("initial-backup", help="Back up every file not yet backed up")
    s.add_argument("--mailbox")
    s.add_argument("--batch-size", type=int, default=100)
    s.add_argument("--force", action="store_true", help="Re-upload files that are already backed up")

    s = sub.add_parser("sync-new", help="Back up files modified since a point in time")
    s.add_argument("--mailbox")
    s.add_argument("--since", help="ISO timestamp (default: 24 hours ago)")
    s.add_argument("--batch-size", type=int, default=50)

    s = sub.add_parser("force-sync", help="Reconcile local files, records and cloud objects")
    s.add_argument("--mailbox")
    s.add_argument("--batch-size", type=int, default=50)
    s.add_argument("--verify", dest="verify", action="store_true", default=True,
                   help="Compare checksums (default)")
    s.add_argument("--no-verify", dest="verify", action="store_false")
    s.add_argument("--no-repair", dest="repair_missing", action="store_false", default=True,
                   help="Do not re-upload missing cloud objects")

    s = sub.add_parser("purge-old", help="Delete local files older than the retention period")
    s.add_argument("--mailbox")
    s.add_argument("--days", type=int)
    s.add_argument("--dry-run", action="store_true")
    s.add_argument("--batch-size", type=int, default=100)

    s = sub.add_parser("check-sizes", help="Check mailbox sizes against thresholds")
    s.add_argument("--mailbox")
    s.add_argument("--threshold", type=int, help="Threshold in MB for every checked mailbox")
    s.add_argument("--no-alert", dest="alert", action="store_false", default=True)
    s.add_argument("--no-resolve-alerts", dest="resolve_alerts", action="store_false", default=True)

    s = sub.add_parser("restore", help="Restore backed-up files from the cloud")
    s.add_argument("paths", nargs="*", help="Original source paths")
    s.add_argument("--mailbox", help="Restore every completed or purged file of this mailbox")
    target = s.add_mutually_exclusive_group()
    target.add_argument("--target-dir", type=Path, help="Restore below this directory instead of in place")
    target.add_argument("--to-restore-dir", action="store_true", help="Restore below the configured restore_dir")
    s.add_argument("--overwrite", action="store_true")

    sub.add_parser("auth-url", help="Print the authorization URL")
    s = sub.add_parser("auth-code", help="Exchange an authorization code")
    s.add_argument("code")
    sub.add_parser("auth-status", help="Show token status")
    sub.add_parser("auth-revoke", help="Delete the stored token")
    s = sub.add_parser("refresh-tokens", help="Refresh tokens expiring soon")
    s.add_argument("--within", type=int, default=600, help="Seconds")

    sub.add_parser("test-connection", help="Check that the drive is reachable with the stored token")
    sub.add_parser("storage", help="Show drive quota usage")
    s = sub.add_parser("status", help="Show backup counts, mailbox sizes, open alerts and purge history")
    s.add_argument("--mailbox")

    s = sub.add_parser("alert", help="List alerts or act on one")
    s.add_argument("alert_action", choices=["list", "ack", "resolve", "ignore", "reopen"])
    s.add_argument("alert_id", type=int, nargs="?")
    s.add_argument("--mailbox", help="Filter for list")
    s.add_argument("--status", choices=[st.value for st in AlertStatus], help="Filter for list")
    s.add_argument("--by", default="operator", help="Who acknowledges")
    s.add_argument("--notes")
    return p


def _print(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _alert_summary(alert) -> dict:
    return {
        "id": alert.id,
        "mailbox": alert.mailbox,
        "type": alert.alert_type.value,
        "status": alert.status.value,
        "usage_percent": alert.usage_percent,
        "alert_date": alert.alert_date,
    }


def _parse_since(value: Optional[str]) -> Optional[datetime.datetime]:
    if value is None:
        return None
    since = from_iso(value)
    if since is None:
        raise SystemExit(f"Invalid --since timestamp: {value}")
    return since


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings(args.config)

    setup_logger(settings)
    logger = get_logger(__name__)

    ensure_dirs(settings.db_path.parent)
    try:
        logger.debug(f"Ensuring database schema at {settings.db_path}")
        db.ensure_schema(settings.db_path)
    except Exception as e:
        logger.exception(f"Failed to ensure DB schema: {e}")
        return 2

    services = operations.build_services(settings)
    interrupt_manager = get_interrupt_manager()

    def on_interrupt(signum, frame):
        logger.warning("Interrupt received. Stopping after the files in flight...")
        interrupt_manager.interrupt_all()
        sys.exit(1)

    install_signal_handlers(on_interrupt)
    start = time.time()

    try:
        if args.action == "initial-backup":
            result = operations.initial_backup(services, args.mailbox, args.batch_size, args.force)
        elif args.action == "sync-new":
            result = operations.sync_new(services, args.mailbox, _parse_since(args.since), args.batch_size)
        elif args.action == "force-sync":
            result = operations.force_sync(services, args.mailbox, args.verify, args.batch_size,
                                           repair_missing=args.repair_missing)
        elif args.action == "purge-old":
            result = operations.purge_old(services, args.mailbox, args.days, args.dry_run, args.batch_size)
        elif args.action == "check-sizes":
            result = operations.check_sizes(services, args.mailbox, args.threshold, args.alert, args.resolve_alerts)
        elif args.action == "restore":
            paths = list(args.paths)
            if args.mailbox:
                paths.extend(operations.restorable_paths(services, args.mailbox))
            if not paths:
                logger.error("Nothing to restore: give source paths or --mailbox")
                return 1
            target_dir = settings.restore_dir if args.to_restore_dir else args.target_dir
            result = operations.restore(services, paths, target_dir, args.overwrite)
        elif args.action == "auth-url":
            print(services.tokens.build_authorization_url())
            return 0
        elif args.action == "auth-code":
            token = services.tokens.exchange_code(args.code)
            print(f"Authenticated {token.principal}; token expires {token.expires_at.isoformat()}")
            return 0
        elif args.action == "auth-status":
            _print(services.tokens.token_status())
            return 0
        elif args.action == "auth-revoke":
            removed = services.tokens.revoke()
            print("Token revoked" if removed else "No token stored")
            return 0
        elif args.action == "refresh-tokens":
            results = services.tokens.refresh_expiring(args.within)
            _print(results)
            return 0 if all(results.values()) else 1
        elif args.action == "test-connection":
            if not services.tokens.is_authenticated():
                logger.error("Not authenticated: run auth-url and auth-code first")
                return 1
            ok = services.transport.test_connection()
            print("Connection OK" if ok else "Connection failed")
            return 0 if ok else 1
        elif args.action == "storage":
            _print(services.transport.storage_usage())
            return 0
        elif args.action == "status":
            _print(operations.status_report(services, args.mailbox))
            return 0
        elif args.action == "alert":
            engine = services.alerts
            if args.alert_action == "list":
                status = AlertStatus(args.status) if args.status else None
                _print([_alert_summary(a) for a in engine.list(args.mailbox, status)])
                return 0
            if args.alert_id is None:
                logger.error(f"alert {args.alert_action} needs an alert id")
                return 1
            if args.alert_action == "ack":
                alert = engine.acknowledge(args.alert_id, args.by, args.notes)
            elif args.alert_action == "resolve":
                alert = engine.resolve(args.alert_id, args.notes)
            elif args.alert_action == "ignore":
                alert = engine.ignore(args.alert_id, args.notes)
            else:
                alert = engine.reopen(args.alert_id, args.notes)
            print(f"Alert {alert.id} ({alert.mailbox}) is now {alert.status.value}")
            return 0
        else:
            logger.error(f"Unknown action: {args.action}")
            return 1
    except (MailboxLocked, InvalidAlertTransition, AuthExchangeError, KeyError) as e:
        logger.error(str(e))
        return 1
    except MailVaultError as e:
        logger.error(f"Action '{args.action}' failed: {e}")
        return 1

    elapsed = time.time() - start
    logger.info(f"Action '{args.action}' completed in {elapsed:.1f}s")
    _print({
        "operation": result.operation.value,
        "status": result.status.value,
        "total": result.total,
        "succeeded": result.succeeded,
        "failed": result.failed,
        "log_id": result.log_id,
    })
    return 0 if result.failed == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
