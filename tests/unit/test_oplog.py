#!/usr/bin/env python3
"""
Unit tests for oplog.py module.
"""

import json

from mailvault import db
from mailvault.models import OperationStatus, OperationType
from mailvault.oplog import OperationLog


class TestOperationLog:
    """Tests for OperationLog."""

    def test_opens_processing_entry(self, test_settings):
        log = OperationLog(test_settings, OperationType.PURGE, {"dry_run": True})
        row = db.get_sync_log(test_settings.db_path, log.id)
        assert row["operation_type"] == "purge"
        assert row["status"] == "processing"
        assert json.loads(row["details"]) == {"dry_run": True}
        assert row["completed_at"] is None

    def test_complete_status_depends_on_failures(self, test_settings):
        clean = OperationLog(test_settings, OperationType.SYNC_NEW)
        assert clean.complete({"total": 2}) == OperationStatus.COMPLETED

        partial = OperationLog(test_settings, OperationType.SYNC_NEW)
        assert partial.complete({"total": 2}, failed=1) == OperationStatus.COMPLETED_WITH_ERRORS
        assert db.get_sync_log(test_settings.db_path, partial.id)["status"] == "completed_with_errors"

    def test_fail_records_error_and_traceback(self, test_settings):
        log = OperationLog(test_settings, OperationType.FORCE_SYNC)
        try:
            raise RuntimeError("mail root unreadable")
        except RuntimeError as e:
            log.fail(e)

        row = db.get_sync_log(test_settings.db_path, log.id)
        details = json.loads(row["details"])
        assert row["status"] == "failed"
        assert row["error_message"] == "mail root unreadable"
        assert "Traceback" in details["traceback"]
        assert row["completed_at"] is not None

    def test_finishes_only_once(self, test_settings, mocker):
        log = OperationLog(test_settings, OperationType.INITIAL_BACKUP)
        spy = mocker.spy(db, "finish_sync_log")

        log.complete({"total": 1})
        log.fail(RuntimeError("late"))

        assert spy.call_count == 1
        assert db.get_sync_log(test_settings.db_path, log.id)["status"] == "completed"
