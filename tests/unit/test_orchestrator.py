#!/usr/bin/env python3
"""
Unit tests for orchestrator.py module.
"""

import datetime
import os
import time

import pytest

from mailvault import db
from mailvault.errors import TransportError
from mailvault.filesystem import FileEnumerator
from mailvault.orchestrator import BackupOrchestrator


def files_of(settings, mailbox):
    return FileEnumerator(settings.mail_root).list(mailbox)


class TestCloudPath:
    """Tests for cloud_path_for."""

    def test_date_partitioned_path(self, services, fake_clock, mail_factory):
        orchestrator = BackupOrchestrator(services.settings, services.transport, clock=fake_clock)
        mail_factory("alice smith", "1700000000.M1.host:2,S")
        file = files_of(services.settings, "alice smith")[0]

        assert orchestrator.cloud_path_for(file) == "ISP-Email-Backups/2024/06/01/alice_smith/1700000000.M1.host_2,S"


class TestBackupFile:
    """Tests for backup_file."""

    def test_backup_records_completed(self, services, fake_graph, mail_factory):
        mail_factory("alice", "1", size=100)
        file = files_of(services.settings, "alice")[0]

        result = services.orchestrator.backup_file(file)

        assert result.success is True
        assert result.skipped is False
        row = db.find_backup(services.settings.db_path, file.source_path)
        assert row["status"] == "completed"
        assert row["size"] == 100
        assert row["checksum"] is not None
        assert fake_graph.items[row["cloud_path"]] == file.path.read_bytes()

    def test_backup_is_idempotent(self, services, fake_graph, mail_factory):
        mail_factory("alice", "1")
        file = files_of(services.settings, "alice")[0]

        services.orchestrator.backup_file(file)
        second = services.orchestrator.backup_file(file)

        assert second.success is True
        assert second.skipped is True
        assert fake_graph.small_uploads == 1

    def test_force_reuploads_to_same_path(self, services, fake_graph, mail_factory):
        mail_factory("alice", "1")
        file = files_of(services.settings, "alice")[0]

        first = services.orchestrator.backup_file(file)
        second = services.orchestrator.backup_file(file, force=True)

        assert fake_graph.small_uploads == 2
        assert second.cloud_path == first.cloud_path

    def test_failure_marks_record_failed(self, services, mail_factory, mocker):
        mail_factory("alice", "1")
        file = files_of(services.settings, "alice")[0]
        mocker.patch.object(services.transport, "upload", side_effect=TransportError("boom"))

        result = services.orchestrator.backup_file(file)

        assert result.success is False
        assert "boom" in result.error
        row = db.find_backup(services.settings.db_path, file.source_path)
        assert row["status"] == "failed"
        assert row["retry_count"] == 1

    def test_failed_record_is_retried(self, services, fake_graph, mail_factory, mocker):
        mail_factory("alice", "1")
        file = files_of(services.settings, "alice")[0]
        mocker.patch.object(services.transport, "upload", side_effect=TransportError("boom"))
        services.orchestrator.backup_file(file)
        mocker.stopall()

        result = services.orchestrator.backup_file(file)

        assert result.success is True
        assert db.find_backup(services.settings.db_path, file.source_path)["status"] == "completed"

    def test_interrupt_marks_failed_and_propagates(self, services, mail_factory, mocker):
        mail_factory("alice", "1")
        file = files_of(services.settings, "alice")[0]
        mocker.patch.object(services.transport, "upload", side_effect=KeyboardInterrupt)

        with pytest.raises(KeyboardInterrupt):
            services.orchestrator.backup_file(file)

        row = db.find_backup(services.settings.db_path, file.source_path)
        assert row["status"] == "failed"
        assert row["error_message"] == "interrupted"


class TestBatchDrivers:
    """Tests for perform_initial_backup and sync_new."""

    def test_initial_backup_counts(self, services, mail_factory, mocker):
        for name in ("1", "2", "3"):
            mail_factory("alice", name)
        files = files_of(services.settings, "alice")
        real_upload = services.transport.upload

        def flaky(local, remote, progress=None):
            if local.name == "2":
                raise TransportError("nope")
            return real_upload(local, remote)

        mocker.patch.object(services.transport, "upload", side_effect=flaky)

        counts = services.orchestrator.perform_initial_backup(files)

        assert (counts.processed, counts.succeeded, counts.failed) == (3, 2, 1)

    def test_initial_backup_skips_completed(self, services, fake_graph, mail_factory):
        mail_factory("alice", "1")
        files = files_of(services.settings, "alice")
        services.orchestrator.perform_initial_backup(files)

        counts = services.orchestrator.perform_initial_backup(files)

        assert counts.skipped == 1
        assert counts.succeeded == 1
        assert fake_graph.small_uploads == 1

    def test_sync_new_skips_unchanged(self, services, fake_graph, mail_factory):
        mail_factory("alice", "1", age_days=1)
        files = files_of(services.settings, "alice")
        services.orchestrator.backup_file(files[0])

        counts = services.orchestrator.sync_new(files)

        assert counts.skipped == 1
        assert fake_graph.small_uploads == 1

    def test_sync_new_reuploads_modified(self, services, fake_graph, mail_factory):
        path = mail_factory("alice", "1", age_days=1)
        services.orchestrator.backup_file(files_of(services.settings, "alice")[0])
        future = time.time() + 3600
        os.utime(path, (future, future))

        counts = services.orchestrator.sync_new(files_of(services.settings, "alice"))

        assert counts.succeeded == 1
        assert counts.skipped == 0
        assert fake_graph.small_uploads == 2

    def test_sync_new_respects_since(self, services, fake_graph, mail_factory):
        mail_factory("alice", "old", age_days=5)
        mail_factory("alice", "new")
        since = datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(days=1)

        counts = services.orchestrator.sync_new(files_of(services.settings, "alice"), since=since)

        assert counts.processed == 1
        assert fake_graph.small_uploads == 1
