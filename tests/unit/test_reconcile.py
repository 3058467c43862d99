#!/usr/bin/env python3
"""
Unit tests for reconcile.py module.
"""

import os
import time

import pytest

from mailvault import db
from mailvault.errors import TransportError
from mailvault.filesystem import FileEnumerator
from mailvault.models import ReconcileOutcome
from mailvault.reconcile import RULES, ReconcileOptions, ReconciliationEngine


@pytest.fixture
def backed_up(services, mail_factory):
    """A file in mailbox alice that has been backed up; returns (file, cloud_path)."""
    path = mail_factory("alice", "1", size=128, age_days=2)
    file = FileEnumerator(services.settings.mail_root).list("alice")[0]
    result = services.orchestrator.backup_file(file)
    assert path == file.path
    return file, result.cloud_path


def engine_for(services, **options):
    return ReconciliationEngine(services.orchestrator, ReconcileOptions(**options))


class TestRules:
    """Tests for the rule table decisions."""

    def test_rule_order(self):
        assert [name for name, _ in RULES] == [
            "missing_record", "cloud_missing", "modified_locally", "checksum_mismatch", "verified",
        ]

    def test_missing_record_uploads(self, services, fake_graph, mail_factory):
        mail_factory("alice", "1")
        file = FileEnumerator(services.settings.mail_root).list("alice")[0]

        outcome, rule = engine_for(services).reconcile_file(file)

        assert (outcome, rule) == (ReconcileOutcome.REPAIRED, "missing_record")
        assert fake_graph.small_uploads == 1

    def test_cloud_missing_with_stale_checksum_repairs_once(self, services, fake_graph, backed_up):
        file, cloud_path = backed_up
        del fake_graph.items[cloud_path]
        file.path.write_bytes(b"different content")
        os.utime(file.path, (file.modified_time.timestamp(), file.modified_time.timestamp()))

        outcome, rule = engine_for(services).reconcile_file(file)

        assert (outcome, rule) == (ReconcileOutcome.REPAIRED, "cloud_missing")
        assert fake_graph.small_uploads == 2
        assert fake_graph.items[cloud_path] == b"different content"

    def test_cloud_missing_repair_disabled(self, services, fake_graph, backed_up):
        file, cloud_path = backed_up
        del fake_graph.items[cloud_path]
        engine = engine_for(services, repair_missing=False)

        outcome, rule = engine.reconcile_file(file)

        assert (outcome, rule) == (ReconcileOutcome.FAILED, "cloud_missing")
        assert engine.last_error == "cloud missing, repair disabled"
        assert fake_graph.small_uploads == 1

    def test_modified_locally_updates(self, services, fake_graph, backed_up):
        file, _ = backed_up
        future = time.time() + 3600
        os.utime(file.path, (future, future))
        file = FileEnumerator(services.settings.mail_root).list("alice")[0]

        outcome, rule = engine_for(services).reconcile_file(file)

        assert (outcome, rule) == (ReconcileOutcome.UPDATED, "modified_locally")
        assert fake_graph.small_uploads == 2

    def test_checksum_mismatch_repairs(self, services, fake_graph, backed_up):
        file, cloud_path = backed_up
        fake_graph.corrupt(cloud_path)

        outcome, rule = engine_for(services).reconcile_file(file)

        assert (outcome, rule) == (ReconcileOutcome.REPAIRED, "checksum_mismatch")
        assert fake_graph.items[cloud_path] == file.path.read_bytes()

    def test_checksum_not_checked_without_verify(self, services, fake_graph, backed_up):
        file, cloud_path = backed_up
        fake_graph.corrupt(cloud_path)

        outcome, rule = engine_for(services, verify_checksums=False).reconcile_file(file)

        assert (outcome, rule) == (ReconcileOutcome.VERIFIED, "verified")

    def test_checksum_error_is_swallowed(self, services, backed_up, mocker):
        file, _ = backed_up
        mocker.patch.object(services.transport, "checksum", side_effect=TransportError("hash service down"))

        outcome, rule = engine_for(services).reconcile_file(file)

        assert (outcome, rule) == (ReconcileOutcome.VERIFIED, "verified")

    def test_missing_remote_hash_is_verified(self, services, fake_graph, backed_up):
        file, _ = backed_up
        fake_graph.omit_hashes = True

        outcome, _ = engine_for(services).reconcile_file(file)

        assert outcome == ReconcileOutcome.VERIFIED

    def test_verified_stamps_record(self, services, backed_up, mocker):
        file, _ = backed_up
        spy = mocker.spy(db, "mark_backup_verified")

        engine_for(services).reconcile_file(file)

        spy.assert_called_once_with(services.settings.db_path, file.source_path)

    def test_unexpected_error_is_failed(self, services, backed_up, mocker):
        file, _ = backed_up
        mocker.patch.object(services.transport, "exists", side_effect=TransportError("503"))
        engine = engine_for(services)

        outcome, rule = engine.reconcile_file(file)

        assert (outcome, rule) == (ReconcileOutcome.FAILED, "error")
        assert "503" in engine.last_error


class TestReconcile:
    """Tests for the batch reconcile loop."""

    def test_counts_outcomes(self, services, fake_graph, mail_factory):
        for name in ("1", "2", "3"):
            mail_factory("alice", name, age_days=2)
        files = FileEnumerator(services.settings.mail_root).list("alice")
        for f in files[:2]:
            services.orchestrator.backup_file(f)
        cloud_path = db.find_backup(services.settings.db_path, files[1].source_path)["cloud_path"]
        del fake_graph.items[cloud_path]

        counts = engine_for(services, repair_missing=False).reconcile(files)

        assert counts.processed == 3
        assert counts[ReconcileOutcome.VERIFIED] == 1
        assert counts[ReconcileOutcome.REPAIRED] == 1
        assert counts.failed == 1
        assert counts.succeeded == 2
        assert counts.errors == [{"path": files[1].source_path, "error": "cloud missing, repair disabled"}]

    def test_custom_rule_table(self, services, backed_up):
        file, _ = backed_up
        engine = ReconciliationEngine(services.orchestrator,
                                      rules=(("always", lambda e, f, r: ReconcileOutcome.UPDATED),))
        assert engine.reconcile_file(file) == (ReconcileOutcome.UPDATED, "always")
