#!/usr/bin/env python3
"""
Unit tests for purge.py module.
"""

import pytest

from mailvault import db
from mailvault.errors import PurgeEligibilityViolation, TransportError
from mailvault.filesystem import FileEnumerator
from mailvault.models import PurgeOutcome
from mailvault.purge import PurgeEngine


@pytest.fixture
def engine(services):
    return PurgeEngine(services.settings, services.transport, services.enumerator, clock=services.clock)


@pytest.fixture
def old_backed_up(services, mail_factory):
    """Two 40-day-old files in alice, both backed up."""
    mail_factory("alice", "1", size=100, age_days=40)
    mail_factory("alice", "2", size=50, age_days=40)
    files = FileEnumerator(services.settings.mail_root).list("alice")
    for f in files:
        assert services.orchestrator.backup_file(f).success
    return files


class TestCheckEligible:
    """Tests for the purge safety checks."""

    def test_no_record(self, engine, mail_factory, services):
        mail_factory("alice", "1", age_days=40)
        file = services.enumerator.list("alice")[0]
        with pytest.raises(PurgeEligibilityViolation, match="no backup record"):
            engine.check_eligible(file)

    def test_record_not_completed(self, engine, old_backed_up, services):
        db.mark_backup_failed(services.settings.db_path, old_backed_up[0].source_path, "x")
        with pytest.raises(PurgeEligibilityViolation, match="failed"):
            engine.check_eligible(old_backed_up[0])

    def test_cloud_object_missing(self, engine, old_backed_up, fake_graph):
        fake_graph.items.clear()
        with pytest.raises(PurgeEligibilityViolation, match="cloud object missing"):
            engine.check_eligible(old_backed_up[0])

    def test_cloud_check_error(self, engine, old_backed_up, fake_graph):
        fake_graph.fail_metadata_status = 500
        with pytest.raises(PurgeEligibilityViolation, match="cloud check failed"):
            engine.check_eligible(old_backed_up[0])


class TestPurge:
    """Tests for purge_file and purge."""

    def test_purges_eligible_files(self, engine, old_backed_up, services):
        counts = engine.purge(old_backed_up, engine.cutoff(30))

        assert counts.purged == 2
        assert counts.bytes == 150
        assert not any(f.path.exists() for f in old_backed_up)
        for f in old_backed_up:
            assert db.find_backup(services.settings.db_path, f.source_path)["status"] == "purged"

    def test_cloud_missing_deletes_nothing(self, engine, old_backed_up, fake_graph, mocker):
        fake_graph.items.clear()
        delete = mocker.spy(engine.enumerator, "delete")

        counts = engine.purge(old_backed_up, engine.cutoff(30))

        assert counts.purged == 0
        assert counts.failed == 2
        assert delete.call_count == 0
        assert all(f.path.exists() for f in old_backed_up)

    def test_dry_run_matches_real_run(self, engine, old_backed_up, services):
        dry = engine.purge(old_backed_up, engine.cutoff(30), dry_run=True)

        assert dry.would_purge == 2
        assert dry.eligible == 2
        assert dry.bytes == 150
        assert all(f.path.exists() for f in old_backed_up)
        assert db.backup_status_counts(services.settings.db_path) == {"completed": 2}

        real = engine.purge(old_backed_up, engine.cutoff(30))

        assert real.eligible == dry.eligible
        assert real.bytes == dry.bytes

    def test_too_new_is_skipped(self, engine, mail_factory, services):
        mail_factory("alice", "fresh", age_days=1)
        file = services.enumerator.list("alice")[0]
        services.orchestrator.backup_file(file)

        assert engine.purge_file(file, engine.cutoff(30)) == PurgeOutcome.SKIPPED
        assert file.path.exists()

    def test_delete_failure_leaves_record_completed(self, engine, old_backed_up, services, mocker):
        mocker.patch.object(engine.enumerator, "delete", return_value=False)

        outcome = engine.purge_file(old_backed_up[0], engine.cutoff(30))

        assert outcome == PurgeOutcome.FAILED
        assert db.find_backup(services.settings.db_path, old_backed_up[0].source_path)["status"] == "completed"

    def test_unexpected_error_counts_failed(self, engine, old_backed_up, mocker):
        mocker.patch.object(engine, "check_eligible", side_effect=[RuntimeError("db gone"), TransportError("x")])

        counts = engine.purge(old_backed_up, engine.cutoff(30))

        assert counts.failed == 2
        assert len(counts.errors) == 2
