#!/usr/bin/env python3
"""
Unit tests for restore.py module.
"""

import pytest

from mailvault import db
from mailvault.filesystem import FileEnumerator
from mailvault.restore import RestoreEngine


@pytest.fixture
def engine(services):
    return RestoreEngine(services.settings, services.transport)


@pytest.fixture
def backed_up(services, mail_factory):
    path = mail_factory("alice", "1", size=300)
    file = FileEnumerator(services.settings.mail_root).list("alice")[0]
    services.orchestrator.backup_file(file)
    return path


class TestRestoreFile:
    """Tests for restore_file."""

    def test_restore_into_target_dir(self, engine, backed_up, tmp_path):
        target = tmp_path / "out"

        assert engine.restore_file(str(backed_up), target) == "restored"
        assert (target / "alice" / "1").read_bytes() == backed_up.read_bytes()

    def test_existing_target_skipped(self, engine, backed_up):
        assert engine.restore_file(str(backed_up)) == "skipped"

    def test_purged_file_restored_in_place(self, engine, services, backed_up):
        content = backed_up.read_bytes()
        db.mark_backup_purged(services.settings.db_path, str(backed_up))
        backed_up.unlink()

        assert engine.restore_file(str(backed_up)) == "restored"
        assert backed_up.read_bytes() == content
        assert db.find_backup(services.settings.db_path, str(backed_up))["status"] == "completed"

    def test_purged_restored_elsewhere_stays_purged(self, engine, services, backed_up, tmp_path):
        db.mark_backup_purged(services.settings.db_path, str(backed_up))

        engine.restore_file(str(backed_up), tmp_path / "out")

        assert db.find_backup(services.settings.db_path, str(backed_up))["status"] == "purged"

    def test_unknown_path(self, engine):
        with pytest.raises(LookupError):
            engine.restore_file("/nowhere/1")

    def test_not_restorable_status(self, engine, services, backed_up):
        db.mark_backup_failed(services.settings.db_path, str(backed_up), "x")
        with pytest.raises(LookupError):
            engine.restore_file(str(backed_up), overwrite=True)

    def test_download_failure(self, engine, fake_graph, backed_up, tmp_path):
        fake_graph.items.clear()
        with pytest.raises(OSError):
            engine.restore_file(str(backed_up), tmp_path / "out")


class TestRestore:
    """Tests for the batch restore loop."""

    def test_counts(self, engine, backed_up, tmp_path):
        counts = engine.restore([str(backed_up), "/nowhere/2", str(backed_up)], tmp_path / "out")

        assert counts.processed == 3
        assert counts.restored == 1
        assert counts.skipped == 1
        assert counts.failed == 1
        assert counts.errors[0]["path"] == "/nowhere/2"
