"""Unit tests for SnapshotStore.

Tests snapshot persistence, atomic replacement and backup rotation.
"""

import json
import os
import stat
from unittest.mock import patch

import pytest

from sophosguard_sync import BACKUP_RETENTION, PersistFailure, Snapshot, SnapshotStore


class TestSnapshotLoad:
    """Tests for loading snapshots."""

    def test_load_without_file_returns_empty(self, store):
        snapshot = store.load()

        assert snapshot == Snapshot.empty()
        assert snapshot.timestamp is None
        assert snapshot.is_empty

    def test_load_corrupt_file_returns_empty(self, store, caplog):
        """Test a corrupt snapshot degrades to empty and logs an error."""
        store.directory.mkdir(parents=True)
        store.current_path.write_text("{not json", encoding="utf-8")

        with caplog.at_level("ERROR"):
            snapshot = store.load()

        assert snapshot.is_empty
        assert "Error loading IP list" in caplog.text

    def test_load_reads_external_layout(self, store):
        """Test files written by other tools with the same keys are readable."""
        store.directory.mkdir(parents=True)
        store.current_path.write_text(
            json.dumps({
                "IPAddresses": ["1.1.1.1", "2.2.2.2"],
                "LastUpdated": "2024-01-02T03:04:05",
                "Count": 2,
            }),
            encoding="utf-8",
        )

        snapshot = store.load()

        assert snapshot.addresses == {"1.1.1.1", "2.2.2.2"}
        assert snapshot.count == 2
        assert snapshot.timestamp.year == 2024


class TestSnapshotSave:
    """Tests for saving snapshots."""

    def test_save_then_load_round_trip(self, store):
        addresses = {"10.0.0.2", "10.0.0.10", "192.0.2.1"}

        saved = store.save(addresses)
        loaded = store.load()

        assert loaded.addresses == addresses
        assert loaded.count == len(addresses)
        assert loaded.timestamp == saved.timestamp

    def test_save_writes_sorted_json(self, store):
        """Test addresses are stored in numeric order with a count."""
        store.save({"10.0.0.10", "10.0.0.2", "9.255.255.255"})

        data = json.loads(store.current_path.read_text(encoding="utf-8"))

        assert data["IPAddresses"] == ["9.255.255.255", "10.0.0.2", "10.0.0.10"]
        assert data["Count"] == 3
        assert data["LastUpdated"]

    def test_save_creates_directory(self, tmp_path):
        store = SnapshotStore(tmp_path / "nested" / "dir")

        store.save({"1.1.1.1"})

        assert store.current_path.exists()

    def test_save_creates_backup_copy(self, store):
        store.save({"1.1.1.1"})

        backups = store.list_backups()

        assert len(backups) == 1
        assert backups[0].read_text(encoding="utf-8") == store.current_path.read_text(encoding="utf-8")

    @pytest.mark.skipif(os.name != "posix", reason="POSIX file modes")
    def test_current_file_readable_like_backups(self, store):
        """Test the current snapshot gets the umask mode, not the private temp-file mode."""
        old_umask = os.umask(0o022)
        try:
            store.save({"1.1.1.1"})
        finally:
            os.umask(old_umask)

        current_mode = stat.S_IMODE(store.current_path.stat().st_mode)
        backup_mode = stat.S_IMODE(store.list_backups()[0].stat().st_mode)

        assert current_mode == 0o644
        assert current_mode == backup_mode

    def test_save_leaves_no_temp_files(self, store):
        store.save({"1.1.1.1"})
        store.save({"2.2.2.2"})

        leftovers = [p.name for p in store.directory.iterdir() if p.suffix == ".tmp"]

        assert leftovers == []

    def test_save_replace_failure_raises_and_keeps_previous(self, store):
        """Test a failed replace surfaces PersistFailure and keeps the old file."""
        store.save({"1.1.1.1"})

        with patch("sophosguard_sync.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(PersistFailure):
                store.save({"2.2.2.2"})

        assert store.load().addresses == {"1.1.1.1"}
        assert [p for p in store.directory.iterdir() if p.suffix == ".tmp"] == []

    def test_save_backup_failure_raises(self, store):
        with patch("sophosguard_sync.shutil.copyfile", side_effect=OSError("read-only")):
            with pytest.raises(PersistFailure):
                store.save({"1.1.1.1"})

    def test_save_into_file_path_raises(self, tmp_path):
        """Test an unusable directory surfaces as PersistFailure."""
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        store = SnapshotStore(blocker / "IPList")

        with pytest.raises(PersistFailure):
            store.save({"1.1.1.1"})


class TestBackupRotation:
    """Tests for backup retention."""

    def test_six_saves_keep_five_backups(self, store):
        for i in range(6):
            store.save({f"10.0.0.{i}"})

        assert len(store.list_backups()) == BACKUP_RETENTION

    def test_backups_newest_first(self, store):
        """Test the newest backup matches the current snapshot."""
        for i in range(8):
            store.save({f"10.0.0.{i}"})

        backups = store.list_backups()
        newest = json.loads(backups[0].read_text(encoding="utf-8"))
        oldest_kept = json.loads(backups[-1].read_text(encoding="utf-8"))

        assert len(backups) == BACKUP_RETENTION
        assert newest["IPAddresses"] == ["10.0.0.7"]
        assert oldest_kept["IPAddresses"] == ["10.0.0.3"]

    def test_custom_backup_count(self, tmp_path, ticking_clock):
        store = SnapshotStore(tmp_path, backup_count=2, clock=ticking_clock)

        for i in range(4):
            store.save({f"10.0.0.{i}"})

        assert len(store.list_backups()) == 2

    def test_delete_errors_are_not_fatal(self, store, caplog):
        """Test a backup that cannot be deleted is logged and skipped."""
        for i in range(BACKUP_RETENTION):
            store.save({f"10.0.0.{i}"})

        with patch("pathlib.Path.unlink", side_effect=OSError("busy")):
            with caplog.at_level("ERROR"):
                snapshot = store.save({"10.0.1.1"})

        assert snapshot.addresses == {"10.0.1.1"}
        assert "Error deleting backup file" in caplog.text
