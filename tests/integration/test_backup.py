"""
Integration tests for the backup service.
"""
import json
import os
import sqlite3
import zipfile

import pytest

from tracker.backup import BACKUP_PREFIX, BackupService
from tracker.mapping import TABLE_PURCHASE_ORDERS


@pytest.mark.integration
class TestBackupService:

    def test_archive_contents(self, test_config, sqlite_store, run, temp_dir):
        """The archive carries the database, stored documents and config."""
        run(sqlite_store.insert(TABLE_PURCHASE_ORDERS, {
            "id": "PO-1", "user_id": "user-1", "po_number": "PO-100", "po_date": "2024-01-10",
            "items": [], "created_at": "2024-01-10T00:00:00+00:00",
        }))
        doc = test_config.storage_dir / "user-1" / "PO-1_1.pdf"
        doc.parent.mkdir(parents=True, exist_ok=True)
        doc.write_bytes(b"%PDF-1.4")
        cfg = temp_dir / "config"
        cfg.mkdir(parents=True, exist_ok=True)
        (cfg / "tracker_settings.json").write_text(json.dumps({"urgency_threshold_days": 3}))

        path = BackupService(test_config).create_backup()

        assert path.name.startswith(BACKUP_PREFIX)
        with zipfile.ZipFile(path) as zf:
            names = set(zf.namelist())
        assert names == {
            "output/tracker.db",
            "storage/user-1/PO-1_1.pdf",
            "config/tracker_settings.json",
        }

    def test_rotation_keeps_newest(self, test_config):
        test_config.backup_retention_count = 2
        service = BackupService(test_config)
        for stamp in ("20240101_000000_000000", "20240102_000000_000000", "20240103_000000_000000"):
            (service.backup_dir / f"{BACKUP_PREFIX}{stamp}.zip").write_bytes(b"")

        removed = service.rotate_backups()

        assert [p.name for p in removed] == [f"{BACKUP_PREFIX}20240101_000000_000000.zip"]
        assert len(list(service.backup_dir.glob("*.zip"))) == 2

    def test_run_if_due(self, test_config):
        service = BackupService(test_config)

        first = service.run_if_due()
        assert first is not None and first.exists()
        assert service.run_if_due() is None

    def test_disabled(self, test_config):
        test_config.backup_enabled = False
        assert BackupService(test_config).run_if_due() is None

    def test_last_backup_time(self, test_config):
        service = BackupService(test_config)
        assert service.get_last_backup_time() is None

        older = service.backup_dir / f"{BACKUP_PREFIX}old.zip"
        older.write_bytes(b"")
        os.utime(older, (1_000_000, 1_000_000))

        assert service.get_last_backup_time().timestamp() == pytest.approx(1_000_000)

    def test_source_closed_when_copy_cannot_open(self, test_config, sqlite_store, run, monkeypatch):
        """A failure opening the temp copy still closes the source connection."""
        run(sqlite_store.insert(TABLE_PURCHASE_ORDERS, {
            "id": "PO-1", "user_id": "user-1", "po_number": "PO-100", "po_date": "2024-01-10",
            "items": [], "created_at": "2024-01-10T00:00:00+00:00",
        }))
        real_connect = sqlite3.connect
        opened = []

        def connect(path, *args, **kwargs):
            if opened:
                raise sqlite3.OperationalError("unable to open database file")
            conn = real_connect(path, *args, **kwargs)
            opened.append(conn)
            return conn

        monkeypatch.setattr(sqlite3, "connect", connect)
        service = BackupService(test_config)

        with pytest.raises(sqlite3.OperationalError):
            service.create_backup()

        with pytest.raises(sqlite3.ProgrammingError):
            opened[0].execute("SELECT 1")
        assert list(service.backup_dir.glob("*.zip")) == []
