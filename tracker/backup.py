"""
Backup service for the tracker.
Creates and rotates ZIP archives holding the SQLite database, stored PO
documents and the config directory.
"""
import logging
import os
import sqlite3
import zipfile
from datetime import datetime
from pathlib import Path
from typing import Optional

from config import Config, config_dir

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "tracker_backup_"


class BackupService:
    """
    Manages automated backups and rotation.
    """

    def __init__(self, config: Config, backup_dir: Optional[Path] = None) -> None:
        self.config = config
        self.backup_dir = Path(backup_dir or config.backup_dir)
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        self._last_run: Optional[datetime] = None

    def create_backup(self) -> Path:
        """
        Create a new timestamped ZIP backup.  Returns its path.
        """
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        zip_path = self.backup_dir / f"{BACKUP_PREFIX}{timestamp}.zip"

        logger.info("Starting backup: %s", zip_path.name)

        try:
            with zipfile.ZipFile(zip_path, "w", zipfile.ZIP_DEFLATED) as zipf:
                # 1. Database (consistent copy through the sqlite3 backup API)
                if self.config.db_path.exists():
                    temp_db = self.backup_dir / f"temp_{timestamp}.db"
                    try:
                        src_conn = None
                        dst_conn = None
                        try:
                            src_conn = sqlite3.connect(self.config.db_path)
                            dst_conn = sqlite3.connect(temp_db)
                            src_conn.backup(dst_conn)
                        finally:
                            if src_conn:
                                src_conn.close()
                            if dst_conn:
                                dst_conn.close()
                        zipf.write(temp_db, arcname=f"output/{self.config.db_path.name}")
                    finally:
                        if temp_db.exists():
                            temp_db.unlink()

                # 2. Stored documents
                storage = Path(self.config.storage_dir)
                if storage.exists():
                    for f in sorted(storage.rglob("*")):
                        if f.is_file():
                            zipf.write(f, arcname=f"storage/{f.relative_to(storage).as_posix()}")

                # 3. Config
                cfg_dir = config_dir()
                if cfg_dir.exists():
                    for f in cfg_dir.glob("*"):
                        if f.is_file() and f.suffix != ".bak":
                            zipf.write(f, arcname=f"config/{f.name}")

            logger.info("Backup completed: %s", zip_path.name)
            self._last_run = datetime.now()
            self.rotate_backups()
            return zip_path

        except (OSError, sqlite3.Error) as e:
            logger.error("Backup failed: %s", e)
            if zip_path.exists():
                zip_path.unlink()
            raise

    def rotate_backups(self) -> list[Path]:
        """
        Remove old backups, keeping only the newest N.  Returns the removed paths.
        """
        retention = self.config.backup_retention_count
        if retention <= 0:
            return []

        backups = sorted(self.backup_dir.glob(f"{BACKUP_PREFIX}*.zip"), reverse=True)
        removed = []
        for old_zip in backups[retention:]:
            logger.info("Rotating out old backup: %s", old_zip.name)
            try:
                old_zip.unlink()
                removed.append(old_zip)
            except OSError as e:
                logger.warning("Failed to delete old backup %s: %s", old_zip, e)
        return removed

    def run_if_due(self) -> Optional[Path]:
        """Create a backup when enabled and the configured interval has elapsed."""
        if not self.config.backup_enabled:
            return None
        last = self._last_run or self.get_last_backup_time()
        interval = self.config.backup_interval_hours * 3600
        if last is not None and (datetime.now() - last).total_seconds() < interval:
            return None
        try:
            return self.create_backup()
        except (OSError, sqlite3.Error) as e:
            logger.error("Automated backup failed: %s", e)
            return None

    def get_last_backup_time(self) -> Optional[datetime]:
        """Return the modification time of the newest backup file."""
        backups = sorted(self.backup_dir.glob(f"{BACKUP_PREFIX}*.zip"), key=os.path.getmtime)
        if not backups:
            return None
        return datetime.fromtimestamp(backups[-1].stat().st_mtime)
