"""
Central configuration for the requirement tracker.

All paths, thresholds and schedules are defined here.
Override via environment variables or by passing a Config instance directly.

Settings priority (highest wins):
  1. config/tracker_settings.json  (admin-editable, persisted)
  2. Environment variables
  3. Hardcoded defaults in this file
"""
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

# Project root (directory containing this file)
PROJECT_ROOT = Path(__file__).parent

# Default data locations (relative to project root)
DEFAULT_OUTPUT_DIR   = PROJECT_ROOT / "output"
DEFAULT_DB_PATH      = DEFAULT_OUTPUT_DIR / "tracker.db"
DEFAULT_STORAGE_DIR  = DEFAULT_OUTPUT_DIR / "storage"
DEFAULT_BACKUP_DIR   = PROJECT_ROOT / "backups"

SETTINGS_FILENAME = "tracker_settings.json"


def config_dir() -> Path:
    return Path(os.getenv("CONFIG_DIR", str(PROJECT_ROOT / "config")))


@dataclass
class Config:
    # --- Persistence ---
    output_dir: Path = field(
        default_factory=lambda: Path(os.getenv("OUTPUT_DIR", str(DEFAULT_OUTPUT_DIR)))
    )
    db_path:    Path = field(
        default_factory=lambda: Path(os.getenv("DB_PATH", str(DEFAULT_DB_PATH)))
    )

    # --- Document storage ---
    storage_dir: Path = field(
        default_factory=lambda: Path(os.getenv("STORAGE_DIR", str(DEFAULT_STORAGE_DIR)))
    )
    storage_base_url: str = field(
        default_factory=lambda: os.getenv("STORAGE_BASE_URL", "/files")
    )
    max_upload_bytes: int = field(
        default_factory=lambda: int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))
    )

    # --- Urgency ---
    # A requirement due within this many days (and not yet past) becomes Urgent.
    urgency_threshold_days: int = field(
        default_factory=lambda: int(os.getenv("URGENCY_THRESHOLD_DAYS", "5"))
    )
    urgency_sweep_interval_seconds: int = field(
        default_factory=lambda: int(os.getenv("URGENCY_SWEEP_INTERVAL", "3600"))
    )

    # --- Backup settings ---
    backup_enabled: bool = field(
        default_factory=lambda: os.getenv("BACKUP_ENABLED", "true").lower() != "false"
    )
    backup_interval_hours: int = field(
        default_factory=lambda: int(os.getenv("BACKUP_INTERVAL_HOURS", "24"))
    )
    backup_retention_count: int = field(
        default_factory=lambda: int(os.getenv("BACKUP_RETENTION_COUNT", "7"))
    )
    backup_dir: Path = field(
        default_factory=lambda: Path(os.getenv("BACKUP_DIR", str(DEFAULT_BACKUP_DIR)))
    )

    def __post_init__(self) -> None:
        """Overlay runtime-tunable settings from tracker_settings.json if present."""
        settings_file = config_dir() / SETTINGS_FILENAME
        if not settings_file.exists():
            return
        _type_map: dict[str, type] = {
            "storage_base_url":               str,
            "max_upload_bytes":               int,
            "urgency_threshold_days":         int,
            "urgency_sweep_interval_seconds": int,
            "backup_enabled":                 bool,
            "backup_interval_hours":          int,
            "backup_retention_count":         int,
        }
        try:
            with open(settings_file, encoding="utf-8") as f:
                overrides = {k: v for k, v in json.load(f).items() if not k.startswith("_")}
            for key, val in overrides.items():
                if key in _type_map and hasattr(self, key):
                    setattr(self, key, _type_map[key](val))
        except (OSError, ValueError, TypeError) as exc:
            logger.warning("Failed to load %s: %s", SETTINGS_FILENAME, exc)

    def ensure_output_dir(self) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
