from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
import os
import platform


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class AppConfig:
    content_dir: Path = Path(os.getenv("PUG_CONTENT_DIR", "./content"))
    backup_dir_name: str = os.getenv("PUG_BACKUP_DIR_NAME", "upgrade-temp-backup")
    journal_db_path: Path = Path(os.getenv("PUG_JOURNAL_DB_PATH", "./data/upgrade-journal.db"))
    host_state_path: Path = Path(os.getenv("PUG_HOST_STATE_PATH", "./data/host-state.yaml"))
    runtime_version: str = os.getenv("PUG_RUNTIME_VERSION", platform.python_version())
    disallow_file_mods: bool = _env_flag("PUG_DISALLOW_FILE_MODS")
    lock_timeout_seconds: int = int(os.getenv("PUG_LOCK_TIMEOUT_SECONDS", "300"))
    download_timeout_seconds: int = int(os.getenv("PUG_DOWNLOAD_TIMEOUT_SECONDS", "60"))
    log_level: str = os.getenv("PUG_LOG_LEVEL", "INFO")

    @property
    def plugins_dir(self) -> Path:
        return self.content_dir / "plugins"

    @property
    def themes_dir(self) -> Path:
        return self.content_dir / "themes"

    @property
    def backup_root(self) -> Path:
        return self.content_dir / self.backup_dir_name

    @property
    def lock_path(self) -> Path:
        return self.content_dir / f"{self.backup_dir_name}.lock"

    @property
    def work_dir(self) -> Path:
        return self.content_dir / "upgrade"


def ensure_directories(config: AppConfig) -> None:
    config.plugins_dir.mkdir(parents=True, exist_ok=True)
    config.themes_dir.mkdir(parents=True, exist_ok=True)
    config.journal_db_path.parent.mkdir(parents=True, exist_ok=True)
    config.host_state_path.parent.mkdir(parents=True, exist_ok=True)


def configure_logging(config: AppConfig) -> None:
    level = logging.getLevelName(config.log_level.strip().upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
