from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import zipfile

import pytest
import yaml

from package_upgrade_guard.config import AppConfig, ensure_directories
from package_upgrade_guard.host import LocalHost


@dataclass
class ContentBuilder:
    config: AppConfig
    archive_dir: Path

    def write_plugin(self, slug: str, *, version: str = "1.0", files: dict[str, bytes] | None = None) -> str:
        plugin_dir = self.config.plugins_dir / slug
        plugin_dir.mkdir(parents=True, exist_ok=True)
        (plugin_dir / f"{slug}.pkg").write_text(
            yaml.safe_dump({"name": slug.title(), "version": version}),
            encoding="utf-8",
        )
        for relative_path, payload in (files or {}).items():
            target = plugin_dir / relative_path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(payload)
        return f"{slug}/{slug}.pkg"

    def write_theme(self, slug: str, *, version: str = "1.0") -> str:
        theme_dir = self.config.themes_dir / slug
        theme_dir.mkdir(parents=True, exist_ok=True)
        (theme_dir / "theme.pkg").write_text(
            yaml.safe_dump({"name": slug.title(), "version": version}),
            encoding="utf-8",
        )
        (theme_dir / "style.css").write_text("body { color: black; }\n", encoding="utf-8")
        return slug

    def build_archive(
        self,
        slug: str,
        *,
        version: str = "2.0",
        manifest_name: str | None = None,
        extra_directories: tuple[str, ...] = (),
    ) -> Path:
        archive_path = self.archive_dir / f"{slug}-{version}.zip"
        archive_path.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(archive_path, "w") as archive:
            for directory in extra_directories:
                archive.writestr(f"{directory}/readme.txt", "extra")
            archive.writestr(
                f"{slug}/{manifest_name or f'{slug}.pkg'}",
                yaml.safe_dump({"name": slug.title(), "version": version}),
            )
            archive.writestr(f"{slug}/lib/main.py", f"VERSION = {version!r}\n")
        return archive_path


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        content_dir=tmp_path / "content",
        journal_db_path=tmp_path / "data" / "journal.db",
        host_state_path=tmp_path / "data" / "host-state.yaml",
        runtime_version="3.12.0",
        disallow_file_mods=False,
        lock_timeout_seconds=1,
        download_timeout_seconds=5,
    )


@pytest.fixture
def host(config: AppConfig) -> LocalHost:
    ensure_directories(config)
    return LocalHost(config)


@pytest.fixture
def content(config: AppConfig, tmp_path: Path) -> ContentBuilder:
    ensure_directories(config)
    return ContentBuilder(config=config, archive_dir=tmp_path / "archives")
