from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

PACKAGE_KIND_PLUGIN = "plugin"
PACKAGE_KIND_THEME = "theme"
PACKAGE_CATEGORIES = {
    PACKAGE_KIND_PLUGIN: "plugins",
    PACKAGE_KIND_THEME: "themes",
}


@dataclass(frozen=True)
class UpgradeRequest:
    kind: str = PACKAGE_KIND_PLUGIN
    package_id: str | None = None
    archive: str | None = None
    enable_maintenance_mode: bool = False
    enable_crash_recovery: bool = False
    new_version: str | None = None


@dataclass(frozen=True)
class PackageUpdate:
    package_id: str
    new_version: str | None = None
    required_runtime_version: str | None = None
    download_source: str | None = None


@dataclass(frozen=True)
class BackupRecord:
    package_id: str
    kind: str
    slug: str
    source_root: Path
    category: str
    backup_path: Path
    was_active: bool
    was_active_network: bool


@dataclass(frozen=True)
class InstallResult:
    status: str
    package_id: str | None = None
    error_code: str | None = None
    message: str = ""

    @property
    def failed(self) -> bool:
        return self.status != "success"


@dataclass(frozen=True)
class UpgradeOutcome:
    status: str
    version: str | None
    package_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "version": self.version}


@dataclass(frozen=True)
class RestoreResult:
    status: str
    restored: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.status == "success"


def category_for(kind: str) -> str:
    try:
        return PACKAGE_CATEGORIES[kind]
    except KeyError:
        raise ValueError(f"unsupported package kind: {kind}") from None


def package_slug(package_id: str, kind: str) -> str:
    if kind == PACKAGE_KIND_THEME:
        return package_id.strip("/")
    return Path(package_id).parent.as_posix()
