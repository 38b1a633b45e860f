from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol
import logging

import yaml

from .config import AppConfig
from .models import PACKAGE_KIND_PLUGIN, PACKAGE_KIND_THEME, PackageUpdate, category_for

logger = logging.getLogger(__name__)

MANIFEST_SUFFIX = ".pkg"
THEME_MANIFEST_NAME = "theme.pkg"
MAINTENANCE_FILE_NAME = ".maintenance"


class Host(Protocol):
    """Collaborators the orchestrator consumes from the host application."""

    def file_mods_disabled(self) -> bool: ...

    def runtime_version(self) -> str: ...

    def package_root(self, kind: str) -> Path | None: ...

    def installed_packages(self, kind: str) -> list[str]: ...

    def is_installed(self, kind: str, package_id: str) -> bool: ...

    def package_version(self, kind: str, package_id: str) -> str | None: ...

    def refresh_updates(self, kind: str) -> None: ...

    def get_update(self, kind: str, package_id: str) -> PackageUpdate | None: ...

    def set_update(self, kind: str, update: PackageUpdate) -> None: ...

    def clear_update(self, kind: str, package_id: str) -> None: ...

    def is_active(self, kind: str, package_id: str) -> bool: ...

    def is_active_network(self, kind: str, package_id: str) -> bool: ...

    def activate(self, kind: str, package_id: str, *, network: bool = False) -> None: ...

    def clear_activation_cache(self) -> None: ...

    def enable_maintenance_mode(self) -> None: ...

    def disable_maintenance_mode(self) -> None: ...


class HostStateError(RuntimeError):
    """Raised when the host state file cannot be parsed."""


class LocalHost:
    """Host backed by a content directory and a YAML state file.

    The state file holds activation flags and the update feed:

        active: {plugin: [alpha/alpha.pkg], theme: [twentyten]}
        active_network: {plugin: []}
        updates:
          plugin:
            alpha/alpha.pkg: {new_version: "2.0", requires_runtime: "3.10", package: https://...}
    """

    def __init__(self, config: AppConfig) -> None:
        self.config = config
        self._state: dict[str, Any] | None = None

    def file_mods_disabled(self) -> bool:
        return self.config.disallow_file_mods

    def runtime_version(self) -> str:
        return self.config.runtime_version

    def package_root(self, kind: str) -> Path | None:
        if not self.config.content_dir.is_dir():
            return None
        return self.config.content_dir / category_for(kind)

    def installed_packages(self, kind: str) -> list[str]:
        root = self.config.content_dir / category_for(kind)
        if not root.is_dir():
            return []

        if kind == PACKAGE_KIND_THEME:
            return sorted(
                entry.name for entry in root.iterdir() if entry.is_dir() and (entry / THEME_MANIFEST_NAME).is_file()
            )

        package_ids: list[str] = []
        for entry in sorted(root.iterdir()):
            if entry.is_file() and entry.suffix == MANIFEST_SUFFIX:
                package_ids.append(entry.name)
            elif entry.is_dir():
                package_ids.extend(
                    f"{entry.name}/{manifest.name}"
                    for manifest in sorted(entry.glob(f"*{MANIFEST_SUFFIX}"))
                    if manifest.is_file()
                )
        return package_ids

    def is_installed(self, kind: str, package_id: str) -> bool:
        return any(
            installed == package_id or package_id in installed.split("/")
            for installed in self.installed_packages(kind)
        )

    def package_version(self, kind: str, package_id: str) -> str | None:
        manifest = self._read_manifest(kind, package_id)
        version = manifest.get("version")
        return str(version) if version is not None else None

    def refresh_updates(self, kind: str) -> None:
        # The update feed is written by an external checker; re-read it from disk.
        category_for(kind)
        self._state = None

    def get_update(self, kind: str, package_id: str) -> PackageUpdate | None:
        entry = self._state_section("updates", kind).get(package_id)
        if not isinstance(entry, dict):
            return None
        return PackageUpdate(
            package_id=package_id,
            new_version=_optional_str(entry.get("new_version")),
            required_runtime_version=_optional_str(entry.get("requires_runtime")),
            download_source=_optional_str(entry.get("package")),
        )

    def set_update(self, kind: str, update: PackageUpdate) -> None:
        entry: dict[str, str] = {}
        if update.new_version is not None:
            entry["new_version"] = update.new_version
        if update.required_runtime_version is not None:
            entry["requires_runtime"] = update.required_runtime_version
        if update.download_source is not None:
            entry["package"] = update.download_source
        self._state_section("updates", kind)[update.package_id] = entry
        self._save_state()

    def clear_update(self, kind: str, package_id: str) -> None:
        updates = self._state_section("updates", kind)
        if updates.pop(package_id, None) is not None:
            self._save_state()

    def is_active(self, kind: str, package_id: str) -> bool:
        return package_id in self._state_section("active", kind) or self.is_active_network(kind, package_id)

    def is_active_network(self, kind: str, package_id: str) -> bool:
        return package_id in self._state_section("active_network", kind)

    def activate(self, kind: str, package_id: str, *, network: bool = False) -> None:
        section = "active_network" if network else "active"
        if kind == PACKAGE_KIND_THEME:
            # A host runs a single theme at a time.
            self._state_section(section, kind).clear()
        active = self._state_section(section, kind)
        if package_id not in active:
            active.append(package_id)
        self._save_state()
        logger.info("activated %s %s (network=%s)", kind, package_id, network)

    def clear_activation_cache(self) -> None:
        self._state = None

    def enable_maintenance_mode(self) -> None:
        marker = self.config.content_dir / MAINTENANCE_FILE_NAME
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.write_text(yaml.safe_dump({"upgrade": datetime.now(tz=UTC).isoformat()}), encoding="utf-8")
        logger.info("maintenance mode enabled")

    def disable_maintenance_mode(self) -> None:
        (self.config.content_dir / MAINTENANCE_FILE_NAME).unlink(missing_ok=True)
        logger.info("maintenance mode disabled")

    def is_maintenance_mode(self) -> bool:
        return (self.config.content_dir / MAINTENANCE_FILE_NAME).exists()

    def _manifest_path(self, kind: str, package_id: str) -> Path:
        root = self.config.content_dir / category_for(kind)
        if kind == PACKAGE_KIND_PLUGIN:
            return root / package_id
        return root / package_id / THEME_MANIFEST_NAME

    def _read_manifest(self, kind: str, package_id: str) -> dict[str, Any]:
        path = self._manifest_path(kind, package_id)
        if not path.is_file():
            return {}
        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as error:
            logger.warning("unreadable manifest %s: %s", path, error)
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def _state_section(self, section: str, kind: str) -> Any:
        state = self._load_state()
        default: Any = {} if section == "updates" else []
        by_kind = state.setdefault(section, {})
        value = by_kind.get(kind)
        if not isinstance(value, type(default)):
            value = default
            by_kind[kind] = value
        return value

    def _load_state(self) -> dict[str, Any]:
        if self._state is not None:
            return self._state

        path = self.config.host_state_path
        parsed: Any = None
        if path.is_file():
            try:
                parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
            except yaml.YAMLError as error:
                raise HostStateError(f"host state file {path} is not valid YAML: {error}") from error
        if parsed is None:
            parsed = {}
        if not isinstance(parsed, dict):
            raise HostStateError(f"host state file {path} must contain a mapping")

        for section in ("active", "active_network", "updates"):
            if not isinstance(parsed.get(section), dict):
                parsed[section] = {}
        self._state = parsed
        return parsed

    def _save_state(self) -> None:
        path = self.config.host_state_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(self._load_state(), sort_keys=True), encoding="utf-8")


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
