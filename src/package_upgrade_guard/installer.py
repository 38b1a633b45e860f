from __future__ import annotations

from pathlib import Path
from typing import Protocol
import logging
import shutil
import tempfile
import zipfile

from .archive import DEFAULT_DOWNLOAD_TIMEOUT_SECONDS, ArchiveError, local_archive
from .host import MANIFEST_SUFFIX, Host
from .models import PACKAGE_KIND_THEME, InstallResult, package_slug

logger = logging.getLogger(__name__)


class PackageInstaller(Protocol):
    def upgrade(self, kind: str, package_id: str) -> InstallResult | None: ...

    def install(self, kind: str, source: str) -> InstallResult | None: ...


class ArchiveInstaller:
    """Replaces package directories with the contents of zip archives.

    ``upgrade`` takes its source from the host's update metadata, so an explicit
    archive must be injected there first. The old directory is removed before the
    new one is moved in: a failure in between leaves the package absent, never mixed.
    """

    def __init__(
        self,
        *,
        host: Host,
        work_dir: Path,
        download_timeout_seconds: int = DEFAULT_DOWNLOAD_TIMEOUT_SECONDS,
    ) -> None:
        self.host = host
        self.work_dir = work_dir
        self.download_timeout_seconds = download_timeout_seconds

    def upgrade(self, kind: str, package_id: str) -> InstallResult | None:
        update = self.host.get_update(kind, package_id)
        if update is None or not update.download_source:
            return InstallResult(
                status="failed",
                package_id=package_id,
                error_code="up_to_date",
                message=f"{package_id} has no pending update",
            )

        slug = package_slug(package_id, kind)
        result = self._deploy(
            kind=kind,
            source=update.download_source,
            slug=None if slug == "." else slug,
            replace=True,
        )
        if not result.failed:
            self.host.clear_update(kind, package_id)
        return result

    def install(self, kind: str, source: str) -> InstallResult | None:
        return self._deploy(kind=kind, source=source, slug=None, replace=False)

    def _deploy(self, *, kind: str, source: str, slug: str | None, replace: bool) -> InstallResult:
        root = self.host.package_root(kind)
        if root is None:
            return InstallResult(
                status="failed",
                error_code="no_content_dir",
                message="unable to locate the content directory",
            )

        self.work_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(dir=self.work_dir, prefix="pug-install-") as temp_dir:
            extract_dir = Path(temp_dir) / "extract"
            try:
                with local_archive(source, timeout_seconds=self.download_timeout_seconds) as archive_path:
                    _extract_archive(archive_path, extract_dir)
            except ArchiveError as error:
                return InstallResult(status="failed", error_code="download_failed", message=str(error))

            entries = list(extract_dir.iterdir()) if extract_dir.is_dir() else []
            if len(entries) != 1 or not entries[0].is_dir():
                return InstallResult(
                    status="failed",
                    error_code="incompatible_archive",
                    message="archive must contain exactly one top-level directory",
                )

            new_dir = entries[0]
            target_slug = slug or new_dir.name
            destination = root / target_slug
            if destination.exists():
                if not replace:
                    return InstallResult(
                        status="failed",
                        error_code="folder_exists",
                        message=f"destination folder already exists: {destination}",
                    )
                _remove_path(destination)

            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(new_dir), str(destination))

        package_id = _installed_package_id(kind=kind, root=root, slug=target_slug)
        logger.info("deployed %s %s from %s", kind, package_id, source)
        return InstallResult(status="success", package_id=package_id)


def _extract_archive(archive_path: Path, destination: Path) -> None:
    destination.mkdir(parents=True, exist_ok=True)
    resolved_destination = destination.resolve()
    try:
        with zipfile.ZipFile(archive_path) as archive:
            for member in archive.namelist():
                target = (destination / member).resolve()
                if not target.is_relative_to(resolved_destination):
                    raise ArchiveError(f"archive member escapes the extraction directory: {member}")
            archive.extractall(destination)
    except (OSError, zipfile.BadZipFile) as error:
        raise ArchiveError(f"unable to extract {archive_path}: {error}") from error


def _installed_package_id(*, kind: str, root: Path, slug: str) -> str:
    if kind == PACKAGE_KIND_THEME:
        return slug
    manifests = sorted((root / slug).glob(f"*{MANIFEST_SUFFIX}"))
    return f"{slug}/{manifests[0].name}" if manifests else slug


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()
