from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
import logging
import re
import shutil
import uuid

from .host import Host
from .models import BackupRecord, RestoreResult, category_for, package_slug

logger = logging.getLogger(__name__)


class BackupStageError(RuntimeError):
    def __init__(self, *, stage: str, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{stage} stage failed: {normalized_reason}")
        self.stage = stage


class BackupManager:
    """Point-in-time copies of package directories taken before a destructive upgrade.

    Every manager stages its copies under ``<backup_root>/<transaction_id>/<category>/<slug>``
    so that two managers never share a staging directory. Records accumulate until they
    are either restored or cleaned up, always all together.
    """

    def __init__(
        self,
        *,
        host: Host,
        backup_root: Path,
        transaction_id: str | None = None,
    ) -> None:
        self.host = host
        self.backup_root = backup_root
        self.transaction_id = _sanitize_filesystem_component(transaction_id or new_transaction_id())
        self.records: list[BackupRecord] = []

    @classmethod
    def from_records(
        cls,
        *,
        host: Host,
        backup_root: Path,
        transaction_id: str,
        records: list[BackupRecord],
    ) -> BackupManager:
        manager = cls(host=host, backup_root=backup_root, transaction_id=transaction_id)
        manager.records.extend(records)
        return manager

    @property
    def staging_dir(self) -> Path:
        return self.backup_root / self.transaction_id

    def make_backup(self, package_id: str, kind: str = "plugin") -> BackupRecord:
        slug = package_slug(package_id, kind)
        # A "." slug would stage the whole category directory.
        if not slug or slug == ".":
            raise BackupStageError(
                stage="precondition",
                reason=f"package {package_id!r} has no directory of its own to back up",
            )

        source_root = self.host.package_root(kind)
        if source_root is None:
            raise BackupStageError(stage="content_root", reason="unable to locate the content directory")

        category = category_for(kind)
        category_dir = self.staging_dir / category
        try:
            category_dir.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise BackupStageError(stage="mkdir", reason=_error_message(error)) from error

        source = source_root / slug
        destination = category_dir / slug
        try:
            if destination.exists():
                _remove_path(destination)
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copytree(source, destination, symlinks=True)
        except (OSError, shutil.Error) as error:
            raise BackupStageError(stage="copy", reason=_error_message(error)) from error

        record = BackupRecord(
            package_id=package_id,
            kind=kind,
            slug=slug,
            source_root=source_root,
            category=category,
            backup_path=destination,
            was_active=self.host.is_active(kind, package_id),
            was_active_network=self.host.is_active_network(kind, package_id),
        )
        self.records.append(record)
        logger.info("backed up %s %s to %s", kind, package_id, destination)
        return record

    def restore_backup(self) -> RestoreResult:
        errors: list[str] = []
        restored: list[str] = []

        for record in self.records:
            if not record.slug or record.slug == ".":
                errors.append(f"backup record for {record.package_id!r} has no restorable slug")
                continue

            live_root = self.host.package_root(record.kind)
            if live_root is None:
                errors.append("unable to locate the content directory")
                break

            if self._restore_files(record=record, live_root=live_root, errors=errors):
                restored.append(record.package_id)

            if record.was_active:
                try:
                    self.host.clear_activation_cache()
                    self.host.activate(record.kind, record.package_id, network=record.was_active_network)
                except Exception as error:  # pylint: disable=broad-except
                    errors.append(f"could not reactivate {record.package_id}: {_error_message(error)}")

        cleanup_failure = self.cleanup()
        if cleanup_failure:
            errors.append(cleanup_failure)

        if errors:
            logger.error("restore of transaction %s finished with errors: %s", self.transaction_id, "; ".join(errors))
        else:
            logger.info("restored %s from transaction %s", ", ".join(restored) or "nothing", self.transaction_id)

        return RestoreResult(
            status="failed" if errors else "success",
            restored=tuple(restored),
            errors=tuple(errors),
        )

    def cleanup(self) -> str | None:
        try:
            if self.staging_dir.exists():
                shutil.rmtree(self.staging_dir)
            if self.backup_root.is_dir() and not any(self.backup_root.iterdir()):
                self.backup_root.rmdir()
        except OSError as error:
            return f"cleanup stage failed: could not remove {self.staging_dir}: {_error_message(error)}"

        self.records.clear()
        return None

    def _restore_files(self, *, record: BackupRecord, live_root: Path, errors: list[str]) -> bool:
        if not record.backup_path.is_dir():
            errors.append(f"no staged copy of {record.slug} at {record.backup_path}")
            return False

        destination = live_root / record.slug
        if destination.exists() or destination.is_symlink():
            try:
                _remove_path(destination)
            except OSError as error:
                errors.append(f"could not remove the partial copy of {record.slug}: {_error_message(error)}")
                return False

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(record.backup_path), str(destination))
        except (OSError, shutil.Error) as error:
            errors.append(f"could not restore the original version of {record.slug}: {_error_message(error)}")
            return False
        return True


def new_transaction_id() -> str:
    timestamp = datetime.now(tz=UTC).strftime("%Y%m%dT%H%M%SZ")
    return f"{timestamp}-{uuid.uuid4().hex[:12]}"


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def _sanitize_filesystem_component(value: str) -> str:
    sanitized = re.sub(r"[^a-zA-Z0-9._-]", "_", value)
    return sanitized or "unknown"


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
