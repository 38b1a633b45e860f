from __future__ import annotations

from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import replace
from functools import partial
from typing import Any, Callable, NoReturn
import logging

import filelock
from packaging.version import InvalidVersion, Version

from .archive import ArchiveError, get_archive_directories, is_remote_reference, local_archive
from .backup import BackupManager, BackupStageError, new_transaction_id
from .config import AppConfig
from .host import Host
from .installer import PackageInstaller
from .journal import (
    STATUS_COMMITTED,
    STATUS_FAILED,
    STATUS_RESTORE_FAILED,
    STATUS_RESTORE_SCHEDULED,
    STATUS_RESTORED,
    UpgradeJournal,
)
from .locator import PackageLocator
from .models import (
    PACKAGE_KIND_PLUGIN,
    InstallResult,
    PackageUpdate,
    RestoreResult,
    UpgradeOutcome,
    UpgradeRequest,
    category_for,
)
from .shutdown import ShutdownTaskRegistry, default_registry

logger = logging.getLogger(__name__)

ERROR_MISSING_PARAMETER = "missing_parameter"
ERROR_FILE_MODS_DISABLED = "file_mods_disabled"
ERROR_INVALID_ARCHIVE = "invalid_archive"
ERROR_PACKAGE_NOT_FOUND = "package_not_found"
ERROR_UPGRADE_LOCKED = "upgrade_locked"
ERROR_VERSION_INCOMPATIBLE = "version_incompatible"
ERROR_BACKUP_FAILED = "backup_failed"
ERROR_INSTALL_FAILED = "install_failed"


class UpgradeError(RuntimeError):
    """Structured upgrade failure carrying enough context to drive a client UI."""

    def __init__(
        self,
        *,
        kind: str,
        message: str,
        code: int,
        package_id: str | None = None,
        installed: bool | None = None,
        handle_shutdown: bool = False,
    ) -> None:
        normalized_message = message.strip() or "unknown error"
        super().__init__(normalized_message)
        self.kind = kind
        self.message = normalized_message
        self.code = code
        self.context: dict[str, Any] = {
            "package": package_id,
            "installed": installed,
            "handle_shutdown": handle_shutdown,
        }

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "code": self.code, "context": dict(self.context)}


class _MaintenanceWindow:
    def __init__(self, host: Host, requested: bool) -> None:
        self.host = host
        self.requested = requested
        self.active = False

    def open(self) -> None:
        if self.requested and not self.active:
            self.host.enable_maintenance_mode()
            self.active = True

    def close(self) -> None:
        if self.active:
            self.active = False
            self.host.disable_maintenance_mode()


class UpgradeOrchestrator:
    def __init__(
        self,
        *,
        config: AppConfig,
        host: Host,
        installer: PackageInstaller,
        journal: UpgradeJournal | None = None,
        shutdown_registry: ShutdownTaskRegistry | None = None,
        list_archive_directories: Callable[[str], list[str]] | None = None,
    ) -> None:
        self.config = config
        self.host = host
        self.installer = installer
        self.journal = journal
        self.shutdown_registry = shutdown_registry if shutdown_registry is not None else default_registry
        self.list_archive_directories = list_archive_directories or partial(
            get_archive_directories,
            timeout_seconds=config.download_timeout_seconds,
        )
        self.lock = filelock.FileLock(str(config.lock_path), timeout=config.lock_timeout_seconds)

    def upgrade(self, request: UpgradeRequest) -> UpgradeOutcome:
        self._validate(request)
        with self._local_copy(request) as local_request:
            return self._upgrade(local_request)

    def _upgrade(self, request: UpgradeRequest) -> UpgradeOutcome:
        package_id = request.package_id
        if not package_id:
            if not request.archive:
                raise _missing_parameter()
            package_id = self._resolve_package_id(request.kind, request.archive)
            if package_id is None:
                return self.install(request)
        elif not self.host.is_installed(request.kind, package_id):
            if request.archive:
                return self.install(request)
            raise UpgradeError(
                kind=ERROR_PACKAGE_NOT_FOUND,
                message=f"{request.kind} {package_id} is not installed",
                code=404,
                package_id=package_id,
                installed=False,
                handle_shutdown=request.enable_crash_recovery,
            )

        with self._upgrade_lock(request, package_id):
            return self._upgrade_installed(request, package_id)

    def install(self, request: UpgradeRequest) -> UpgradeOutcome:
        self._validate(request)
        if not request.archive:
            raise UpgradeError(
                kind=ERROR_PACKAGE_NOT_FOUND,
                message=f"{request.kind} {request.package_id} is not installed and no archive was supplied",
                code=404,
                package_id=request.package_id,
                installed=False,
            )

        with self._upgrade_lock(request, request.package_id):
            return self._install_new(request, request.archive)

    def _validate(self, request: UpgradeRequest) -> None:
        if not request.package_id and not request.archive:
            raise _missing_parameter()
        category_for(request.kind)
        if self.host.file_mods_disabled():
            raise UpgradeError(
                kind=ERROR_FILE_MODS_DISABLED,
                message="file modification is disabled on this host",
                code=403,
                package_id=request.package_id,
            )

    @contextmanager
    def _local_copy(self, request: UpgradeRequest) -> Iterator[UpgradeRequest]:
        """Download a remote archive once so resolution and installation read the same file."""
        if not request.archive or not is_remote_reference(request.archive):
            yield request
            return

        with ExitStack() as stack:
            try:
                archive_path = stack.enter_context(
                    local_archive(request.archive, timeout_seconds=self.config.download_timeout_seconds)
                )
            except ArchiveError as error:
                raise UpgradeError(kind=ERROR_INVALID_ARCHIVE, message=str(error), code=400) from error
            yield replace(request, archive=str(archive_path))

    def _resolve_package_id(self, kind: str, archive: str) -> str | None:
        locator = PackageLocator(host=self.host, kind=kind, list_directories=self.list_archive_directories)
        try:
            return locator.resolve(archive)
        except ArchiveError as error:
            raise UpgradeError(kind=ERROR_INVALID_ARCHIVE, message=str(error), code=400) from error

    @contextmanager
    def _upgrade_lock(self, request: UpgradeRequest, package_id: str | None) -> Iterator[None]:
        self.config.lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.lock.acquire()
        except filelock.Timeout as error:
            raise UpgradeError(
                kind=ERROR_UPGRADE_LOCKED,
                message="another upgrade is in progress on this host",
                code=409,
                package_id=package_id,
                installed=None,
                handle_shutdown=request.enable_crash_recovery,
            ) from error
        try:
            yield
        finally:
            self.lock.release()

    def _upgrade_installed(self, request: UpgradeRequest, package_id: str) -> UpgradeOutcome:
        kind = request.kind
        was_active = self.host.is_active(kind, package_id)
        was_active_network = self.host.is_active_network(kind, package_id)

        self.host.refresh_updates(kind)
        self._check_runtime(request, package_id)

        if request.archive:
            self._inject_download_source(kind, package_id, request.archive, request.new_version)

        transaction_id = new_transaction_id()
        backups = BackupManager(host=self.host, backup_root=self.config.backup_root, transaction_id=transaction_id)
        if self.journal is not None:
            self.journal.begin(
                transaction_id=transaction_id,
                kind=kind,
                package_id=package_id,
                crash_recovery=request.enable_crash_recovery,
            )

        maintenance = _MaintenanceWindow(self.host, request.enable_maintenance_mode)
        try:
            self._replace_files(
                request=request,
                package_id=package_id,
                backups=backups,
                transaction_id=transaction_id,
                maintenance=maintenance,
            )
        finally:
            # KeyboardInterrupt and SystemExit bypass the Exception handlers in _replace_files.
            maintenance.close()

        if was_active:
            self.host.activate(kind, package_id, network=was_active_network)

        self._discard_backup(backups)
        version = self.host.package_version(kind, package_id)
        self._mark(transaction_id, STATUS_COMMITTED, f"upgraded to {version}")
        logger.info("upgraded %s %s to %s", kind, package_id, version)
        return UpgradeOutcome(status="success", version=version, package_id=package_id)

    def _replace_files(
        self,
        *,
        request: UpgradeRequest,
        package_id: str,
        backups: BackupManager,
        transaction_id: str,
        maintenance: _MaintenanceWindow,
    ) -> None:
        try:
            maintenance.open()
            if request.enable_crash_recovery:
                self._make_backup(request, package_id, backups, transaction_id)
            # Metadata may have moved since the first check; nothing is replaced yet.
            self._check_runtime(request, package_id)
        except Exception as error:
            maintenance.close()
            self._discard_backup(backups)
            self._mark(transaction_id, STATUS_FAILED, _error_message(error))
            raise

        logger.info("upgrading %s %s (transaction %s)", request.kind, package_id, transaction_id)
        try:
            result = self.installer.upgrade(request.kind, package_id)
        except Exception as error:  # pylint: disable=broad-except
            maintenance.close()
            self._handle_failure(
                request=request,
                package_id=package_id,
                backups=backups,
                transaction_id=transaction_id,
                message=_error_message(error),
                cause=error,
            )

        maintenance.close()
        if not result or result.failed:
            self._handle_failure(
                request=request,
                package_id=package_id,
                backups=backups,
                transaction_id=transaction_id,
                message=_failure_message(result),
            )

    def _install_new(self, request: UpgradeRequest, archive: str) -> UpgradeOutcome:
        kind = request.kind
        maintenance = _MaintenanceWindow(self.host, request.enable_maintenance_mode)

        logger.info("installing new %s from %s", kind, archive)
        try:
            maintenance.open()
            result = self.installer.install(kind, archive)
        except Exception as error:  # pylint: disable=broad-except
            raise UpgradeError(
                kind=ERROR_INSTALL_FAILED,
                message=_error_message(error),
                code=500,
                package_id=request.package_id,
                installed=False,
            ) from error
        finally:
            maintenance.close()

        if not result or result.failed or not result.package_id:
            raise UpgradeError(
                kind=ERROR_INSTALL_FAILED,
                message=f"installation of the {kind} failed: {_failure_message(result)}",
                code=400 if result else 500,
                package_id=request.package_id,
                installed=False,
            )

        package_id = result.package_id
        if kind == PACKAGE_KIND_PLUGIN:
            self.host.activate(kind, package_id)

        version = self.host.package_version(kind, package_id)
        logger.info("installed %s %s at version %s", kind, package_id, version)
        return UpgradeOutcome(status="success", version=version, package_id=package_id)

    def _check_runtime(self, request: UpgradeRequest, package_id: str) -> None:
        update = self.host.get_update(request.kind, package_id)
        required = update.required_runtime_version if update else None
        if not required:
            return

        current = self.host.runtime_version()
        if runtime_satisfies(current, required):
            return

        raise UpgradeError(
            kind=ERROR_VERSION_INCOMPATIBLE,
            message=f"The minimum required runtime version for this update is {required} (running {current})",
            code=500,
            package_id=package_id,
            installed=True,
            handle_shutdown=request.enable_crash_recovery,
        )

    def _inject_download_source(self, kind: str, package_id: str, archive: str, new_version: str | None) -> None:
        current = self.host.get_update(kind, package_id) or PackageUpdate(package_id=package_id)
        update = replace(current, download_source=archive)
        if new_version:
            update = replace(update, new_version=new_version)
        self.host.set_update(kind, update)

    def _make_backup(
        self,
        request: UpgradeRequest,
        package_id: str,
        backups: BackupManager,
        transaction_id: str,
    ) -> None:
        try:
            record = backups.make_backup(package_id, request.kind)
        except BackupStageError as error:
            raise UpgradeError(
                kind=ERROR_BACKUP_FAILED,
                message=str(error),
                code=500,
                package_id=package_id,
                installed=True,
                handle_shutdown=request.enable_crash_recovery,
            ) from error

        if self.journal is not None:
            self.journal.record_backup(transaction_id, record)

    def _handle_failure(
        self,
        *,
        request: UpgradeRequest,
        package_id: str,
        backups: BackupManager,
        transaction_id: str,
        message: str,
        cause: Exception | None = None,
    ) -> NoReturn:
        installed = self.host.is_installed(request.kind, package_id)

        if request.enable_crash_recovery and not installed:
            self._schedule_restore(package_id=package_id, backups=backups, transaction_id=transaction_id)
            self._mark(transaction_id, STATUS_RESTORE_SCHEDULED, message)
        else:
            self._discard_backup(backups)
            self._mark(transaction_id, STATUS_FAILED, message)

        logger.error(
            "upgrade of %s %s failed (installed=%s, crash_recovery=%s): %s",
            request.kind,
            package_id,
            installed,
            request.enable_crash_recovery,
            message,
        )
        raise UpgradeError(
            kind=ERROR_INSTALL_FAILED,
            message=message,
            code=500,
            package_id=package_id,
            installed=installed,
            handle_shutdown=request.enable_crash_recovery,
        ) from cause

    def _schedule_restore(self, *, package_id: str, backups: BackupManager, transaction_id: str) -> None:
        def restore() -> RestoreResult | None:
            with self.lock:
                if not self._restore_still_scheduled(transaction_id):
                    logger.info("restore of %s (%s) was already handled; skipping", package_id, transaction_id)
                    return None
                result = backups.restore_backup()
                self._mark(
                    transaction_id,
                    STATUS_RESTORED if result.ok else STATUS_RESTORE_FAILED,
                    "; ".join(result.errors),
                )
            return result

        self.shutdown_registry.register(restore, name=f"restore {package_id} ({transaction_id})")

    def _restore_still_scheduled(self, transaction_id: str) -> bool:
        # Startup recovery in another process may have restored this transaction first.
        if self.journal is None:
            return True
        intent = self.journal.get_intent(transaction_id)
        return intent is not None and intent["status"] == STATUS_RESTORE_SCHEDULED

    def _discard_backup(self, backups: BackupManager) -> None:
        cleanup_failure = backups.cleanup()
        if cleanup_failure:
            logger.warning("%s", cleanup_failure)

    def _mark(self, transaction_id: str, status: str, message: str = "") -> None:
        if self.journal is not None:
            self.journal.mark(transaction_id, status, message)


def runtime_satisfies(current: str, required: str) -> bool:
    try:
        return Version(current) >= Version(required)
    except InvalidVersion:
        logger.warning("cannot compare runtime version %r with requirement %r", current, required)
        return False


def _missing_parameter() -> UpgradeError:
    return UpgradeError(
        kind=ERROR_MISSING_PARAMETER,
        message="parameter is missing: a package identifier or an archive is required",
        code=400,
    )


def _failure_message(result: InstallResult | None) -> str:
    if not result:
        return "unknown error"
    return result.message or result.error_code or "installation failed"


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
