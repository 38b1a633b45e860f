from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging

from .backup import BackupManager
from .host import Host
from .journal import STATUS_ABANDONED, STATUS_RESTORE_FAILED, STATUS_RESTORED, UpgradeJournal
from .models import RestoreResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecoveryResult:
    transaction_id: str
    package_id: str
    status: str
    restore: RestoreResult | None = None


def recover_incomplete_upgrades(
    *,
    host: Host,
    journal: UpgradeJournal,
    backup_root: Path,
) -> list[RecoveryResult]:
    """Roll back upgrades whose process ended before they committed or restored.

    Intended to run once at startup, before any new upgrade is accepted.
    """
    results: list[RecoveryResult] = []
    incomplete = journal.get_incomplete()
    if incomplete:
        # A process killed mid-upgrade leaves its maintenance marker behind.
        host.disable_maintenance_mode()

    for intent in incomplete:
        transaction_id = intent["transaction_id"]
        package_id = intent["package_id"]
        records = journal.get_backup_records(transaction_id)
        manager = BackupManager.from_records(
            host=host,
            backup_root=backup_root,
            transaction_id=transaction_id,
            records=records,
        )

        if records and not host.is_installed(intent["kind"], package_id):
            restore = manager.restore_backup()
            status = STATUS_RESTORED if restore.ok else STATUS_RESTORE_FAILED
            journal.mark(transaction_id, status, "; ".join(restore.errors) or "restored at startup")
            logger.warning("recovered interrupted upgrade of %s (%s): %s", package_id, transaction_id, status)
            results.append(
                RecoveryResult(transaction_id=transaction_id, package_id=package_id, status=status, restore=restore)
            )
            continue

        cleanup_failure = manager.cleanup()
        journal.mark(transaction_id, STATUS_ABANDONED, cleanup_failure or "package present at startup")
        logger.info("abandoned interrupted upgrade of %s (%s)", package_id, transaction_id)
        results.append(RecoveryResult(transaction_id=transaction_id, package_id=package_id, status=STATUS_ABANDONED))

    return results
