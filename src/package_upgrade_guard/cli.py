from __future__ import annotations

from typing import Any, Sequence
import argparse
import json
import logging
import sys

import filelock

from .config import AppConfig, configure_logging, ensure_directories
from .host import LocalHost
from .installer import ArchiveInstaller
from .journal import UpgradeJournal
from .models import PACKAGE_KIND_PLUGIN, PACKAGE_KIND_THEME, UpgradeRequest
from .orchestrator import UpgradeError, UpgradeOrchestrator
from .recovery import RecoveryResult, recover_incomplete_upgrades
from .shutdown import default_registry

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="package-upgrade-guard",
        description="Upgrade installed plugins and themes with backup and crash recovery.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    upgrade = subparsers.add_parser("upgrade", help="upgrade (or install from an archive) one package")
    upgrade.add_argument("--kind", choices=(PACKAGE_KIND_PLUGIN, PACKAGE_KIND_THEME), default=PACKAGE_KIND_PLUGIN)
    upgrade.add_argument("--package", dest="package_id", help="installed package identifier, e.g. alpha/alpha.pkg")
    upgrade.add_argument("--archive", help="local path or http(s) URL of the new package archive")
    upgrade.add_argument("--new-version", help="target version recorded for an explicit archive")
    upgrade.add_argument("--maintenance", action="store_true", help="enable maintenance mode while files change")
    upgrade.add_argument("--crash-recovery", action="store_true", help="back up first and restore on failure")

    subparsers.add_parser("recover", help="roll back upgrades interrupted by a previous process")

    history = subparsers.add_parser("history", help="show recent upgrade intents")
    history.add_argument("--limit", type=int, default=20)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = AppConfig()
    configure_logging(config)
    ensure_directories(config)

    host = LocalHost(config)
    journal = UpgradeJournal(config.journal_db_path)
    journal.initialize()

    if args.command == "history":
        _emit(journal.get_recent(limit=args.limit))
        return 0

    recovered = _recover(config=config, host=host, journal=journal)
    if recovered:
        logger.warning("recovered %d interrupted upgrade(s)", len(recovered))
    if args.command == "recover":
        _emit(
            [
                {"transaction_id": item.transaction_id, "package": item.package_id, "status": item.status}
                for item in recovered
            ]
        )
        return 0

    default_registry.install()
    orchestrator = UpgradeOrchestrator(
        config=config,
        host=host,
        installer=ArchiveInstaller(
            host=host,
            work_dir=config.work_dir,
            download_timeout_seconds=config.download_timeout_seconds,
        ),
        journal=journal,
        shutdown_registry=default_registry,
    )
    request = UpgradeRequest(
        kind=args.kind,
        package_id=args.package_id,
        archive=args.archive,
        enable_maintenance_mode=args.maintenance,
        enable_crash_recovery=args.crash_recovery,
        new_version=args.new_version,
    )
    try:
        outcome = orchestrator.upgrade(request)
    except UpgradeError as error:
        _emit(error.to_dict())
        return 1

    _emit(outcome.to_dict())
    return 0


def _recover(*, config: AppConfig, host: LocalHost, journal: UpgradeJournal) -> list[RecoveryResult]:
    lock = filelock.FileLock(str(config.lock_path), timeout=config.lock_timeout_seconds)
    with lock:
        return recover_incomplete_upgrades(host=host, journal=journal, backup_root=config.backup_root)


def _emit(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True) + "\n")
    sys.stdout.flush()


if __name__ == "__main__":
    sys.exit(main())
