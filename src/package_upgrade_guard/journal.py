from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
import sqlite3
from typing import Any

from .models import BackupRecord

STATUS_IN_PROGRESS = "in_progress"
STATUS_RESTORE_SCHEDULED = "restore_scheduled"
STATUS_COMMITTED = "committed"
STATUS_FAILED = "failed"
STATUS_RESTORED = "restored"
STATUS_RESTORE_FAILED = "restore_failed"
STATUS_ABANDONED = "abandoned"
INCOMPLETE_STATUSES = (STATUS_IN_PROGRESS, STATUS_RESTORE_SCHEDULED)

_INTENT_COLUMNS = (
    "transaction_id",
    "kind",
    "package_id",
    "status",
    "crash_recovery",
    "message",
    "created_at",
    "updated_at",
)


class UpgradeJournal:
    """Write-ahead record of upgrade intents and the backups taken for them.

    An intent stays ``in_progress`` (or ``restore_scheduled``) until the upgrade commits or
    its restore runs. Anything still incomplete on the next start belongs to a process
    that died mid-upgrade.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def initialize(self) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS upgrade_intents (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    transaction_id TEXT NOT NULL UNIQUE,
                    kind TEXT NOT NULL,
                    package_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    crash_recovery INTEGER NOT NULL,
                    message TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS backup_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    transaction_id TEXT NOT NULL,
                    package_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    slug TEXT NOT NULL,
                    source_root TEXT NOT NULL,
                    category TEXT NOT NULL,
                    backup_path TEXT NOT NULL,
                    was_active INTEGER NOT NULL,
                    was_active_network INTEGER NOT NULL
                )
                """
            )
            connection.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_upgrade_intents_status
                ON upgrade_intents(status, created_at)
                """
            )
            connection.commit()

    def begin(self, *, transaction_id: str, kind: str, package_id: str, crash_recovery: bool) -> None:
        now = _utc_now_iso()
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                """
                INSERT INTO upgrade_intents (
                    transaction_id,
                    kind,
                    package_id,
                    status,
                    crash_recovery,
                    message,
                    created_at,
                    updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (transaction_id, kind, package_id, STATUS_IN_PROGRESS, int(crash_recovery), "", now, now),
            )
            connection.commit()

    def record_backup(self, transaction_id: str, record: BackupRecord) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                """
                INSERT INTO backup_records (
                    transaction_id,
                    package_id,
                    kind,
                    slug,
                    source_root,
                    category,
                    backup_path,
                    was_active,
                    was_active_network
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    transaction_id,
                    record.package_id,
                    record.kind,
                    record.slug,
                    str(record.source_root),
                    record.category,
                    str(record.backup_path),
                    int(record.was_active),
                    int(record.was_active_network),
                ),
            )
            connection.commit()

    def mark(self, transaction_id: str, status: str, message: str = "") -> None:
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                UPDATE upgrade_intents
                SET status = ?, message = ?, updated_at = ?
                WHERE transaction_id = ?
                """,
                (status, message, _utc_now_iso(), transaction_id),
            )
            connection.commit()

        if cursor.rowcount == 0:
            raise KeyError(f"unknown upgrade transaction: {transaction_id}")

    def get_intent(self, transaction_id: str) -> dict[str, Any] | None:
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                f"SELECT {', '.join(_INTENT_COLUMNS)} FROM upgrade_intents WHERE transaction_id = ?",
                (transaction_id,),
            )
            row = cursor.fetchone()

        return _intent_row(row) if row else None

    def get_incomplete(self) -> list[dict[str, Any]]:
        placeholders = ", ".join("?" for _ in INCOMPLETE_STATUSES)
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                f"""
                SELECT {', '.join(_INTENT_COLUMNS)}
                FROM upgrade_intents
                WHERE status IN ({placeholders})
                ORDER BY created_at ASC, id ASC
                """,
                INCOMPLETE_STATUSES,
            )
            rows = cursor.fetchall()

        return [_intent_row(row) for row in rows]

    def get_backup_records(self, transaction_id: str) -> list[BackupRecord]:
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                SELECT package_id, kind, slug, source_root, category, backup_path, was_active, was_active_network
                FROM backup_records
                WHERE transaction_id = ?
                ORDER BY id ASC
                """,
                (transaction_id,),
            )
            rows = cursor.fetchall()

        return [
            BackupRecord(
                package_id=row[0],
                kind=row[1],
                slug=row[2],
                source_root=Path(row[3]),
                category=row[4],
                backup_path=Path(row[5]),
                was_active=bool(row[6]),
                was_active_network=bool(row[7]),
            )
            for row in rows
        ]

    def get_recent(self, limit: int = 50) -> list[dict[str, Any]]:
        if limit <= 0:
            return []

        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                f"""
                SELECT {', '.join(_INTENT_COLUMNS)}
                FROM upgrade_intents
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (limit,),
            )
            rows = cursor.fetchall()

        return [_intent_row(row) for row in rows]

    def count(self) -> int:
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute("SELECT COUNT(*) FROM upgrade_intents")
            row = cursor.fetchone()

        return int(row[0]) if row else 0


def _intent_row(row: tuple[Any, ...]) -> dict[str, Any]:
    intent = dict(zip(_INTENT_COLUMNS, row))
    intent["crash_recovery"] = bool(intent["crash_recovery"])
    return intent


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).replace(microsecond=0).isoformat()
