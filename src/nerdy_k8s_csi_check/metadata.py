from __future__ import annotations

from pathlib import Path
import sqlite3
from typing import Any

from .models import SnapshotRestoreOutcome

_HISTORY_COLUMNS = (
    "namespace",
    "storage_class",
    "volume_snapshot_class",
    "status",
    "state",
    "error_kind",
    "message",
    "snapshot_name",
    "original_pvc",
    "original_pod",
    "cloned_pvc",
    "cloned_pod",
    "started_at",
    "finished_at",
)


class CheckHistoryStore:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def initialize(self) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS check_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    namespace TEXT NOT NULL,
                    storage_class TEXT NOT NULL,
                    volume_snapshot_class TEXT NOT NULL,
                    status TEXT NOT NULL,
                    state TEXT NOT NULL,
                    error_kind TEXT,
                    message TEXT,
                    snapshot_name TEXT,
                    original_pvc TEXT,
                    original_pod TEXT,
                    cloned_pvc TEXT,
                    cloned_pod TEXT,
                    started_at TEXT NOT NULL,
                    finished_at TEXT NOT NULL
                )
                """
            )
            connection.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_check_history_lookup
                ON check_history(storage_class, volume_snapshot_class, status, finished_at)
                """
            )
            connection.commit()

    def record_outcome(self, outcome: SnapshotRestoreOutcome) -> None:
        resource_names = outcome.results.resource_names()
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                f"""
                INSERT INTO check_history ({", ".join(_HISTORY_COLUMNS)})
                VALUES ({", ".join("?" for _ in _HISTORY_COLUMNS)})
                """,
                (
                    outcome.args.namespace,
                    outcome.args.storage_class,
                    outcome.args.volume_snapshot_class,
                    outcome.status,
                    outcome.state.value,
                    outcome.error_kind,
                    outcome.message,
                    resource_names["snapshot"] or outcome.snapshot_name,
                    resource_names["original_pvc"],
                    resource_names["original_pod"],
                    resource_names["cloned_pvc"],
                    resource_names["cloned_pod"],
                    outcome.started_at,
                    outcome.finished_at,
                ),
            )
            connection.commit()

    def get_last_pass_map(self) -> dict[tuple[str, str], str]:
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                SELECT current.storage_class, current.volume_snapshot_class, current.finished_at
                FROM check_history AS current
                WHERE current.status = 'passed'
                  AND current.id = (
                    SELECT candidate.id
                    FROM check_history AS candidate
                    WHERE candidate.status = 'passed'
                      AND candidate.storage_class = current.storage_class
                      AND candidate.volume_snapshot_class = current.volume_snapshot_class
                    ORDER BY candidate.finished_at DESC, candidate.id DESC
                    LIMIT 1
                  )
                """
            )
            rows = cursor.fetchall()

        return {
            (storage_class, volume_snapshot_class): last_pass
            for storage_class, volume_snapshot_class, last_pass in rows
        }

    def get_recent_runs(self, limit: int = 50) -> list[dict[str, Any]]:
        if limit <= 0:
            return []

        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                f"""
                SELECT {", ".join(_HISTORY_COLUMNS)}
                FROM check_history
                ORDER BY finished_at DESC, id DESC
                LIMIT ?
                """,
                (limit,),
            )
            rows = cursor.fetchall()

        return [dict(zip(_HISTORY_COLUMNS, row)) for row in rows]

    def count_runs(self) -> int:
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute("SELECT COUNT(*) FROM check_history")
            row = cursor.fetchone()

        return int(row[0]) if row else 0
