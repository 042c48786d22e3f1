from __future__ import annotations

import json
import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

from src.runtime.types import Run, RunEvent, RunStatus, utc_now_iso
from src.storage.run_registry import DuplicateRunError, new_event_id


SCHEMA_VERSION = 2


def _utc_ts() -> float:
    return time.time()


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def default_db_path() -> str:
    return os.getenv("RUNNER_STATE_PATH", "data/runner.db")


class SQLiteRunRegistry:
    """SQLite-backed run registry.

    Design goals:
    - Single process, single worker. The connection is shared between the worker
      thread and HTTP handlers, so every access goes through one lock.
    - Records are stored whole as JSON; only the columns needed for ordering and
      lookups are broken out.
    - `seq` is the insertion order. Pending runs are served strictly by `seq`,
      which survives reloads untouched.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = Path(db_path or default_db_path()).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON;")
        self._conn.execute("PRAGMA journal_mode = WAL;")
        self._conn.execute("PRAGMA synchronous = NORMAL;")

        self._init_schema()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self, *, mode: str = "IMMEDIATE") -> Iterable[None]:
        """Context manager for an explicit SQLite transaction."""
        with self._lock:
            self._conn.execute(f"BEGIN {mode};")
            try:
                yield
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS meta (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );
            """
        )

        # Base schema (v1): runs/events.
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
              seq INTEGER PRIMARY KEY AUTOINCREMENT,
              id TEXT NOT NULL UNIQUE,
              status TEXT NOT NULL,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL,
              record_json TEXT NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS events (
              event_id TEXT PRIMARY KEY,
              run_id TEXT NOT NULL,
              created_at REAL NOT NULL,
              event_type TEXT NOT NULL,
              payload_json TEXT NOT NULL,
              FOREIGN KEY (run_id) REFERENCES runs(id) ON DELETE CASCADE
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_events_run_ts ON events(run_id, created_at);")

        cur.execute(
            "INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?);",
            ("schema_version", "1"),
        )
        self._conn.commit()

        self._migrate_if_needed()

    def _get_schema_version(self) -> int:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?;", ("schema_version",)).fetchone()
        if row is None:
            return 0
        try:
            return int(row["value"])
        except (TypeError, ValueError):
            return 0

    def _set_schema_version(self, version: int) -> None:
        self._conn.execute(
            "INSERT INTO meta(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value;",
            ("schema_version", str(int(version))),
        )

    def _migrate_if_needed(self) -> None:
        current = self._get_schema_version()
        target = int(SCHEMA_VERSION)
        if current == target:
            return
        if current > target:
            raise RuntimeError(f"DB schema_version={current} is newer than code expects ({target}).")

        cur = self._conn.cursor()
        cur.execute("BEGIN;")
        try:
            while current < target:
                if current == 1:
                    self._migrate_1_to_2(cur)
                    current = 2
                    self._set_schema_version(current)
                else:
                    raise RuntimeError(f"Missing migration step for schema_version={current} -> {current+1}")
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _migrate_1_to_2(self, cur: sqlite3.Cursor) -> None:
        # Pending lookup and status counters.
        cur.execute("CREATE INDEX IF NOT EXISTS idx_runs_status_seq ON runs(status, seq);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_events_run_ts_id ON events(run_id, created_at, event_id);")

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> Run:
        return Run.from_dict(json.loads(str(row["record_json"])))

    # --- Runs
    def add(self, run: Run) -> Run:
        record = run.to_dict()
        try:
            with self.transaction():
                self._conn.execute(
                    """
                    INSERT INTO runs(id, status, created_at, updated_at, record_json)
                    VALUES(?, ?, ?, ?, ?);
                    """,
                    (run.id, run.status, run.created_at, run.updated_at, _json_dumps(record)),
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateRunError(run.id) from e
        return Run.from_dict(record)

    def get(self, run_id: str) -> Run | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT record_json FROM runs WHERE id = ? LIMIT 1;",
                (run_id,),
            ).fetchone()
        return self._row_to_run(row) if row is not None else None

    def list(self) -> list[Run]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT record_json FROM runs ORDER BY created_at ASC, seq ASC;",
            ).fetchall()
        return [self._row_to_run(r) for r in rows]

    def get_next_pending(self) -> Run | None:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT record_json
                FROM runs
                WHERE status = 'pending'
                ORDER BY seq ASC
                LIMIT 1;
                """
            ).fetchone()
        return self._row_to_run(row) if row is not None else None

    def count_by_status(self) -> dict[str, int]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT status, COUNT(*) AS n FROM runs GROUP BY status ORDER BY status;",
            ).fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}

    def update(self, run_id: str, patch: Mapping[str, Any] | None = None) -> Run | None:
        return self._update(run_id, lambda _current: patch or {})

    def update_if_status(
        self,
        run_id: str,
        expected_status: RunStatus,
        patch: Callable[[Run], Mapping[str, Any]],
    ) -> Run | None:
        return self._update(run_id, patch, expected_status=expected_status)

    def _update(
        self,
        run_id: str,
        patch: Callable[[Run], Mapping[str, Any]],
        *,
        expected_status: RunStatus | None = None,
    ) -> Run | None:
        # Read, check and write under one IMMEDIATE transaction.
        with self.transaction(mode="IMMEDIATE"):
            row = self._conn.execute(
                "SELECT record_json FROM runs WHERE id = ? LIMIT 1;",
                (run_id,),
            ).fetchone()
            if row is None:
                return None
            current = self._row_to_run(row)
            if expected_status is not None and current.status != expected_status:
                return None
            updated = current.with_patch(patch(current), updated_at=utc_now_iso())
            record = updated.to_dict()
            self._conn.execute(
                """
                UPDATE runs
                SET status = ?, updated_at = ?, record_json = ?
                WHERE id = ?;
                """,
                (updated.status, updated.updated_at, _json_dumps(record), run_id),
            )
        return Run.from_dict(record)

    def update_status(self, run_id: str, status: RunStatus, patch: Mapping[str, Any] | None = None) -> Run | None:
        return self.update(run_id, {**(patch or {}), "status": status})

    def remove(self, run_id: str) -> bool:
        with self.transaction():
            deleted = self._conn.execute("DELETE FROM runs WHERE id = ?;", (run_id,))
        return deleted.rowcount == 1

    def clear(self) -> None:
        with self.transaction():
            self._conn.execute("DELETE FROM events;")
            self._conn.execute("DELETE FROM runs;")

    # --- Events (audit trail)
    def append_event(self, run_id: str, event_type: str, payload: dict[str, Any]) -> str:
        event_id = new_event_id()
        created_at = _utc_ts()
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO events(event_id, run_id, created_at, event_type, payload_json)
                VALUES(?, ?, ?, ?, ?);
                """,
                (event_id, run_id, created_at, event_type, _json_dumps(payload)),
            )
        return event_id

    def list_events(self, run_id: str) -> list[RunEvent]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT event_id, run_id, created_at, event_type, payload_json
                FROM events
                WHERE run_id = ?
                ORDER BY created_at ASC, rowid ASC;
                """,
                (run_id,),
            ).fetchall()
        return [
            RunEvent(
                event_id=str(r["event_id"]),
                run_id=str(r["run_id"]),
                created_at=float(r["created_at"]),
                event_type=str(r["event_type"]),
                payload=json.loads(str(r["payload_json"])),
            )
            for r in rows
        ]
