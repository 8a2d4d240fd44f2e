from __future__ import annotations

import sqlite3
from pathlib import Path


SCHEMA_VERSION = 2


class AdsDB:
    def __init__(self, db_path: Path):
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute("PRAGMA journal_mode = WAL;")
        return conn

    def init(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );
                """
            )
            current_version = self._get_schema_version(conn)

            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS connections (
                  id TEXT PRIMARY KEY,
                  workspace_id TEXT NOT NULL,
                  source TEXT NOT NULL,
                  status TEXT NOT NULL DEFAULT 'connected',
                  api_key TEXT,
                  secret_key TEXT,
                  external_account_id TEXT,
                  last_synced_since TEXT,
                  last_synced_until TEXT,
                  last_sync_at TEXT,
                  last_error TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_connections_ws_source_updated
                ON connections(workspace_id, source, updated_at);

                CREATE TABLE IF NOT EXISTS metrics_daily (
                  workspace_id TEXT NOT NULL,
                  source TEXT NOT NULL,
                  date TEXT NOT NULL,
                  entity_type TEXT NOT NULL,
                  entity_id TEXT NOT NULL,
                  channel TEXT NOT NULL DEFAULT '',
                  entity_name TEXT,
                  impressions REAL NOT NULL DEFAULT 0,
                  clicks REAL NOT NULL DEFAULT 0,
                  cost REAL NOT NULL DEFAULT 0,
                  conversions REAL NOT NULL DEFAULT 0,
                  revenue REAL NOT NULL DEFAULT 0,
                  extra_json TEXT NOT NULL DEFAULT '{}',
                  updated_at TEXT NOT NULL,
                  PRIMARY KEY (workspace_id, source, date, entity_type, entity_id),
                  CHECK (impressions >= 0 AND clicks >= 0 AND cost >= 0 AND conversions >= 0 AND revenue >= 0)
                );

                CREATE INDEX IF NOT EXISTS idx_metrics_daily_ws_date
                ON metrics_daily(workspace_id, date);

                CREATE TABLE IF NOT EXISTS sync_runs (
                  id TEXT PRIMARY KEY,
                  workspace_id TEXT NOT NULL,
                  source TEXT NOT NULL,
                  connection_id TEXT,
                  mode TEXT NOT NULL,
                  since TEXT NOT NULL,
                  until TEXT NOT NULL,
                  status TEXT NOT NULL,
                  report_job_id TEXT,
                  upserted INTEGER NOT NULL DEFAULT 0,
                  error_message TEXT,
                  meta_json TEXT NOT NULL DEFAULT '{}',
                  started_at TEXT NOT NULL,
                  finished_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_sync_runs_ws_started
                ON sync_runs(workspace_id, source, started_at);
                """
            )
            if current_version < 2:
                self._migrate_to_v2(conn)
            conn.execute(
                "INSERT OR REPLACE INTO meta(key, value) VALUES(?, ?)",
                ("schema_version", str(SCHEMA_VERSION)),
            )

    def _get_schema_version(self, conn: sqlite3.Connection) -> int:
        row = conn.execute(
            "SELECT value FROM meta WHERE key='schema_version'"
        ).fetchone()
        if not row:
            return 0
        try:
            return int(row["value"])
        except ValueError:
            return 0

    def _column_exists(self, conn: sqlite3.Connection, table: str, column: str) -> bool:
        rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
        return any(str(r["name"]) == column for r in rows)

    def _migrate_to_v2(self, conn: sqlite3.Connection) -> None:
        # v1 databases predate the per-connection audit columns on sync_runs.
        if not self._column_exists(conn, "sync_runs", "connection_id"):
            conn.execute("ALTER TABLE sync_runs ADD COLUMN connection_id TEXT")
        if not self._column_exists(conn, "sync_runs", "report_job_id"):
            conn.execute("ALTER TABLE sync_runs ADD COLUMN report_job_id TEXT")
