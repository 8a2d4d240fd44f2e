from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any, Iterable

from loguru import logger

from adreport.errors import PersistenceError
from adreport.rollup import MetricRow
from adreport.util import new_id, now_utc_iso, now_utc_stamp


class Repo:
    """
    Single DB accessor for sync, cron, web and CLI.
    sqlite3 only; every public method opens its own connection.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute("PRAGMA journal_mode = WAL;")
        return conn

    # connections

    def create_connection(
        self,
        *,
        workspace_id: str,
        source: str,
        api_key: str | None,
        secret_key: str | None,
        external_account_id: str | None,
    ) -> str:
        connection_id = new_id("conn")
        now = now_utc_stamp()
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO connections(
                  id, workspace_id, source, status, api_key, secret_key, external_account_id,
                  created_at, updated_at
                ) VALUES(?, ?, ?, 'connected', ?, ?, ?, ?, ?)
                """,
                (connection_id, workspace_id, source, api_key, secret_key, external_account_id, now, now),
            )
        return connection_id

    def get_connection(self, connection_id: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM connections WHERE id=?", (connection_id,)).fetchone()
            return dict(row) if row else None

    def get_latest_connection(self, workspace_id: str, source: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM connections
                WHERE workspace_id=? AND source=?
                ORDER BY updated_at DESC, created_at DESC
                LIMIT 1
                """,
                (workspace_id, source),
            ).fetchone()
            return dict(row) if row else None

    def list_connections(self, *, source: str | None = None, status: str | None = None) -> list[dict[str, Any]]:
        where: list[str] = []
        params: list[Any] = []
        if source:
            where.append("source=?")
            params.append(source)
        if status:
            where.append("status=?")
            params.append(status)
        sql = "SELECT * FROM connections"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY workspace_id, updated_at DESC"
        with self.connect() as conn:
            return [dict(r) for r in conn.execute(sql, params).fetchall()]

    def update_connection_sync_status(
        self,
        connection_id: str,
        *,
        ok: bool,
        error: str | None,
        since: str | None = None,
        until: str | None = None,
        mark_synced: bool = True,
        expected_updated_at: str | None = None,
    ) -> bool:
        """Single mutation point for a connection after a sync attempt.

        With ``expected_updated_at`` the update only applies if nobody touched
        the row since it was read; a lost race returns False. ``mark_synced=False``
        clears the error without touching the last-sync columns.
        """
        now = now_utc_stamp()
        sql = """
            UPDATE connections SET
              status=?,
              last_error=?,
              last_synced_since=COALESCE(?, last_synced_since),
              last_synced_until=COALESCE(?, last_synced_until),
              last_sync_at=CASE WHEN ? THEN ? ELSE last_sync_at END,
              updated_at=?
            WHERE id=?
        """
        params: list[Any] = [
            "connected" if ok else "error",
            None if ok else error,
            since,
            until,
            1 if ok and mark_synced else 0,
            now,
            now,
            connection_id,
        ]
        if expected_updated_at is not None:
            sql += " AND updated_at=?"
            params.append(expected_updated_at)
        with self.connect() as conn:
            cur = conn.execute(sql, params)
            changed = cur.rowcount > 0
        if not changed:
            logger.warning(
                "[sync] connection {} changed concurrently; status update (ok={}) not applied",
                connection_id,
                ok,
            )
        return changed

    # metrics_daily

    def upsert_metrics_daily(self, rows: Iterable[MetricRow]) -> int:
        """Upsert a batch in one transaction. Either every row lands or none does."""
        rows = list(rows)
        if not rows:
            return 0
        now = now_utc_iso()
        try:
            with self.connect() as conn:
                for r in rows:
                    conn.execute(
                        """
                        INSERT INTO metrics_daily(
                          workspace_id, source, date, entity_type, entity_id, channel, entity_name,
                          impressions, clicks, cost, conversions, revenue, extra_json, updated_at
                        ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(workspace_id, source, date, entity_type, entity_id) DO UPDATE SET
                          channel=excluded.channel,
                          entity_name=excluded.entity_name,
                          impressions=excluded.impressions,
                          clicks=excluded.clicks,
                          cost=excluded.cost,
                          conversions=excluded.conversions,
                          revenue=excluded.revenue,
                          extra_json=excluded.extra_json,
                          updated_at=excluded.updated_at
                        """,
                        (
                            r.workspace_id,
                            r.source,
                            r.date,
                            r.entity_type,
                            r.entity_id,
                            r.channel or "",
                            r.entity_name,
                            r.impressions,
                            r.clicks,
                            r.cost,
                            r.conversions,
                            r.revenue,
                            json.dumps(r.extra, ensure_ascii=False),
                            now,
                        ),
                    )
        except sqlite3.Error as e:
            raise PersistenceError(f"metrics_daily upsert failed ({len(rows)} rows): {e}") from e
        return len(rows)

    def list_metrics_daily(
        self,
        workspace_id: str,
        *,
        source: str | None = None,
        since: str | None = None,
        until: str | None = None,
    ) -> list[dict[str, Any]]:
        where = ["workspace_id=?"]
        params: list[Any] = [workspace_id]
        if source:
            where.append("source=?")
            params.append(source)
        if since:
            where.append("date>=?")
            params.append(since)
        if until:
            where.append("date<=?")
            params.append(until)
        sql = f"SELECT * FROM metrics_daily WHERE {' AND '.join(where)} ORDER BY date ASC, source ASC, entity_id ASC"
        with self.connect() as conn:
            out: list[dict[str, Any]] = []
            for r in conn.execute(sql, params).fetchall():
                d = dict(r)
                d["extra"] = json.loads(d.pop("extra_json") or "{}")
                out.append(d)
            return out

    def list_report_rows(
        self,
        workspace_id: str,
        *,
        since: str | None = None,
        until: str | None = None,
        sources: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Stored daily metrics shaped as aggregation rows."""
        wanted = {s for s in (sources or []) if s}
        out: list[dict[str, Any]] = []
        for r in self.list_metrics_daily(workspace_id, since=since, until=until):
            if wanted and r["source"] not in wanted:
                continue
            out.append(
                {
                    "date": r["date"],
                    "source": r["source"],
                    "channel": r["channel"] or "",
                    "entity_type": r["entity_type"],
                    "entity_id": r["entity_id"],
                    "campaign": r["extra"].get("campaign") or r["entity_name"] or "",
                    "impressions": r["impressions"] or 0,
                    "clicks": r["clicks"] or 0,
                    "cost": r["cost"] or 0,
                    "conversions": r["conversions"] or 0,
                    "revenue": r["revenue"] or 0,
                }
            )
        return out

    # sync_runs

    def start_sync_run(
        self,
        *,
        workspace_id: str,
        source: str,
        connection_id: str | None,
        mode: str,
        since: str,
        until: str,
        meta: dict[str, Any] | None = None,
    ) -> str:
        run_id = new_id("run")
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO sync_runs(
                  id, workspace_id, source, connection_id, mode, since, until, status, meta_json, started_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, 'running', ?, ?)
                """,
                (
                    run_id,
                    workspace_id,
                    source,
                    connection_id,
                    mode,
                    since,
                    until,
                    json.dumps(meta or {}, ensure_ascii=False),
                    now_utc_iso(),
                ),
            )
        return run_id

    def finish_sync_run(
        self,
        run_id: str,
        *,
        status: str,
        upserted: int = 0,
        report_job_id: str | None = None,
        error_message: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                UPDATE sync_runs SET
                  status=?, upserted=?, report_job_id=COALESCE(?, report_job_id),
                  error_message=?, meta_json=?, finished_at=?
                WHERE id=?
                """,
                (
                    status,
                    int(upserted),
                    report_job_id,
                    error_message,
                    json.dumps(meta or {}, ensure_ascii=False, default=str),
                    now_utc_iso(),
                    run_id,
                ),
            )

    def list_sync_runs(self, workspace_id: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        sql = "SELECT * FROM sync_runs"
        params: list[Any] = []
        if workspace_id:
            sql += " WHERE workspace_id=?"
            params.append(workspace_id)
        sql += " ORDER BY started_at DESC LIMIT ?"
        params.append(limit)
        with self.connect() as conn:
            return [dict(r) for r in conn.execute(sql, params).fetchall()]
