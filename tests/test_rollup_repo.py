from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from adreport.db import SCHEMA_VERSION, AdsDB
from adreport.errors import PersistenceError
from adreport.importers.stat_report import ReportRow
from adreport.repo import Repo
from adreport.rollup import MetricRow, merge_conversions, rollup


def _repo(tmp_path: Path) -> Repo:
    db_path = tmp_path / "ads.sqlite3"
    AdsDB(db_path).init()
    return Repo(db_path)


def _row(day: str, **metrics) -> MetricRow:
    return MetricRow(
        workspace_id="ws1",
        source="naver_sa",
        date=day,
        entity_type="account",
        entity_id="cust1",
        **metrics,
    )


def test_rollup_sums_per_day_sorted() -> None:
    parsed = [
        ReportRow(date="2024-06-02", impressions=5, clicks=1, cost=100),
        ReportRow(date="2024-06-01", impressions=10, clicks=2, cost=200),
        ReportRow(date="2024-06-02", impressions=7, clicks=3, cost=50, conversions=1, revenue=9000),
    ]
    rows = rollup(parsed, workspace_id="ws1", source="naver_sa", entity_id="cust1", extra={"reportTp": "AD"})

    assert [r.date for r in rows] == ["2024-06-01", "2024-06-02"]
    assert rows[1].impressions == 12
    assert rows[1].clicks == 4
    assert rows[1].cost == 150
    assert rows[1].revenue == 9000
    assert rows[0].key == ("ws1", "naver_sa", "2024-06-01", "account", "cust1")
    assert rows[0].extra == {"reportTp": "AD"}


def test_merge_conversions_replaces_per_date() -> None:
    base = [_row("2024-06-01", clicks=10, conversions=1, revenue=1000), _row("2024-06-02", clicks=4)]
    conv = [_row("2024-06-02", conversions=3, revenue=45000), _row("2024-06-03", conversions=1, revenue=5000)]

    merged = merge_conversions(base, conv, report_tp="AD_CONVERSION")
    assert [r.date for r in merged] == ["2024-06-01", "2024-06-02", "2024-06-03"]
    assert (merged[0].conversions, merged[0].revenue) == (1, 1000)
    assert (merged[1].clicks, merged[1].conversions, merged[1].revenue) == (4, 3, 45000)
    assert merged[1].extra == {"conversionReportTp": "AD_CONVERSION"}
    assert (merged[2].clicks, merged[2].conversions) == (0, 1)


def test_init_is_repeatable_and_records_schema_version(tmp_path: Path) -> None:
    db_path = tmp_path / "ads.sqlite3"
    AdsDB(db_path).init()
    AdsDB(db_path).init()
    with sqlite3.connect(db_path) as conn:
        v = conn.execute("SELECT value FROM meta WHERE key='schema_version'").fetchone()[0]
    assert int(v) == SCHEMA_VERSION


def test_init_migrates_v1_sync_runs(tmp_path: Path) -> None:
    db_path = tmp_path / "ads.sqlite3"
    with sqlite3.connect(db_path) as conn:
        conn.executescript(
            """
            CREATE TABLE meta (key TEXT PRIMARY KEY, value TEXT NOT NULL);
            INSERT INTO meta(key, value) VALUES('schema_version', '1');
            CREATE TABLE sync_runs (
              id TEXT PRIMARY KEY,
              workspace_id TEXT NOT NULL,
              source TEXT NOT NULL,
              mode TEXT NOT NULL,
              since TEXT NOT NULL,
              until TEXT NOT NULL,
              status TEXT NOT NULL,
              upserted INTEGER NOT NULL DEFAULT 0,
              error_message TEXT,
              meta_json TEXT NOT NULL DEFAULT '{}',
              started_at TEXT NOT NULL,
              finished_at TEXT
            );
            """
        )
    AdsDB(db_path).init()

    repo = Repo(db_path)
    run_id = repo.start_sync_run(
        workspace_id="ws1", source="naver_sa", connection_id="conn_x", mode="stat_sync", since="2024-06-01", until="2024-06-01"
    )
    repo.finish_sync_run(run_id, status="success", upserted=1, report_job_id="J1")
    runs = repo.list_sync_runs("ws1")
    assert runs[0]["connection_id"] == "conn_x"
    assert runs[0]["report_job_id"] == "J1"


def test_upsert_is_idempotent(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    rows = [_row("2024-06-01", impressions=100, clicks=10, cost=5000), _row("2024-06-02", clicks=1)]

    assert repo.upsert_metrics_daily(rows) == 2
    first = repo.list_metrics_daily("ws1")
    assert repo.upsert_metrics_daily(rows) == 2
    second = repo.list_metrics_daily("ws1")

    def strip(rs):
        return [{k: v for k, v in r.items() if k != "updated_at"} for r in rs]

    assert strip(first) == strip(second)
    assert len(second) == 2


def test_upsert_replaces_not_adds(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    repo.upsert_metrics_daily([_row("2024-06-01", clicks=10)])
    repo.upsert_metrics_daily([_row("2024-06-01", clicks=3)])
    stored = repo.list_metrics_daily("ws1")
    assert len(stored) == 1
    assert stored[0]["clicks"] == 3


def test_upsert_batch_rolls_back_on_failure(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    good = _row("2024-06-01", clicks=10)
    bad = _row("2024-06-02", clicks=-1)

    with pytest.raises(PersistenceError):
        repo.upsert_metrics_daily([good, bad])
    assert repo.list_metrics_daily("ws1") == []


def test_list_report_rows_filters_sources(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    repo.upsert_metrics_daily(
        [
            _row("2024-06-01", clicks=10),
            MetricRow(
                workspace_id="ws1",
                source="csv_upload",
                date="2024-06-01",
                entity_type="account",
                entity_id="upload",
                clicks=2,
                channel="",
            ),
        ]
    )
    rows = repo.list_report_rows("ws1", sources=["naver_sa"])
    assert [(r["source"], r["clicks"], r["channel"]) for r in rows] == [("naver_sa", 10, "search")]
    assert len(repo.list_report_rows("ws1")) == 2
    assert repo.list_report_rows("ws1", since="2024-06-02") == []


def test_connection_status_update_is_optimistic(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    cid = repo.create_connection(
        workspace_id="ws1", source="naver_sa", api_key="k", secret_key="s", external_account_id="c"
    )
    stale = repo.get_connection(cid)
    assert stale is not None

    assert repo.update_connection_sync_status(
        cid, ok=False, error="boom", since="2024-06-01", until="2024-06-01", expected_updated_at=stale["updated_at"]
    )
    row = repo.get_connection(cid)
    assert row["status"] == "error"
    assert row["last_error"] == "boom"
    assert row["last_sync_at"] is None

    assert not repo.update_connection_sync_status(cid, ok=True, error=None, expected_updated_at=stale["updated_at"])
    assert repo.get_connection(cid)["status"] == "error"

    assert repo.update_connection_sync_status(cid, ok=True, error=None, since="2024-06-02", until="2024-06-02")
    row = repo.get_connection(cid)
    assert row["status"] == "connected"
    assert row["last_error"] is None
    assert row["last_sync_at"] is not None
    assert (row["last_synced_since"], row["last_synced_until"]) == ("2024-06-02", "2024-06-02")


def test_mark_synced_false_keeps_last_sync_columns(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    cid = repo.create_connection(
        workspace_id="ws1", source="naver_sa", api_key="k", secret_key="s", external_account_id="c"
    )
    repo.update_connection_sync_status(cid, ok=False, error="x")
    repo.update_connection_sync_status(cid, ok=True, error=None, mark_synced=False)
    row = repo.get_connection(cid)
    assert row["status"] == "connected"
    assert row["last_error"] is None
    assert row["last_sync_at"] is None
    assert row["last_synced_since"] is None


def test_latest_connection_wins(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    old = repo.create_connection(
        workspace_id="ws1", source="naver_sa", api_key="k1", secret_key="s", external_account_id="c1"
    )
    new = repo.create_connection(
        workspace_id="ws1", source="naver_sa", api_key="k2", secret_key="s", external_account_id="c2"
    )
    assert repo.get_latest_connection("ws1", "naver_sa")["id"] == new

    repo.update_connection_sync_status(old, ok=True, error=None, mark_synced=False)
    assert repo.get_latest_connection("ws1", "naver_sa")["id"] == old
    assert repo.get_latest_connection("ws2", "naver_sa") is None
