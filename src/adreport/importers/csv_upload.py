from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger

from adreport.importers.stat_report import parse_report
from adreport.repo import Repo
from adreport.rollup import rollup
from adreport.util import decode_text_best_effort

CSV_UPLOAD_SOURCE = "csv_upload"


@dataclass(frozen=True)
class CsvUploadOptions:
    workspace_id: str
    account_id: str = "upload"
    channel: str = ""


def import_dashboard_csv(repo: Repo, *, path: Path, opts: CsvUploadOptions) -> dict[str, Any]:
    """
    Import a dashboard CSV export (any of the known header spellings) into
    metrics_daily as one account-level row per day, under source=csv_upload.

    Re-importing the same file replaces those days; it never adds to them.
    """
    text = decode_text_best_effort(path.read_bytes())
    parsed = parse_report(text)
    if not parsed:
        return {"ok": False, "error": "empty csv", "rows": 0}

    rows = rollup(
        parsed,
        workspace_id=opts.workspace_id,
        source=CSV_UPLOAD_SOURCE,
        entity_id=opts.account_id,
        channel=opts.channel,
        extra={"file": path.name},
    )
    upserted = repo.upsert_metrics_daily(rows)
    logger.info("[import] {} -> {} row(s) over {} day(s)", path.name, len(parsed), upserted)
    return {
        "ok": True,
        "rows": len(parsed),
        "upsertedDays": upserted,
        "since": rows[0].date,
        "until": rows[-1].date,
    }
