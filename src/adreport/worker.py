from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger

from adreport.config import Settings
from adreport.db import AdsDB
from adreport.repo import Repo
from adreport.sync import (
    SOURCE,
    ClientFactory,
    ConnectionLocks,
    SyncRequest,
    resolve_date_range,
    trigger_sync,
)


async def sync_all_connections(
    settings: Settings,
    *,
    since: str | None = None,
    until: str | None = None,
    range_name: str | None = None,
    client_factory: ClientFactory | None = None,
    locks: ConnectionLocks | None = None,
) -> dict[str, Any]:
    """Sync every connected naver_sa connection, one after another.

    A failing workspace is reported in its own result and never stops the batch.
    """
    AdsDB(settings.db_path).init()
    repo = Repo(settings.db_path)
    since, until = resolve_date_range(since, until, timezone=settings.timezone, range_name=range_name)

    # sync_once picks the latest connection per workspace, so one run per workspace.
    workspaces: list[str] = []
    for c in repo.list_connections(source=SOURCE, status="connected"):
        if c["workspace_id"] not in workspaces:
            workspaces.append(c["workspace_id"])

    logger.info("[cron] {} workspace(s) to sync for {}~{}", len(workspaces), since, until)
    results: list[dict[str, Any]] = []
    for workspace_id in workspaces:
        res = await trigger_sync(
            repo,
            SyncRequest(workspace_id=workspace_id, since=since, until=until, mode="stat_sync"),
            settings=settings,
            client_factory=client_factory,
            locks=locks,
        )
        if not res.ok:
            logger.warning("[cron] {} -> {} {}", workspace_id, res.step, res.error or "")
        results.append(res.to_dict())

    ok_count = sum(1 for r in results if r.get("ok"))
    return {
        "ok": True,
        "step": "cron_naver_sa_done",
        "since": since,
        "until": until,
        "total": len(results),
        "okCount": ok_count,
        "results": results,
    }


def run_cron(settings: Settings) -> dict[str, Any]:
    return asyncio.run(sync_all_connections(settings))
