from __future__ import annotations

import hmac
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from adreport.config import Settings
from adreport.db import AdsDB
from adreport.errors import InvalidRequestError
from adreport.log import setup_logging
from adreport.report.aggregate import GoalState, build_report, filter_rows, group_by_keyword
from adreport.report.dates import parse_month_key
from adreport.report.insights import build_keyword_insight
from adreport.repo import Repo
from adreport.sync import ClientFactory, ConnectionLocks, SyncRequest, resolve_date_range, trigger_sync
from adreport.worker import sync_all_connections


def _first_param(request: Request, *names: str) -> str | None:
    for n in names:
        v = request.query_params.get(n)
        if v is not None and v.strip() != "":
            return v.strip()
    return None


def _fail(status: int, error: str, **extra: Any) -> JSONResponse:
    return JSONResponse({"ok": False, "error": error, **extra}, status_code=status)


def create_app(settings: Settings, *, client_factory: ClientFactory | None = None) -> FastAPI:
    AdsDB(settings.db_path).init()
    repo = Repo(settings.db_path)

    app = FastAPI(title="adreport")
    app.state.sync_locks = ConnectionLocks()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.api_route("/api/sync/naver_sa", methods=["GET", "POST"])
    async def sync_naver_sa(request: Request):
        workspace_id = _first_param(request, "workspace_id", "workspaceId")
        if not workspace_id:
            return _fail(400, "workspace_id required")
        try:
            since, until = resolve_date_range(
                _first_param(request, "since"),
                _first_param(request, "until"),
                timezone=settings.timezone,
                range_name=_first_param(request, "range"),
            )
        except InvalidRequestError as e:
            return _fail(400, str(e), step="validate")

        req = SyncRequest(
            workspace_id=workspace_id,
            since=since,
            until=until,
            mode=_first_param(request, "mode") or "stat_sync",
            max_attempts=_first_param(request, "maxTry", "max_attempts"),
            interval_ms=_first_param(request, "intervalMs", "interval_ms"),
        )
        result = await trigger_sync(
            repo,
            req,
            settings=settings,
            client_factory=client_factory,
            locks=request.app.state.sync_locks,
        )
        return JSONResponse(result.to_dict(), status_code=result.status_code)

    @app.get("/api/cron/naver_sa")
    async def cron_naver_sa(request: Request, secret: str | None = None):
        if not settings.cron_secret:
            return _fail(401, "Missing env ADREPORT_CRON_SECRET")
        if not secret or not hmac.compare_digest(secret, settings.cron_secret):
            return _fail(401, "Unauthorized")
        out = await sync_all_connections(
            settings,
            client_factory=client_factory,
            locks=request.app.state.sync_locks,
        )
        return JSONResponse(out)

    @app.get("/api/sync/naver_sa/runs")
    def list_runs(workspace_id: str | None = None, limit: int = 50):
        return JSONResponse({"ok": True, "runs": repo.list_sync_runs(workspace_id, limit=max(1, min(500, limit)))})

    @app.get("/api/report/{workspace_id}")
    def report(
        workspace_id: str,
        request: Request,
        since: str | None = None,
        until: str | None = None,
        month: str = "all",
        week: str = "all",
        device: str = "all",
        channel: str = "all",
        source: str | None = None,
    ):
        if month != "all" and parse_month_key(month) is None:
            return _fail(400, f"month must be YYYY-MM or all (got {month!r})", step="validate")
        sources = [s.strip() for s in (source or "").split(",") if s.strip()]
        rows = repo.list_report_rows(workspace_id, since=since, until=until, sources=sources or None)
        goal = GoalState.from_mapping(
            {
                m: request.query_params.get(f"goal_{m}")
                for m in ("impressions", "clicks", "cost", "conversions", "revenue")
            }
        )
        bundle = build_report(rows, month=month, week=week, device=device, channel=channel, goal=goal)
        filtered = filter_rows(rows, month=month, week=week, device=device, channel=channel)
        bundle["keywordInsight"] = build_keyword_insight(group_by_keyword(filtered, limit=None), filtered)
        return JSONResponse({"ok": True, "workspaceId": workspace_id, **bundle})

    return app


def run_web(settings: Settings) -> None:
    setup_logging(settings)
    app = create_app(settings)
    uvicorn.run(app, host=settings.web_host, port=settings.web_port, log_level="info")
