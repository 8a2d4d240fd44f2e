from __future__ import annotations

import asyncio
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable

from loguru import logger

from adreport.config import Settings
from adreport.connectors.naver_searchad import NaverCredentials, NaverSearchAdClient
from adreport.connectors.report_jobs import (
    PollResult,
    clamp_attempts,
    clamp_interval_ms,
    create_and_poll,
    poll_report_job,
)
from adreport.errors import (
    InvalidRequestError,
    JobFailedError,
    NoConnectionError,
    ReportIntegrityError,
    SyncError,
    SyncInProgressError,
)
from adreport.importers.stat_report import normalize_date, parse_report
from adreport.repo import Repo
from adreport.rollup import MetricRow, merge_conversions, rollup
from adreport.util import kst_ymd

SOURCE = "naver_sa"
ENTITY_TYPE = "account"
MODES = ("auth_check", "stat_report", "stat_sync")

ClientFactory = Callable[[NaverCredentials], NaverSearchAdClient]


@dataclass(frozen=True)
class SyncRequest:
    workspace_id: str
    since: str
    until: str
    mode: str = "stat_sync"
    max_attempts: int | None = None
    interval_ms: int | None = None
    deadline_sec: float | None = None


@dataclass
class SyncResult:
    ok: bool
    step: str
    since: str
    until: str
    status_code: int = 200
    workspace_id: str | None = None
    report_job_id: str | None = None
    upserted_days: int | None = None
    error: str | None = None
    retry: dict[str, Any] | None = None
    run_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"ok": self.ok, "step": self.step, "since": self.since, "until": self.until}
        if self.workspace_id is not None:
            out["workspaceId"] = self.workspace_id
        if self.report_job_id is not None:
            out["reportJobId"] = self.report_job_id
        if self.upserted_days is not None:
            out["upsertedDays"] = self.upserted_days
        if self.error is not None:
            out["error"] = self.error
        if self.retry is not None:
            out["retry"] = self.retry
        if self.run_id is not None:
            out["runId"] = self.run_id
        out.update(self.details)
        return out


class ConnectionLocks:
    """Non-blocking single-flight guard keyed by connection id."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def acquire(self, connection_id: str) -> bool:
        with self._guard:
            lock = self._locks.setdefault(connection_id, threading.Lock())
        return lock.acquire(blocking=False)

    def release(self, connection_id: str) -> None:
        with self._guard:
            lock = self._locks.get(connection_id)
        if lock is not None and lock.locked():
            lock.release()


# Process-wide guard used when a caller does not pass its own.
DEFAULT_LOCKS = ConnectionLocks()


def resolve_date_range(
    since: str | None,
    until: str | None,
    *,
    timezone: str,
    range_name: str | None = None,
) -> tuple[str, str]:
    """Explicit since/until win; otherwise yesterday (or yesterday..today) in ``timezone``."""
    since = (since or "").strip() or None
    until = (until or "").strip() or None
    if since and until:
        s, u = normalize_date(since), normalize_date(until)
        if s is None or u is None:
            raise InvalidRequestError(f"Invalid date range: since={since!r} until={until!r}")
        if s > u:
            raise InvalidRequestError(f"since ({s}) is after until ({u})")
        return s, u
    if since or until:
        raise InvalidRequestError("since and until must be given together")
    if (range_name or "").strip().lower() == "yesterday_today":
        return kst_ymd(timezone, -1), kst_ymd(timezone, 0)
    return kst_ymd(timezone, -1), kst_ymd(timezone, -1)


def clamp_poll_options(settings: Settings, max_attempts: Any, interval_ms: Any) -> tuple[int, int]:
    attempts = clamp_attempts(
        max_attempts if max_attempts not in (None, "") else settings.poll_max_attempts,
        clamp_attempts(settings.poll_max_attempts, 20),
    )
    interval = clamp_interval_ms(
        interval_ms if interval_ms not in (None, "") else settings.poll_interval_ms,
        clamp_interval_ms(settings.poll_interval_ms, 3000),
    )
    return attempts, interval


def default_client_factory(settings: Settings) -> ClientFactory:
    def build(credentials: NaverCredentials) -> NaverSearchAdClient:
        return NaverSearchAdClient(
            credentials,
            base_url=settings.naver_base_url,
            timeout=settings.http_timeout_sec,
        )

    return build


def _validate(request: SyncRequest) -> str:
    mode = (request.mode or "stat_sync").strip().lower()
    if not request.workspace_id:
        raise InvalidRequestError("workspace_id required")
    if mode not in MODES:
        raise InvalidRequestError(f"mode must be one of {', '.join(MODES)} (got {request.mode!r})")
    try:
        s = date.fromisoformat(request.since)
        u = date.fromisoformat(request.until)
    except ValueError as e:
        raise InvalidRequestError(f"Invalid date range: {e}") from e
    if s > u:
        raise InvalidRequestError(f"since ({request.since}) is after until ({request.until})")
    return mode


async def _fetch_conversions(
    client: NaverSearchAdClient,
    rows: list[MetricRow],
    *,
    request: SyncRequest,
    settings: Settings,
    entity_id: str,
    max_attempts: int,
    interval_ms: int,
    deadline_sec: float | None,
    cancel: asyncio.Event | None,
) -> tuple[list[MetricRow], dict[str, Any]]:
    """Try each conversion report type in order; the first one that builds wins."""
    attempts: list[dict[str, Any]] = []
    for report_tp in settings.conversion_report_tps:
        try:
            polled = await create_and_poll(
                client,
                report_tp=report_tp,
                since=request.since,
                until=request.until,
                max_attempts=max_attempts,
                interval_ms=interval_ms,
                deadline_sec=deadline_sec,
                cancel=cancel,
            )
        except (JobFailedError, ReportIntegrityError) as e:
            logger.warning("[sync] conversion report {} skipped: {}", report_tp, e)
            attempts.append({"reportTp": report_tp, "ok": False, "error": str(e)})
            continue
        if not polled.ready:
            logger.warning("[sync] conversion report {} not ready ({}), skipped", report_tp, polled.reason)
            attempts.append({"reportTp": report_tp, "ok": False, **polled.retry_hint()})
            continue

        text = await client.download_report(polled.job.download_url)
        conv_rows = rollup(
            parse_report(text, report_tp=report_tp),
            workspace_id=request.workspace_id,
            source=SOURCE,
            entity_id=entity_id,
            entity_type=ENTITY_TYPE,
        )
        attempts.append({"reportTp": report_tp, "ok": True, "reportJobId": polled.job.job_id})
        merged = merge_conversions(rows, conv_rows, report_tp=report_tp)
        return merged, {"ok": True, "reportTpUsed": report_tp, "days": len(conv_rows), "attempts": attempts}

    return rows, {"ok": False, "skipped": True, "attempts": attempts, "reason": "No conversion report was built"}


def _record_failure(
    repo: Repo,
    err: SyncError,
    *,
    connection: dict[str, Any],
    run_id: str | None,
) -> None:
    # The audit trail must not mask the failure being reported.
    try:
        repo.update_connection_sync_status(
            connection["id"],
            ok=False,
            error=str(err),
            since=err.since,
            until=err.until,
            expected_updated_at=connection.get("updated_at"),
        )
        if run_id is not None:
            repo.finish_sync_run(
                run_id,
                status="fail",
                report_job_id=err.report_job_id,
                error_message=str(err),
                meta={"step": err.step},
            )
    except sqlite3.Error:
        logger.exception("[sync] could not record failure for connection {}", connection["id"])


async def _sync_connection(
    repo: Repo,
    request: SyncRequest,
    connection: dict[str, Any],
    *,
    mode: str,
    settings: Settings,
    client_factory: ClientFactory,
    cancel: asyncio.Event | None,
) -> SyncResult:
    since, until = request.since, request.until
    credentials = NaverCredentials.from_connection(connection)
    expected = connection.get("updated_at")
    max_attempts, interval_ms = clamp_poll_options(settings, request.max_attempts, request.interval_ms)
    deadline_sec = request.deadline_sec if request.deadline_sec is not None else settings.poll_timeout_sec

    step = "credentials"
    job_id: str | None = None
    run_id: str | None = None
    try:
        credentials.require()
        if mode == "stat_sync":
            run_id = repo.start_sync_run(
                workspace_id=request.workspace_id,
                source=SOURCE,
                connection_id=connection["id"],
                mode=mode,
                since=since,
                until=until,
                meta={"maxTry": max_attempts, "intervalMs": interval_ms, "customerId": credentials.customer_id},
            )

        async with client_factory(credentials) as client:
            if mode == "auth_check":
                step = "auth_check"
                campaigns = await client.list_campaigns()
                repo.update_connection_sync_status(
                    connection["id"], ok=True, error=None, mark_synced=False, expected_updated_at=expected
                )
                count = len(campaigns) if isinstance(campaigns, list) else None
                return SyncResult(
                    ok=True,
                    step="auth_check_ok",
                    since=since,
                    until=until,
                    workspace_id=request.workspace_id,
                    details={"campaigns": count},
                )

            step = "create_report"
            job = await client.create_stat_report(report_tp=settings.report_tp, since=since, until=until)
            job_id = job.job_id

            if mode == "stat_report":
                repo.update_connection_sync_status(
                    connection["id"], ok=True, error=None, mark_synced=False, expected_updated_at=expected
                )
                return SyncResult(
                    ok=True,
                    step="stat_report_created",
                    since=since,
                    until=until,
                    workspace_id=request.workspace_id,
                    report_job_id=job_id,
                    details={"job": job.to_dict()},
                )

            step = "poll_report"
            polled: PollResult = await poll_report_job(
                client,
                job,
                max_attempts=max_attempts,
                interval_ms=interval_ms,
                deadline_sec=deadline_sec,
                cancel=cancel,
            )
            if not polled.ready:
                hint = polled.retry_hint()
                logger.warning(
                    "[sync] {} report {} not ready ({}); retry with maxTry={} intervalMs={}",
                    request.workspace_id,
                    job_id,
                    polled.reason,
                    hint["maxTry"],
                    hint["intervalMs"],
                )
                if run_id is not None:
                    repo.finish_sync_run(run_id, status="not_ready", report_job_id=job_id, meta={"retry": hint})
                return SyncResult(
                    ok=False,
                    step="report_not_ready",
                    since=since,
                    until=until,
                    status_code=502,
                    workspace_id=request.workspace_id,
                    report_job_id=job_id,
                    error=f"Report {job_id} not ready after {polled.attempts} attempts ({polled.reason})",
                    retry=hint,
                    run_id=run_id,
                )

            step = "download_report"
            text = await client.download_report(polled.job.download_url)

            step = "parse_report"
            rows = rollup(
                parse_report(text, report_tp=settings.report_tp),
                workspace_id=request.workspace_id,
                source=SOURCE,
                entity_id=credentials.customer_id,
                entity_type=ENTITY_TYPE,
                extra={"reportTp": settings.report_tp},
            )

            conversion: dict[str, Any] | None = None
            if settings.conversion_report_tps:
                step = "conversion_report"
                rows, conversion = await _fetch_conversions(
                    client,
                    rows,
                    request=request,
                    settings=settings,
                    entity_id=credentials.customer_id,
                    max_attempts=max_attempts,
                    interval_ms=interval_ms,
                    deadline_sec=deadline_sec,
                    cancel=cancel,
                )

        step = "upsert"
        upserted = repo.upsert_metrics_daily(rows)

        step = "update_connection"
        repo.update_connection_sync_status(
            connection["id"], ok=True, error=None, since=since, until=until, expected_updated_at=expected
        )
        details: dict[str, Any] = {"customerId": credentials.customer_id}
        if conversion is not None:
            details["conversion"] = conversion
        if run_id is not None:
            repo.finish_sync_run(run_id, status="success", upserted=upserted, report_job_id=job_id, meta=details)
        logger.info(
            "[sync] {} {}~{} job={} upserted {} day(s)",
            request.workspace_id,
            since,
            until,
            job_id,
            upserted,
        )
        return SyncResult(
            ok=True,
            step="stat_sync_ok",
            since=since,
            until=until,
            workspace_id=request.workspace_id,
            report_job_id=job_id,
            upserted_days=upserted,
            run_id=run_id,
            details=details,
        )
    except Exception as e:  # noqa: BLE001
        err = SyncError(step=step, since=since, until=until, cause=e, report_job_id=job_id)
        logger.error("[sync] {} failed: {}", request.workspace_id, err)
        _record_failure(repo, err, connection=connection, run_id=run_id)
        raise err from e


async def sync_once(
    repo: Repo,
    request: SyncRequest,
    *,
    settings: Settings,
    client_factory: ClientFactory | None = None,
    locks: ConnectionLocks | None = None,
    cancel: asyncio.Event | None = None,
) -> SyncResult:
    """Run one sync for the workspace's most recently updated naver_sa connection.

    Any failure is raised as SyncError after the connection row (and, for
    stat_sync, the sync_runs row) records it. A report that is not ready in
    time is returned as ``ok=False`` with retry hints and leaves the
    connection row untouched.
    """
    try:
        mode = _validate(request)
    except InvalidRequestError as e:
        raise SyncError(step="validate", since=request.since, until=request.until, cause=e) from e

    connection = repo.get_latest_connection(request.workspace_id, SOURCE)
    if connection is None:
        e = NoConnectionError(request.workspace_id, SOURCE)
        raise SyncError(step="load_connection", since=request.since, until=request.until, cause=e) from e

    locks = locks if locks is not None else DEFAULT_LOCKS
    if not locks.acquire(connection["id"]):
        e = SyncInProgressError(connection["id"])
        raise SyncError(step="lock", since=request.since, until=request.until, cause=e) from e
    try:
        logger.info(
            "[sync] {} mode={} {}~{} connection={}",
            request.workspace_id,
            mode,
            request.since,
            request.until,
            connection["id"],
        )
        return await _sync_connection(
            repo,
            request,
            connection,
            mode=mode,
            settings=settings,
            client_factory=client_factory or default_client_factory(settings),
            cancel=cancel,
        )
    finally:
        locks.release(connection["id"])


async def trigger_sync(
    repo: Repo,
    request: SyncRequest,
    *,
    settings: Settings,
    client_factory: ClientFactory | None = None,
    locks: ConnectionLocks | None = None,
    cancel: asyncio.Event | None = None,
) -> SyncResult:
    """Inbound trigger: like sync_once but failures come back as an ``ok=False`` result."""
    try:
        return await sync_once(
            repo,
            request,
            settings=settings,
            client_factory=client_factory,
            locks=locks,
            cancel=cancel,
        )
    except SyncError as e:
        return SyncResult(
            ok=False,
            step=e.step,
            since=e.since,
            until=e.until,
            status_code=e.http_status,
            workspace_id=request.workspace_id,
            report_job_id=e.report_job_id,
            error=str(e),
        )
