from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from loguru import logger

from adreport.connectors.naver_searchad import NaverSearchAdClient, ReportJob
from adreport.errors import JobFailedError, ReportIntegrityError

SUCCESS_STATES = frozenset({"BUILT", "DONE", "COMPLETED"})
FAILURE_STATES = frozenset({"ERROR", "FAILED"})

MAX_ATTEMPTS_CAP = 600
MAX_INTERVAL_MS = 60_000


def clamp_attempts(v: Any, default: int) -> int:
    try:
        n = int(float(v))
    except (TypeError, ValueError):
        return default
    return max(1, min(MAX_ATTEMPTS_CAP, n))


def clamp_interval_ms(v: Any, default: int) -> int:
    try:
        n = int(float(v))
    except (TypeError, ValueError):
        return default
    return max(0, min(MAX_INTERVAL_MS, n))


@dataclass(frozen=True)
class PollResult:
    """Outcome of polling one job.

    ``ready=False`` is the deferred case (exhausted, timeout or cancelled); it is
    not an error and carries what a later invocation needs to try again.
    """

    ready: bool
    job: ReportJob
    attempts: int
    max_attempts: int
    interval_ms: int
    reason: str = "built"

    def retry_hint(self) -> dict[str, Any]:
        return {
            "reportJobId": self.job.job_id,
            "status": self.job.status or "UNKNOWN",
            "reason": self.reason,
            "attempts": self.attempts,
            "maxTry": clamp_attempts(self.max_attempts * 2, self.max_attempts),
            "intervalMs": clamp_interval_ms(max(self.interval_ms * 2, 1000), self.interval_ms),
        }


def _check_terminal(job: ReportJob) -> bool:
    """True on success, raises on failure, False while still building."""
    if job.status in FAILURE_STATES:
        raise JobFailedError(job.raw or job.to_dict())
    if job.status in SUCCESS_STATES:
        if not job.download_url:
            raise ReportIntegrityError(job.raw or job.to_dict())
        return True
    return False


async def poll_report_job(
    client: NaverSearchAdClient,
    job: ReportJob,
    *,
    max_attempts: int,
    interval_ms: int,
    deadline_sec: float | None = None,
    cancel: asyncio.Event | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> PollResult:
    """Poll ``GET /stat-reports/{id}`` at a fixed interval.

    The status endpoint is called at most ``max_attempts`` times with at most
    ``max_attempts - 1`` sleeps in between. The create response is trusted
    only when it is already built and carries a download locator; otherwise
    the status endpoint decides.
    """
    max_attempts = clamp_attempts(max_attempts, 1)
    interval_ms = clamp_interval_ms(interval_ms, 0)

    def result(ready: bool, cur: ReportJob, attempts: int, reason: str) -> PollResult:
        return PollResult(
            ready=ready,
            job=cur,
            attempts=attempts,
            max_attempts=max_attempts,
            interval_ms=interval_ms,
            reason=reason,
        )

    if job.status in FAILURE_STATES:
        raise JobFailedError(job.raw or job.to_dict())
    if job.status in SUCCESS_STATES and job.download_url:
        return result(True, job, 0, "built")

    started = time.monotonic()
    current = job
    for attempt in range(1, max_attempts + 1):
        if cancel is not None and cancel.is_set():
            return result(False, current, attempt - 1, "cancelled")
        if deadline_sec is not None and time.monotonic() - started >= deadline_sec:
            return result(False, current, attempt - 1, "timeout")

        current = await client.get_stat_report(current)
        logger.debug(
            "[poll] job={} attempt={}/{} status={}",
            current.job_id,
            attempt,
            max_attempts,
            current.status or "?",
        )
        if _check_terminal(current):
            return result(True, current, attempt, "built")

        if attempt < max_attempts:
            delay = interval_ms / 1000.0
            if deadline_sec is not None:
                remaining = deadline_sec - (time.monotonic() - started)
                if remaining <= 0:
                    return result(False, current, attempt, "timeout")
                delay = min(delay, remaining)
            if cancel is not None:
                try:
                    await asyncio.wait_for(cancel.wait(), timeout=delay)
                    return result(False, current, attempt, "cancelled")
                except asyncio.TimeoutError:
                    pass
            else:
                await sleep(delay)

    logger.warning("[poll] job={} not ready after {} attempts (status={})", current.job_id, max_attempts, current.status)
    return result(False, current, max_attempts, "exhausted")


async def create_and_poll(
    client: NaverSearchAdClient,
    *,
    report_tp: str,
    since: str,
    until: str,
    max_attempts: int,
    interval_ms: int,
    deadline_sec: float | None = None,
    cancel: asyncio.Event | None = None,
) -> PollResult:
    job = await client.create_stat_report(report_tp=report_tp, since=since, until=until)
    logger.info("[poll] created {} job={} status={}", report_tp, job.job_id, job.status or "?")
    return await poll_report_job(
        client,
        job,
        max_attempts=max_attempts,
        interval_ms=interval_ms,
        deadline_sec=deadline_sec,
        cancel=cancel,
    )
