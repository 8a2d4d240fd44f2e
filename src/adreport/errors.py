from __future__ import annotations

from typing import Any

_MAX_BODY = 4000


class AdReportError(RuntimeError):
    http_status = 500


class ConfigurationError(AdReportError):
    """Missing/invalid connection or credentials. Not retried automatically."""

    http_status = 400


class NoConnectionError(ConfigurationError):
    def __init__(self, workspace_id: str, source: str):
        super().__init__(f"No {source} connection for workspace {workspace_id!r}")
        self.workspace_id = workspace_id
        self.source = source


class MissingCredentialsError(ConfigurationError):
    def __init__(self, missing: list[str]):
        super().__init__(f"Missing credentials: {', '.join(missing)}")
        self.missing = list(missing)


class InvalidRequestError(ConfigurationError):
    pass


class ExternalApiError(AdReportError):
    http_status = 502

    def __init__(self, status: int, body: str, *, method: str, path: str):
        body = (body or "").strip()[:_MAX_BODY]
        super().__init__(f"Naver API {method} {path} failed: {status} {body}".rstrip())
        self.status = status
        self.body = body
        self.method = method
        self.path = path


class MalformedResponseError(AdReportError):
    http_status = 502

    def __init__(self, message: str, payload: Any = None):
        super().__init__(f"{message}: {payload!r}"[:_MAX_BODY])
        self.payload = payload


class JobFailedError(AdReportError):
    http_status = 502

    def __init__(self, job: Any):
        super().__init__(f"Stat report build failed: {job}"[:_MAX_BODY])
        self.job = job


class ReportIntegrityError(AdReportError):
    http_status = 502

    def __init__(self, job: Any):
        super().__init__(f"Missing downloadUrl on built report: {job}"[:_MAX_BODY])
        self.job = job


class ParseError(AdReportError):
    http_status = 502

    def __init__(self, message: str, *, header: list[str] | None = None):
        super().__init__(f"{message} (header={header})" if header is not None else message)
        self.header = header


class PersistenceError(AdReportError):
    pass


class SyncInProgressError(AdReportError):
    http_status = 409

    def __init__(self, connection_id: str):
        super().__init__(f"Sync already running for connection {connection_id}")
        self.connection_id = connection_id


class SyncError(AdReportError):
    """A failed sync attempt, carrying enough context to retry or escalate without re-running."""

    def __init__(
        self,
        *,
        step: str,
        since: str,
        until: str,
        cause: BaseException,
        report_job_id: str | None = None,
    ):
        job = f" job={report_job_id}" if report_job_id else ""
        super().__init__(f"[{step}] {since}~{until}{job}: {type(cause).__name__}: {cause}")
        self.step = step
        self.since = since
        self.until = until
        self.cause = cause
        self.report_job_id = report_job_id
        self.http_status = getattr(cause, "http_status", 500)
