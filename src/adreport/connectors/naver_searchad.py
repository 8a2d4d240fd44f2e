from __future__ import annotations

import base64
import hashlib
import hmac
import time
from dataclasses import dataclass, field
from typing import Any, Callable
from urllib.parse import urlsplit

import httpx
from loguru import logger

from adreport.config import DEFAULT_NAVER_BASE_URL
from adreport.errors import ExternalApiError, MalformedResponseError, MissingCredentialsError
from adreport.util import decode_text_best_effort, to_stat_dt


def sign(timestamp: str, method: str, resource_path: str, secret: str) -> str:
    """Base64 HMAC-SHA256 over ``"{timestamp}.{method}.{resource_path}"``.

    ``resource_path`` must be the bare path: the platform rejects signatures
    computed over a query string.
    """
    msg = f"{timestamp}.{method}.{resource_path}"
    digest = hmac.new(
        secret.encode("utf-8", errors="strict"),
        msg.encode("utf-8", errors="strict"),
        hashlib.sha256,
    ).digest()
    return base64.b64encode(digest).decode("ascii", errors="strict")


def split_download_locator(download_url: str) -> tuple[str, str]:
    """Return ``(request_target, signature_path)`` for a report download locator.

    Absolute URLs are reduced to path+query for the request; the signature
    only ever covers the path.
    """
    raw = (download_url or "").strip()
    parts = urlsplit(raw)
    path = parts.path or "/"
    if not path.startswith("/"):
        path = "/" + path
    target = f"{path}?{parts.query}" if parts.query else path
    return target, path


@dataclass(frozen=True)
class NaverCredentials:
    api_key: str
    secret_key: str
    customer_id: str

    @staticmethod
    def from_connection(row: dict[str, Any]) -> "NaverCredentials":
        return NaverCredentials(
            api_key=str(row.get("api_key") or "").strip(),
            secret_key=str(row.get("secret_key") or "").strip(),
            customer_id=str(row.get("external_account_id") or "").strip(),
        )

    def missing(self) -> list[str]:
        out: list[str] = []
        if not self.api_key:
            out.append("api_key")
        if not self.secret_key:
            out.append("secret_key")
        if not self.customer_id:
            out.append("external_account_id")
        return out

    def require(self) -> None:
        missing = self.missing()
        if missing:
            raise MissingCredentialsError(missing)


@dataclass(frozen=True)
class ReportJob:
    job_id: str
    status: str
    report_tp: str
    since: str
    until: str
    download_url: str = ""
    raw: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_payload(payload: Any, *, report_tp: str, since: str, until: str) -> "ReportJob":
        if not isinstance(payload, dict):
            raise MalformedResponseError("Unexpected /stat-reports response (not json object)", payload)
        job_id = payload.get("reportJobId")
        if job_id is None or str(job_id).strip() == "":
            raise MalformedResponseError("No reportJobId in /stat-reports response", payload)
        return ReportJob(
            job_id=str(job_id).strip(),
            status=str(payload.get("status") or "").strip().upper(),
            report_tp=str(payload.get("reportTp") or report_tp),
            since=since,
            until=until,
            download_url=str(payload.get("downloadUrl") or "").strip(),
            raw=dict(payload),
        )

    def with_status(self, payload: Any) -> "ReportJob":
        if not isinstance(payload, dict):
            raise MalformedResponseError("Unexpected /stat-reports/{id} response (not json object)", payload)
        return ReportJob(
            job_id=self.job_id,
            status=str(payload.get("status") or "").strip().upper(),
            report_tp=self.report_tp,
            since=self.since,
            until=self.until,
            download_url=str(payload.get("downloadUrl") or "").strip(),
            raw=dict(payload),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "reportJobId": self.job_id,
            "status": self.status,
            "reportTp": self.report_tp,
            "since": self.since,
            "until": self.until,
            "downloadUrl": self.download_url,
        }


class NaverSearchAdClient:
    """Signed calls against the SearchAd REST API.

    One instance owns one ``httpx.AsyncClient``; use it as an async context
    manager or call :meth:`aclose`. No retries happen here.
    """

    def __init__(
        self,
        credentials: NaverCredentials,
        *,
        base_url: str = DEFAULT_NAVER_BASE_URL,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.credentials = credentials
        self.base_url = base_url.rstrip("/")
        self._clock = clock
        self._http = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def __aenter__(self) -> "NaverSearchAdClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def _headers(self, method: str, signature_path: str) -> dict[str, str]:
        ts = str(int(self._clock() * 1000))
        return {
            "Content-Type": "application/json; charset=UTF-8",
            "X-Timestamp": ts,
            "X-API-KEY": self.credentials.api_key,
            "X-Customer": str(self.credentials.customer_id),
            "X-Signature": sign(ts, method, signature_path, self.credentials.secret_key),
        }

    async def call(
        self,
        method: str,
        resource_path: str,
        *,
        body: Any = None,
        signature_path: str | None = None,
        parse_json: bool = True,
    ) -> Any:
        method = method.upper()
        sig_path = signature_path if signature_path is not None else resource_path.split("?", 1)[0]
        headers = self._headers(method, sig_path)
        logger.debug("[naver_sa] {} {}", method, resource_path)
        try:
            r = await self._http.request(method, resource_path, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise ExternalApiError(0, f"{type(e).__name__}: {e}", method=method, path=resource_path) from e
        if r.status_code // 100 != 2:
            raise ExternalApiError(r.status_code, r.text or "", method=method, path=resource_path)
        text = decode_text_best_effort(r.content)
        if not parse_json:
            return text
        try:
            return r.json()
        except ValueError:
            return text

    async def list_campaigns(self) -> Any:
        return await self.call("GET", "/ncc/campaigns")

    async def create_stat_report(self, *, report_tp: str, since: str, until: str) -> ReportJob:
        created = await self.call(
            "POST",
            "/stat-reports",
            body={"reportTp": report_tp, "statDt": to_stat_dt(since), "statDtTo": to_stat_dt(until)},
        )
        return ReportJob.from_payload(created, report_tp=report_tp, since=since, until=until)

    async def get_stat_report(self, job: ReportJob) -> ReportJob:
        payload = await self.call("GET", f"/stat-reports/{job.job_id}")
        return job.with_status(payload)

    async def download_report(self, download_url: str) -> str:
        target, sig_path = split_download_locator(download_url)
        return await self.call("GET", target, signature_path=sig_path, parse_json=False)
