from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import os

from dotenv import load_dotenv

DEFAULT_NAVER_BASE_URL = "https://api.searchad.naver.com"


def _truthy(v: str | None) -> bool:
    if v is None:
        return False
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _int_env(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(float(raw))
    except ValueError:
        return default


def _float_env(name: str, default: float | None) -> float | None:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _csv_env(name: str) -> tuple[str, ...]:
    raw = os.getenv(name) or ""
    out: list[str] = []
    for part in raw.split(","):
        p = part.strip().upper()
        if p and p not in out:
            out.append(p)
    return tuple(out)


@dataclass(frozen=True)
class Settings:
    db_path: Path
    timezone: str = "Asia/Seoul"
    web_host: str = "127.0.0.1"
    web_port: int = 8020
    naver_base_url: str = DEFAULT_NAVER_BASE_URL
    report_tp: str = "AD"
    conversion_report_tps: tuple[str, ...] = field(default_factory=tuple)
    poll_max_attempts: int = 20
    poll_interval_ms: int = 3000
    poll_timeout_sec: float | None = None
    http_timeout_sec: float = 30.0
    cron_secret: str | None = None
    log_level: str = "INFO"
    log_file: Path | None = None
    debug: bool = False

    @staticmethod
    def load() -> "Settings":
        load_dotenv()

        db_path = Path(os.getenv("ADREPORT_DB_PATH", "./data/adreport.sqlite3"))
        timezone = os.getenv("ADREPORT_TIMEZONE", "Asia/Seoul").strip() or "Asia/Seoul"
        web_host = os.getenv("ADREPORT_WEB_HOST", "127.0.0.1")
        web_port = _int_env("ADREPORT_WEB_PORT", 8020)

        base_url = (os.getenv("NAVER_SEARCHAD_BASE_URL") or "").strip() or DEFAULT_NAVER_BASE_URL
        report_tp = (os.getenv("ADREPORT_REPORT_TP") or "AD").strip().upper() or "AD"

        log_file_raw = (os.getenv("ADREPORT_LOG_FILE") or "").strip()

        return Settings(
            db_path=db_path,
            timezone=timezone,
            web_host=web_host,
            web_port=web_port,
            naver_base_url=base_url,
            report_tp=report_tp,
            conversion_report_tps=_csv_env("ADREPORT_CONVERSION_REPORTS"),
            poll_max_attempts=_int_env("ADREPORT_POLL_MAX_ATTEMPTS", 20),
            poll_interval_ms=_int_env("ADREPORT_POLL_INTERVAL_MS", 3000),
            poll_timeout_sec=_float_env("ADREPORT_POLL_TIMEOUT_SEC", None),
            http_timeout_sec=_float_env("ADREPORT_HTTP_TIMEOUT_SEC", 30.0) or 30.0,
            cron_secret=(os.getenv("ADREPORT_CRON_SECRET") or "").strip() or None,
            log_level=(os.getenv("ADREPORT_LOG_LEVEL") or "INFO").strip().upper() or "INFO",
            log_file=Path(log_file_raw) if log_file_raw else None,
            debug=_truthy(os.getenv("ADREPORT_DEBUG", "0")),
        )
