from __future__ import annotations

import math
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

# Everything but digits, the decimal point and the sign (currency marks, units, separators).
_NUMERIC_NOISE = re.compile(r"[^\d.\-]")


def now_utc_iso() -> str:
    return datetime.now(tz=timezone.utc).replace(microsecond=0).isoformat()


def now_utc_stamp() -> str:
    # Microsecond precision; used as the optimistic-concurrency token on connections.
    return datetime.now(tz=timezone.utc).isoformat()


def new_id(prefix: str) -> str:
    # URL-safe, reasonably short, no external deps
    return f"{prefix}_{secrets.token_urlsafe(10)}"


def kst_ymd(timezone_name: str, offset_days: int = 0) -> str:
    today = datetime.now(tz=ZoneInfo(timezone_name)).date()
    return (today + timedelta(days=offset_days)).isoformat()


def to_num(v: Any) -> float:
    """Coerce a loosely formatted value ("₩1,234", "1,000원", "KRW 1,000", "12.5%") to a float; 0.0 if unusable."""
    if v is None or isinstance(v, bool):
        return 0.0
    if isinstance(v, (int, float)):
        f = float(v)
        return f if math.isfinite(f) else 0.0
    s = _NUMERIC_NOISE.sub("", str(v))
    if s == "":
        return 0.0
    try:
        f = float(s)
    except ValueError:
        return 0.0
    return f if math.isfinite(f) else 0.0


def to_stat_dt(day_iso: str) -> str:
    return day_iso.replace("-", "")


def decode_text_best_effort(data: bytes) -> str:
    for enc in ("utf-8-sig", "utf-8", "cp949"):
        try:
            return data.decode(enc)
        except UnicodeDecodeError:
            continue
    # Last resort: replace invalid chars
    return data.decode("utf-8", errors="replace")
