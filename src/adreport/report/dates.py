from __future__ import annotations

import re
from datetime import date, datetime, timedelta
from typing import Any

from adreport.importers.stat_report import normalize_date

_MONTH_KEY = re.compile(r"^(\d{4})-(\d{2})$")


def parse_date_loose(v: Any) -> date | None:
    if isinstance(v, datetime):
        return v.date()
    if isinstance(v, date):
        return v
    iso = normalize_date(v)
    return date.fromisoformat(iso) if iso else None


def start_of_week_monday(d: date) -> date:
    return d - timedelta(days=d.weekday())


def month_key(d: date) -> str:
    return f"{d.year:04d}-{d.month:02d}"


def parse_month_key(v: Any) -> tuple[int, int] | None:
    """(year, month) for a "YYYY-MM" key, else None."""
    m = _MONTH_KEY.match(str(v or "").strip())
    if not m:
        return None
    y, mo = int(m.group(1)), int(m.group(2))
    # Bounded so the three-month window around it stays representable.
    return (y, mo) if 1 <= mo <= 12 and 1 < y < 9999 else None


def month_label(mk: str) -> str:
    return f"{mk[0:4]}년 {int(mk[5:7])}월"


def first_of_next_month(d: date) -> date:
    if d.month == 12:
        return date(d.year + 1, 1, 1)
    return date(d.year, d.month + 1, 1)


def shift_month(year: int, month: int, delta: int) -> date:
    idx = year * 12 + (month - 1) + delta
    return date(idx // 12, idx % 12 + 1, 1)


def week_month(week_start: date) -> date:
    """First day of the month a Monday-start week is attributed to.

    A week belongs to its Monday's month, unless the next month's 1st falls
    inside the week on Mon-Thu; then it belongs to the next month.
    """
    ws = start_of_week_monday(week_start)
    nxt = first_of_next_month(ws)
    if ws <= nxt <= ws + timedelta(days=6) and nxt.weekday() <= 3:
        return nxt
    return date(ws.year, ws.month, 1)


def month_week_number(week_start: date) -> tuple[int, int, int]:
    """(year, month, week number) under the attribution rule.

    When the month's 1st is Fri/Sat/Sun that week counts as the previous
    month's last week, so week 1 starts the following Monday.
    """
    ws = start_of_week_monday(week_start)
    base = week_month(ws)
    week1 = start_of_week_monday(base)
    if base.weekday() >= 4:
        week1 = week1 + timedelta(days=7)
    n = (ws - week1).days // 7 + 1
    return base.year, base.month, max(1, n)


def month_week_label(week_start: date) -> str:
    y, m, n = month_week_number(week_start)
    return f"{y}년 {m}월 {n}주차"


def fmt_dot(d: date) -> str:
    return f"{d.year:04d}.{d.month:02d}.{d.day:02d}"
