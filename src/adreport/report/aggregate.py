from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from datetime import date, timedelta
from typing import Any, Callable, Iterable, Mapping

from adreport.report.dates import (
    fmt_dot,
    month_key,
    month_label,
    month_week_label,
    parse_date_loose,
    parse_month_key,
    shift_month,
    start_of_week_monday,
    week_month,
)
from adreport.util import to_num

Row = Mapping[str, Any]

METRICS = ("impressions", "clicks", "cost", "conversions", "revenue")
RATIOS = ("ctr", "cpc", "cvr", "cpa", "roas")
SORTABLE = frozenset(METRICS + RATIOS)

# Loaded rows come from several exports; the first present key wins.
METRIC_KEYS: dict[str, tuple[str, ...]] = {
    "impressions": ("impressions", "impr", "imp"),
    "clicks": ("clicks", "clk"),
    "cost": ("cost", "spend"),
    "conversions": ("conversions", "conv"),
    "revenue": ("revenue", "conversion_value"),
}

CAMPAIGN_KEYS = ("campaign_name", "campaign", "campaignName", "campaign_nm")
GROUP_KEYS = ("group_name", "group", "groupName", "adgroup_name", "adgroup")
KEYWORD_KEYS = ("keyword", "query", "term")
RANK_KEYS = ("avgRank", "avgPosition", "rank")

UNASSIGNED_GROUP = "미지정"


def safe_div(a: float, b: float) -> float:
    if not b:
        return 0.0
    out = a / b
    return out if math.isfinite(out) else 0.0


def progress_rate(actual: float, goal: float) -> float:
    return actual / goal if goal > 0 else 0.0


def diff_pct(current: float, prev: float) -> float:
    """Relative change as a ratio (0.25 == +25%); 0 when there is no baseline."""
    return safe_div(current - prev, prev)


def _text(row: Row, keys: Iterable[str]) -> str:
    for k in keys:
        v = row.get(k)
        if v is not None and str(v).strip() != "":
            return str(v).strip()
    return ""


def metric_value(row: Row, metric: str) -> float:
    for k in METRIC_KEYS[metric]:
        v = row.get(k)
        if v is not None and v != "":
            return max(0.0, to_num(v))
    return 0.0


def summarize(rows: Iterable[Row]) -> dict[str, float]:
    totals = dict.fromkeys(METRICS, 0.0)
    for r in rows:
        for m in METRICS:
            totals[m] += metric_value(r, m)
    return {
        **totals,
        "ctr": safe_div(totals["clicks"], totals["impressions"]),
        "cpc": safe_div(totals["cost"], totals["clicks"]),
        "cvr": safe_div(totals["conversions"], totals["clicks"]),
        "cpa": safe_div(totals["cost"], totals["conversions"]),
        "roas": safe_div(totals["revenue"], totals["cost"]),
    }


def _sorted(items: list[dict[str, Any]], sort_by: str) -> list[dict[str, Any]]:
    if sort_by not in SORTABLE:
        raise ValueError(f"sort_by must be one of {sorted(SORTABLE)} (got {sort_by!r})")
    # Stable: ties keep first-seen order.
    return sorted(items, key=lambda x: x.get(sort_by) or 0.0, reverse=True)


def _group(
    rows: Iterable[Row],
    label: str,
    key_of: Callable[[Row], str],
) -> list[dict[str, Any]]:
    buckets: dict[str, list[Row]] = {}
    for r in rows:
        k = key_of(r)
        if not k:
            continue
        buckets.setdefault(k, []).append(r)
    return [{label: k, **summarize(items)} for k, items in buckets.items()]


def group_by_source(rows: Iterable[Row], *, sort_by: str = "clicks") -> list[dict[str, Any]]:
    return _sorted(
        _group(rows, "source", lambda r: (_text(r, ("source", "platform")) or "unknown").lower()),
        sort_by,
    )


def group_by_device(rows: Iterable[Row], *, sort_by: str = "clicks") -> list[dict[str, Any]]:
    return _sorted(_group(rows, "device", lambda r: (_text(r, ("device",)) or "unknown").lower()), sort_by)


def group_by_campaign(rows: Iterable[Row], *, sort_by: str = "clicks") -> list[dict[str, Any]]:
    return _sorted(_group(rows, "campaign", lambda r: _text(r, CAMPAIGN_KEYS)), sort_by)


def group_by_group(rows: Iterable[Row], *, sort_by: str = "clicks") -> list[dict[str, Any]]:
    return _sorted(_group(rows, "group", lambda r: _text(r, GROUP_KEYS) or UNASSIGNED_GROUP), sort_by)


def group_by_keyword(
    rows: Iterable[Row],
    *,
    sort_by: str = "clicks",
    limit: int | None = 20,
) -> list[dict[str, Any]]:
    """Keyword x campaign x group buckets; blank keywords are skipped."""
    buckets: dict[tuple[str, str, str], list[Row]] = {}
    for r in rows:
        kw = _text(r, KEYWORD_KEYS)
        if not kw:
            continue
        buckets.setdefault((kw, _text(r, CAMPAIGN_KEYS), _text(r, GROUP_KEYS)), []).append(r)
    out = [
        {"keyword": kw, "campaign_name": c or None, "group_name": g or None, **summarize(items)}
        for (kw, c, g), items in buckets.items()
    ]
    out = _sorted(out, sort_by)
    return out if limit is None else out[:limit]


def group_by_creative(rows: Iterable[Row], *, sort_by: str = "clicks") -> list[dict[str, Any]]:
    buckets: dict[str, list[Row]] = {}
    for r in rows:
        creative = _text(r, ("creative",))
        if creative:
            buckets.setdefault(creative, []).append(r)
    out = [
        {"creative": name, "imagePath": _text_first(items, "imagePath"), **summarize(items)}
        for name, items in buckets.items()
    ]
    return _sorted(out, sort_by)


def _text_first(rows: list[Row], key: str) -> str:
    for r in rows:
        v = _text(r, (key,))
        if v:
            return v
    return ""


def average_rank(rows: Iterable[Row]) -> float | None:
    """Impression-weighted average position, or None when no row carries one."""
    weighted = 0.0
    weight = 0.0
    plain: list[float] = []
    for r in rows:
        raw = _text(r, RANK_KEYS)
        if not raw:
            continue
        rank = to_num(raw)
        if rank <= 0:
            continue
        plain.append(rank)
        imp = metric_value(r, "impressions")
        weighted += rank * imp
        weight += imp
    if not plain:
        return None
    return weighted / weight if weight > 0 else sum(plain) / len(plain)


def _dated(rows: Iterable[Row]) -> list[tuple[Row, date]]:
    out: list[tuple[Row, date]] = []
    for r in rows:
        d = parse_date_loose(r.get("date"))
        if d is not None:
            out.append((r, d))
    return out


def group_by_week_recent5(rows: Iterable[Row]) -> list[dict[str, Any]]:
    """Five consecutive Monday-start weeks ending at the latest dated row, newest first.

    Empty weeks are kept. ``month`` is the week's attributed month.
    """
    dated = _dated(rows)
    if not dated:
        return []
    latest = start_of_week_monday(max(d for _, d in dated))
    starts = [latest - timedelta(days=7 * i) for i in range(4, -1, -1)]
    buckets: dict[str, list[Row]] = {ws.isoformat(): [] for ws in starts}
    for r, d in dated:
        k = start_of_week_monday(d).isoformat()
        if k in buckets:
            buckets[k].append(r)
    out = [
        {
            "weekKey": ws.isoformat(),
            "label": month_week_label(ws),
            "month": month_key(week_month(ws)),
            **summarize(buckets[ws.isoformat()]),
        }
        for ws in starts
    ]
    return sorted(out, key=lambda w: w["weekKey"], reverse=True)


def _dim_ok(row: Row, key: str, selected: str) -> bool:
    return selected == "all" or _text(row, (key,)) == selected


def group_by_month_recent3(
    rows: Iterable[Row],
    *,
    month: str = "all",
    device: str = "all",
    channel: str = "all",
) -> list[dict[str, Any]]:
    """Latest three calendar months, newest first.

    With a selected month the scope is that month and the two before it.
    """
    base = [r for r in rows if _dim_ok(r, "device", device) and _dim_ok(r, "channel", channel)]
    dated = _dated(base)
    if month != "all":
        ym = parse_month_key(month)
        if ym is None:
            return []
        start, end = shift_month(*ym, -2), shift_month(*ym, 1)
        dated = [(r, d) for r, d in dated if start <= d < end]

    buckets: dict[str, list[Row]] = {}
    for r, d in dated:
        buckets.setdefault(month_key(d), []).append(r)
    out = [{"month": mk, "label": month_label(mk), **summarize(items)} for mk, items in buckets.items()]
    out.sort(key=lambda x: x["month"], reverse=True)
    return out[:3]


def current_month_key_by_data(rows: Iterable[Row]) -> str:
    """Latest month present in the data (not the wall-clock month); "all" when undated."""
    dated = _dated(rows)
    if not dated:
        return "all"
    return month_key(max(d for _, d in dated))


def build_options(rows: Iterable[Row]) -> dict[str, list[str]]:
    months: set[str] = set()
    devices: set[str] = set()
    channels: set[str] = set()
    for r in rows:
        d = parse_date_loose(r.get("date"))
        if d is not None:
            months.add(month_key(d))
        dv = _text(r, ("device",))
        if dv:
            devices.add(dv)
        ch = _text(r, ("channel",))
        if ch:
            channels.add(ch)
    return {
        "monthOptions": sorted(months, reverse=True),
        "deviceOptions": sorted(devices),
        "channelOptions": sorted(channels),
    }


def build_week_options(rows: Iterable[Row], month: str = "all") -> list[dict[str, str]]:
    """Week keys with their month-week labels, oldest first. "all" keeps the latest five."""
    dated = _dated(rows)
    if month != "all":
        dated = [(r, d) for r, d in dated if month_key(d) == month]
    keys = sorted({start_of_week_monday(d) for _, d in dated}, reverse=True)
    if month == "all":
        keys = keys[:5]
    return [{"weekKey": ws.isoformat(), "label": month_week_label(ws)} for ws in reversed(keys)]


def filter_rows(
    rows: Iterable[Row],
    *,
    month: str = "all",
    week: str = "all",
    device: str = "all",
    channel: str = "all",
) -> list[Row]:
    """Apply the dashboard filters; "all" disables one. Undated rows are dropped."""
    out: list[Row] = []
    for r, d in _dated(rows):
        if month != "all" and month_key(d) != month:
            continue
        if week != "all" and start_of_week_monday(d).isoformat() != week:
            continue
        if not _dim_ok(r, "device", device) or not _dim_ok(r, "channel", channel):
            continue
        out.append(r)
    return out


def period_text(rows: Iterable[Row], *, month: str = "all", week: str = "all") -> str:
    rows = list(rows)
    if not rows:
        return ""
    if week != "all":
        ws = parse_date_loose(week)
        if ws is not None:
            return f"{fmt_dot(ws)} ~ {fmt_dot(ws + timedelta(days=6))}"
    if month != "all":
        ym = parse_month_key(month)
        if ym is None:
            return ""
        start = date(*ym, 1)
        end = shift_month(*ym, 1) - timedelta(days=1)
        return f"{fmt_dot(start)} ~ {fmt_dot(end)}"
    ds = [d for _, d in _dated(rows)]
    if not ds:
        return ""
    return f"{fmt_dot(min(ds))} ~ {fmt_dot(max(ds))}"


@dataclass(frozen=True)
class GoalState:
    impressions: float = 0.0
    clicks: float = 0.0
    cost: float = 0.0
    conversions: float = 0.0
    revenue: float = 0.0

    @staticmethod
    def from_mapping(raw: Mapping[str, Any] | None) -> "GoalState":
        raw = raw or {}
        return GoalState(**{m: max(0.0, to_num(raw.get(m))) for m in METRICS})


def month_goal_progress(rows: Iterable[Row], goal: GoalState) -> dict[str, Any]:
    """Current (data-relative) month actuals against the goal."""
    rows = list(rows)
    mk = current_month_key_by_data(rows)
    scope = [] if mk == "all" else [r for r, d in _dated(rows) if month_key(d) == mk]
    actual = summarize(scope)
    target = summarize([asdict(goal)])
    return {
        "monthKey": mk,
        "actual": actual,
        "goal": target,
        "progress": {m: progress_rate(actual[m], target[m]) for m in METRICS},
    }


def build_report(
    rows: Iterable[Row],
    *,
    month: str = "all",
    week: str = "all",
    device: str = "all",
    channel: str = "all",
    goal: GoalState | None = None,
) -> dict[str, Any]:
    """Everything one dashboard view needs, computed from a single row set."""
    rows = list(rows)
    filtered = filter_rows(rows, month=month, week=week, device=device, channel=channel)
    by_week = group_by_week_recent5(filtered)
    return {
        "options": {**build_options(rows), "weekOptions": build_week_options(rows, month)},
        "period": period_text(rows, month=month, week=week),
        "totals": summarize(filtered),
        "bySource": group_by_source(filtered),
        "byDevice": group_by_device(filtered),
        "byCampaign": group_by_campaign(filtered),
        "byGroup": group_by_group(filtered),
        "byKeyword": group_by_keyword(filtered),
        "byCreative": group_by_creative(filtered),
        "byWeek": by_week,
        "byWeekChart": list(reversed(by_week)),
        "byMonth": group_by_month_recent3(rows, month=month, device=device, channel=channel),
        "currentMonth": month_goal_progress(rows, goal or GoalState()),
        "rowCount": len(filtered),
    }
