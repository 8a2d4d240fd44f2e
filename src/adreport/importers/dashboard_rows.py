from __future__ import annotations

import re
from typing import Any, Iterable, Mapping

from loguru import logger

from adreport.errors import ParseError
from adreport.importers.stat_report import METRIC_FIELDS, normalize_date, read_records, resolve_field
from adreport.util import to_num

# Dimension columns a dashboard export may carry; first present alias wins.
DIMENSION_ALIASES: dict[str, tuple[str, ...]] = {
    "account_id": ("account_id", "accountId", "customer_id", "광고주"),
    "channel": ("channel", "채널"),
    "source": ("source", "매체"),
    "platform": ("platform", "플랫폼"),
    "campaign_name": ("campaign_name", "campaign", "campaignName", "캠페인", "캠페인명"),
    "group_name": ("group_name", "group", "adgroup", "adgroup_name", "광고그룹", "광고그룹명"),
    "keyword": ("keyword", "query", "키워드"),
    "creative": ("creative", "소재", "소재명"),
    "imagePath": ("imagePath", "image_path", "image", "이미지"),
    "device": ("device", "pc/mobile", "기기", "디바이스"),
}
RANK_ALIASES = ("rank", "avgRank", "avg_rank", "avgPosition", "평균노출순위", "평균 노출 순위")

CHANNEL_KINDS = ("search", "display")

_SEARCH_HINT = re.compile(r"\bsa\b|\bsearch\b|파워링크|쇼핑검색|브랜드검색|keyword|키워드")
_DISPLAY_HINT = re.compile(r"\bgfa\b|\bgdn\b|\bdisplay\b|\bda\b|성과형디스플레이|meta|facebook|instagram")


def _dimension(rec: Mapping[str, str], aliases: Iterable[str]) -> str:
    for alias in aliases:
        v = rec.get(alias.lower())
        if v is not None and str(v).strip() != "":
            return str(v).strip()
    return ""


def infer_channel_kind(row: Mapping[str, Any]) -> str:
    """Channel kind (search or display) read from the row labels; empty when ambiguous."""
    channel = str(row.get("channel") or "").strip().lower()
    if channel in CHANNEL_KINDS:
        return channel
    blob = " ".join(
        str(row.get(k) or "").lower()
        for k in ("source", "platform", "campaign_name", "group_name", "keyword", "channel")
    )
    is_search = bool(_SEARCH_HINT.search(blob))
    is_display = bool(_DISPLAY_HINT.search(blob))
    if is_display and not is_search:
        return "display"
    if is_search and not is_display:
        return "search"
    return ""


def load_report_rows(
    text: str,
    *,
    since: str | None = None,
    until: str | None = None,
    channels: Iterable[str] | None = None,
) -> list[dict[str, Any]]:
    """Read a dashboard CSV into dimensioned rows for the aggregation engine.

    Unlike the daily import, nothing is rolled up: device, channel, campaign,
    group, keyword, creative and rank survive so every grouping has input.
    ``since``/``until`` bound the date (inclusive, both required to apply).
    ``channels`` keeps rows inferred as those kinds; when no row can be
    classified the channel filter is skipped and the date-filtered rows are
    returned as they are.
    """
    header, records = read_records(text or "")
    rows: list[dict[str, Any]] = []
    for rec in records:
        day = normalize_date(resolve_field(rec, "date"))
        if day is None:
            continue
        row: dict[str, Any] = {k: _dimension(rec, aliases) for k, aliases in DIMENSION_ALIASES.items()}
        row["date"] = day
        for m in METRIC_FIELDS:
            row[m] = max(0.0, to_num(resolve_field(rec, m)))
        row["rank"] = max(0.0, to_num(_dimension(rec, RANK_ALIASES)))
        rows.append(row)
    if records and not rows:
        raise ParseError("No row with a recognisable date column", header=header)

    lo, hi = normalize_date(since), normalize_date(until)
    if lo and hi:
        rows = [r for r in rows if lo <= r["date"] <= hi]

    wanted = {c.strip().lower() for c in (channels or []) if c and c.strip()}
    if wanted:
        kept = [r for r in rows if infer_channel_kind(r) in wanted]
        if not kept and rows:
            logger.warning(
                "[import] no row maps to channel(s) {}; channel filter not applied",
                ",".join(sorted(wanted)),
            )
        else:
            rows = kept
    return rows
