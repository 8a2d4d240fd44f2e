from __future__ import annotations

import csv
import io
import re
from dataclasses import dataclass
from datetime import date
from typing import Any, Mapping

from adreport.errors import ParseError
from adreport.util import to_num

METRIC_FIELDS = ("impressions", "clicks", "cost", "conversions", "revenue")

# Ordered: the first present, non-empty column wins. Matched case-insensitively.
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "date": ("date", "day", "statDt", "stat_date", "일자", "날짜", "기간"),
    "impressions": ("impressions", "impr", "imp", "impCnt", "노출수", "노출 수", "노출"),
    "clicks": ("clicks", "clk", "clkCnt", "클릭수", "클릭 수", "클릭"),
    "cost": ("cost", "spend", "salesAmt", "총비용", "총 비용", "총비용(VAT포함,원)", "비용", "광고비"),
    "conversions": ("conversions", "conv", "ccnt", "전환수", "전환 수", "총 전환수", "전체전환수"),
    "revenue": (
        "revenue",
        "conversion_value",
        "conv. value",
        "convAmt",
        "전환매출",
        "전환매출액",
        "전환 매출",
        "총 전환매출액(원)",
        "매출",
        "매출액",
    ),
}

# Header-less TSV layouts returned by the stat-report download, keyed by reportTp.
POSITIONAL_LAYOUTS: dict[str, dict[str, int]] = {
    "AD": {"date": 0, "impressions": 7, "clicks": 9, "cost": 12},
    "CRITERION_CONVERSION": {"date": 0, "conversions": 6, "revenue": 7},
    "AD_CONVERSION": {"date": 0, "conversions": 5, "revenue": 6},
    "AD_CONVERSION_DETAIL": {"date": 0, "conversions": 5, "revenue": 6},
}

_STAT_DT = re.compile(r"^\d{8}$")
_LOOSE_YMD = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})")


@dataclass(frozen=True)
class ReportRow:
    date: str
    impressions: float = 0.0
    clicks: float = 0.0
    cost: float = 0.0
    conversions: float = 0.0
    revenue: float = 0.0


def _norm_key(k: Any) -> str:
    return str(k or "").replace("\ufeff", "").strip().lower()


def resolve_field(row: Mapping[str, Any], field: str) -> str | None:
    """Value of the first alias of ``field`` present and non-empty in ``row``, else None.

    ``row`` keys must already be normalised with :func:`_norm_key`.
    """
    for alias in FIELD_ALIASES[field]:
        v = row.get(alias.lower())
        if v is None:
            continue
        s = str(v).strip()
        if s != "":
            return s
    return None


def normalize_date(v: Any) -> str | None:
    """Normalise YYYYMMDD, YYYY-MM-DD, YYYY.MM.DD, YYYY/MM/DD, "2026. 02. 20." and ISO timestamps."""
    s = str(v or "").strip()
    if not s:
        return None
    if _STAT_DT.match(s):
        s = f"{s[0:4]}-{s[4:6]}-{s[6:8]}"
    s = s.replace(".", "-").replace("/", "-").replace(" ", "").strip("-")
    m = _LOOSE_YMD.match(s)
    if not m:
        return None
    try:
        return date(int(m.group(1)), int(m.group(2)), int(m.group(3))).isoformat()
    except ValueError:
        return None


def _metric(v: Any) -> float:
    return max(0.0, to_num(v))


def _first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line
    return ""


def is_headerless(text: str) -> bool:
    first = _first_line(text).split("\t", 1)[0].strip()
    return bool(_STAT_DT.match(first))


def _parse_positional(text: str, report_tp: str) -> list[ReportRow]:
    layout = POSITIONAL_LAYOUTS.get(report_tp.upper())
    if layout is None:
        raise ParseError(f"No column layout for header-less {report_tp} report")
    out: list[ReportRow] = []
    for line in text.splitlines():
        cols = line.split("\t")
        if len(cols) < 2 or not _STAT_DT.match(cols[0].strip()):
            continue
        day = normalize_date(cols[0])
        if day is None:
            continue
        values = {
            field: _metric(cols[idx]) if idx < len(cols) else 0.0
            for field, idx in layout.items()
            if field != "date"
        }
        out.append(ReportRow(date=day, **values))
    return out


def read_records(text: str) -> tuple[list[str], list[dict[str, str]]]:
    """Headed CSV/TSV -> (header, rows keyed by normalised header)."""
    header_line = _first_line(text)
    delimiter = "\t" if "\t" in header_line and "," not in header_line else ","
    reader = csv.reader(io.StringIO(text.lstrip("\ufeff")), delimiter=delimiter)
    header: list[str] = []
    rows: list[dict[str, str]] = []
    for cols in reader:
        if not any(str(c).strip() for c in cols):
            continue
        if not header:
            header = [str(c).replace("\ufeff", "").strip() for c in cols]
            continue
        rec: dict[str, str] = {}
        for i, key in enumerate(header):
            nk = _norm_key(key)
            if nk and nk not in rec:
                rec[nk] = cols[i] if i < len(cols) else ""
        rows.append(rec)
    return header, rows


def parse_report(text: str, *, report_tp: str | None = None) -> list[ReportRow]:
    """Parse a downloaded report or an exported CSV into canonical rows.

    Header-less TSV (first column an 8-digit statDt) is mapped positionally by
    ``report_tp``; anything else is read as a headed file through FIELD_ALIASES.
    Rows without a resolvable date are dropped. A non-empty file where no row
    has a date raises ParseError.
    """
    text = (text or "").lstrip("\ufeff")
    if not text.strip():
        return []
    if is_headerless(text):
        return _parse_positional(text, report_tp or "AD")

    header, records = read_records(text)
    out: list[ReportRow] = []
    for rec in records:
        day = normalize_date(resolve_field(rec, "date"))
        if day is None:
            continue
        out.append(
            ReportRow(
                date=day,
                **{f: _metric(resolve_field(rec, f)) for f in METRIC_FIELDS},
            )
        )
    if records and not out:
        raise ParseError("No row with a recognisable date column", header=header)
    return out
