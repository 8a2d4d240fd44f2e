from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Iterable

from adreport.importers.stat_report import ReportRow


@dataclass(frozen=True)
class MetricRow:
    """One day of metrics under the natural key (workspace_id, source, date, entity_type, entity_id)."""

    workspace_id: str
    source: str
    date: str
    entity_type: str
    entity_id: str
    impressions: float = 0.0
    clicks: float = 0.0
    cost: float = 0.0
    conversions: float = 0.0
    revenue: float = 0.0
    channel: str = "search"
    entity_name: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> tuple[str, str, str, str, str]:
        return (self.workspace_id, self.source, self.date, self.entity_type, self.entity_id)


def rollup(
    rows: Iterable[ReportRow],
    *,
    workspace_id: str,
    source: str,
    entity_id: str,
    entity_type: str = "account",
    channel: str = "search",
    entity_name: str | None = None,
    extra: dict[str, Any] | None = None,
) -> list[MetricRow]:
    """Sum parsed rows per calendar day for one fixed entity. Output is sorted by date."""
    sums: dict[str, list[float]] = {}
    for r in rows:
        acc = sums.setdefault(r.date, [0.0, 0.0, 0.0, 0.0, 0.0])
        acc[0] += r.impressions
        acc[1] += r.clicks
        acc[2] += r.cost
        acc[3] += r.conversions
        acc[4] += r.revenue

    out: list[MetricRow] = []
    for day in sorted(sums):
        imp, clk, cost, conv, rev = sums[day]
        out.append(
            MetricRow(
                workspace_id=workspace_id,
                source=source,
                date=day,
                entity_type=entity_type,
                entity_id=entity_id,
                impressions=imp,
                clicks=clk,
                cost=cost,
                conversions=conv,
                revenue=rev,
                channel=channel,
                entity_name=entity_name,
                extra=dict(extra or {}),
            )
        )
    return out


def merge_conversions(
    day_rows: list[MetricRow],
    conversion_rows: list[MetricRow],
    *,
    report_tp: str,
) -> list[MetricRow]:
    """Replace conversions/revenue per date with those of a conversion report.

    Dates only present in the conversion report are added with zero traffic
    metrics. The result stays sorted by date.
    """
    by_date = {r.date: r for r in day_rows}
    for conv in conversion_rows:
        base = by_date.get(conv.date)
        if base is None:
            base = replace(conv, impressions=0.0, clicks=0.0, cost=0.0, extra={})
        by_date[conv.date] = replace(
            base,
            conversions=conv.conversions,
            revenue=conv.revenue,
            extra={**base.extra, "conversionReportTp": report_tp},
        )
    return [by_date[d] for d in sorted(by_date)]
