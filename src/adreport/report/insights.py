from __future__ import annotations

from typing import Any, Iterable, Mapping

from adreport.report.aggregate import (
    Row,
    average_rank,
    group_by_device,
    group_by_source,
    safe_div,
)

ADVICE_LINES = (
    "- 전환 Top 키워드는 현재 구조를 유지하면서 입찰을 점진적으로 상향해 전환 볼륨을 확대하는 방향이 적절합니다.",
    "- 클릭은 높지만 전환이 낮은 키워드는 의도 불일치 가능성이 있어 네거티브 확장과 랜딩/소재 분리 테스트가 필요합니다.",
    "- ROAS가 높은 키워드는 동일 의도의 롱테일 확장과 예산 분리를 통해 효율을 보호하면서 확장하는 운영이 유리합니다.",
    "- 비용 비중이 큰 구간은 매칭 타입을 보수적으로 조정하고 상한 CPC를 설정해 CPA 안정화가 필요합니다.",
    "- 소스/기기 편차가 큰 경우 성과가 좋은 구간에 예산을 집중하고 약한 구간은 노출·입찰을 낮춰 재배분하는 것이 효율적입니다.",
)


def _pct(ratio: float) -> str:
    return f"{ratio * 100:.1f}%"


def _top5_share(items: list[Mapping[str, Any]], metric: str) -> float:
    values = sorted((float(x.get(metric) or 0.0) for x in items), reverse=True)
    return safe_div(sum(values[:5]), sum(values))


def _best(groups: list[dict[str, Any]]) -> dict[str, Any] | None:
    # Revenue first; conversions, then clicks, break an all-zero revenue tie.
    if not groups:
        return None
    return max(groups, key=lambda g: (g["revenue"], g["conversions"], g["clicks"]))


def build_keyword_insight(
    keyword_agg: list[Mapping[str, Any]],
    keyword_base_rows: Iterable[Row],
) -> str:
    """Rule-based narrative for the keyword tab.

    ``keyword_agg`` is the output of group_by_keyword; ``keyword_base_rows`` the
    filtered rows it was built from.
    """
    base = list(keyword_base_rows)
    lines: list[str] = [
        f"- 키워드 분포는 클릭 Top5가 전체 클릭의 {_pct(_top5_share(keyword_agg, 'clicks'))}, "
        f"전환 Top5가 전체 전환의 {_pct(_top5_share(keyword_agg, 'conversions'))}로 "
        "상위 키워드 집중도가 높은 편입니다."
    ]

    best_source = _best(group_by_source(base))
    if best_source is not None:
        lines.append(
            f"- 성과 중심 소스는 {best_source['source']}이며, 해당 구간 ROAS는 {_pct(best_source['roas'])}입니다."
        )

    best_device = _best(group_by_device(base))
    if best_device is not None:
        lines.append(
            f"- 성과 중심 기기는 {best_device['device']}이며, 해당 구간 ROAS는 {_pct(best_device['roas'])}입니다."
        )

    rank = average_rank(base)
    if rank is not None:
        lines.append(
            f"- 평균 노출 순위(추정)는 {rank:.2f}이며, 전환 기여 키워드는 순위 유지가 유리하고 "
            "비전환 키워드는 노출/입찰 조정으로 비용 통제가 필요합니다."
        )

    lines.append("")
    lines.extend(ADVICE_LINES)
    return "\n".join(lines)
