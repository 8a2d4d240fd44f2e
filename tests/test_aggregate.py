from __future__ import annotations

from datetime import date

import pytest

from adreport.report.aggregate import (
    GoalState,
    average_rank,
    build_options,
    build_report,
    build_week_options,
    current_month_key_by_data,
    diff_pct,
    filter_rows,
    group_by_campaign,
    group_by_creative,
    group_by_device,
    group_by_group,
    group_by_keyword,
    group_by_month_recent3,
    group_by_source,
    group_by_week_recent5,
    month_goal_progress,
    period_text,
    progress_rate,
    safe_div,
    summarize,
)
from adreport.report.dates import month_label, month_week_label, month_week_number, parse_month_key, week_month


def test_safe_div_and_rates() -> None:
    assert safe_div(1, 0) == 0.0
    assert safe_div(0, 0) == 0.0
    assert safe_div(3, 4) == 0.75
    assert progress_rate(50, 0) == 0.0
    assert progress_rate(50, 200) == 0.25
    assert diff_pct(125, 100) == pytest.approx(0.25)
    assert diff_pct(10, 0) == 0.0


def test_summarize_derives_ratios_and_accepts_aliases() -> None:
    totals = summarize(
        [
            {"imp": "1,000", "clk": 50, "spend": "₩25,000", "conv": 5, "conversion_value": 100000},
            {"impressions": 0, "clicks": 0, "cost": -10},
        ]
    )
    assert totals["impressions"] == 1000
    assert totals["cost"] == 25000
    assert totals["ctr"] == pytest.approx(0.05)
    assert totals["cpc"] == pytest.approx(500)
    assert totals["cvr"] == pytest.approx(0.1)
    assert totals["cpa"] == pytest.approx(5000)
    assert totals["roas"] == pytest.approx(4.0)

    empty = summarize([])
    assert all(v == 0.0 for v in empty.values())


def test_group_by_dimensions() -> None:
    rows = [
        {"date": "2024-06-01", "source": "Naver", "device": "PC", "campaign": "A", "clicks": 5},
        {"date": "2024-06-01", "platform": "google", "device": "mobile", "campaign": "B", "clicks": 9},
        {"date": "2024-06-02", "source": "naver", "campaign": "", "group": "g1", "clicks": 1},
    ]
    src = group_by_source(rows)
    assert [(g["source"], g["clicks"]) for g in src] == [("google", 9), ("naver", 6)]

    dev = group_by_device(rows)
    assert {g["device"]: g["clicks"] for g in dev} == {"mobile": 9, "pc": 5, "unknown": 1}

    camp = group_by_campaign(rows)
    assert [g["campaign"] for g in camp] == ["B", "A"]

    grp = group_by_group(rows)
    assert {g["group"]: g["clicks"] for g in grp} == {"미지정": 14, "g1": 1}


def test_sorting_is_stable_and_validated() -> None:
    rows = [
        {"source": "a", "clicks": 5, "cost": 1},
        {"source": "b", "clicks": 5, "cost": 9},
        {"source": "c", "clicks": 7, "cost": 2},
    ]
    assert [g["source"] for g in group_by_source(rows)] == ["c", "a", "b"]
    assert [g["source"] for g in group_by_source(rows, sort_by="cost")] == ["b", "c", "a"]
    with pytest.raises(ValueError):
        group_by_source(rows, sort_by="banana")


def test_group_by_keyword_limit_and_keys() -> None:
    rows = [{"keyword": f"kw{i}", "campaign": "C", "group": "G", "clicks": i} for i in range(30)]
    rows.append({"keyword": "", "clicks": 1000})
    rows.append({"keyword": "kw29", "campaign": "C2", "clicks": 1})

    top = group_by_keyword(rows)
    assert len(top) == 20
    assert top[0]["keyword"] == "kw29"
    assert top[0]["campaign_name"] == "C"
    assert top[0]["group_name"] == "G"
    assert len(group_by_keyword(rows, limit=None)) == 31


def test_group_by_creative_keeps_image_path() -> None:
    rows = [
        {"creative": "banner", "imagePath": "", "clicks": 1},
        {"creative": "banner", "imagePath": "/img/b.png", "clicks": 2},
        {"creative": "", "clicks": 100},
    ]
    out = group_by_creative(rows)
    assert out == [{"creative": "banner", "imagePath": "/img/b.png", **summarize(rows[:2])}]


def test_average_rank_is_impression_weighted() -> None:
    rows = [{"avgRank": 1, "impressions": 300}, {"avgRank": 5, "impressions": 100}, {"impressions": 1000}]
    assert average_rank(rows) == pytest.approx(2.0)
    assert average_rank([{"impressions": 10}]) is None
    assert average_rank([{"rank": 2}, {"rank": 4}]) == pytest.approx(3.0)


def test_week_attributed_to_next_month_when_first_is_mon_to_thu() -> None:
    # 2024-05-01 is a Wednesday.
    assert week_month(date(2024, 4, 29)) == date(2024, 5, 1)
    assert month_week_number(date(2024, 4, 29)) == (2024, 5, 1)
    assert month_week_label(date(2024, 4, 29)) == "2024년 5월 1주차"


def test_week_stays_in_month_when_next_first_is_fri_to_sun() -> None:
    # 2024-06-01 is a Saturday.
    assert week_month(date(2024, 5, 27)) == date(2024, 5, 1)
    assert month_week_label(date(2024, 5, 27)) == "2024년 5월 5주차"
    assert month_week_label(date(2024, 6, 3)) == "2024년 6월 1주차"


def test_week_label_across_year_end() -> None:
    # 2025-01-01 is a Wednesday.
    assert month_week_label(date(2024, 12, 30)) == "2025년 1월 1주차"
    assert month_label("2025-01") == "2025년 1월"


def test_week_recent5_keeps_empty_weeks_newest_first() -> None:
    rows = [
        {"date": "2024-06-12", "clicks": 3},
        {"date": "2024-06-10", "clicks": 2},
        {"date": "2024-05-15", "clicks": 7},
        {"date": "2024-01-01", "clicks": 100},
    ]
    weeks = group_by_week_recent5(rows)
    assert [w["weekKey"] for w in weeks] == ["2024-06-10", "2024-06-03", "2024-05-27", "2024-05-20", "2024-05-13"]
    assert [w["clicks"] for w in weeks] == [5, 0, 0, 0, 7]
    assert weeks[0]["label"] == "2024년 6월 2주차"
    assert weeks[2]["month"] == "2024-05"
    assert group_by_week_recent5([]) == []


def test_month_recent3() -> None:
    rows = [
        {"date": "2024-03-05", "clicks": 1, "device": "pc"},
        {"date": "2024-04-05", "clicks": 2, "device": "pc"},
        {"date": "2024-05-05", "clicks": 3, "device": "mobile"},
        {"date": "2024-06-05", "clicks": 4, "device": "pc"},
    ]
    assert [m["month"] for m in group_by_month_recent3(rows)] == ["2024-06", "2024-05", "2024-04"]
    assert [m["month"] for m in group_by_month_recent3(rows, month="2024-05")] == ["2024-05", "2024-04", "2024-03"]
    assert [(m["month"], m["clicks"]) for m in group_by_month_recent3(rows, device="pc")] == [
        ("2024-06", 4),
        ("2024-04", 2),
        ("2024-03", 1),
    ]
    assert group_by_month_recent3(rows, month="foo") == []
    assert group_by_month_recent3(rows, month="2024-13") == []

    out = build_report(rows, month="foo")
    assert out["rowCount"] == 0
    assert out["byMonth"] == []
    assert out["period"] == ""


def test_current_month_is_data_relative() -> None:
    assert current_month_key_by_data([]) == "all"
    assert current_month_key_by_data([{"date": "2023-11-30"}, {"date": "20231201"}, {"date": "junk"}]) == "2023-12"


def test_options_and_filters() -> None:
    rows = [
        {"date": "2024-05-30", "device": "pc", "channel": "search", "clicks": 1},
        {"date": "2024-06-03", "device": "mobile", "channel": "display", "clicks": 2},
        {"date": "2024-06-04", "device": "pc", "channel": "search", "clicks": 3},
        {"date": "", "device": "pc", "clicks": 99},
    ]
    opts = build_options(rows)
    assert opts == {
        "monthOptions": ["2024-06", "2024-05"],
        "deviceOptions": ["mobile", "pc"],
        "channelOptions": ["display", "search"],
    }
    assert build_week_options(rows, "2024-06") == [{"weekKey": "2024-06-03", "label": "2024년 6월 1주차"}]
    assert [w["weekKey"] for w in build_week_options(rows)] == ["2024-05-27", "2024-06-03"]

    assert len(filter_rows(rows)) == 3
    assert [r["clicks"] for r in filter_rows(rows, month="2024-06", device="pc")] == [3]
    assert [r["clicks"] for r in filter_rows(rows, week="2024-05-27")] == [1]
    assert [r["clicks"] for r in filter_rows(rows, channel="display")] == [2]


def test_period_text() -> None:
    rows = [{"date": "2024-06-03"}, {"date": "2024-06-20"}]
    assert period_text([]) == ""
    assert period_text(rows) == "2024.06.03 ~ 2024.06.20"
    assert period_text(rows, month="2024-02") == "2024.02.01 ~ 2024.02.29"
    assert period_text(rows, week="2024-06-10") == "2024.06.10 ~ 2024.06.16"
    assert period_text(rows, month="garbage") == ""


def test_month_goal_progress() -> None:
    rows = [{"date": "2024-05-31", "clicks": 100}, {"date": "2024-06-01", "clicks": 40, "cost": 1000}]
    goal = GoalState.from_mapping({"clicks": "200", "cost": None, "revenue": -5})
    assert goal == GoalState(clicks=200)

    out = month_goal_progress(rows, goal)
    assert out["monthKey"] == "2024-06"
    assert out["actual"]["clicks"] == 40
    assert out["progress"]["clicks"] == pytest.approx(0.2)
    assert out["progress"]["cost"] == 0.0


def test_build_report_bundle() -> None:
    rows = [
        {"date": "2024-06-03", "source": "naver_sa", "campaign": "brand", "keyword": "shoes", "clicks": 10, "cost": 500},
        {"date": "2024-06-04", "source": "csv_upload", "campaign": "generic", "clicks": 4, "cost": 100},
        {"date": "2024-05-20", "source": "naver_sa", "campaign": "brand", "clicks": 1},
    ]
    out = build_report(rows, month="2024-06")
    assert out["rowCount"] == 2
    assert out["totals"]["clicks"] == 14
    assert out["period"] == "2024.06.01 ~ 2024.06.30"
    assert [s["source"] for s in out["bySource"]] == ["naver_sa", "csv_upload"]
    assert [k["keyword"] for k in out["byKeyword"]] == ["shoes"]
    assert out["byWeekChart"] == list(reversed(out["byWeek"]))
    assert [m["month"] for m in out["byMonth"]] == ["2024-06", "2024-05"]
    assert out["currentMonth"]["monthKey"] == "2024-06"
    assert out["options"]["monthOptions"] == ["2024-06", "2024-05"]


def test_parse_month_key() -> None:
    assert parse_month_key("2024-06") == (2024, 6)
    assert parse_month_key(" 2024-12 ") == (2024, 12)
    for bad in ("foo", "2024-6", "2024-13", "2024-00", "2024-06-01", "", None):
        assert parse_month_key(bad) is None
