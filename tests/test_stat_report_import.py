from __future__ import annotations

from pathlib import Path

import pytest

from adreport.db import AdsDB
from adreport.errors import ParseError
from adreport.importers.csv_upload import CsvUploadOptions, import_dashboard_csv
from adreport.importers.stat_report import ReportRow, is_headerless, normalize_date, parse_report
from adreport.repo import Repo
from adreport.util import to_num


def test_korean_and_english_headers_parse_identically() -> None:
    en = "date,impressions,clicks,cost,conversions,revenue\n2024-06-01,1000,50,25000,2,60000\n"
    ko = "일자,노출수,클릭수,\"총비용(VAT포함,원)\",전환수,전환매출액\n2024.06.01,\"1,000\",50,\"₩25,000\",2,\"60,000\"\n"
    short = "day,imp,clk,spend,conv,conversion_value\n20240601,1000,50,25000,2,60000\n"

    expected = [ReportRow(date="2024-06-01", impressions=1000, clicks=50, cost=25000, conversions=2, revenue=60000)]
    assert parse_report(en) == expected
    assert parse_report(ko) == expected
    assert parse_report(short) == expected


def test_header_matching_ignores_case_bom_and_whitespace() -> None:
    text = "\ufeff Date ,IMPRESSIONS, Clicks \n2024-06-02,10,1\n"
    assert parse_report(text) == [ReportRow(date="2024-06-02", impressions=10, clicks=1)]


def test_first_present_alias_wins() -> None:
    text = "date,clicks,clk\n2024-06-01,,7\n2024-06-02,3,9\n"
    rows = parse_report(text)
    assert [r.clicks for r in rows] == [7, 3]


def test_tab_separated_headed_report() -> None:
    text = "date\timpressions\tclicks\tcost\n2024-06-01\t100\t10\t5000\n"
    assert parse_report(text) == [ReportRow(date="2024-06-01", impressions=100, clicks=10, cost=5000)]


def test_headerless_ad_report_is_positional() -> None:
    cols = ["20240601", "cust", "camp", "grp", "kw", "ad", "bsn", "120", "pc", "12", "x", "y", "3400"]
    text = "\t".join(cols) + "\n" + "\t".join(["20240601"] + cols[1:7] + ["30", "pc", "3", "x", "y", "600"]) + "\n"
    assert is_headerless(text)
    assert parse_report(text, report_tp="AD") == [
        ReportRow(date="2024-06-01", impressions=120, clicks=12, cost=3400),
        ReportRow(date="2024-06-01", impressions=30, clicks=3, cost=600),
    ]


def test_headerless_conversion_layouts() -> None:
    crit = "20240601\ta\tb\tc\td\te\t4\t88000\n"
    assert parse_report(crit, report_tp="CRITERION_CONVERSION") == [
        ReportRow(date="2024-06-01", conversions=4, revenue=88000)
    ]
    ad_conv = "20240602\ta\tb\tc\td\t2\t15000\n"
    assert parse_report(ad_conv, report_tp="AD_CONVERSION") == [
        ReportRow(date="2024-06-02", conversions=2, revenue=15000)
    ]


def test_headerless_unknown_report_type_raises() -> None:
    with pytest.raises(ParseError):
        parse_report("20240601\t1\t2\n", report_tp="KEYWORD_WEIRD")


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("20240601", "2024-06-01"),
        ("2024-06-01", "2024-06-01"),
        ("2024.06.01", "2024-06-01"),
        ("2024/6/1", "2024-06-01"),
        ("2026. 02. 20.", "2026-02-20"),
        ("2024-06-01T09:00:00+09:00", "2024-06-01"),
        ("2024-02-30", None),
        ("합계", None),
        ("", None),
        (None, None),
    ],
)
def test_normalize_date(raw, expected) -> None:
    assert normalize_date(raw) == expected


def test_rows_without_date_are_dropped_and_negatives_clamped() -> None:
    text = "date,clicks,cost\n2024-06-01,5,-100\n합계,5,0\n,1,1\n"
    assert parse_report(text) == [ReportRow(date="2024-06-01", clicks=5, cost=0)]


def test_no_date_column_raises_parse_error() -> None:
    with pytest.raises(ParseError) as ei:
        parse_report("campaign,clicks\nbrand,10\n")
    assert ei.value.header == ["campaign", "clicks"]


def test_empty_report_is_empty() -> None:
    assert parse_report("") == []
    assert parse_report("\ufeff\n\n") == []
    assert parse_report("date,clicks\n") == []


def test_import_dashboard_csv_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "ads.sqlite3"
    AdsDB(db_path).init()
    repo = Repo(db_path)

    csv_path = tmp_path / "export.csv"
    csv_path.write_bytes(
        "일자,노출수,클릭수,총비용\n2024-06-01,100,10,5000\n2024-06-01,50,5,1000\n2024-06-02,10,1,100\n".encode("cp949")
    )
    opts = CsvUploadOptions(workspace_id="ws1", account_id="acc", channel="search")

    res1 = import_dashboard_csv(repo, path=csv_path, opts=opts)
    res2 = import_dashboard_csv(repo, path=csv_path, opts=opts)
    assert res1 == res2
    assert res1["ok"] is True
    assert res1["rows"] == 3
    assert res1["upsertedDays"] == 2
    assert (res1["since"], res1["until"]) == ("2024-06-01", "2024-06-02")

    stored = repo.list_metrics_daily("ws1", source="csv_upload")
    assert [(r["date"], r["impressions"], r["clicks"], r["cost"]) for r in stored] == [
        ("2024-06-01", 150, 15, 6000),
        ("2024-06-02", 10, 1, 100),
    ]
    assert stored[0]["extra"] == {"file": "export.csv"}


def test_import_dashboard_csv_empty_file(tmp_path: Path) -> None:
    db_path = tmp_path / "ads.sqlite3"
    AdsDB(db_path).init()
    csv_path = tmp_path / "empty.csv"
    csv_path.write_text("date,clicks\n", encoding="utf-8")

    res = import_dashboard_csv(Repo(db_path), path=csv_path, opts=CsvUploadOptions(workspace_id="ws1"))
    assert res == {"ok": False, "error": "empty csv", "rows": 0}


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("1,000원", 1000.0),
        ("KRW 1,000", 1000.0),
        ("₩25,000", 25000.0),
        ("12.5%", 12.5),
        ("-3", -3.0),
        (" 7 ", 7.0),
        (42, 42.0),
        ("-", 0.0),
        ("n/a", 0.0),
        (None, 0.0),
        (float("nan"), 0.0),
    ],
)
def test_to_num_strips_units_and_currency(raw, expected) -> None:
    assert to_num(raw) == expected


def test_won_suffixed_amounts_are_kept() -> None:
    text = "일자,클릭수,총비용,전환매출액\n2024-06-01,\"1,200회\",\"1,000원\",\"KRW 4,000\"\n"
    assert parse_report(text) == [ReportRow(date="2024-06-01", clicks=1200, cost=1000, revenue=4000)]
