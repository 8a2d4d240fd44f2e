from __future__ import annotations

import asyncio
import json
from pathlib import Path

import typer

from adreport.config import Settings
from adreport.db import AdsDB
from adreport.errors import AdReportError
from adreport.importers.csv_upload import CsvUploadOptions, import_dashboard_csv
from adreport.importers.dashboard_rows import load_report_rows
from adreport.log import setup_logging
from adreport.report.aggregate import GoalState, build_report, filter_rows, group_by_keyword
from adreport.report.dates import parse_month_key
from adreport.report.insights import build_keyword_insight
from adreport.repo import Repo
from adreport.sync import SOURCE, MODES, SyncRequest, resolve_date_range, trigger_sync
from adreport.util import decode_text_best_effort
from adreport.web.app import run_web
from adreport.worker import run_cron

app = typer.Typer(no_args_is_help=True)
connection_app = typer.Typer(no_args_is_help=True)
import_app = typer.Typer(no_args_is_help=True)
app.add_typer(connection_app, name="connection")
app.add_typer(import_app, name="import")


def _bootstrap() -> tuple[Settings, Repo]:
    settings = Settings.load()
    setup_logging(settings)
    AdsDB(settings.db_path).init()
    return settings, Repo(settings.db_path)


@app.command("db")
def db_cmd(
    action: str = typer.Argument(..., help="init"),
) -> None:
    settings = Settings.load()
    if action == "init":
        AdsDB(settings.db_path).init()
        typer.echo(f"OK db init: {settings.db_path}")
        return
    raise typer.BadParameter("action must be: init")


@app.command("web")
def web_cmd() -> None:
    settings = Settings.load()
    run_web(settings)


@connection_app.command("add")
def connection_add_cmd(
    workspace: str = typer.Option(..., help="Workspace id"),
    api_key: str = typer.Option(..., help="SearchAd API key (X-API-KEY)"),
    secret_key: str = typer.Option(..., help="SearchAd secret key"),
    customer_id: str = typer.Option(..., help="SearchAd customer id (X-Customer)"),
) -> None:
    _settings, repo = _bootstrap()
    connection_id = repo.create_connection(
        workspace_id=workspace,
        source=SOURCE,
        api_key=api_key,
        secret_key=secret_key,
        external_account_id=customer_id,
    )
    typer.echo(f"OK connection {connection_id} ({workspace}, customer {customer_id})")


@connection_app.command("list")
def connection_list_cmd() -> None:
    _settings, repo = _bootstrap()
    for c in repo.list_connections(source=SOURCE):
        err = f" error={c['last_error']}" if c.get("last_error") else ""
        typer.echo(
            f"{c['id']}  {c['workspace_id']}  {c['status']}  "
            f"last={c.get('last_synced_since') or '-'}~{c.get('last_synced_until') or '-'}{err}"
        )


@app.command("sync")
def sync_cmd(
    workspace: str = typer.Option(..., help="Workspace id"),
    since: str | None = typer.Option(None, help="YYYY-MM-DD. Defaults to yesterday (KST)."),
    until: str | None = typer.Option(None, help="YYYY-MM-DD. Defaults to yesterday (KST)."),
    range_name: str | None = typer.Option(None, "--range", help="yesterday_today"),
    mode: str = typer.Option("stat_sync", help="|".join(MODES)),
    max_attempts: int | None = typer.Option(None, help="Status polls before giving up (1..600)."),
    interval_ms: int | None = typer.Option(None, help="Delay between polls in ms (0..60000)."),
) -> None:
    settings, repo = _bootstrap()
    try:
        since, until = resolve_date_range(since, until, timezone=settings.timezone, range_name=range_name)
    except AdReportError as e:
        typer.echo(f"ERROR: {e}")
        raise typer.Exit(code=2) from e

    req = SyncRequest(
        workspace_id=workspace,
        since=since,
        until=until,
        mode=mode,
        max_attempts=max_attempts,
        interval_ms=interval_ms,
    )
    result = asyncio.run(trigger_sync(repo, req, settings=settings))
    typer.echo(json_dumps(result.to_dict()))
    if not result.ok:
        raise typer.Exit(code=2)


@app.command("cron")
def cron_cmd() -> None:
    settings, _repo = _bootstrap()
    typer.echo(json_dumps(run_cron(settings)))


@app.command("report")
def report_cmd(
    workspace: str | None = typer.Option(None, help="Workspace id (stored metrics)"),
    csv_file: Path | None = typer.Option(
        None, "--csv", exists=True, dir_okay=False, help="Dashboard CSV export to report on instead of the db"
    ),
    since: str | None = typer.Option(None, help="YYYY-MM-DD"),
    until: str | None = typer.Option(None, help="YYYY-MM-DD"),
    month: str = typer.Option("all", help="YYYY-MM or all"),
    week: str = typer.Option("all", help="Week Monday (YYYY-MM-DD) or all"),
    device: str = typer.Option("all"),
    channel: str = typer.Option("all"),
    channel_kind: list[str] | None = typer.Option(None, help="search|display (--csv only, repeatable)"),
    goal_file: Path | None = typer.Option(None, exists=True, dir_okay=False, help="JSON month goal"),
) -> None:
    if (workspace is None) == (csv_file is None):
        typer.echo("ERROR: pass exactly one of --workspace or --csv")
        raise typer.Exit(code=2)
    if month != "all" and parse_month_key(month) is None:
        typer.echo(f"ERROR: month must be YYYY-MM or all (got {month!r})")
        raise typer.Exit(code=2)

    goal = GoalState()
    if goal_file is not None:
        goal = GoalState.from_mapping(json.loads(goal_file.read_text(encoding="utf-8")))

    if csv_file is not None:
        setup_logging(Settings.load())
        try:
            rows = load_report_rows(
                decode_text_best_effort(csv_file.read_bytes()),
                since=since,
                until=until,
                channels=channel_kind,
            )
        except AdReportError as e:
            typer.echo(f"ERROR: {type(e).__name__}: {e}")
            raise typer.Exit(code=2) from e
    else:
        _settings, repo = _bootstrap()
        rows = repo.list_report_rows(workspace, since=since, until=until)

    out = build_report(rows, month=month, week=week, device=device, channel=channel, goal=goal)
    filtered = filter_rows(rows, month=month, week=week, device=device, channel=channel)
    out["keywordInsight"] = build_keyword_insight(group_by_keyword(filtered, limit=None), filtered)
    typer.echo(json_dumps(out))


@import_app.command("csv")
def import_csv_cmd(
    file: Path = typer.Option(..., exists=True, dir_okay=False, help="Dashboard CSV export path"),
    workspace: str = typer.Option(..., help="Workspace id"),
    account_id: str = typer.Option("upload", help="Entity id the rows are stored under"),
    channel: str = typer.Option("", help="Channel label, e.g. search|display"),
) -> None:
    _settings, repo = _bootstrap()
    try:
        res = import_dashboard_csv(
            repo,
            path=file,
            opts=CsvUploadOptions(workspace_id=workspace, account_id=account_id, channel=channel),
        )
    except AdReportError as e:
        typer.echo(f"ERROR: {type(e).__name__}: {e}")
        raise typer.Exit(code=2) from e
    if not res.get("ok"):
        typer.echo(f"ERROR: {res.get('error')}")
        raise typer.Exit(code=2)
    typer.echo(json_dumps(res))


def json_dumps(obj) -> str:
    return json.dumps(obj, ensure_ascii=False, indent=2)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
