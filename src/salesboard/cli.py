from __future__ import annotations

import asyncio
import shutil
from datetime import date
from pathlib import Path
from typing import Annotated

import typer

from salesboard import __version__
from salesboard.config import (
    WorkspaceError,
    ensure_workspaces_dir,
    load_workspace,
    set_current_workspace,
    update_workspace_session,
    workspace_config_path,
    write_workspace_config,
)
from salesboard.domain import rules
from salesboard.domain.models import User
from salesboard.domain.rules import ValidationError
from salesboard.domain.stages import status_label
from salesboard.services import calls, expenses, exports, reports, users
from salesboard.services.backend import BackendError, pipeline_for
from salesboard.services.calls import ActivityError
from salesboard.services.notify import EchoNotifier
from salesboard.services.pipeline import OpportunityPipeline
from salesboard.services.session import StoredSession
from salesboard.services.users import UserError
from salesboard.services.utils import today_iso
from salesboard.store.records import StoreError
from salesboard.store.sqlite import SqliteStore

app = typer.Typer(help="Salesboard CLI")
workspace_app = typer.Typer(help="Workspace management")
schema_app = typer.Typer(help="Schema operations")
user_app = typer.Typer(help="User management")
opp_app = typer.Typer(help="Opportunity pipeline")
call_app = typer.Typer(help="Call notes")
expense_app = typer.Typer(help="Expenses")
daily_app = typer.Typer(help="Daily reports")
report_app = typer.Typer(help="Reports")
export_app = typer.Typer(help="Exports")

app.add_typer(workspace_app, name="workspace")
app.add_typer(schema_app, name="schema")
app.add_typer(user_app, name="user")
app.add_typer(opp_app, name="opp")
app.add_typer(call_app, name="call")
app.add_typer(expense_app, name="expense")
app.add_typer(daily_app, name="daily")
app.add_typer(report_app, name="report")
app.add_typer(export_app, name="export")

SCHEMA_PATH = Path("resources/schema/canonical.yaml")


@app.callback(invoke_without_command=True)
def version_callback(version: bool = typer.Option(False, "--version", help="Show version and exit.")):
    if version:
        typer.echo(__version__)
        raise typer.Exit()


@app.command("init")
def init() -> None:
    """Initialize directories for workspaces and outputs."""
    ensure_workspaces_dir()
    Path("data").mkdir(exist_ok=True)
    Path("exports").mkdir(exist_ok=True)
    typer.echo("Initialized salesboard directories.")


@workspace_app.command("add")
def workspace_add(
    name: str = typer.Argument(...),
    email: str | None = typer.Option(None, "--email", help="Signed-in user's email."),
    remote_url: str | None = typer.Option(
        None, "--remote-url", help="Hosted table API base URL; omit to use local SQLite."
    ),
    use: bool = typer.Option(True, "--use/--no-use", help="Set as current workspace."),
    force: bool = typer.Option(
        False, "--force", help="Overwrite existing workspace config if it exists."
    ),
) -> None:
    config_path = workspace_config_path(name)
    if config_path.exists() and not force:
        raise typer.BadParameter(
            f"Workspace already exists: {config_path}. Use --force to overwrite."
        )
    config_path = write_workspace_config(name, email, remote_url)
    if use:
        set_current_workspace(name)
    typer.echo(f"Workspace created: {config_path}")


@workspace_app.command("use")
def workspace_use(name: str = typer.Argument(...)) -> None:
    if not workspace_config_path(name).exists():
        raise typer.BadParameter(f"Workspace config not found: {workspace_config_path(name)}")
    set_current_workspace(name)
    typer.echo(f"Active workspace: {name}")


@workspace_app.command("login")
def workspace_login(email: str = typer.Argument(...)) -> None:
    """Act as another user in the current workspace."""
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    if users.get_user_by_email(store, email) is None:
        _exit_with_error(f"Unknown user: {email}")
    update_workspace_session(ws.path / "workspace.yaml", email.strip().lower())
    typer.echo(f"Signed in as {email}")


@schema_app.command("apply")
def schema_apply() -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    store.apply_schema(SCHEMA_PATH, {"opportunity_status": ws.statuses})
    typer.echo("Applied schema to local SQLite.")


@user_app.command("add")
def user_add(
    email: str = typer.Argument(...),
    role: str = typer.Option("submitter", "--role", help="admin or submitter"),
    name: str | None = typer.Option(None, "--name"),
) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    try:
        user = users.add_user(store, email=email, role=role, full_name=name)
    except (UserError, ValidationError) as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Created user: {user.id}")


@user_app.command("list")
def user_list(role: str | None = typer.Option(None, "--role")) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    try:
        rows = users.list_users(store, role)
    except ValidationError as exc:
        _exit_with_error(str(exc))
    for user in rows:
        typer.echo(f"{user.id} | {user.email} | {user.role} | {user.full_name or ''}")


@opp_app.command("add")
def opp_add(
    name: str = typer.Option(..., "--name"),
    company: str = typer.Option(..., "--company"),
    contact: str | None = typer.Option(None, "--contact"),
    status: str | None = typer.Option(None, "--status"),
    value: float | None = typer.Option(None, "--value"),
    machine: str | None = typer.Option(None, "--machine", help="Requested machine."),
    attachments: str | None = typer.Option(None, "--attachments", help="Requested attachments."),
    trade_in: str | None = typer.Option(None, "--trade-in"),
    close_date: str | None = typer.Option(None, "--close-date"),
    description: str | None = typer.Option(None, "--description"),
    owner: str | None = typer.Option(None, "--owner", help="Owner email (admins only)."),
) -> None:
    ws = _load_workspace()
    fields = {
        "name": name,
        "company_name": company,
        "contact_name": contact,
        "status": status,
        "value": value,
        "request_machine": machine,
        "requested_attachments": attachments,
        "trade_in_description": trade_in,
        "expected_close_date": close_date,
        "description": description,
    }
    if owner:
        fields["owner_id"] = _user_id_for(ws, owner)
    fields = {k: v for k, v in fields.items() if v is not None}

    pipeline = _pipeline(ws)

    async def run():
        return await pipeline.create(fields)

    outcome = asyncio.run(run())
    if not outcome.ok:
        raise typer.Exit(code=1)
    typer.echo(f"Created opportunity: {outcome.record.id}")


@opp_app.command("list")
def opp_list(
    status: str | None = typer.Option(None, "--status"),
    owner: str | None = typer.Option(None, "--owner", help="Owner email (admins only)."),
) -> None:
    ws = _load_workspace()
    if status:
        try:
            rules.validate_enum(status, ws.statuses, "status")
        except ValidationError as exc:
            _exit_with_error(str(exc))
    owner_id = _user_id_for(ws, owner) if owner else None
    groups = _load_board(ws, owner_id)
    for group_status, records in groups.items():
        if status and group_status != status:
            continue
        for record in records:
            value = f"{record.value:.2f}" if record.value is not None else ""
            typer.echo(
                f"{record.id} | {record.name} | {record.company_name} | {record.status} | {value} | {record.updated_at.isoformat()}"
            )


@opp_app.command("board")
def opp_board(
    owner: str | None = typer.Option(None, "--owner", help="Owner email (admins only)."),
) -> None:
    ws = _load_workspace()
    owner_id = _user_id_for(ws, owner) if owner else None
    groups = _load_board(ws, owner_id)
    for summary in reports.pipeline_summary(groups):
        typer.echo(
            f"== {status_label(summary.status)} ({summary.count}, {summary.total_value:.2f})"
        )
        for record in groups[summary.status]:
            typer.echo(f"  {record.id} | {record.name} | {record.company_name}")


@opp_app.command("move")
def opp_move(
    opportunity_id: str = typer.Argument(...),
    to_status: str = typer.Argument(...),
) -> None:
    ws = _load_workspace()
    pipeline = _pipeline(ws)

    async def run():
        await pipeline.load()
        located = pipeline.locate(opportunity_id)
        from_status = located[0] if located else to_status
        return await pipeline.move(opportunity_id, from_status, to_status)

    outcome = asyncio.run(run())
    if not outcome.ok:
        raise typer.Exit(code=1)


@opp_app.command("edit")
def opp_edit(
    opportunity_id: str = typer.Argument(...),
    name: str | None = typer.Option(None, "--name"),
    company: str | None = typer.Option(None, "--company"),
    contact: str | None = typer.Option(None, "--contact"),
    status: str | None = typer.Option(None, "--status"),
    value: float | None = typer.Option(None, "--value"),
    machine: str | None = typer.Option(None, "--machine"),
    attachments: str | None = typer.Option(None, "--attachments"),
    trade_in: str | None = typer.Option(None, "--trade-in"),
    close_date: str | None = typer.Option(None, "--close-date"),
    description: str | None = typer.Option(None, "--description"),
) -> None:
    ws = _load_workspace()
    fields = {
        "name": name,
        "company_name": company,
        "contact_name": contact,
        "status": status,
        "value": value,
        "request_machine": machine,
        "requested_attachments": attachments,
        "trade_in_description": trade_in,
        "expected_close_date": close_date,
        "description": description,
    }
    fields = {k: v for k, v in fields.items() if v is not None}

    pipeline = _pipeline(ws)

    async def run():
        await pipeline.load()
        return await pipeline.update(opportunity_id, fields)

    outcome = asyncio.run(run())
    if not outcome.ok:
        raise typer.Exit(code=1)


@opp_app.command("delete")
def opp_delete(opportunity_id: str = typer.Argument(...)) -> None:
    ws = _load_workspace()
    actor = _require_user(ws)
    pipeline = _pipeline(ws)

    async def run():
        await pipeline.store.delete_opportunity(opportunity_id, actor)

    try:
        asyncio.run(run())
    except StoreError as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Deleted opportunity: {opportunity_id}")


@call_app.command("log")
def call_log(
    client: str = typer.Option(..., "--client"),
    notes: str = typer.Option(..., "--notes"),
    day: str | None = typer.Option(None, "--date"),
    contact: str | None = typer.Option(None, "--contact"),
    location: str | None = typer.Option(None, "--location"),
    attachment: Annotated[
        list[str] | None,
        typer.Option("--attachment", help="Attachment URL; repeat for several."),
    ] = None,
) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    user = _require_user(ws)
    try:
        call_date = _parse_day(day)
        note = calls.log_call(
            store,
            submitter_id=user.id,
            client_name=client,
            call_date=call_date,
            notes=notes,
            contact_name=contact,
            location_type=location,
            attachments=attachment,
        )
    except (ActivityError, ValidationError) as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Logged call: {note.id}")


@call_app.command("list")
def call_list(
    start: str | None = typer.Option(None, "--start"),
    end: str | None = typer.Option(None, "--end"),
) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    user = _require_user(ws)
    try:
        start_date = rules.parse_date(start, "start")
        end_date = rules.parse_date(end, "end")
    except ValidationError as exc:
        _exit_with_error(str(exc))
    submitter_id = None if user.is_admin else user.id
    for note in calls.list_call_notes(store, submitter_id, start_date, end_date):
        typer.echo(
            f"{note.id} | {note.call_date.isoformat()} | {note.client_name} | {note.contact_name or ''} | {note.notes}"
        )


@expense_app.command("add")
def expense_add(
    expense_type: str = typer.Option(..., "--type"),
    amount: float = typer.Option(..., "--amount"),
    day: str | None = typer.Option(None, "--date"),
    call: str | None = typer.Option(None, "--call", help="Associated call (client name)."),
    description: str | None = typer.Option(None, "--description"),
    client: str | None = typer.Option(None, "--client"),
    location: str | None = typer.Option(None, "--location"),
    receipt: str | None = typer.Option(None, "--receipt", help="Receipt URL."),
    discussion: str | None = typer.Option(None, "--discussion"),
) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    user = _require_user(ws)
    try:
        expense = expenses.add_expense(
            store,
            submitter_id=user.id,
            expense_date=_parse_day(day),
            expense_type=expense_type,
            amount=amount,
            description=description,
            client_name=client,
            location=location,
            receipt_url=receipt,
            discussion_notes=discussion,
            associated_call=call,
        )
    except (ActivityError, ValidationError) as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Added expense: {expense.id}")


@expense_app.command("list")
def expense_list(
    start: str | None = typer.Option(None, "--start"),
    end: str | None = typer.Option(None, "--end"),
) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    user = _require_user(ws)
    try:
        start_date = rules.parse_date(start, "start")
        end_date = rules.parse_date(end, "end")
    except ValidationError as exc:
        _exit_with_error(str(exc))
    submitter_id = None if user.is_admin else user.id
    for expense in expenses.list_expenses(store, submitter_id, start_date, end_date):
        typer.echo(
            f"{expense.id} | {expense.expense_date.isoformat()} | {expense.expense_type} | {expense.amount:.2f} | {expense.associated_call or ''}"
        )


@daily_app.command("mileage")
def daily_mileage(
    miles: float = typer.Argument(...),
    day: str | None = typer.Option(None, "--date"),
    comments: str | None = typer.Option(None, "--comments"),
) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    user = _require_user(ws)
    try:
        report = calls.update_daily_report(store, user.id, _parse_day(day), miles, comments)
    except ValidationError as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Daily report {report.report_date.isoformat()}: {report.mileage} miles")


@report_app.command("daily")
def report_daily(
    day: str | None = typer.Option(None, "--date"),
    user_email: str | None = typer.Option(None, "--user", help="Submitter email (admins only)."),
) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    submitter = _report_subject(ws, store, user_email)
    try:
        summary = reports.daily_summary(store, submitter.id, _parse_day(day))
    except ValidationError as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Daily report {summary.day.isoformat()} for {submitter.display_name}")
    typer.echo(f"mileage={summary.mileage} calls={len(summary.calls)} expenses={summary.expense_total:.2f}")
    for note in summary.calls:
        typer.echo(f"call | {note.client_name} | {note.notes}")
    for expense in summary.expenses:
        typer.echo(f"expense | {expense.expense_type} | {expense.amount:.2f}")


@report_app.command("weekly")
def report_weekly(
    day: str | None = typer.Option(None, "--date", help="Any day inside the week."),
    weekends: bool = typer.Option(True, "--weekends/--no-weekends"),
    user_email: str | None = typer.Option(None, "--user", help="Submitter email (admins only)."),
) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    submitter = _report_subject(ws, store, user_email)
    try:
        summary = reports.weekly_summary(store, submitter.id, _parse_day(day), weekends)
    except ValidationError as exc:
        _exit_with_error(str(exc))
    typer.echo(
        f"Week {summary.week.start.isoformat()}..{summary.week.end.isoformat()} for {submitter.display_name}"
    )
    typer.echo(
        f"calls={len(summary.calls)} mileage={summary.total_mileage} expenses={summary.total_expenses:.2f}"
    )
    for week_day in summary.week.days:
        typer.echo(f"{week_day.isoformat()} calls={len(summary.calls_on(week_day))}")
    for call_name, total in summary.expenses_by_call.items():
        typer.echo(f"by_call | {call_name} | {total:.2f}")
    top = reports.most_expensive_call(summary.expenses, summary.calls)
    if top:
        typer.echo(f"most_expensive_call | {top[0].client_name} | {top[1]:.2f}")


@report_app.command("pipeline")
def report_pipeline(
    owner: str | None = typer.Option(None, "--owner", help="Owner email (admins only)."),
) -> None:
    ws = _load_workspace()
    owner_id = _user_id_for(ws, owner) if owner else None
    groups = _load_board(ws, owner_id)
    for summary in reports.pipeline_summary(groups):
        typer.echo(f"{summary.status} | {summary.count} | {summary.total_value:.2f}")


@export_app.command("excel")
def export_excel(out: str = typer.Option(..., "--out")) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    exports.export_excel(store, Path(out))
    typer.echo(f"Exported Excel to {out}")


@export_app.command("weekly")
def export_weekly(
    out: str = typer.Option(..., "--out"),
    day: str | None = typer.Option(None, "--date"),
    user_email: str | None = typer.Option(None, "--user", help="Submitter email (admins only)."),
) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    submitter = _report_subject(ws, store, user_email)
    try:
        summary = reports.weekly_summary(store, submitter.id, _parse_day(day))
    except ValidationError as exc:
        _exit_with_error(str(exc))
    exports.export_weekly_report(summary, Path(out))
    typer.echo(f"Exported weekly report to {out}")


@app.command("snapshot")
def snapshot() -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    snapshot_dir = Path("data") / "snapshots" / today_iso()
    snapshot_dir.mkdir(parents=True, exist_ok=True)
    if ws.store.sqlite_path.exists():
        shutil.copy2(ws.store.sqlite_path, snapshot_dir / "local.sqlite")
    exports.export_csv_tables(store, snapshot_dir)
    typer.echo(f"Snapshot created at {snapshot_dir}")


def _load_workspace():
    try:
        return load_workspace()
    except WorkspaceError as exc:
        typer.echo(str(exc))
        raise typer.Exit(code=1) from exc


def _pipeline(ws) -> OpportunityPipeline:
    try:
        return pipeline_for(ws, EchoNotifier())
    except BackendError as exc:
        _exit_with_error(str(exc))


def _load_board(ws, owner_id: str | None):
    notifier = EchoNotifier()
    try:
        pipeline = pipeline_for(ws, notifier)
    except BackendError as exc:
        _exit_with_error(str(exc))

    async def run():
        return await pipeline.load(owner_id=owner_id)

    groups = asyncio.run(run())
    if notifier.error_count:
        raise typer.Exit(code=1)
    return groups


def _require_user(ws) -> User:
    store = SqliteStore(ws.store.sqlite_path)
    user = StoredSession(store, ws.session_email).current_user()
    if user is None:
        _exit_with_error("Not signed in. Run `salesboard workspace login <email>`.")
    return user


def _user_id_for(ws, email: str) -> str:
    store = SqliteStore(ws.store.sqlite_path)
    user = users.get_user_by_email(store, email)
    if user is None:
        _exit_with_error(f"Unknown user: {email}")
    return user.id


def _report_subject(ws, store: SqliteStore, user_email: str | None) -> User:
    user = _require_user(ws)
    if not user_email:
        return user
    if not user.is_admin:
        _exit_with_error("Only admins can view other users' reports.")
    subject = users.get_user_by_email(store, user_email)
    if subject is None:
        _exit_with_error(f"Unknown user: {user_email}")
    return subject


def _parse_day(value: str | None) -> date:
    return rules.parse_date(value, "date") or date.today()


def _exit_with_error(message: str) -> None:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
