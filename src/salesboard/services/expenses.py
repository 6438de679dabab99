from __future__ import annotations

from datetime import date
from uuid import uuid4

from salesboard.domain import rules
from salesboard.domain.models import Expense
from salesboard.domain.stages import ExpenseType
from salesboard.services.calls import ActivityError, get_or_create_daily_report
from salesboard.services.utils import utc_now_iso
from salesboard.store.sqlite import SqliteStore

UPDATABLE_FIELDS = [
    "amount",
    "expense_type",
    "expense_date",
    "description",
    "client_name",
    "location",
    "receipt_url",
    "discussion_notes",
    "associated_call",
]


def add_expense(
    store: SqliteStore,
    submitter_id: str,
    expense_date: date,
    expense_type: str,
    amount: float,
    description: str | None = None,
    client_name: str | None = None,
    location: str | None = None,
    receipt_url: str | None = None,
    discussion_notes: str | None = None,
    associated_call: str | None = None,
) -> Expense:
    rules.validate_enum(expense_type, [t.value for t in ExpenseType], "type")
    rules.validate_positive(amount, "amount")

    report = get_or_create_daily_report(store, submitter_id, expense_date)
    expense_id = str(uuid4())
    now = utc_now_iso()
    store.execute(
        "INSERT INTO expenses (id, submitter_id, daily_report_id, amount, expense_type, expense_date, "
        "description, client_name, location, receipt_url, discussion_notes, associated_call, "
        "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            expense_id,
            submitter_id,
            report.id,
            amount,
            expense_type,
            expense_date.isoformat(),
            description,
            client_name,
            location,
            receipt_url,
            discussion_notes,
            associated_call,
            now,
            now,
        ),
    )
    return get_expense(store, expense_id)


def update_expense(store: SqliteStore, expense_id: str, **fields) -> Expense:
    unknown = set(fields) - set(UPDATABLE_FIELDS)
    if unknown:
        raise rules.ValidationError(f"Unknown expense fields: {', '.join(sorted(unknown))}")
    if "amount" in fields:
        rules.validate_positive(fields["amount"], "amount")
    if "expense_type" in fields:
        rules.validate_enum(fields["expense_type"], [t.value for t in ExpenseType], "type")
    if isinstance(fields.get("expense_date"), date):
        fields["expense_date"] = fields["expense_date"].isoformat()

    current = get_expense(store, expense_id)
    if not fields:
        return current
    fields["updated_at"] = max(utc_now_iso(), current.updated_at.isoformat())
    assignments = ", ".join(f"{name} = ?" for name in fields)
    store.execute(
        f"UPDATE expenses SET {assignments} WHERE id = ?", [*fields.values(), expense_id]
    )
    return get_expense(store, expense_id)


def get_expense(store: SqliteStore, expense_id: str) -> Expense:
    row = store.fetch_one("SELECT * FROM expenses WHERE id = ?", (expense_id,))
    if row is None:
        raise ActivityError(f"Expense not found: {expense_id}")
    return expense_from_row(row)


def list_expenses(
    store: SqliteStore,
    submitter_id: str | None,
    start: date | None = None,
    end: date | None = None,
) -> list[Expense]:
    clauses: list[str] = []
    params: list[str] = []
    if submitter_id:
        clauses.append("submitter_id = ?")
        params.append(submitter_id)
    if start:
        clauses.append("expense_date >= ?")
        params.append(start.isoformat())
    if end:
        clauses.append("expense_date <= ?")
        params.append(end.isoformat())
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = store.fetch_all(
        f"SELECT * FROM expenses {where} ORDER BY expense_date DESC, created_at DESC", params
    )
    return [expense_from_row(row) for row in rows]


def expense_from_row(row) -> Expense:
    return Expense(
        id=row["id"],
        submitter_id=row["submitter_id"],
        daily_report_id=row["daily_report_id"],
        amount=float(row["amount"]),
        expense_type=row["expense_type"],
        expense_date=rules.parse_date(row["expense_date"], "expense_date"),
        created_at=rules.parse_datetime(row["created_at"], "created_at"),
        updated_at=rules.parse_datetime(row["updated_at"], "updated_at"),
        description=row["description"],
        client_name=row["client_name"],
        location=row["location"],
        receipt_url=row["receipt_url"],
        discussion_notes=row["discussion_notes"],
        associated_call=row["associated_call"],
    )
