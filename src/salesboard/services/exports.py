from __future__ import annotations

import csv
from collections.abc import Iterable
from pathlib import Path

from openpyxl import Workbook

from salesboard.services.reports import WeeklySummary
from salesboard.store.sqlite import SqliteStore

TABLES = [
    "users",
    "opportunities",
    "daily_reports",
    "call_notes",
    "expenses",
]


def export_excel(store: SqliteStore, out_path: Path) -> None:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    wb = Workbook()
    wb.remove(wb.active)

    for table in TABLES:
        rows = store.fetch_all(f"SELECT * FROM {table}")
        ws = wb.create_sheet(title=table)
        _write_sheet(ws, rows)

    wb.save(out_path)


def export_csv_tables(store: SqliteStore, out_dir: Path) -> None:
    out_dir.mkdir(parents=True, exist_ok=True)
    for table in TABLES:
        rows = store.fetch_all(f"SELECT * FROM {table}")
        headers = list(rows[0].keys()) if rows else []
        csv_path = out_dir / f"{table}.csv"
        with csv_path.open("w", newline="", encoding="utf-8") as handle:
            writer = csv.writer(handle)
            writer.writerow(headers)
            for row in rows:
                writer.writerow([row[h] for h in headers])


def export_weekly_report(summary: WeeklySummary, out_path: Path) -> None:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    wb = Workbook()
    overview = wb.active
    overview.title = "summary"
    overview.append(["week_start", summary.week.start.isoformat()])
    overview.append(["week_end", summary.week.end.isoformat()])
    overview.append(["calls", len(summary.calls)])
    overview.append(["total_mileage", summary.total_mileage])
    overview.append(["total_expenses", summary.total_expenses])

    calls_ws = wb.create_sheet(title="calls")
    calls_ws.append(["call_date", "client_name", "contact_name", "location_type", "notes"])
    for call in summary.calls:
        calls_ws.append(
            [call.call_date.isoformat(), call.client_name, call.contact_name, call.location_type, call.notes]
        )

    expenses_ws = wb.create_sheet(title="expenses")
    expenses_ws.append(["expense_date", "expense_type", "amount", "associated_call", "description"])
    for expense in summary.expenses:
        expenses_ws.append(
            [
                expense.expense_date.isoformat(),
                expense.expense_type,
                expense.amount,
                expense.associated_call,
                expense.description,
            ]
        )

    by_call = wb.create_sheet(title="expenses_by_call")
    by_call.append(["call", "total"])
    for call_name, total in summary.expenses_by_call.items():
        by_call.append([call_name, total])

    wb.save(out_path)


def _write_sheet(ws, rows: Iterable) -> None:
    rows = list(rows)
    if not rows:
        return
    headers = list(rows[0].keys())
    ws.append(headers)
    for row in rows:
        ws.append([row[h] for h in headers])
