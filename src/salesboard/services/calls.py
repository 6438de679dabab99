from __future__ import annotations

from datetime import date
from uuid import uuid4

from salesboard.domain import rules
from salesboard.domain.models import CallNote, DailyReport
from salesboard.domain.stages import LocationType
from salesboard.services.utils import dump_attachments, load_attachments, utc_now_iso
from salesboard.store.sqlite import SqliteSession, SqliteStore


class ActivityError(RuntimeError):
    pass


def get_or_create_daily_report(
    store: SqliteStore, submitter_id: str, report_date: date
) -> DailyReport:
    with store.session() as session:
        return _daily_report(session, submitter_id, report_date)


def get_daily_report(store: SqliteStore, submitter_id: str, report_date: date) -> DailyReport | None:
    row = store.fetch_one(
        "SELECT * FROM daily_reports WHERE submitter_id = ? AND report_date = ? "
        "ORDER BY created_at DESC LIMIT 1",
        (submitter_id, report_date.isoformat()),
    )
    return daily_report_from_row(row) if row else None


def update_daily_report(
    store: SqliteStore,
    submitter_id: str,
    report_date: date,
    mileage: float | None,
    comments: str | None,
) -> DailyReport:
    rules.validate_non_negative(mileage, "mileage")
    with store.session() as session:
        report = _daily_report(session, submitter_id, report_date)
        now = max(utc_now_iso(), report.updated_at.isoformat())
        session.execute(
            "UPDATE daily_reports SET mileage = COALESCE(?, mileage), comments = COALESCE(?, comments), "
            "updated_at = ? WHERE id = ?",
            (mileage, comments, now, report.id),
        )
        row = session.fetch_one("SELECT * FROM daily_reports WHERE id = ?", (report.id,))
    return daily_report_from_row(row)


def list_daily_reports(
    store: SqliteStore, submitter_id: str, start: date | None = None, end: date | None = None
) -> list[DailyReport]:
    query = "SELECT * FROM daily_reports WHERE submitter_id = ?"
    params: list[str] = [submitter_id]
    if start:
        query += " AND report_date >= ?"
        params.append(start.isoformat())
    if end:
        query += " AND report_date <= ?"
        params.append(end.isoformat())
    rows = store.fetch_all(query + " ORDER BY report_date DESC", params)
    return [daily_report_from_row(row) for row in rows]


def cleanup_duplicate_reports(store: SqliteStore, submitter_id: str, report_date: date) -> int:
    """Keep the newest report for the day; re-point its activity and drop the rest."""
    with store.session() as session:
        rows = session.fetch_all(
            "SELECT id FROM daily_reports WHERE submitter_id = ? AND report_date = ? "
            "ORDER BY created_at DESC, rowid DESC",
            (submitter_id, report_date.isoformat()),
        )
        if len(rows) <= 1:
            return 0
        keep_id = rows[0]["id"]
        drop_ids = [row["id"] for row in rows[1:]]
        for drop_id in drop_ids:
            session.execute(
                "UPDATE call_notes SET daily_report_id = ? WHERE daily_report_id = ?", (keep_id, drop_id)
            )
            session.execute(
                "UPDATE expenses SET daily_report_id = ? WHERE daily_report_id = ?", (keep_id, drop_id)
            )
            session.execute("DELETE FROM daily_reports WHERE id = ?", (drop_id,))
        return len(drop_ids)


def log_call(
    store: SqliteStore,
    submitter_id: str,
    client_name: str,
    call_date: date,
    notes: str,
    contact_name: str | None = None,
    location_type: str | None = None,
    attachments: list[str] | None = None,
) -> CallNote:
    rules.require(client_name, "client")
    rules.require(notes, "notes")
    if location_type:
        rules.validate_enum(location_type, [t.value for t in LocationType], "location")

    call_id = str(uuid4())
    now = utc_now_iso()
    with store.session() as session:
        report = _daily_report(session, submitter_id, call_date)
        session.execute(
            "INSERT INTO call_notes (id, submitter_id, daily_report_id, client_name, contact_name, "
            "location_type, call_date, notes, attachments, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                call_id,
                submitter_id,
                report.id,
                client_name.strip(),
                contact_name,
                location_type,
                call_date.isoformat(),
                notes,
                dump_attachments(attachments),
                now,
            ),
        )
        row = session.fetch_one("SELECT * FROM call_notes WHERE id = ?", (call_id,))
    return call_note_from_row(row)


def get_call_note(store: SqliteStore, call_id: str) -> CallNote:
    row = store.fetch_one("SELECT * FROM call_notes WHERE id = ?", (call_id,))
    if row is None:
        raise ActivityError(f"Call note not found: {call_id}")
    return call_note_from_row(row)


def list_call_notes(
    store: SqliteStore,
    submitter_id: str | None,
    start: date | None = None,
    end: date | None = None,
) -> list[CallNote]:
    clauses: list[str] = []
    params: list[str] = []
    if submitter_id:
        clauses.append("submitter_id = ?")
        params.append(submitter_id)
    if start:
        clauses.append("call_date >= ?")
        params.append(start.isoformat())
    if end:
        clauses.append("call_date <= ?")
        params.append(end.isoformat())
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = store.fetch_all(
        f"SELECT * FROM call_notes {where} ORDER BY call_date DESC, created_at DESC", params
    )
    return [call_note_from_row(row) for row in rows]


def daily_report_from_row(row) -> DailyReport:
    return DailyReport(
        id=row["id"],
        submitter_id=row["submitter_id"],
        report_date=rules.parse_date(row["report_date"], "report_date"),
        mileage=row["mileage"],
        comments=row["comments"],
        created_at=rules.parse_datetime(row["created_at"], "created_at"),
        updated_at=rules.parse_datetime(row["updated_at"], "updated_at"),
    )


def call_note_from_row(row) -> CallNote:
    return CallNote(
        id=row["id"],
        submitter_id=row["submitter_id"],
        daily_report_id=row["daily_report_id"],
        client_name=row["client_name"],
        call_date=rules.parse_date(row["call_date"], "call_date"),
        notes=row["notes"],
        created_at=rules.parse_datetime(row["created_at"], "created_at"),
        contact_name=row["contact_name"],
        location_type=row["location_type"],
        attachments=load_attachments(row["attachments"]),
    )


def _daily_report(session: SqliteSession, submitter_id: str, report_date: date) -> DailyReport:
    row = session.fetch_one(
        "SELECT * FROM daily_reports WHERE submitter_id = ? AND report_date = ? "
        "ORDER BY created_at DESC LIMIT 1",
        (submitter_id, report_date.isoformat()),
    )
    if row:
        return daily_report_from_row(row)
    report_id = str(uuid4())
    now = utc_now_iso()
    session.execute(
        "INSERT INTO daily_reports (id, submitter_id, report_date, mileage, comments, created_at, updated_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?)",
        (report_id, submitter_id, report_date.isoformat(), None, None, now, now),
    )
    row = session.fetch_one("SELECT * FROM daily_reports WHERE id = ?", (report_id,))
    return daily_report_from_row(row)
