"""Record Store: persistence for opportunity rows.

The pipeline only ever talks to a ``RecordStore``. Ownership rules live here,
not in the pipeline: admins may read and write every row, submitters only the
rows they own.
"""

from __future__ import annotations

import asyncio
import functools
import sqlite3
from collections.abc import Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Protocol
from uuid import uuid4

from salesboard.domain import rules
from salesboard.domain.models import Opportunity, User
from salesboard.services.utils import iso_or_none, utc_now_iso
from salesboard.store.sqlite import SqliteStore

OPPORTUNITY_FIELDS = [
    "name",
    "company_name",
    "contact_name",
    "description",
    "status",
    "value",
    "owner_id",
    "request_machine",
    "requested_attachments",
    "trade_in_description",
    "expected_close_date",
]

# PostgREST / Postgres error codes, shared by both store implementations.
NOT_FOUND = "PGRST116"
PERMISSION_DENIED = "42501"
CHECK_VIOLATION = "23514"
FOREIGN_KEY_VIOLATION = "23503"
UNIQUE_VIOLATION = "23505"
NETWORK_ERROR = "network"
STORE_UNAVAILABLE = "unavailable"
INVALID_RESPONSE = "invalid_response"


class StoreError(RuntimeError):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return f"{self.message} ({self.code})"


@dataclass(frozen=True)
class OpportunityFilter:
    owner_id: str | None = None
    status: str | None = None


class RecordStore(Protocol):
    async def list_opportunities(self, filter: OpportunityFilter) -> list[Opportunity]: ...

    async def insert_opportunity(self, fields: Mapping[str, Any], actor: User) -> Opportunity: ...

    async def update_opportunity(
        self, opportunity_id: str, fields: Mapping[str, Any], actor: User
    ) -> Opportunity: ...

    async def delete_opportunity(self, opportunity_id: str, actor: User) -> None: ...


def opportunity_from_row(row: Mapping[str, Any]) -> Opportunity:
    value = row.get("value")
    return Opportunity(
        id=str(row["id"]),
        name=row.get("name") or "",
        company_name=row.get("company_name") or "",
        status=row["status"],
        owner_id=str(row["owner_id"]),
        created_at=rules.parse_datetime(row["created_at"], "created_at"),
        updated_at=rules.parse_datetime(row["updated_at"], "updated_at"),
        contact_name=row.get("contact_name"),
        description=row.get("description"),
        value=float(value) if value is not None else None,
        request_machine=row.get("request_machine"),
        requested_attachments=row.get("requested_attachments"),
        trade_in_description=row.get("trade_in_description"),
        expected_close_date=rules.parse_date(row.get("expected_close_date"), "expected_close_date"),
    )


def parse_opportunity(row: Mapping[str, Any]) -> Opportunity:
    try:
        return opportunity_from_row(row)
    except (KeyError, TypeError, ValueError) as exc:
        raise StoreError(INVALID_RESPONSE, f"Unreadable opportunity row: {exc!r}") from exc


def opportunity_payload(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Keep known columns and turn dates into ISO strings."""
    payload: dict[str, Any] = {}
    for key in OPPORTUNITY_FIELDS:
        if key not in fields:
            continue
        value = fields[key]
        if key == "expected_close_date":
            value = iso_or_none(value) if not isinstance(value, str) else value
        payload[key] = value
    return payload


class SqliteRecordStore:
    """RecordStore backed by the workspace SQLite file.

    Blocking sqlite calls run in the loop's default executor so the event loop
    is never blocked.
    """

    def __init__(self, store: SqliteStore) -> None:
        self.store = store

    async def list_opportunities(self, filter: OpportunityFilter) -> list[Opportunity]:
        return await self._run(self._list, filter)

    async def insert_opportunity(self, fields: Mapping[str, Any], actor: User) -> Opportunity:
        return await self._run(self._insert, dict(fields), actor)

    async def update_opportunity(
        self, opportunity_id: str, fields: Mapping[str, Any], actor: User
    ) -> Opportunity:
        return await self._run(self._update, opportunity_id, dict(fields), actor)

    async def delete_opportunity(self, opportunity_id: str, actor: User) -> None:
        await self._run(self._delete, opportunity_id, actor)

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args))

    def _list(self, filter: OpportunityFilter) -> list[Opportunity]:
        where, params = _where(filter)
        with _translate_errors():
            rows = self.store.fetch_all(
                f"SELECT * FROM opportunities {where} ORDER BY updated_at DESC", params
            )
        return [parse_opportunity(dict(row)) for row in rows]

    def _insert(self, fields: dict[str, Any], actor: User) -> Opportunity:
        payload = opportunity_payload(fields)
        payload.setdefault("owner_id", actor.id)
        if not actor.is_admin and payload["owner_id"] != actor.id:
            raise StoreError(PERMISSION_DENIED, "Submitters can only create their own opportunities.")
        now = utc_now_iso()
        payload.update({"id": str(uuid4()), "created_at": now, "updated_at": now})
        columns = list(payload)
        placeholders = ", ".join("?" for _ in columns)
        with _translate_errors():
            with self.store.session() as session:
                session.execute(
                    f"INSERT INTO opportunities ({', '.join(columns)}) VALUES ({placeholders})",
                    [payload[c] for c in columns],
                )
                row = session.fetch_one("SELECT * FROM opportunities WHERE id = ?", (payload["id"],))
        return parse_opportunity(dict(row))

    def _update(self, opportunity_id: str, fields: dict[str, Any], actor: User) -> Opportunity:
        payload = opportunity_payload(fields)
        with _translate_errors():
            with self.store.session() as session:
                current = session.fetch_one(
                    "SELECT owner_id, updated_at FROM opportunities WHERE id = ?", (opportunity_id,)
                )
                if current is None:
                    raise StoreError(NOT_FOUND, f"Opportunity {opportunity_id} not found.")
                _check_owner(current["owner_id"], actor)
                if "owner_id" in payload and not actor.is_admin and payload["owner_id"] != actor.id:
                    raise StoreError(PERMISSION_DENIED, "Submitters cannot reassign opportunities.")
                # updated_at never moves backwards, even if the clock does.
                payload["updated_at"] = max(utc_now_iso(), current["updated_at"])
                assignments = ", ".join(f"{c} = ?" for c in payload)
                session.execute(
                    f"UPDATE opportunities SET {assignments} WHERE id = ?",
                    [*payload.values(), opportunity_id],
                )
                row = session.fetch_one("SELECT * FROM opportunities WHERE id = ?", (opportunity_id,))
        return parse_opportunity(dict(row))

    def _delete(self, opportunity_id: str, actor: User) -> None:
        with _translate_errors():
            with self.store.session() as session:
                current = session.fetch_one(
                    "SELECT owner_id FROM opportunities WHERE id = ?", (opportunity_id,)
                )
                if current is None:
                    raise StoreError(NOT_FOUND, f"Opportunity {opportunity_id} not found.")
                _check_owner(current["owner_id"], actor)
                session.execute("DELETE FROM opportunities WHERE id = ?", (opportunity_id,))


def _where(filter: OpportunityFilter) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if filter.owner_id:
        clauses.append("owner_id = ?")
        params.append(filter.owner_id)
    if filter.status:
        clauses.append("status = ?")
        params.append(filter.status)
    if not clauses:
        return "", params
    return "WHERE " + " AND ".join(clauses), params


def _check_owner(owner_id: str, actor: User) -> None:
    if actor.is_admin or owner_id == actor.id:
        return
    raise StoreError(PERMISSION_DENIED, "Permission denied for this opportunity.")


@contextmanager
def _translate_errors():
    try:
        yield
    except sqlite3.IntegrityError as exc:
        message = str(exc)
        if "CHECK constraint" in message:
            raise StoreError(CHECK_VIOLATION, message) from exc
        if "FOREIGN KEY constraint" in message:
            raise StoreError(FOREIGN_KEY_VIOLATION, message) from exc
        if "UNIQUE constraint" in message:
            raise StoreError(UNIQUE_VIOLATION, message) from exc
        raise StoreError("23000", message) from exc
    except sqlite3.Error as exc:
        # Locked or read-only files, missing tables and the like.
        raise StoreError(STORE_UNAVAILABLE, str(exc)) from exc
