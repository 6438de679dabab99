from __future__ import annotations

from uuid import uuid4

from salesboard.domain import rules
from salesboard.domain.models import User
from salesboard.domain.stages import UserRole
from salesboard.services.utils import utc_now_iso
from salesboard.store.sqlite import SqliteStore


class UserError(RuntimeError):
    pass


def add_user(store: SqliteStore, email: str, role: str, full_name: str | None = None) -> User:
    rules.require(email, "email")
    rules.validate_enum(role, [r.value for r in UserRole], "role")
    email = email.strip().lower()
    if get_user_by_email(store, email) is not None:
        raise UserError(f"User already exists: {email}")

    user_id = str(uuid4())
    now = utc_now_iso()
    store.execute(
        "INSERT INTO users (id, email, role, full_name, created_at) VALUES (?, ?, ?, ?, ?)",
        (user_id, email, role, full_name, now),
    )
    return User(
        id=user_id,
        email=email,
        role=role,
        full_name=full_name,
        created_at=rules.parse_datetime(now, "created_at"),
    )


def get_user(store: SqliteStore, user_id: str) -> User | None:
    row = store.fetch_one("SELECT * FROM users WHERE id = ?", (user_id,))
    return _user_from_row(row) if row else None


def get_user_by_email(store: SqliteStore, email: str) -> User | None:
    row = store.fetch_one("SELECT * FROM users WHERE email = ?", (email.strip().lower(),))
    return _user_from_row(row) if row else None


def list_users(store: SqliteStore, role: str | None = None) -> list[User]:
    if role:
        rules.validate_enum(role, [r.value for r in UserRole], "role")
        rows = store.fetch_all(
            "SELECT * FROM users WHERE role = ? ORDER BY full_name, email", (role,)
        )
    else:
        rows = store.fetch_all("SELECT * FROM users ORDER BY full_name, email")
    return [_user_from_row(row) for row in rows]


def _user_from_row(row) -> User:
    return User(
        id=row["id"],
        email=row["email"],
        role=row["role"],
        full_name=row["full_name"],
        created_at=rules.parse_datetime(row["created_at"], "created_at"),
    )
