from __future__ import annotations

from typing import Protocol

from salesboard.domain.models import User
from salesboard.services import users
from salesboard.store.sqlite import SqliteStore


class SessionProvider(Protocol):
    def current_user(self) -> User | None: ...


class StaticSession:
    def __init__(self, user: User | None) -> None:
        self._user = user

    def current_user(self) -> User | None:
        return self._user

    def sign_out(self) -> None:
        self._user = None


class StoredSession(StaticSession):
    """Signed-in email resolved against the local users table.

    The lookup happens once, when the session is built, so ``current_user``
    never touches the database from inside the event loop.
    """

    def __init__(self, store: SqliteStore, email: str | None) -> None:
        self.store = store
        self.email = email
        super().__init__(users.get_user_by_email(store, email) if email else None)
