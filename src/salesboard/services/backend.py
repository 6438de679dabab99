from __future__ import annotations

import os

from salesboard.adapters.postgrest.client import PostgrestClient
from salesboard.adapters.postgrest.store import RemoteRecordStore
from salesboard.config import ACCESS_TOKEN_ENV, API_KEY_ENV, WorkspaceConfig
from salesboard.services.events import EventLogger
from salesboard.services.notify import Notifier
from salesboard.services.pipeline import OpportunityPipeline
from salesboard.services.session import StoredSession
from salesboard.store.records import RecordStore, SqliteRecordStore
from salesboard.store.sqlite import SqliteStore


class BackendError(RuntimeError):
    pass


def _require_api_key() -> str:
    api_key = os.getenv(API_KEY_ENV)
    if not api_key:
        raise BackendError(f"{API_KEY_ENV} is not set.")
    return api_key


def record_store_for(ws: WorkspaceConfig, store: SqliteStore) -> RecordStore:
    if ws.remote is None:
        return SqliteRecordStore(store)
    client = PostgrestClient(
        base_url=ws.remote.url,
        api_key=_require_api_key(),
        access_token=os.getenv(ACCESS_TOKEN_ENV),
    )
    return RemoteRecordStore(client, table=ws.remote.table)


def pipeline_for(
    ws: WorkspaceConfig, notifier: Notifier, events: bool = True
) -> OpportunityPipeline:
    store = SqliteStore(ws.store.sqlite_path)
    return OpportunityPipeline(
        store=record_store_for(ws, store),
        session=StoredSession(store, ws.session_email),
        notifier=notifier,
        statuses=ws.statuses,
        events=EventLogger(path=ws.events_path, workspace=ws.name, enabled=events),
    )
