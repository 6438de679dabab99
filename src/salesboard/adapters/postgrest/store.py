from __future__ import annotations

import asyncio
import functools
from collections.abc import Mapping
from typing import Any

from salesboard.adapters.postgrest.client import PostgrestClient, PostgrestError
from salesboard.domain.models import Opportunity, User
from salesboard.services.utils import utc_now_iso
from salesboard.store.records import (
    NETWORK_ERROR,
    NOT_FOUND,
    OpportunityFilter,
    StoreError,
    opportunity_payload,
    parse_opportunity,
)


class RemoteRecordStore:
    """RecordStore over a hosted table API.

    Access policy is enforced server side (row-level security keyed on the
    client's access token), so this class only shapes requests and errors.
    """

    def __init__(self, client: PostgrestClient, table: str = "opportunities") -> None:
        self.client = client
        self.table = table

    async def list_opportunities(self, filter: OpportunityFilter) -> list[Opportunity]:
        filters: dict[str, Any] = {}
        if filter.owner_id:
            filters["owner_id"] = filter.owner_id
        if filter.status:
            filters["status"] = filter.status
        rows = await self._call(self.client.select, self.table, filters, "updated_at.desc")
        return [parse_opportunity(row) for row in rows]

    async def insert_opportunity(self, fields: Mapping[str, Any], actor: User) -> Opportunity:
        payload = opportunity_payload(fields)
        payload.setdefault("owner_id", actor.id)
        row = await self._call(self.client.insert, self.table, payload)
        return parse_opportunity(row)

    async def update_opportunity(
        self, opportunity_id: str, fields: Mapping[str, Any], actor: User
    ) -> Opportunity:
        payload = opportunity_payload(fields)
        payload["updated_at"] = utc_now_iso()
        row = await self._call(self.client.update, self.table, {"id": opportunity_id}, payload)
        return parse_opportunity(row)

    async def delete_opportunity(self, opportunity_id: str, actor: User) -> None:
        deleted = await self._call(self.client.delete, self.table, {"id": opportunity_id})
        if not deleted:
            raise StoreError(NOT_FOUND, f"Opportunity {opportunity_id} not found.")

    async def _call(self, fn, *args):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(fn, *args))
        except PostgrestError as exc:
            code = exc.code or (str(exc.status_code) if exc.status_code else NETWORK_ERROR)
            raise StoreError(code, str(exc)) from exc
