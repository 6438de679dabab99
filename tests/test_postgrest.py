import json

import pytest
import requests

from salesboard.adapters.postgrest.client import PostgrestClient, PostgrestError
from salesboard.adapters.postgrest.store import RemoteRecordStore
from salesboard.domain.models import User
from salesboard.store.records import OpportunityFilter, StoreError

ROW = {
    "id": "o-1",
    "name": "Tractor",
    "company_name": "Acme Farms",
    "status": "quoted",
    "owner_id": "u-rep",
    "value": "2500.00",
    "expected_close_date": "2026-02-01",
    "created_at": "2026-01-01T10:00:00Z",
    "updated_at": "2026-01-02T10:00:00Z",
}
REP = User(id="u-rep", email="rep@example.com", role="submitter")


class FakeResponse:
    def __init__(self, status_code: int, payload=None) -> None:
        self.status_code = status_code
        self.text = json.dumps(payload) if payload is not None else ""
        self.content = self.text.encode("utf-8")
        self._payload = payload

    def json(self):
        return self._payload


class FakeSession:
    def __init__(self, responses) -> None:
        self.responses = list(responses)
        self.requests: list[dict] = []

    def request(self, method, url, **kwargs):
        self.requests.append({"method": method, "url": url, **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _client(*responses) -> PostgrestClient:
    client = PostgrestClient("https://db.example.com/", api_key="anon", access_token="jwt")
    client.session = FakeSession(responses)
    return client


def test_client_sets_auth_headers() -> None:
    client = PostgrestClient("https://db.example.com", api_key="anon", access_token="jwt")

    assert client.session.headers["apikey"] == "anon"
    assert client.session.headers["Authorization"] == "Bearer jwt"


def test_select_sends_eq_filters() -> None:
    client = _client(FakeResponse(200, [ROW]))

    rows = client.select("opportunities", {"owner_id": "u-rep"}, order="updated_at.desc")

    sent = client.session.requests[0]
    assert sent["method"] == "GET"
    assert sent["url"] == "https://db.example.com/rest/v1/opportunities"
    assert sent["params"] == {"select": "*", "owner_id": "eq.u-rep", "order": "updated_at.desc"}
    assert rows == [ROW]


def test_error_payload_is_mapped() -> None:
    client = _client(
        FakeResponse(403, {"code": "42501", "message": "permission denied for table opportunities"})
    )

    with pytest.raises(PostgrestError) as excinfo:
        client.update("opportunities", {"id": "o-1"}, {"status": "rpo"})
    assert excinfo.value.code == "42501"
    assert excinfo.value.status_code == 403


def test_update_matching_nothing_is_not_found() -> None:
    client = _client(FakeResponse(200, []))

    with pytest.raises(PostgrestError) as excinfo:
        client.update("opportunities", {"id": "o-9"}, {"status": "rpo"})
    assert excinfo.value.code == "PGRST116"


@pytest.mark.asyncio
async def test_remote_store_parses_rows() -> None:
    store = RemoteRecordStore(_client(FakeResponse(200, [ROW])))

    records = await store.list_opportunities(OpportunityFilter(owner_id="u-rep"))

    assert records[0].value == 2500.0
    assert records[0].expected_close_date.isoformat() == "2026-02-01"
    assert records[0].updated_at.tzinfo is not None


@pytest.mark.asyncio
async def test_remote_update_sends_payload() -> None:
    client = _client(FakeResponse(200, [{**ROW, "status": "rpo"}]))
    store = RemoteRecordStore(client)

    saved = await store.update_opportunity("o-1", {"status": "rpo"}, REP)

    sent = client.session.requests[0]
    assert sent["method"] == "PATCH"
    assert sent["params"] == {"id": "eq.o-1"}
    assert sent["json"]["status"] == "rpo"
    assert "updated_at" in sent["json"]
    assert saved.status == "rpo"


@pytest.mark.asyncio
async def test_network_failure_becomes_store_error() -> None:
    store = RemoteRecordStore(_client(requests.ConnectionError("connection reset")))

    with pytest.raises(StoreError) as excinfo:
        await store.insert_opportunity({"name": "Tractor", "company_name": "Acme"}, REP)
    assert excinfo.value.code == "network"


class NotJsonResponse(FakeResponse):
    def __init__(self) -> None:
        super().__init__(200)
        self.text = "<html>gateway</html>"
        self.content = self.text.encode("utf-8")

    def json(self):
        raise ValueError("Expecting value")


def test_non_json_success_body_is_an_error() -> None:
    client = _client(NotJsonResponse())

    with pytest.raises(PostgrestError) as excinfo:
        client.select("opportunities")
    assert excinfo.value.code == "invalid_response"


@pytest.mark.asyncio
async def test_malformed_row_becomes_store_error() -> None:
    broken = {k: v for k, v in ROW.items() if k != "status"}
    store = RemoteRecordStore(_client(FakeResponse(200, [broken])))

    with pytest.raises(StoreError) as excinfo:
        await store.list_opportunities(OpportunityFilter())
    assert excinfo.value.code == "invalid_response"


@pytest.mark.asyncio
async def test_bad_timestamp_becomes_store_error() -> None:
    client = _client(FakeResponse(200, [{**ROW, "updated_at": "yesterday"}]))
    store = RemoteRecordStore(client)

    with pytest.raises(StoreError):
        await store.update_opportunity("o-1", {"status": "rpo"}, REP)
