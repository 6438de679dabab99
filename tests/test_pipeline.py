import asyncio
import logging
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from salesboard.domain.models import Opportunity, User
from salesboard.domain.rules import ValidationError
from salesboard.services.events import EventLogger
from salesboard.services.notify import CollectingNotifier
from salesboard.services.pipeline import Liveness, NotFoundError, OpportunityPipeline, PersistError
from salesboard.services.session import StaticSession
from salesboard.store.records import StoreError

NOW = datetime(2026, 1, 5, 12, 0, tzinfo=UTC)
ADMIN = User(id="u-admin", email="boss@example.com", role="admin")
REP = User(id="u-rep", email="rep@example.com", role="submitter")


def _opp(opp_id: str, status: str, minutes: int = 0, owner_id: str = "u-rep") -> Opportunity:
    stamp = NOW - timedelta(minutes=minutes)
    return Opportunity(
        id=opp_id,
        name=f"Deal {opp_id}",
        company_name="Acme Farms",
        status=status,
        owner_id=owner_id,
        created_at=stamp,
        updated_at=stamp,
    )


class FakeRecordStore:
    """Scripted store: each write pops one ``(delay, error)`` entry."""

    def __init__(self, records=(), script=None) -> None:
        self.rows = {r.id: r for r in records}
        self.script = list(script or [])
        self.calls: list[tuple[str, str | None, dict]] = []
        self.filters = []
        self.list_error: StoreError | None = None

    async def list_opportunities(self, filter):
        self.filters.append(filter)
        if self.list_error:
            raise self.list_error
        return [r for r in self.rows.values() if not filter.owner_id or r.owner_id == filter.owner_id]

    async def insert_opportunity(self, fields, actor):
        self.calls.append(("insert", None, dict(fields)))
        await self._next()
        record = Opportunity(
            id=f"created-{len(self.rows) + 1}", created_at=NOW, updated_at=NOW, **fields
        )
        self.rows[record.id] = record
        return record

    async def update_opportunity(self, opportunity_id, fields, actor):
        self.calls.append(("update", opportunity_id, dict(fields)))
        await self._next()
        current = self.rows[opportunity_id]
        saved = replace(current, **fields, updated_at=current.updated_at + timedelta(seconds=1))
        self.rows[opportunity_id] = saved
        return saved

    async def delete_opportunity(self, opportunity_id, actor):
        self.calls.append(("delete", opportunity_id, {}))
        self.rows.pop(opportunity_id)

    @property
    def writes(self) -> list[dict]:
        return [fields for kind, _, fields in self.calls if kind != "delete"]

    async def _next(self) -> None:
        delay, error = self.script.pop(0) if self.script else (0, None)
        await asyncio.sleep(delay)
        if error is not None:
            raise error


def _pipeline(store, user=ADMIN, statuses=None, events=None):
    notifier = CollectingNotifier()
    pipeline = OpportunityPipeline(
        store=store,
        session=StaticSession(user),
        notifier=notifier,
        statuses=statuses,
        events=events,
    )
    return pipeline, notifier


def _ids(pipeline: OpportunityPipeline, status: str) -> list[str]:
    return [r.id for r in pipeline.groups()[status]]


def _rejected(code: str = "42501") -> StoreError:
    return StoreError(code, "permission denied for table opportunities")


@pytest.mark.asyncio
async def test_load_groups_by_status_newest_first() -> None:
    store = FakeRecordStore([_opp("o1", "new", 10), _opp("o2", "new", 1), _opp("o3", "quoted")])
    pipeline, _ = _pipeline(store)

    groups = await pipeline.load()

    assert list(groups) == pipeline.statuses
    assert _ids(pipeline, "new") == ["o2", "o1"]
    assert _ids(pipeline, "quoted") == ["o3"]


@pytest.mark.asyncio
async def test_load_skips_unknown_status(caplog) -> None:
    store = FakeRecordStore([_opp("o1", "new"), _opp("o2", "archived")])
    pipeline, _ = _pipeline(store)

    with caplog.at_level(logging.WARNING):
        groups = await pipeline.load()

    assert sum(len(v) for v in groups.values()) == 1
    assert "archived" in caplog.text


@pytest.mark.asyncio
async def test_submitter_load_is_scoped_to_owner() -> None:
    store = FakeRecordStore([_opp("o1", "new"), _opp("o2", "new", owner_id="u-other")])
    pipeline, _ = _pipeline(store, user=REP)

    await pipeline.load(owner_id="u-other")

    assert store.filters[-1].owner_id == "u-rep"
    assert _ids(pipeline, "new") == ["o1"]


@pytest.mark.asyncio
async def test_move_applies_locally_before_store_settles() -> None:
    store = FakeRecordStore([_opp("o1", "new")], script=[(0.05, None)])
    pipeline, _ = _pipeline(store)
    await pipeline.load()

    task = pipeline.move("o1", "new", "quoted")

    assert _ids(pipeline, "quoted") == ["o1"]
    assert _ids(pipeline, "new") == []
    assert not task.done()
    outcome = await task
    assert outcome.ok


@pytest.mark.asyncio
async def test_move_rejected_restores_previous_state() -> None:
    store = FakeRecordStore(
        [_opp("o1", "new", 3), _opp("o2", "new", 2), _opp("o3", "new", 1)],
        script=[(0, _rejected())],
    )
    pipeline, notifier = _pipeline(store)
    await pipeline.load()
    before = pipeline.groups()

    outcome = await pipeline.move("o2", "new", "accepted")

    assert not outcome.ok
    assert isinstance(outcome.error, PersistError)
    assert pipeline.groups() == before
    assert len(notifier.errors) == 1
    assert notifier.successes == []


@pytest.mark.asyncio
async def test_move_confirmed_keeps_single_entry() -> None:
    store = FakeRecordStore([_opp("o1", "new")])
    pipeline, notifier = _pipeline(store)
    await pipeline.load()

    outcome = await pipeline.move("o1", "new", "quoted")

    assert outcome.ok
    assert _ids(pipeline, "quoted") == ["o1"]
    assert _ids(pipeline, "new") == []
    assert sum(len(v) for v in pipeline.groups().values()) == 1
    assert store.writes == [{"status": "quoted"}]
    assert len(notifier.successes) == 1
    assert pipeline.get("o1").updated_at == NOW + timedelta(seconds=1)
    assert pipeline.pending_count() == 0


@pytest.mark.asyncio
async def test_move_same_status_skips_store() -> None:
    store = FakeRecordStore([_opp("o1", "new")])
    pipeline, notifier = _pipeline(store)
    await pipeline.load()

    outcome = await pipeline.move("o1", "new", "new")

    assert outcome.ok
    assert store.calls == []
    assert [n.message for n in notifier.successes] == ["Deal o1 is already in New."]
    assert notifier.errors == []


@pytest.mark.asyncio
async def test_move_to_unknown_status_never_reaches_store() -> None:
    store = FakeRecordStore([_opp("o1", "new")])
    pipeline, notifier = _pipeline(store)
    await pipeline.load()

    future = pipeline.move("o1", "new", "closed_won")

    assert future.done()
    assert isinstance(future.result().error, ValidationError)
    assert _ids(pipeline, "new") == ["o1"]
    assert store.calls == []
    assert len(notifier.errors) == 1


@pytest.mark.asyncio
async def test_move_from_wrong_group_is_not_found(caplog) -> None:
    store = FakeRecordStore([_opp("o1", "new")])
    pipeline, notifier = _pipeline(store)
    await pipeline.load()

    with caplog.at_level(logging.ERROR):
        outcome = await pipeline.move("o1", "quoted", "accepted")

    assert isinstance(outcome.error, NotFoundError)
    assert store.calls == []
    assert "Reload" in notifier.errors[0].message
    assert "out of sync" in caplog.text


@pytest.mark.asyncio
async def test_two_rapid_moves_both_persist() -> None:
    store = FakeRecordStore([_opp("o1", "new")], script=[(0.02, None), (0.01, None)])
    pipeline, _ = _pipeline(store)
    await pipeline.load()

    first = pipeline.move("o1", "new", "quoted")
    second = pipeline.move("o1", "quoted", "accepted")
    outcomes = await asyncio.gather(first, second)

    assert all(o.ok for o in outcomes)
    assert _ids(pipeline, "accepted") == ["o1"]
    assert _ids(pipeline, "quoted") == []
    assert store.writes == [{"status": "quoted"}, {"status": "accepted"}]


@pytest.mark.asyncio
async def test_superseded_failure_does_not_clobber_newer_move() -> None:
    store = FakeRecordStore([_opp("o1", "new")], script=[(0.05, _rejected()), (0, None)])
    pipeline, notifier = _pipeline(store)
    await pipeline.load()

    first = pipeline.move("o1", "new", "quoted")
    second = pipeline.move("o1", "quoted", "accepted")
    await asyncio.gather(first, second)

    assert _ids(pipeline, "accepted") == ["o1"]
    assert len(notifier.errors) == 1


@pytest.mark.asyncio
async def test_later_failure_rolls_back_to_earlier_target() -> None:
    store = FakeRecordStore([_opp("o1", "new")], script=[(0.05, None), (0, _rejected())])
    pipeline, notifier = _pipeline(store)
    await pipeline.load()

    first = pipeline.move("o1", "new", "quoted")
    second = pipeline.move("o1", "quoted", "accepted")
    await asyncio.gather(first, second)

    assert _ids(pipeline, "quoted") == ["o1"]
    assert _ids(pipeline, "accepted") == []
    assert len(notifier.errors) == 1
    assert len(notifier.successes) == 1


@pytest.mark.asyncio
async def test_both_moves_failing_restore_original_status() -> None:
    store = FakeRecordStore(
        [_opp("o1", "new")], script=[(0.05, _rejected()), (0, _rejected())]
    )
    pipeline, notifier = _pipeline(store)
    await pipeline.load()

    first = pipeline.move("o1", "new", "quoted")
    second = pipeline.move("o1", "quoted", "accepted")
    await asyncio.gather(first, second)

    assert _ids(pipeline, "new") == ["o1"]
    assert len(notifier.errors) == 2


@pytest.mark.asyncio
async def test_move_success_after_delay_settles_in_target() -> None:
    statuses = ["new", "qualified", "won"]
    store = FakeRecordStore([_opp("o1", "new")], script=[(0.05, None)])
    pipeline, _ = _pipeline(store, statuses=statuses)
    await pipeline.load()

    await pipeline.move("o1", "new", "qualified")

    groups = pipeline.groups()
    assert [r.id for r in groups["qualified"]] == ["o1"]
    assert groups["new"] == []
    assert groups["won"] == []


@pytest.mark.asyncio
async def test_closed_view_discards_late_failure() -> None:
    store = FakeRecordStore([_opp("o1", "new")], script=[(0.02, _rejected())])
    pipeline, notifier = _pipeline(store)
    await pipeline.load()

    task = pipeline.move("o1", "new", "quoted")
    pipeline.close()
    outcome = await task

    assert outcome.discarded
    assert notifier.notifications == []
    assert _ids(pipeline, "quoted") == ["o1"]


@pytest.mark.asyncio
async def test_cancelled_token_discards_late_load() -> None:
    store = FakeRecordStore([_opp("o1", "new")])
    pipeline, _ = _pipeline(store)
    token = Liveness()
    token.cancel()

    groups = await pipeline.load(liveness=token)

    assert all(not records for records in groups.values())


@pytest.mark.asyncio
async def test_load_failure_keeps_previous_view(tmp_path: Path) -> None:
    events = EventLogger(path=tmp_path / "events.ndjson", workspace="demo")
    store = FakeRecordStore([_opp("o1", "new"), _opp("o2", "quoted")])
    pipeline, notifier = _pipeline(store, events=events)
    before = await pipeline.load()

    store.list_error = StoreError("network", "connection reset")
    after = await pipeline.load()

    assert after == before
    assert len(notifier.errors) == 1
    assert "Could not load" in notifier.errors[0].message
    assert events.read()[-1]["detail"].startswith("FetchError")


@pytest.mark.asyncio
async def test_signed_out_session_cannot_move() -> None:
    store = FakeRecordStore([_opp("o1", "new")])
    session = StaticSession(ADMIN)
    notifier = CollectingNotifier()
    pipeline = OpportunityPipeline(store=store, session=session, notifier=notifier)
    await pipeline.load()
    session.sign_out()

    outcome = await pipeline.move("o1", "new", "quoted")

    assert isinstance(outcome.error, PersistError)
    assert store.calls == []
    assert _ids(pipeline, "new") == ["o1"]


@pytest.mark.asyncio
async def test_create_without_name_is_rejected_synchronously() -> None:
    store = FakeRecordStore()
    pipeline, notifier = _pipeline(store)

    future = pipeline.create({"company_name": "Acme Farms"})

    assert future.done()
    assert isinstance(future.result().error, ValidationError)
    assert store.calls == []
    assert len(notifier.errors) == 1


@pytest.mark.asyncio
async def test_create_inserts_at_head_of_first_status() -> None:
    store = FakeRecordStore([_opp("o1", "new", 5)])
    pipeline, notifier = _pipeline(store, user=REP)
    await pipeline.load()

    outcome = await pipeline.create(
        {"name": " Tractor ", "company_name": "Acme Farms", "value": "1500", "owner_id": "u-other"}
    )

    assert outcome.ok
    assert _ids(pipeline, "new") == [outcome.record.id, "o1"]
    sent = store.writes[0]
    assert sent["name"] == "Tractor"
    assert sent["status"] == "new"
    assert sent["value"] == 1500.0
    assert sent["owner_id"] == "u-rep"
    assert len(notifier.successes) == 1


@pytest.mark.asyncio
async def test_create_negative_value_is_rejected() -> None:
    store = FakeRecordStore()
    pipeline, _ = _pipeline(store)

    outcome = await pipeline.create({"name": "Baler", "company_name": "Acme", "value": -1})

    assert isinstance(outcome.error, ValidationError)
    assert store.calls == []


@pytest.mark.asyncio
async def test_create_store_failure_is_reported_once() -> None:
    store = FakeRecordStore(script=[(0, _rejected("23514"))])
    pipeline, notifier = _pipeline(store)

    outcome = await pipeline.create({"name": "Baler", "company_name": "Acme"})

    assert isinstance(outcome.error, PersistError)
    assert all(not records for records in pipeline.groups().values())
    assert len(notifier.errors) == 1


@pytest.mark.asyncio
async def test_update_changes_status_group() -> None:
    store = FakeRecordStore([_opp("o1", "new")])
    pipeline, _ = _pipeline(store)
    await pipeline.load()

    task = pipeline.update("o1", {"status": "rpo", "contact_name": "Dana"})
    assert _ids(pipeline, "rpo") == ["o1"]
    outcome = await task

    assert outcome.ok
    assert pipeline.get("o1").contact_name == "Dana"
    assert store.writes == [{"status": "rpo", "contact_name": "Dana"}]


@pytest.mark.asyncio
async def test_update_failure_rolls_back_fields() -> None:
    store = FakeRecordStore([_opp("o1", "new")], script=[(0, _rejected("PGRST116"))])
    pipeline, notifier = _pipeline(store)
    await pipeline.load()
    before = pipeline.groups()

    outcome = await pipeline.update("o1", {"name": "Renamed"})

    assert isinstance(outcome.error, PersistError)
    assert pipeline.groups() == before
    assert len(notifier.errors) == 1


@pytest.mark.asyncio
async def test_update_unknown_id_is_not_found() -> None:
    store = FakeRecordStore([_opp("o1", "new")])
    pipeline, notifier = _pipeline(store)
    await pipeline.load()

    outcome = await pipeline.update("missing", {"name": "x"})

    assert isinstance(outcome.error, NotFoundError)
    assert store.calls == []
    assert len(notifier.errors) == 1


@pytest.mark.asyncio
async def test_update_without_changes_skips_store() -> None:
    store = FakeRecordStore([_opp("o1", "new")])
    pipeline, notifier = _pipeline(store)
    await pipeline.load()

    outcome = await pipeline.update("o1", {"name": "Deal o1"})

    assert outcome.ok
    assert store.calls == []
    assert [n.message for n in notifier.successes] == ["No changes to Deal o1."]


@pytest.mark.asyncio
async def test_update_blank_required_field_is_rejected() -> None:
    store = FakeRecordStore([_opp("o1", "new")])
    pipeline, _ = _pipeline(store)
    await pipeline.load()

    outcome = await pipeline.update("o1", {"company_name": "  "})

    assert isinstance(outcome.error, ValidationError)
    assert pipeline.get("o1").company_name == "Acme Farms"


@pytest.mark.asyncio
async def test_events_record_each_outcome(tmp_path: Path) -> None:
    events = EventLogger(path=tmp_path / "events.ndjson", workspace="demo")
    store = FakeRecordStore([_opp("o1", "new")], script=[(0, None), (0, _rejected())])
    pipeline, _ = _pipeline(store, events=events)
    await pipeline.load()

    await pipeline.move("o1", "new", "quoted")
    await pipeline.move("o1", "quoted", "accepted")

    outcomes = [(e["event_type"], e["outcome"]) for e in events.read()]
    assert outcomes == [
        ("opportunity.load", "ok"),
        ("opportunity.move", "ok"),
        ("opportunity.move", "rolled_back"),
        ("opportunity.move", "error"),
    ]
