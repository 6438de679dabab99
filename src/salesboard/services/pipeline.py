"""Status-grouped opportunity board with optimistic updates.

Every mutation is two-phase: the local view changes synchronously, then one
store round trip either confirms the change or it is rolled back. Nothing is
retried. Pipeline errors never escape to the caller; each failure produces
exactly one error notification and an ``Outcome`` describing it.

Each pending operation remembers the record it replaced and the record it
put in place. A failing operation only rolls back while its own record is
still the one on the board and no later, unrejected operation for the same
record exists, so out-of-order completions cannot clobber newer state.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from typing import Any

from salesboard.domain import rules
from salesboard.domain.models import Opportunity, User
from salesboard.domain.rules import ValidationError
from salesboard.domain.stages import DEFAULT_STATUSES, NotifyKind, status_label
from salesboard.services.events import EventLogger
from salesboard.services.notify import Notifier
from salesboard.services.session import SessionProvider
from salesboard.store.records import OPPORTUNITY_FIELDS, OpportunityFilter, RecordStore, StoreError

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("name", "company_name")
TEXT_FIELDS = (
    "name",
    "company_name",
    "contact_name",
    "description",
    "request_machine",
    "requested_attachments",
    "trade_in_description",
)


class PipelineError(RuntimeError):
    pass


class PersistError(PipelineError):
    pass


class FetchError(PipelineError):
    pass


class NotFoundError(PipelineError):
    pass


class Liveness:
    """Token held by whatever view issued an operation.

    Once cancelled, late results are discarded: no state change, no rollback,
    no notification.
    """

    def __init__(self) -> None:
        self.alive = True

    def cancel(self) -> None:
        self.alive = False


@dataclass(frozen=True)
class Outcome:
    ok: bool
    record: Opportunity | None = None
    error: Exception | None = None
    discarded: bool = False


@dataclass
class _Pending:
    seq: int
    kind: str
    opportunity_id: str
    prior: Opportunity
    prior_index: int
    applied: Opportunity
    state: str = "pending"


class OpportunityPipeline:
    def __init__(
        self,
        store: RecordStore,
        session: SessionProvider,
        notifier: Notifier,
        statuses: Sequence[str] | None = None,
        events: EventLogger | None = None,
    ) -> None:
        statuses = list(statuses or DEFAULT_STATUSES)
        if len(set(statuses)) != len(statuses):
            raise ValueError("Pipeline statuses must be unique.")
        self.store = store
        self.session = session
        self.notifier = notifier
        self.events = events
        self._statuses = statuses
        self._groups: dict[str, list[Opportunity]] = {s: [] for s in statuses}
        self._pending: dict[str, list[_Pending]] = {}
        self._seq = itertools.count(1)
        self._liveness = Liveness()

    @property
    def statuses(self) -> list[str]:
        return list(self._statuses)

    @property
    def liveness(self) -> Liveness:
        return self._liveness

    def groups(self) -> dict[str, list[Opportunity]]:
        return {status: list(records) for status, records in self._groups.items()}

    def locate(self, opportunity_id: str) -> tuple[str, int] | None:
        for status, records in self._groups.items():
            for index, record in enumerate(records):
                if record.id == opportunity_id:
                    return status, index
        return None

    def get(self, opportunity_id: str) -> Opportunity | None:
        located = self.locate(opportunity_id)
        if located is None:
            return None
        status, index = located
        return self._groups[status][index]

    def pending_count(self) -> int:
        return sum(
            1 for ops in self._pending.values() for op in ops if op.state == "pending"
        )

    def close(self) -> None:
        self._liveness.cancel()

    async def load(
        self, owner_id: str | None = None, liveness: Liveness | None = None
    ) -> dict[str, list[Opportunity]]:
        """Replace the grouped view with what the store shows this session.

        Admins see everything (or one owner's rows when ``owner_id`` is set);
        submitters only ever see their own. On failure the previous view is
        kept and returned.
        """
        liveness = liveness or self._liveness
        user = self.session.current_user()
        if user is None:
            self._fail(FetchError("Sign in to view opportunities."), "load", None, None)
            return self.groups()

        filter = OpportunityFilter(owner_id=owner_id if user.is_admin else user.id)
        try:
            records = await self.store.list_opportunities(filter)
        except StoreError as exc:
            if not liveness.alive:
                return self.groups()
            self._fail(
                FetchError(f"Could not load opportunities: {exc.message}"), "load", None, user
            )
            return self.groups()
        if not liveness.alive:
            return self.groups()

        grouped: dict[str, list[Opportunity]] = {s: [] for s in self._statuses}
        for record in sorted(records, key=lambda r: r.updated_at, reverse=True):
            if record.status not in grouped:
                logger.warning("Skipping opportunity %s with unknown status %r", record.id, record.status)
                continue
            grouped[record.status].append(record)
        self._groups = grouped
        self._log("opportunity.load", None, "ok", user, detail=f"{len(records)} records")
        return self.groups()

    def move(
        self,
        opportunity_id: str,
        from_status: str,
        to_status: str,
        liveness: Liveness | None = None,
    ) -> asyncio.Future[Outcome]:
        """Move a card between columns.

        The local view changes before this returns; the returned task settles
        once the store has confirmed or rejected the new status.
        """
        liveness = liveness or self._liveness
        try:
            actor = self._actor()
            rules.require(to_status, "status")
            rules.validate_enum(to_status, self._statuses, "status")
            index = self._index_in(opportunity_id, from_status)
        except (ValidationError, NotFoundError, PersistError) as exc:
            return self._settled(self._fail(exc, "move", opportunity_id, None))

        current = self._groups[from_status][index]
        if from_status == to_status:
            self.notifier.notify(
                NotifyKind.SUCCESS,
                f"{current.name or current.id} is already in {status_label(to_status)}.",
            )
            return self._settled(Outcome(ok=True, record=current))

        applied = replace(current, status=to_status)
        self._groups[from_status].pop(index)
        self._groups[to_status].append(applied)
        op = self._track("move", current, index, applied)
        return asyncio.get_running_loop().create_task(
            self._persist(op, {"status": to_status}, actor, liveness)
        )

    def create(
        self, fields: Mapping[str, Any], liveness: Liveness | None = None
    ) -> asyncio.Future[Outcome]:
        """Validate locally, then insert through the store.

        Validation failures settle the returned future immediately and never
        reach the store.
        """
        liveness = liveness or self._liveness
        try:
            actor = self._actor()
            payload = validate_fields(fields, self._statuses)
        except (ValidationError, PersistError) as exc:
            return self._settled(self._fail(exc, "create", None, None))
        if not actor.is_admin or not payload.get("owner_id"):
            payload["owner_id"] = actor.id
        return asyncio.get_running_loop().create_task(
            self._persist_create(payload, actor, liveness)
        )

    def update(
        self,
        opportunity_id: str,
        fields: Mapping[str, Any],
        liveness: Liveness | None = None,
    ) -> asyncio.Future[Outcome]:
        liveness = liveness or self._liveness
        try:
            actor = self._actor()
            located = self.locate(opportunity_id)
            if located is None:
                raise NotFoundError(f"Opportunity {opportunity_id} is not on the board.")
            status, index = located
            current = self._groups[status][index]
            changes = validate_changes(current, fields, self._statuses)
        except (ValidationError, NotFoundError, PersistError) as exc:
            return self._settled(self._fail(exc, "update", opportunity_id, None))

        if not changes:
            self.notifier.notify(NotifyKind.SUCCESS, f"No changes to {current.name or current.id}.")
            return self._settled(Outcome(ok=True, record=current))

        applied = replace(current, **changes)
        if applied.status == status:
            self._groups[status][index] = applied
        else:
            self._groups[status].pop(index)
            self._groups[applied.status].append(applied)
        op = self._track("update", current, index, applied)
        return asyncio.get_running_loop().create_task(self._persist(op, changes, actor, liveness))

    async def _persist(
        self, op: _Pending, changes: dict[str, Any], actor: User, liveness: Liveness
    ) -> Outcome:
        try:
            saved = await self.store.update_opportunity(op.opportunity_id, changes, actor)
        except StoreError as exc:
            op.state = "failed"
            if not liveness.alive:
                self._log(f"opportunity.{op.kind}", op.opportunity_id, "discarded", actor)
                self._prune(op.opportunity_id)
                return Outcome(ok=False, error=PersistError(str(exc)), discarded=True)
            self._rollback(op)
            self._prune(op.opportunity_id)
            error = PersistError(f"Could not save {op.prior.name or op.opportunity_id}: {exc.message}")
            return self._fail(error, op.kind, op.opportunity_id, actor)

        op.state = "ok"
        if not liveness.alive:
            self._log(f"opportunity.{op.kind}", op.opportunity_id, "discarded", actor)
            self._prune(op.opportunity_id)
            return Outcome(ok=True, record=saved, discarded=True)

        record = self._confirm(op, saved)
        self._prune(op.opportunity_id)
        if op.kind == "move":
            message = f"Moved {record.name or record.id} to {status_label(op.applied.status)}."
        else:
            message = f"Updated {record.name or record.id}."
        self.notifier.notify(NotifyKind.SUCCESS, message)
        self._log(
            f"opportunity.{op.kind}",
            op.opportunity_id,
            "ok",
            actor,
            changed_fields=changes.keys(),
        )
        return Outcome(ok=True, record=record)

    async def _persist_create(
        self, payload: dict[str, Any], actor: User, liveness: Liveness
    ) -> Outcome:
        try:
            saved = await self.store.insert_opportunity(payload, actor)
        except StoreError as exc:
            if not liveness.alive:
                self._log("opportunity.create", None, "discarded", actor)
                return Outcome(ok=False, error=PersistError(str(exc)), discarded=True)
            error = PersistError(f"Could not create {payload.get('name')}: {exc.message}")
            return self._fail(error, "create", None, actor)

        if not liveness.alive:
            self._log("opportunity.create", saved.id, "discarded", actor)
            return Outcome(ok=True, record=saved, discarded=True)

        if saved.status in self._groups:
            self._groups[saved.status].insert(0, saved)
        else:
            logger.warning("Created opportunity %s has unknown status %r", saved.id, saved.status)
        self.notifier.notify(NotifyKind.SUCCESS, f"Created {saved.name}.")
        self._log("opportunity.create", saved.id, "ok", actor, changed_fields=payload.keys())
        return Outcome(ok=True, record=saved)

    def _track(self, kind: str, prior: Opportunity, index: int, applied: Opportunity) -> _Pending:
        op = _Pending(
            seq=next(self._seq),
            kind=kind,
            opportunity_id=prior.id,
            prior=prior,
            prior_index=index,
            applied=applied,
        )
        self._pending.setdefault(prior.id, []).append(op)
        return op

    def _rollback(self, op: _Pending) -> None:
        ops = self._pending.get(op.opportunity_id, [])
        if any(o.seq > op.seq and o.state != "failed" for o in ops):
            # A newer operation owns the local state now.
            self._log(f"opportunity.{op.kind}", op.opportunity_id, "superseded", None)
            return

        target = op
        for earlier in reversed([o for o in ops if o.seq < op.seq]):
            if earlier.state != "failed":
                break
            target = earlier

        located = self.locate(op.opportunity_id)
        if located is None:
            return
        status, index = located
        if self._groups[status][index] is not op.applied:
            # The view was reloaded or edited since; the store copy wins.
            return
        self._groups[status].pop(index)
        group = self._groups[target.prior.status]
        group.insert(min(target.prior_index, len(group)), target.prior)
        self._log(f"opportunity.{op.kind}", op.opportunity_id, "rolled_back", None)

    def _confirm(self, op: _Pending, saved: Opportunity) -> Opportunity:
        ops = self._pending.get(op.opportunity_id, [])
        located = self.locate(op.opportunity_id)
        if located is None or any(o.seq > op.seq for o in ops):
            return op.applied
        status, index = located
        current = self._groups[status][index]
        if current is not op.applied:
            return current
        updated_at = max(current.updated_at, saved.updated_at)
        if op.kind == "move":
            refreshed = replace(current, updated_at=updated_at)
        else:
            refreshed = replace(saved, status=current.status, updated_at=updated_at)
        self._groups[status][index] = refreshed
        return refreshed

    def _prune(self, opportunity_id: str) -> None:
        ops = self._pending.get(opportunity_id)
        if ops and all(o.state != "pending" for o in ops):
            del self._pending[opportunity_id]

    def _index_in(self, opportunity_id: str, status: str) -> int:
        for index, record in enumerate(self._groups.get(status, [])):
            if record.id == opportunity_id:
                return index
        raise NotFoundError(f"Opportunity {opportunity_id} is not in {status}.")

    def _actor(self) -> User:
        user = self.session.current_user()
        if user is None:
            raise PersistError("Sign in to change opportunities.")
        return user

    def _fail(
        self, error: Exception, operation: str, opportunity_id: str | None, actor: User | None
    ) -> Outcome:
        if isinstance(error, NotFoundError):
            logger.error("Local board out of sync during %s: %s", operation, error)
            message = "That opportunity is no longer on the board. Reload and try again."
        else:
            message = str(error)
        self.notifier.notify(NotifyKind.ERROR, message)
        self._log(
            f"opportunity.{operation}",
            opportunity_id,
            "error",
            actor,
            detail=f"{type(error).__name__}: {error}",
        )
        return Outcome(ok=False, error=error)

    def _settled(self, outcome: Outcome) -> asyncio.Future[Outcome]:
        future = asyncio.get_running_loop().create_future()
        future.set_result(outcome)
        return future

    def _log(
        self,
        event_type: str,
        opportunity_id: str | None,
        outcome: str,
        actor: User | None,
        changed_fields=None,
        detail: str | None = None,
    ) -> None:
        if self.events is None:
            return
        self.events.log(
            event_type=event_type,
            entity_type="opportunity",
            entity_id=opportunity_id,
            outcome=outcome,
            actor_id=actor.id if actor else None,
            changed_fields=changed_fields,
            detail=detail,
        )


def validate_fields(fields: Mapping[str, Any], statuses: Sequence[str]) -> dict[str, Any]:
    """Normalize a create form. Status defaults to the first pipeline column."""
    unknown = set(fields) - set(OPPORTUNITY_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")
    payload = _normalized(fields)
    for field in REQUIRED_FIELDS:
        rules.require(payload.get(field), field)
    if not payload.get("status"):
        payload["status"] = statuses[0]
    rules.validate_enum(payload["status"], statuses, "status")
    return payload


def validate_changes(
    current: Opportunity, fields: Mapping[str, Any], statuses: Sequence[str]
) -> dict[str, Any]:
    """Return only the fields that differ from ``current`` after validation."""
    unknown = set(fields) - set(OPPORTUNITY_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")
    changes = _normalized(fields)
    for field in REQUIRED_FIELDS:
        if field in changes:
            rules.require(changes[field], field)
    if "status" in changes:
        rules.require(changes["status"], "status")
        rules.validate_enum(changes["status"], statuses, "status")
    return {k: v for k, v in changes.items() if getattr(current, k) != v}


def _normalized(fields: Mapping[str, Any]) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for key, value in fields.items():
        if key in TEXT_FIELDS:
            value = value.strip() if isinstance(value, str) else value
            payload[key] = value or None
        elif key == "value":
            payload[key] = _coerce_value(value)
        elif key == "expected_close_date":
            payload[key] = rules.parse_date(value, "expected_close_date")
        else:
            payload[key] = value
    return payload


def _coerce_value(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("value must be a number.") from exc
    rules.validate_non_negative(number, "value")
    return number
