from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, timedelta

from salesboard.domain.models import CallNote, DailyReport, Expense, Opportunity
from salesboard.services import calls, expenses
from salesboard.store.sqlite import SqliteStore

UNASSOCIATED = "Unassociated"


@dataclass(frozen=True)
class WeekBounds:
    start: date
    end: date
    days: list[date]


@dataclass
class DailySummary:
    day: date
    report: DailyReport | None
    calls: list[CallNote]
    expenses: list[Expense]

    @property
    def mileage(self) -> float:
        return (self.report.mileage or 0) if self.report else 0

    @property
    def expense_total(self) -> float:
        return round(sum(e.amount for e in self.expenses), 2)


@dataclass
class WeeklySummary:
    week: WeekBounds
    calls: list[CallNote]
    reports: list[DailyReport]
    expenses: list[Expense]
    expenses_by_call: dict[str, float] = field(default_factory=dict)

    @property
    def total_mileage(self) -> float:
        return sum(r.mileage or 0 for r in self.reports)

    @property
    def total_expenses(self) -> float:
        return round(sum(e.amount for e in self.expenses), 2)

    def calls_on(self, day: date) -> list[CallNote]:
        return [c for c in self.calls if c.call_date == day]


@dataclass(frozen=True)
class StatusSummary:
    status: str
    count: int
    total_value: float


def week_bounds(day: date, include_weekends: bool = True) -> WeekBounds:
    """Sunday-to-Saturday week containing ``day``."""
    start = day - timedelta(days=(day.weekday() + 1) % 7)
    end = start + timedelta(days=6)
    days = [start + timedelta(days=i) for i in range(7)]
    if not include_weekends:
        days = [d for d in days if d.weekday() < 5]
    return WeekBounds(start=start, end=end, days=days)


def daily_summary(store: SqliteStore, submitter_id: str, day: date) -> DailySummary:
    return DailySummary(
        day=day,
        report=calls.get_daily_report(store, submitter_id, day),
        calls=calls.list_call_notes(store, submitter_id, day, day),
        expenses=expenses.list_expenses(store, submitter_id, day, day),
    )


def weekly_summary(
    store: SqliteStore, submitter_id: str, day: date, include_weekends: bool = True
) -> WeeklySummary:
    week = week_bounds(day, include_weekends)
    week_expenses = expenses.list_expenses(store, submitter_id, week.start, week.end)
    return WeeklySummary(
        week=week,
        calls=calls.list_call_notes(store, submitter_id, week.start, week.end),
        reports=calls.list_daily_reports(store, submitter_id, week.start, week.end),
        expenses=week_expenses,
        expenses_by_call=expenses_by_call_totals(week_expenses),
    )


def group_expenses_by_call(items: Iterable[Expense]) -> dict[str, list[Expense]]:
    grouped: dict[str, list[Expense]] = {UNASSOCIATED: []}
    for expense in items:
        grouped.setdefault(expense.associated_call or UNASSOCIATED, []).append(expense)
    return grouped


def expenses_by_call_totals(items: Iterable[Expense]) -> dict[str, float]:
    return {
        call: round(sum(e.amount for e in group), 2)
        for call, group in group_expenses_by_call(items).items()
    }


def most_expensive_call(
    items: Iterable[Expense], call_notes: Iterable[CallNote]
) -> tuple[CallNote, float] | None:
    totals = expenses_by_call_totals(items)
    totals.pop(UNASSOCIATED, None)
    if not totals:
        return None
    name, total = max(totals.items(), key=lambda item: item[1])
    for call in call_notes:
        if call.client_name == name:
            return call, total
    return None


def pipeline_summary(groups: Mapping[str, list[Opportunity]]) -> list[StatusSummary]:
    return [
        StatusSummary(
            status=status,
            count=len(records),
            total_value=round(sum(r.value or 0 for r in records), 2),
        )
        for status, records in groups.items()
    ]
