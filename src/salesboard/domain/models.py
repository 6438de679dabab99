from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime


@dataclass(frozen=True)
class User:
    id: str
    email: str
    role: str
    full_name: str | None = None
    created_at: datetime | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def display_name(self) -> str:
        return self.full_name or self.email


@dataclass(frozen=True)
class Opportunity:
    id: str
    name: str
    company_name: str
    status: str
    owner_id: str
    created_at: datetime
    updated_at: datetime
    contact_name: str | None = None
    description: str | None = None
    value: float | None = None
    request_machine: str | None = None
    requested_attachments: str | None = None
    trade_in_description: str | None = None
    expected_close_date: date | None = None


@dataclass(frozen=True)
class DailyReport:
    id: str
    submitter_id: str
    report_date: date
    mileage: float | None
    comments: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class CallNote:
    id: str
    submitter_id: str
    daily_report_id: str
    client_name: str
    call_date: date
    notes: str
    created_at: datetime
    contact_name: str | None = None
    location_type: str | None = None
    attachments: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Expense:
    id: str
    submitter_id: str
    daily_report_id: str
    amount: float
    expense_type: str
    expense_date: date
    created_at: datetime
    updated_at: datetime
    description: str | None = None
    client_name: str | None = None
    location: str | None = None
    receipt_url: str | None = None
    discussion_notes: str | None = None
    associated_call: str | None = None
