from __future__ import annotations

from enum import Enum


class OpportunityStatus(str, Enum):
    NEW = "new"
    QUOTED = "quoted"
    WAITING_ON_TRADE_EVAL = "waiting_on_trade_eval"
    ACCEPTED = "accepted"
    RPO = "rpo"
    READY_TO_BILL = "ready_to_bill"
    LOST_DEAL = "lost_deal"


STATUS_LABELS = {
    OpportunityStatus.NEW.value: "New",
    OpportunityStatus.QUOTED.value: "Quoted",
    OpportunityStatus.WAITING_ON_TRADE_EVAL.value: "Waiting on Trade Eval",
    OpportunityStatus.ACCEPTED.value: "Accepted",
    OpportunityStatus.RPO.value: "RPO",
    OpportunityStatus.READY_TO_BILL.value: "Ready to Bill",
    OpportunityStatus.LOST_DEAL.value: "Lost Deal",
}

DEFAULT_STATUSES = [s.value for s in OpportunityStatus]


class UserRole(str, Enum):
    ADMIN = "admin"
    SUBMITTER = "submitter"


class ExpenseType(str, Enum):
    MILEAGE = "mileage"
    MEAL = "meal"
    LODGING = "lodging"
    FUEL = "fuel"
    ENTERTAINMENT = "entertainment"
    SUPPLIES = "supplies"
    OTHER = "other"


class LocationType(str, Enum):
    ON_SITE = "on_site"
    OFFICE = "office"
    PHONE = "phone"
    VIDEO = "video"
    OTHER = "other"


class NotifyKind(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


def status_label(status: str) -> str:
    return STATUS_LABELS.get(status, status.replace("_", " ").title())
