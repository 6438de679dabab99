from salesboard.domain.models import (
    CallNote,
    DailyReport,
    Expense,
    Opportunity,
    User,
)
from salesboard.domain.rules import ValidationError

__all__ = [
    "CallNote",
    "DailyReport",
    "Expense",
    "Opportunity",
    "User",
    "ValidationError",
]
