"""Loan lifecycle evaluation.

The ``status`` persisted on a loan is only authoritative once the loan has
been returned. For open loans the status is derived from ``dueDate`` every
time loans are read, so the stored value may lag behind the clock.
"""

from datetime import date, datetime, timezone
from typing import Iterable, List, Mapping, Optional, Union

from .models import LoanStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: datetime) -> str:
    """Serialise a datetime the way timestamps are stored (UTC, ISO-8601)."""
    return as_utc(value).isoformat()


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Union[str, date, datetime]) -> datetime:
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))


def is_returned(loan: Mapping) -> bool:
    # same test as the {"returnDate": None} filter used for open loans
    return loan.get("returnDate") is not None


def effective_status(loan: Mapping, now: Optional[datetime] = None) -> LoanStatus:
    """Compute the status of ``loan`` at ``now`` (defaults to the current time).

    A loan with a return date is RETURNED whatever its due date; an open loan
    whose due date has passed is OVERDUE; any other open loan is BORROWED.
    """
    if is_returned(loan):
        return LoanStatus.RETURNED
    now = as_utc(now) if now is not None else utcnow()
    if parse_timestamp(loan["dueDate"]) < now:
        return LoanStatus.OVERDUE
    return LoanStatus.BORROWED


def is_overdue(loan: Mapping, now: Optional[datetime] = None) -> bool:
    return effective_status(loan, now) is LoanStatus.OVERDUE


def with_effective_status(
    loans: Iterable[dict], now: Optional[datetime] = None
) -> List[dict]:
    # one clock reading per batch
    now = now or utcnow()
    evaluated = []
    for loan in loans:
        loan["status"] = effective_status(loan, now).value
        evaluated.append(loan)
    return evaluated
