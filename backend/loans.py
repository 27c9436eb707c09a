import logging
from datetime import datetime
from typing import List, Optional

from pymongo import ReturnDocument

from exceptions.exceptions import (
    BookNotFoundError,
    LoanAlreadyReturnedError,
    LoanNotFoundError,
    LoanNotOverdueError,
    NoCopiesAvailableError,
    ResourceNotFoundError,
)
from .crud import build_notification, emit_notifications, get_user, now_iso
from .lifecycle import (
    effective_status,
    isoformat,
    is_overdue,
    is_returned,
    parse_timestamp,
    utcnow,
    with_effective_status,
)
from .models import CopyStatus, LoanStatus, NotificationType, Role
from .storage import generate_id

logger = logging.getLogger(__name__)

RECENT_LOANS_LIMIT = 5

LOAN_RELATIONS = [
    {
        "$lookup": {
            "from": "books",
            "localField": "bookId",
            "foreignField": "_id",
            "as": "book",
        }
    },
    {
        "$lookup": {
            "from": "bookCopies",
            "localField": "copyId",
            "foreignField": "_id",
            "as": "copy",
        }
    },
    {
        "$lookup": {
            "from": "users",
            "localField": "userId",
            "foreignField": "_id",
            "as": "user",
        }
    },
    {"$unwind": "$book"},
    {"$unwind": "$copy"},
    {"$unwind": "$user"},
]


def _format_date(value: str) -> str:
    return parse_timestamp(value).strftime("%Y-%m-%d")


async def _aggregate_loans(db, *stages: dict) -> List[dict]:
    """Run ``stages`` over the loans collection and join book, copy and user.

    Loans whose book, copy or user no longer exists are dropped by the unwinds.
    """
    cursor = db.loans.aggregate([*stages, *LOAN_RELATIONS])
    loans = []
    async for loan in cursor:
        loan["user"].pop("passwordHash", None)
        loans.append(loan)
    return loans


async def get_loan(db, loan_id: str) -> dict:
    loan = await db.loans.find_one({"_id": loan_id})
    if not loan:
        raise LoanNotFoundError(loan_id)
    return loan


async def get_loans_for_user(db, user_id: str, now: Optional[datetime] = None) -> List[dict]:
    loans = await _aggregate_loans(
        db, {"$match": {"userId": user_id}}, {"$sort": {"borrowDate": -1}}
    )
    return with_effective_status(loans, now)


async def get_all_loans(db, now: Optional[datetime] = None) -> List[dict]:
    loans = await _aggregate_loans(db, {"$sort": {"borrowDate": -1}})
    return with_effective_status(loans, now)


async def create_loan(db, user_id: str, book_id: str, due_date: datetime) -> dict:
    """Borrow one available copy of ``book_id`` for ``user_id``.

    The copy is claimed with a single conditional update, so two concurrent
    requests can never obtain the same copy.
    """
    await get_user(db, user_id)
    book = await db.books.find_one({"_id": book_id})
    if not book:
        raise BookNotFoundError(book_id)

    copy = await db.bookCopies.find_one_and_update(
        {"bookId": book_id, "status": CopyStatus.AVAILABLE.value},
        {"$set": {"status": CopyStatus.BORROWED.value, "updatedAt": now_iso()}},
        return_document=ReturnDocument.AFTER,
    )
    if not copy:
        raise NoCopiesAvailableError(book_id)

    now = now_iso()
    loan = {
        "_id": generate_id(),
        "userId": user_id,
        "bookId": book_id,
        "copyId": copy["_id"],
        "borrowDate": now,
        "dueDate": isoformat(due_date),
        "returnDate": None,
        "status": LoanStatus.BORROWED.value,
        "reminderSent": False,
        "reminderCount": 0,
        "createdAt": now,
        "updatedAt": now,
    }
    await db.loans.insert_one(loan)
    logger.info(f"Loan {loan['_id']} created: copy {copy['_id']} to user {user_id}")

    await emit_notifications(
        db,
        [
            build_notification(
                user_id,
                NotificationType.LOAN_CREATED,
                "Book Borrowed Successfully",
                f'You have borrowed "{book["title"]}" by {book["author"]}. '
                f"Please return it by {_format_date(loan['dueDate'])}.",
                loanId=loan["_id"],
                bookId=book_id,
                bookTitle=book["title"],
                bookAuthor=book["author"],
                dueDate=loan["dueDate"],
            )
        ],
    )

    detailed = await _aggregate_loans(db, {"$match": {"_id": loan["_id"]}})
    return with_effective_status(detailed)[0]


async def return_loan(db, loan_id: str) -> dict:
    """Close a loan and release its copy.

    The loan update and the copy update are two separate writes; nothing
    repairs the copy if the second one fails.
    """
    loan = await get_loan(db, loan_id)
    if is_returned(loan):
        raise LoanAlreadyReturnedError(loan_id)

    now = now_iso()
    await db.loans.update_one(
        {"_id": loan_id},
        {
            "$set": {
                "returnDate": now,
                "status": LoanStatus.RETURNED.value,
                "updatedAt": now,
            }
        },
    )
    await db.bookCopies.update_one(
        {"_id": loan["copyId"]},
        {"$set": {"status": CopyStatus.AVAILABLE.value, "updatedAt": now}},
    )
    logger.info(f"Loan {loan_id} returned, copy {loan['copyId']} available again")
    return {**loan, "returnDate": now, "status": LoanStatus.RETURNED.value}


async def send_overdue_reminder(db, loan_id: str, now: Optional[datetime] = None) -> dict:
    loan = await get_loan(db, loan_id)
    now = now or utcnow()
    if not is_overdue(loan, now):
        raise LoanNotOverdueError(loan_id)

    user = await db.users.find_one({"_id": loan["userId"]})
    book = await db.books.find_one({"_id": loan["bookId"]})
    if not user or not book:
        raise ResourceNotFoundError("User or book", loan_id)

    await emit_notifications(
        db,
        [
            build_notification(
                loan["userId"],
                NotificationType.OVERDUE_REMINDER,
                "Book Return Reminder",
                f'Please return "{book["title"]}" by {book["author"]}. '
                f"This book was due on {_format_date(loan['dueDate'])}. "
                "Please return it to the library as soon as possible.",
                loanId=loan["_id"],
                bookId=loan["bookId"],
                bookTitle=book["title"],
                bookAuthor=book["author"],
                dueDate=loan["dueDate"],
            )
        ],
    )

    stamp = isoformat(now)
    updated = await db.loans.find_one_and_update(
        {"_id": loan_id},
        {
            "$set": {
                "status": LoanStatus.OVERDUE.value,
                "reminderSent": True,
                "lastReminderAt": stamp,
                "updatedAt": stamp,
            },
            "$inc": {"reminderCount": 1},
        },
        return_document=ReturnDocument.AFTER,
    )
    logger.info(f"Overdue reminder #{updated['reminderCount']} sent for loan {loan_id}")
    return updated


async def get_dashboard_stats(db, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    active_books = await db.books.count_documents({"isActive": True})
    total_users = await db.users.count_documents({})

    active_loans = 0
    overdue_loans = 0
    async for loan in db.loans.find({"returnDate": None}):
        if effective_status(loan, now) is LoanStatus.OVERDUE:
            overdue_loans += 1
        else:
            active_loans += 1

    recent = await _aggregate_loans(
        db, {"$sort": {"borrowDate": -1}}, {"$limit": RECENT_LOANS_LIMIT}
    )
    return {
        "activeBooks": active_books,
        "totalUsers": total_users,
        "activeLoans": active_loans,
        "overdueLoans": overdue_loans,
        "recentLoans": with_effective_status(recent, now),
    }


def can_view_loans(requester_id: str, requester_role: Role, user_id: str) -> bool:
    return requester_id == user_id or requester_role in (Role.ADMIN, Role.STAFF)
