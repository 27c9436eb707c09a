import logging
import re
from typing import List, Optional

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from exceptions.exceptions import (
    BookNotFoundError,
    CopyNotFoundError,
    InvalidRequestError,
    AuthenticationError,
    PermissionDeniedError,
    UserNotFoundError,
)
from .auth import hash_password, verify_password
from .internal_messaging import publish_notifications
from .lifecycle import isoformat, utcnow
from .models import CopyStatus, NotificationType, Role, UserStatus
from .schemas import BookCreate, BookUpdate
from .storage import generate_id

logger = logging.getLogger(__name__)


def now_iso() -> str:
    return isoformat(utcnow())


# Notifications


def build_notification(
    user_id: str, notification_type: NotificationType, title: str, message: str, **extra
) -> dict:
    return {
        "_id": generate_id(),
        "userId": user_id,
        "type": notification_type.value,
        "title": title,
        "message": message,
        "isRead": False,
        "createdAt": now_iso(),
        **extra,
    }


async def emit_notifications(db, notifications: List[dict]) -> List[dict]:
    """Store notifications and fan them out.

    Emission is best-effort: a storage failure is logged and reported by an
    empty result, never raised to the caller.
    """
    if not notifications:
        return []
    try:
        await db.notifications.insert_many(notifications)
    except PyMongoError as e:
        logger.error(f"Failed to store {len(notifications)} notification(s): {e}")
        return []
    await publish_notifications(notifications)
    return notifications


async def get_notifications(db, user_id: str) -> List[dict]:
    cursor = db.notifications.find({"userId": user_id}, sort=[("createdAt", -1)])
    return [notification async for notification in cursor]


async def count_unread_notifications(db, user_id: str) -> int:
    return await db.notifications.count_documents({"userId": user_id, "isRead": False})


async def mark_notification_read(db, user_id: str, notification_id: str):
    await db.notifications.update_one(
        {"_id": notification_id, "userId": user_id}, {"$set": {"isRead": True}}
    )


async def mark_all_notifications_read(db, user_id: str):
    await db.notifications.update_many(
        {"userId": user_id, "isRead": False}, {"$set": {"isRead": True}}
    )


async def delete_notification(db, user_id: str, notification_id: str):
    await db.notifications.delete_one({"_id": notification_id, "userId": user_id})


# Users


async def get_user(db, user_id: str) -> dict:
    user = await db.users.find_one({"_id": user_id})
    if not user:
        raise UserNotFoundError(user_id)
    return user


async def get_user_by_email(db, email: str) -> Optional[dict]:
    return await db.users.find_one({"email": email.strip().lower()})


async def get_users(db) -> List[dict]:
    cursor = db.users.find({}, {"passwordHash": 0})
    return [user async for user in cursor]


async def create_user_record(
    db,
    name: str,
    email: str,
    password: str,
    role: Role = Role.USER,
    student_id: Optional[str] = None,
) -> dict:
    email = email.strip().lower()
    if await get_user_by_email(db, email):
        raise InvalidRequestError("Email already exists")

    now = now_iso()
    user = {
        "_id": generate_id(),
        "name": name,
        "email": email,
        "passwordHash": hash_password(password),
        "role": role.value,
        "status": UserStatus.ACTIVE.value,
        "needsPasswordReset": False,
        "createdAt": now,
        "updatedAt": now,
    }
    if student_id:
        user["studentId"] = student_id
    await db.users.insert_one(user)
    logger.info(f"Created {role.value} account {user['_id']}")
    return user


async def authenticate_user(db, email: str, password: str) -> dict:
    user = await get_user_by_email(db, email)
    if not user or not verify_password(password, user.get("passwordHash")):
        raise AuthenticationError("Invalid email or password")
    if user.get("status") == UserStatus.BLOCKED.value:
        raise PermissionDeniedError("This account has been blocked")
    return user


async def request_password_reset(db, email: str) -> List[dict]:
    user = await get_user_by_email(db, email)
    if not user:
        raise UserNotFoundError(email)
    if user["role"] != Role.USER.value:
        raise InvalidRequestError(
            "Only student accounts can request a reset through this form"
        )

    await db.users.update_one(
        {"_id": user["_id"]},
        {"$set": {"needsPasswordReset": True, "updatedAt": now_iso()}},
    )

    cursor = db.users.find({"role": {"$in": [Role.ADMIN.value, Role.STAFF.value]}})
    notifications = [
        build_notification(
            admin["_id"],
            NotificationType.PASSWORD_RESET_REQUEST,
            "Password Reset Request",
            f"User {user['name']} ({user['email']}) has requested a password reset.",
        )
        async for admin in cursor
    ]
    return await emit_notifications(db, notifications)


async def reset_user_password(db, user_id: str, new_password: str):
    await get_user(db, user_id)
    await db.users.update_one(
        {"_id": user_id},
        {
            "$set": {
                "passwordHash": hash_password(new_password),
                "needsPasswordReset": False,
                "updatedAt": now_iso(),
            }
        },
    )


async def change_password(db, user_id: str, current_password: str, new_password: str):
    user = await get_user(db, user_id)
    if not verify_password(current_password, user.get("passwordHash")):
        raise InvalidRequestError("Current password is incorrect")
    await db.users.update_one(
        {"_id": user_id},
        {"$set": {"passwordHash": hash_password(new_password), "updatedAt": now_iso()}},
    )


async def delete_user(db, user_id: str, requester_id: str, requester_role: Role):
    """Delete a user together with everything that references them.

    The steps run one after another without a transaction; a failure part way
    through leaves the earlier steps applied.
    """
    target = await get_user(db, user_id)

    if target["_id"] == requester_id:
        raise InvalidRequestError("You cannot delete your own account")
    if target["role"] == Role.ADMIN.value and requester_role != Role.ADMIN:
        raise PermissionDeniedError("Only administrators can remove another admin")
    if target["role"] == Role.STAFF.value and requester_role != Role.ADMIN:
        raise PermissionDeniedError("Only administrators can remove staff members")

    open_loans = db.loans.find({"userId": user_id, "returnDate": None})
    freed = 0
    async for loan in open_loans:
        await db.bookCopies.update_one(
            {"_id": loan["copyId"]},
            {"$set": {"status": CopyStatus.AVAILABLE.value, "updatedAt": now_iso()}},
        )
        freed += 1

    loans = await db.loans.delete_many({"userId": user_id})
    received = await db.notifications.delete_many({"userId": user_id})

    try:
        await db.notifications.delete_many(
            {
                "type": NotificationType.PASSWORD_RESET_REQUEST.value,
                "message": {"$regex": re.escape(target["email"]), "$options": "i"},
            }
        )
    except PyMongoError as e:
        logger.error(f"Failed to remove reset requests mentioning user {user_id}: {e}")

    await db.users.delete_one({"_id": user_id})
    logger.info(
        f"Deleted user {user_id}: freed {freed} copies, removed "
        f"{loans.deleted_count} loans and {received.deleted_count} notifications"
    )


# Books


async def _attach_copy_counts(db, books: List[dict]) -> List[dict]:
    counts = {book["_id"]: [0, 0] for book in books}
    cursor = db.bookCopies.find({"bookId": {"$in": list(counts)}})
    async for copy in cursor:
        tally = counts[copy["bookId"]]
        tally[1] += 1
        if copy["status"] == CopyStatus.AVAILABLE.value:
            tally[0] += 1
    for book in books:
        book["availableCopies"], book["totalCopies"] = counts[book["_id"]]
    return books


async def get_books(
    db,
    category: Optional[str] = None,
    search: Optional[str] = None,
    include_inactive: bool = False,
) -> List[dict]:
    query = {}
    if not include_inactive:
        query["isActive"] = True
    if category:
        query["category"] = {"$regex": f"^{re.escape(category)}$", "$options": "i"}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"title": pattern}, {"author": pattern}, {"ISBN": pattern}]
    books = [book async for book in db.books.find(query, sort=[("title", 1)])]
    return await _attach_copy_counts(db, books)


async def get_book(db, book_id: str) -> dict:
    book = await db.books.find_one({"_id": book_id})
    if not book:
        raise BookNotFoundError(book_id)
    return (await _attach_copy_counts(db, [book]))[0]


async def create_book(db, book: BookCreate) -> dict:
    now = now_iso()
    document = {
        "_id": generate_id(),
        **book.model_dump(by_alias=True, exclude_none=True),
        "createdAt": now,
        "updatedAt": now,
    }
    await db.books.insert_one(document)
    logger.info(f"Book added: {document['_id']} ({document['title']})")
    document["availableCopies"], document["totalCopies"] = 0, 0
    return document


async def update_book(db, book_id: str, book_update: BookUpdate) -> dict:
    update_data = book_update.model_dump(by_alias=True, exclude_unset=True)
    update_data["updatedAt"] = now_iso()
    result = await db.books.update_one({"_id": book_id}, {"$set": update_data})
    if result.matched_count == 0:
        raise BookNotFoundError(book_id)
    return await get_book(db, book_id)


async def delete_book(db, book_id: str):
    await get_book(db, book_id)
    if await db.loans.count_documents({"bookId": book_id, "returnDate": None}):
        raise InvalidRequestError("Cannot delete a book with active loans")
    await db.bookCopies.delete_many({"bookId": book_id})
    await db.books.delete_one({"_id": book_id})
    logger.info(f"Book deleted: {book_id}")


# Copies


async def get_copies(db, book_id: str) -> List[dict]:
    await get_book(db, book_id)
    cursor = db.bookCopies.find({"bookId": book_id}, sort=[("copyCode", 1)])
    return [copy async for copy in cursor]


async def create_copy(db, book_id: str, copy_code: str) -> dict:
    await get_book(db, book_id)
    if await db.bookCopies.find_one({"bookId": book_id, "copyCode": copy_code}):
        raise InvalidRequestError("Copy code already exists for this book")
    now = now_iso()
    copy = {
        "_id": generate_id(),
        "bookId": book_id,
        "copyCode": copy_code,
        "status": CopyStatus.AVAILABLE.value,
        "createdAt": now,
        "updatedAt": now,
    }
    await db.bookCopies.insert_one(copy)
    return copy


async def update_copy_status(db, copy_id: str, status: CopyStatus) -> dict:
    if status == CopyStatus.BORROWED:
        raise InvalidRequestError("Copies are only borrowed through loans")
    # a borrowed copy is released by returning its loan
    updated = await db.bookCopies.find_one_and_update(
        {"_id": copy_id, "status": {"$ne": CopyStatus.BORROWED.value}},
        {"$set": {"status": status.value, "updatedAt": now_iso()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated:
        return updated
    if await db.bookCopies.find_one({"_id": copy_id}):
        raise InvalidRequestError("Borrowed copies cannot change status")
    raise CopyNotFoundError(copy_id)


async def delete_copy(db, copy_id: str):
    copy = await db.bookCopies.find_one({"_id": copy_id})
    if not copy:
        raise CopyNotFoundError(copy_id)
    if copy["status"] == CopyStatus.BORROWED.value:
        raise InvalidRequestError("Borrowed copies cannot be deleted")
    await db.bookCopies.delete_one({"_id": copy_id})
