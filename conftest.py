import os

os.environ.setdefault("JWT_SECRET", "test-secret")

from datetime import timedelta

import httpx
import pytest
from mongomock_motor import AsyncMongoMockClient

from backend.auth import create_access_token, hash_password
from backend.lifecycle import isoformat, utcnow
from backend.main import app, get_db
from backend.storage import generate_id

TEST_PASSWORD = "secret123"
TEST_PASSWORD_HASH = hash_password(TEST_PASSWORD)


@pytest.fixture(scope="function")
def test_db():
    client = AsyncMongoMockClient()
    return client["test_library"]


@pytest.fixture(scope="function")
async def client(test_db):
    app.state.testing = True
    app.dependency_overrides[get_db] = lambda: test_db
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
    app.state.testing = False


@pytest.fixture(scope="function")
def make_user(test_db):
    async def _make_user(role="USER", email=None, name="Test User", **extra):
        now = isoformat(utcnow())
        user = {
            "_id": generate_id(),
            "name": name,
            "email": email or f"{generate_id()}@library.edu",
            "passwordHash": TEST_PASSWORD_HASH,
            "role": role,
            "status": "ACTIVE",
            "needsPasswordReset": False,
            "createdAt": now,
            "updatedAt": now,
            **extra,
        }
        await test_db.users.insert_one(user)
        return user

    return _make_user


@pytest.fixture(scope="function")
def make_book(test_db):
    async def _make_book(copies=1, title="Dune", author="Frank Herbert", **extra):
        now = isoformat(utcnow())
        book = {
            "_id": generate_id(),
            "title": title,
            "author": author,
            "ISBN": "9780441013593",
            "category": "Science Fiction",
            "isActive": True,
            "createdAt": now,
            "updatedAt": now,
            **extra,
        }
        await test_db.books.insert_one(book)
        for number in range(copies):
            await test_db.bookCopies.insert_one(
                {
                    "_id": generate_id(),
                    "bookId": book["_id"],
                    "copyCode": f"C-{number + 1:03d}",
                    "status": "AVAILABLE",
                    "createdAt": now,
                    "updatedAt": now,
                }
            )
        return book

    return _make_book


@pytest.fixture(scope="function")
def make_loan(test_db):
    """Borrow a copy directly in the database, bypassing the API."""

    async def _make_loan(user, book, due_in=timedelta(days=14), returned=False):
        copy = await test_db.bookCopies.find_one(
            {"bookId": book["_id"], "status": "AVAILABLE"}
        )
        now = utcnow()
        await test_db.bookCopies.update_one(
            {"_id": copy["_id"]},
            {"$set": {"status": "AVAILABLE" if returned else "BORROWED"}},
        )
        loan = {
            "_id": generate_id(),
            "userId": user["_id"],
            "bookId": book["_id"],
            "copyId": copy["_id"],
            "borrowDate": isoformat(now - timedelta(days=30)),
            "dueDate": isoformat(now + due_in),
            "returnDate": isoformat(now) if returned else None,
            "status": "RETURNED" if returned else "BORROWED",
            "reminderSent": False,
            "reminderCount": 0,
            "createdAt": isoformat(now),
            "updatedAt": isoformat(now),
        }
        await test_db.loans.insert_one(loan)
        return loan

    return _make_loan


def auth_header(user):
    return {"Authorization": f"Bearer {create_access_token(user)}"}


@pytest.fixture(scope="function")
def auth_headers():
    return auth_header
