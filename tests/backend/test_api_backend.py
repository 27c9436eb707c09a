from datetime import timedelta

import pytest


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_register_login_and_me(client):
    response = await client.post(
        "/api/auth/register",
        json={
            "name": "New Reader",
            "email": "Reader@Library.edu",
            "password": "readerpass",
            "studentId": "S-42",
        },
    )
    assert response.status_code == 201
    data = response.json()
    assert data["user"]["email"] == "reader@library.edu"
    assert data["user"]["role"] == "USER"
    assert "passwordHash" not in data["user"]

    response = await client.post(
        "/api/auth/login", json={"email": "reader@library.edu", "password": "readerpass"}
    )
    assert response.status_code == 200
    token = response.json()["token"]

    response = await client.get(
        "/api/auth/me", headers={"Authorization": f"Bearer {token}"}
    )
    assert response.status_code == 200
    assert response.json()["studentId"] == "S-42"


@pytest.mark.asyncio
async def test_login_with_wrong_password(client, make_user):
    user = await make_user()
    response = await client.post(
        "/api/auth/login", json={"email": user["email"], "password": "nope-nope"}
    )
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid email or password"


@pytest.mark.asyncio
async def test_register_validation_error_is_400(client):
    response = await client.post(
        "/api/auth/register", json={"name": "X", "email": "x@y.z", "password": "123"}
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid request: check password"


@pytest.mark.asyncio
async def test_missing_or_bad_token(client):
    response = await client.get("/api/notifications")
    assert response.status_code == 401
    response = await client.get(
        "/api/notifications", headers={"Authorization": "Bearer not-a-token"}
    )
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or expired token"


@pytest.mark.asyncio
async def test_member_cannot_use_admin_routes(client, make_user, auth_headers):
    member = await make_user()
    response = await client.get("/api/admin/loans", headers=auth_headers(member))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_book_and_copy_management(client, make_user, auth_headers):
    staff = await make_user(role="STAFF")
    headers = auth_headers(staff)

    response = await client.post(
        "/api/books",
        json={
            "title": "The Left Hand of Darkness",
            "author": "Ursula K. Le Guin",
            "ISBN": "9780441478125",
            "category": "Science Fiction",
            "publicationYear": 1969,
        },
        headers=headers,
    )
    assert response.status_code == 201
    book = response.json()
    assert book["ISBN"] == "9780441478125"
    assert book["totalCopies"] == 0

    for code in ("LH-1", "LH-2"):
        response = await client.post(
            f"/api/books/{book['_id']}/copies", json={"copyCode": code}, headers=headers
        )
        assert response.status_code == 201

    copies = (await client.get(f"/api/books/{book['_id']}/copies")).json()
    assert [c["copyCode"] for c in copies] == ["LH-1", "LH-2"]

    response = await client.patch(
        f"/api/copies/{copies[0]['_id']}", json={"status": "MAINTENANCE"}, headers=headers
    )
    assert response.status_code == 200
    assert response.json()["status"] == "MAINTENANCE"

    response = await client.get(f"/api/books/{book['_id']}")
    assert response.json()["availableCopies"] == 1
    assert response.json()["totalCopies"] == 2

    response = await client.put(
        f"/api/books/{book['_id']}", json={"shelfLocation": "B-12"}, headers=headers
    )
    assert response.status_code == 200
    assert response.json()["shelfLocation"] == "B-12"

    listed = (await client.get("/api/books", params={"search": "left hand"})).json()
    assert [b["_id"] for b in listed] == [book["_id"]]

    response = await client.delete(f"/api/books/{book['_id']}", headers=headers)
    assert response.status_code == 204
    assert (await client.get(f"/api/books/{book['_id']}")).status_code == 404


@pytest.mark.asyncio
async def test_book_update_cannot_null_required_fields(
    client, test_db, make_user, make_book, auth_headers
):
    headers = auth_headers(await make_user(role="STAFF"))
    book = await make_book()

    for field in ("title", "author", "ISBN", "category", "isActive"):
        response = await client.put(
            f"/api/books/{book['_id']}", json={field: None}, headers=headers
        )
        assert response.status_code == 400, field

    stored = await test_db.books.find_one({"_id": book["_id"]})
    assert stored["title"] == "Dune"
    assert stored["ISBN"] == "9780441013593"

    response = await client.put(
        f"/api/books/{book['_id']}", json={"title": ""}, headers=headers
    )
    assert response.status_code == 400

    response = await client.put(
        f"/api/books/{book['_id']}", json={"description": None}, headers=headers
    )
    assert response.status_code == 200

    response = await client.get("/api/books")
    assert response.status_code == 200
    assert [b["title"] for b in response.json()] == ["Dune"]


@pytest.mark.asyncio
async def test_book_with_open_loan_cannot_be_deleted(
    client, test_db, make_user, make_book, make_loan, auth_headers
):
    headers = auth_headers(await make_user(role="STAFF"))
    book = await make_book(copies=2)
    await make_loan(await make_user(email="reader@example.com"), book)

    response = await client.delete(f"/api/books/{book['_id']}", headers=headers)
    assert response.status_code == 400
    assert response.json()["detail"] == "Cannot delete a book with active loans"

    assert await test_db.books.find_one({"_id": book["_id"]})
    assert await test_db.bookCopies.count_documents({"bookId": book["_id"]}) == 2


@pytest.mark.asyncio
async def test_borrowed_copy_is_locked(
    client, test_db, make_user, make_book, make_loan, auth_headers
):
    headers = auth_headers(await make_user(role="STAFF"))
    book = await make_book(copies=2)
    loan = await make_loan(await make_user(email="reader@example.com"), book)
    borrowed_id = loan["copyId"]
    spare = await test_db.bookCopies.find_one(
        {"bookId": book["_id"], "_id": {"$ne": borrowed_id}}
    )

    response = await client.patch(
        f"/api/copies/{borrowed_id}", json={"status": "AVAILABLE"}, headers=headers
    )
    assert response.status_code == 400

    response = await client.patch(
        f"/api/copies/{spare['_id']}", json={"status": "BORROWED"}, headers=headers
    )
    assert response.status_code == 400

    response = await client.delete(f"/api/copies/{borrowed_id}", headers=headers)
    assert response.status_code == 400

    assert (await test_db.bookCopies.find_one({"_id": borrowed_id}))["status"] == "BORROWED"
    assert (await test_db.bookCopies.find_one({"_id": spare["_id"]}))["status"] == "AVAILABLE"

    response = await client.patch(
        "/api/copies/does-not-exist", json={"status": "MAINTENANCE"}, headers=headers
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_book_list_filters(client, make_book):
    await make_book(title="Dune")
    await make_book(title="SPQR", author="Mary Beard", category="History")
    await make_book(title="Old Atlas", author="Unknown", isActive=False)

    response = await client.get("/api/books")
    assert [b["title"] for b in response.json()] == ["Dune", "SPQR"]

    response = await client.get("/api/books", params={"category": "history"})
    assert [b["title"] for b in response.json()] == ["SPQR"]

    response = await client.get("/api/books", params={"category": "hist"})
    assert response.json() == []

    response = await client.get("/api/books", params={"includeInactive": "true"})
    assert [b["title"] for b in response.json()] == ["Dune", "Old Atlas", "SPQR"]


@pytest.mark.asyncio
async def test_unknown_book_is_404(client):
    response = await client.get("/api/books/does-not-exist")
    assert response.status_code == 404
    assert response.json() == {"detail": "Book not found"}


@pytest.mark.asyncio
async def test_borrow_and_return_flow(client, test_db, make_user, make_book, auth_headers):
    staff = await make_user(role="STAFF")
    member = await make_user()
    book = await make_book(copies=1)

    response = await client.post(
        "/api/loans",
        json={
            "userId": member["_id"],
            "bookId": book["_id"],
            "dueDate": "2099-01-01T00:00:00Z",
        },
        headers=auth_headers(staff),
    )
    assert response.status_code == 201
    loan = response.json()
    assert loan["status"] == "BORROWED"
    assert loan["copy"]["status"] == "BORROWED"
    assert loan["book"]["title"] == book["title"]

    response = await client.post(
        "/api/loans",
        json={
            "userId": member["_id"],
            "bookId": book["_id"],
            "dueDate": "2099-01-01T00:00:00Z",
        },
        headers=auth_headers(staff),
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "No copies available for this book"
    assert await test_db.loans.count_documents({}) == 1

    notifications = (
        await client.get("/api/notifications", headers=auth_headers(member))
    ).json()
    assert [n["type"] for n in notifications] == ["LOAN_CREATED"]

    response = await client.patch(
        f"/api/loans/{loan['_id']}/return", headers=auth_headers(staff)
    )
    assert response.status_code == 204

    response = await client.patch(
        f"/api/loans/{loan['_id']}/return", headers=auth_headers(staff)
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Loan already returned"

    copy = await test_db.bookCopies.find_one({"_id": loan["copyId"]})
    assert copy["status"] == "AVAILABLE"


@pytest.mark.asyncio
async def test_member_borrows_only_for_self(client, make_user, make_book, auth_headers):
    member = await make_user()
    other = await make_user()
    book = await make_book(copies=2)
    body = {"bookId": book["_id"], "dueDate": "2099-01-01T00:00:00Z"}

    response = await client.post(
        "/api/loans", json={**body, "userId": other["_id"]}, headers=auth_headers(member)
    )
    assert response.status_code == 403

    response = await client.post(
        "/api/loans", json={**body, "userId": member["_id"]}, headers=auth_headers(member)
    )
    assert response.status_code == 201


@pytest.mark.asyncio
async def test_user_loans_visibility(client, make_user, make_book, make_loan, auth_headers):
    member = await make_user()
    other = await make_user()
    staff = await make_user(role="STAFF")
    book = await make_book(copies=1)
    await make_loan(member, book, due_in=timedelta(days=-1))

    response = await client.get(
        f"/api/loans/user/{member['_id']}", headers=auth_headers(member)
    )
    assert response.status_code == 200
    assert [loan["status"] for loan in response.json()] == ["OVERDUE"]

    response = await client.get(
        f"/api/loans/user/{member['_id']}", headers=auth_headers(other)
    )
    assert response.status_code == 403
    assert response.json()["detail"] == "You can only view your own loans"

    response = await client.get(
        f"/api/loans/user/{member['_id']}", headers=auth_headers(staff)
    )
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_remind_endpoint(client, test_db, make_user, make_book, make_loan, auth_headers):
    staff = await make_user(role="STAFF")
    member = await make_user()
    book = await make_book(copies=2)
    late = await make_loan(member, book, due_in=timedelta(days=-4))
    on_time = await make_loan(member, book)

    response = await client.post(f"/api/loans/{late['_id']}/remind", headers=auth_headers(staff))
    assert response.status_code == 204

    response = await client.post(
        f"/api/loans/{on_time['_id']}/remind", headers=auth_headers(staff)
    )
    assert response.status_code == 400

    response = await client.post("/api/loans/missing/remind", headers=auth_headers(staff))
    assert response.status_code == 404

    stored = await test_db.loans.find_one({"_id": late["_id"]})
    assert stored["reminderCount"] == 1


@pytest.mark.asyncio
async def test_dashboard(client, make_user, make_book, make_loan, auth_headers):
    admin = await make_user(role="ADMIN")
    member = await make_user()
    book = await make_book(copies=2)
    await make_loan(member, book)
    await make_loan(member, book, due_in=timedelta(days=-1))

    response = await client.get("/api/admin/dashboard", headers=auth_headers(admin))
    assert response.status_code == 200
    stats = response.json()
    assert stats["activeBooks"] == 1
    assert stats["totalUsers"] == 2
    assert stats["activeLoans"] == 1
    assert stats["overdueLoans"] == 1
    assert len(stats["recentLoans"]) == 2


@pytest.mark.asyncio
async def test_notification_endpoints(client, test_db, make_user, auth_headers):
    member = await make_user()
    other = await make_user()
    headers = auth_headers(member)
    for index, owner in enumerate((member, member, other)):
        await test_db.notifications.insert_one(
            {
                "_id": f"n{index}",
                "userId": owner["_id"],
                "type": "LOAN_CREATED",
                "title": "Book Borrowed Successfully",
                "message": "...",
                "isRead": False,
                "createdAt": f"2024-01-0{index + 1}T00:00:00+00:00",
            }
        )

    listed = (await client.get("/api/notifications", headers=headers)).json()
    assert [n["_id"] for n in listed] == ["n1", "n0"]

    count = (await client.get("/api/notifications/unread-count", headers=headers)).json()
    assert count == {"count": 2}

    assert (await client.patch("/api/notifications/n0/read", headers=headers)).status_code == 204
    # other users' notifications are untouched
    await client.patch("/api/notifications/n2/read", headers=headers)
    assert (await test_db.notifications.find_one({"_id": "n2"}))["isRead"] is False

    count = (await client.get("/api/notifications/unread-count", headers=headers)).json()
    assert count == {"count": 1}

    await client.patch("/api/notifications/read-all", headers=headers)
    count = (await client.get("/api/notifications/unread-count", headers=headers)).json()
    assert count == {"count": 0}

    assert (await client.delete("/api/notifications/n1", headers=headers)).status_code == 204
    assert await test_db.notifications.count_documents({"userId": member["_id"]}) == 1


@pytest.mark.asyncio
async def test_admin_user_management(client, test_db, make_user, make_book, make_loan, auth_headers):
    admin = await make_user(role="ADMIN")
    staff = await make_user(role="STAFF")
    member = await make_user()
    book = await make_book(copies=1)
    loan = await make_loan(member, book)

    users = (await client.get("/api/admin/users", headers=auth_headers(staff))).json()
    assert len(users) == 3
    assert all("passwordHash" not in u for u in users)

    response = await client.post(
        "/api/admin/staff",
        json={"name": "Librarian", "email": "librarian@library.edu", "password": "shelves"},
        headers=auth_headers(staff),
    )
    assert response.status_code == 403

    response = await client.post(
        "/api/admin/staff",
        json={"name": "Librarian", "email": "librarian@library.edu", "password": "shelves"},
        headers=auth_headers(admin),
    )
    assert response.status_code == 201
    assert response.json()["role"] == "STAFF"

    response = await client.delete(
        f"/api/admin/users/{member['_id']}", headers=auth_headers(staff)
    )
    assert response.status_code == 204
    assert await test_db.loans.count_documents({"userId": member["_id"]}) == 0
    copy = await test_db.bookCopies.find_one({"_id": loan["copyId"]})
    assert copy["status"] == "AVAILABLE"

    response = await client.delete(
        f"/api/admin/users/{admin['_id']}", headers=auth_headers(admin)
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_password_flows(client, test_db, make_user, auth_headers):
    admin = await make_user(role="ADMIN")
    member = await make_user(email="forgetful@library.edu")

    response = await client.post(
        "/api/auth/password-reset-request", json={"email": "forgetful@library.edu"}
    )
    assert response.status_code == 204
    admin_inbox = (await client.get("/api/notifications", headers=auth_headers(admin))).json()
    assert admin_inbox[0]["type"] == "PASSWORD_RESET_REQUEST"

    response = await client.patch(
        f"/api/admin/users/{member['_id']}/password",
        json={"newPassword": "fresh-start"},
        headers=auth_headers(admin),
    )
    assert response.status_code == 204

    response = await client.patch(
        "/api/users/me/password",
        json={"currentPassword": "wrong-one", "newPassword": "another-one"},
        headers=auth_headers(member),
    )
    assert response.status_code == 400

    response = await client.patch(
        "/api/users/me/password",
        json={"currentPassword": "fresh-start", "newPassword": "abc"},
        headers=auth_headers(member),
    )
    assert response.status_code == 400

    response = await client.patch(
        "/api/users/me/password",
        json={"currentPassword": "fresh-start", "newPassword": "another-one"},
        headers=auth_headers(member),
    )
    assert response.status_code == 204

    response = await client.post(
        "/api/auth/login", json={"email": "forgetful@library.edu", "password": "another-one"}
    )
    assert response.status_code == 200
