import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Response, status

from exceptions.exceptions import PermissionDeniedError, add_exception_handlers
from . import config
from .auth import (
    TokenPayload,
    create_access_token,
    get_current_user,
    require_admin,
    require_staff,
)
from .crud import (
    authenticate_user,
    change_password,
    count_unread_notifications,
    create_book,
    create_copy,
    create_user_record,
    delete_book,
    delete_copy,
    delete_notification,
    delete_user,
    get_book,
    get_books,
    get_copies,
    get_notifications,
    get_user,
    get_users,
    mark_all_notifications_read,
    mark_notification_read,
    now_iso,
    request_password_reset,
    reset_user_password,
    update_book,
    update_copy_status,
)
from .internal_messaging import cleanup_messaging, setup_messaging
from .loans import (
    can_view_loans,
    create_loan,
    get_all_loans,
    get_dashboard_stats,
    get_loans_for_user,
    return_loan,
    send_overdue_reminder,
)
from .models import (
    BookModel,
    CopyModel,
    DashboardStats,
    LoanDetailModel,
    NotificationModel,
    Role,
    UserModel,
)
from .schemas import (
    BookCreate,
    BookUpdate,
    CopyCreate,
    CopyStatusUpdate,
    LoanCreate,
    LoginRequest,
    PasswordChange,
    PasswordReset,
    PasswordResetRequest,
    RegisterRequest,
    StaffCreate,
    TokenResponse,
    UnreadCount,
)
from .storage import close_db_connection, get_database, init_db

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.testing = app.state.testing if hasattr(app.state, "testing") else False

    if not app.state.testing:
        logger.info("Initializing database connection")
        await init_db()
        app.state.db = get_database()
        await setup_messaging(app)

    yield

    if not app.state.testing:
        logger.info("Closing database connection")
        await close_db_connection()
        await cleanup_messaging()


app = FastAPI(
    title="Library Management API",
    lifespan=lifespan,
    description="Books, copies, loans, users and notifications for the library",
    version="1.0.0",
)

add_exception_handlers(app)


def get_db():
    return app.state.db


def no_content() -> Response:
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/health")
async def health():
    return {"status": "ok", "timestamp": now_iso()}


# Auth


@app.post(
    "/api/auth/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED
)
async def register(body: RegisterRequest, db=Depends(get_db)):
    user = await create_user_record(
        db, body.name, body.email, body.password, Role.USER, body.student_id
    )
    return {"token": create_access_token(user), "user": user}


@app.post("/api/auth/login", response_model=TokenResponse)
async def login(body: LoginRequest, db=Depends(get_db)):
    user = await authenticate_user(db, body.email, body.password)
    logger.info(f"User {user['_id']} logged in")
    return {"token": create_access_token(user), "user": user}


@app.get("/api/auth/me", response_model=UserModel)
async def me(current_user: TokenPayload = Depends(get_current_user), db=Depends(get_db)):
    return await get_user(db, current_user.user_id)


@app.post("/api/auth/password-reset-request", status_code=status.HTTP_204_NO_CONTENT)
async def password_reset_request(body: PasswordResetRequest, db=Depends(get_db)):
    await request_password_reset(db, body.email)
    return no_content()


# Users


@app.get("/api/admin/users", response_model=List[UserModel])
async def list_users(_: TokenPayload = Depends(require_staff), db=Depends(get_db)):
    return await get_users(db)


@app.post(
    "/api/admin/staff", response_model=UserModel, status_code=status.HTTP_201_CREATED
)
async def add_staff_member(
    body: StaffCreate, _: TokenPayload = Depends(require_admin), db=Depends(get_db)
):
    return await create_user_record(db, body.name, body.email, body.password, Role.STAFF)


@app.delete("/api/admin/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_user(
    user_id: str,
    current_user: TokenPayload = Depends(require_staff),
    db=Depends(get_db),
):
    await delete_user(db, user_id, current_user.user_id, current_user.role)
    return no_content()


@app.patch("/api/admin/users/{user_id}/password", status_code=status.HTTP_204_NO_CONTENT)
async def set_user_password(
    user_id: str,
    body: PasswordReset,
    _: TokenPayload = Depends(require_staff),
    db=Depends(get_db),
):
    await reset_user_password(db, user_id, body.new_password)
    return no_content()


@app.patch("/api/users/me/password", status_code=status.HTTP_204_NO_CONTENT)
async def change_own_password(
    body: PasswordChange,
    current_user: TokenPayload = Depends(get_current_user),
    db=Depends(get_db),
):
    await change_password(db, current_user.user_id, body.current_password, body.new_password)
    return no_content()


# Books and copies


@app.get("/api/books", response_model=List[BookModel])
async def list_books(
    category: Optional[str] = None,
    search: Optional[str] = None,
    include_inactive: bool = Query(False, alias="includeInactive"),
    db=Depends(get_db),
):
    return await get_books(db, category, search, include_inactive)


@app.get("/api/books/{book_id}", response_model=BookModel)
async def read_book(book_id: str, db=Depends(get_db)):
    return await get_book(db, book_id)


@app.post("/api/books", response_model=BookModel, status_code=status.HTTP_201_CREATED)
async def add_book(
    book: BookCreate, _: TokenPayload = Depends(require_staff), db=Depends(get_db)
):
    return await create_book(db, book)


@app.put("/api/books/{book_id}", response_model=BookModel)
async def modify_book(
    book_id: str,
    book_update: BookUpdate,
    _: TokenPayload = Depends(require_staff),
    db=Depends(get_db),
):
    return await update_book(db, book_id, book_update)


@app.delete("/api/books/{book_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_book(
    book_id: str, _: TokenPayload = Depends(require_staff), db=Depends(get_db)
):
    await delete_book(db, book_id)
    return no_content()


@app.get("/api/books/{book_id}/copies", response_model=List[CopyModel])
async def list_copies(book_id: str, db=Depends(get_db)):
    return await get_copies(db, book_id)


@app.post(
    "/api/books/{book_id}/copies",
    response_model=CopyModel,
    status_code=status.HTTP_201_CREATED,
)
async def add_copy(
    book_id: str,
    body: CopyCreate,
    _: TokenPayload = Depends(require_staff),
    db=Depends(get_db),
):
    return await create_copy(db, book_id, body.copy_code)


@app.patch("/api/copies/{copy_id}", response_model=CopyModel)
async def change_copy_status(
    copy_id: str,
    body: CopyStatusUpdate,
    _: TokenPayload = Depends(require_staff),
    db=Depends(get_db),
):
    return await update_copy_status(db, copy_id, body.status)


@app.delete("/api/copies/{copy_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_copy(
    copy_id: str, _: TokenPayload = Depends(require_staff), db=Depends(get_db)
):
    await delete_copy(db, copy_id)
    return no_content()


# Loans


@app.get("/api/loans/user/{user_id}", response_model=List[LoanDetailModel])
async def list_user_loans(
    user_id: str,
    current_user: TokenPayload = Depends(get_current_user),
    db=Depends(get_db),
):
    if not can_view_loans(current_user.user_id, current_user.role, user_id):
        raise PermissionDeniedError("You can only view your own loans")
    return await get_loans_for_user(db, user_id)


@app.get("/api/admin/loans", response_model=List[LoanDetailModel])
async def list_all_loans(_: TokenPayload = Depends(require_staff), db=Depends(get_db)):
    return await get_all_loans(db)


@app.get("/api/admin/dashboard", response_model=DashboardStats)
async def dashboard(_: TokenPayload = Depends(require_staff), db=Depends(get_db)):
    return await get_dashboard_stats(db)


@app.post(
    "/api/loans", response_model=LoanDetailModel, status_code=status.HTTP_201_CREATED
)
async def borrow_book(
    body: LoanCreate,
    current_user: TokenPayload = Depends(get_current_user),
    db=Depends(get_db),
):
    if current_user.role == Role.USER and body.user_id != current_user.user_id:
        raise PermissionDeniedError("You can only borrow books for yourself")
    return await create_loan(db, body.user_id, body.book_id, body.due_date)


@app.patch("/api/loans/{loan_id}/return", status_code=status.HTTP_204_NO_CONTENT)
async def return_book(
    loan_id: str, _: TokenPayload = Depends(require_staff), db=Depends(get_db)
):
    await return_loan(db, loan_id)
    return no_content()


@app.post("/api/loans/{loan_id}/remind", status_code=status.HTTP_204_NO_CONTENT)
async def remind_borrower(
    loan_id: str, _: TokenPayload = Depends(require_staff), db=Depends(get_db)
):
    await send_overdue_reminder(db, loan_id)
    return no_content()


# Notifications


@app.get("/api/notifications", response_model=List[NotificationModel])
async def list_notifications(
    current_user: TokenPayload = Depends(get_current_user), db=Depends(get_db)
):
    return await get_notifications(db, current_user.user_id)


@app.get("/api/notifications/unread-count", response_model=UnreadCount)
async def unread_notifications(
    current_user: TokenPayload = Depends(get_current_user), db=Depends(get_db)
):
    return {"count": await count_unread_notifications(db, current_user.user_id)}


@app.patch("/api/notifications/read-all", status_code=status.HTTP_204_NO_CONTENT)
async def read_all_notifications(
    current_user: TokenPayload = Depends(get_current_user), db=Depends(get_db)
):
    await mark_all_notifications_read(db, current_user.user_id)
    return no_content()


@app.patch("/api/notifications/{notification_id}/read", status_code=status.HTTP_204_NO_CONTENT)
async def read_notification(
    notification_id: str,
    current_user: TokenPayload = Depends(get_current_user),
    db=Depends(get_db),
):
    await mark_notification_read(db, current_user.user_id, notification_id)
    return no_content()


@app.delete("/api/notifications/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_notification(
    notification_id: str,
    current_user: TokenPayload = Depends(get_current_user),
    db=Depends(get_db),
):
    await delete_notification(db, current_user.user_id, notification_id)
    return no_content()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
