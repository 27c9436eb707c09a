from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class Role(str, Enum):
    USER = "USER"
    STAFF = "STAFF"
    ADMIN = "ADMIN"


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    BLOCKED = "BLOCKED"


class CopyStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    BORROWED = "BORROWED"
    MAINTENANCE = "MAINTENANCE"


class LoanStatus(str, Enum):
    BORROWED = "BORROWED"
    OVERDUE = "OVERDUE"
    RETURNED = "RETURNED"


class NotificationType(str, Enum):
    LOAN_CREATED = "LOAN_CREATED"
    OVERDUE_REMINDER = "OVERDUE_REMINDER"
    PASSWORD_RESET_REQUEST = "PASSWORD_RESET_REQUEST"


class CamelModel(BaseModel):
    class Config:
        populate_by_name = True
        alias_generator = to_camel


class DocumentModel(CamelModel):
    id: str = Field(alias="_id")


class UserModel(DocumentModel):
    name: str
    email: str
    student_id: Optional[str] = None
    role: Role
    status: UserStatus = UserStatus.ACTIVE
    needs_password_reset: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class BookModel(DocumentModel):
    title: str
    author: str
    isbn: str = Field(alias="ISBN")
    description: Optional[str] = None
    category: str
    publication_year: Optional[int] = None
    shelf_location: Optional[str] = None
    is_active: bool = True
    image_url: Optional[str] = None
    available_copies: Optional[int] = None
    total_copies: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class CopyModel(DocumentModel):
    book_id: str
    copy_code: str
    status: CopyStatus
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class LoanModel(DocumentModel):
    user_id: str
    book_id: str
    copy_id: str
    borrow_date: str
    due_date: str
    return_date: Optional[str] = None
    status: LoanStatus
    reminder_sent: bool = False
    reminder_count: int = 0
    last_reminder_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class LoanDetailModel(LoanModel):
    book: BookModel
    book_copy: CopyModel = Field(alias="copy")
    user: UserModel


class NotificationModel(DocumentModel):
    user_id: str
    type: NotificationType
    title: str
    message: str
    is_read: bool = False
    created_at: str
    loan_id: Optional[str] = None
    book_id: Optional[str] = None
    book_title: Optional[str] = None
    book_author: Optional[str] = None
    due_date: Optional[str] = None


class DashboardStats(CamelModel):
    active_books: int
    total_users: int
    active_loans: int
    overdue_loans: int
    recent_loans: List[LoanDetailModel] = []
