from datetime import datetime
from typing import Optional

from pydantic import Field, field_validator

from .models import CamelModel, CopyStatus, UserModel


class RegisterRequest(CamelModel):
    name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    password: str = Field(min_length=6)
    student_id: Optional[str] = None


class LoginRequest(CamelModel):
    email: str
    password: str


class TokenResponse(CamelModel):
    token: str
    user: UserModel


class StaffCreate(CamelModel):
    name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    password: str = Field(min_length=6)


class PasswordResetRequest(CamelModel):
    email: str


class PasswordReset(CamelModel):
    new_password: str = Field(min_length=6)


class PasswordChange(CamelModel):
    current_password: str = Field(min_length=1)
    new_password: str = Field(min_length=6)


class BookCreate(CamelModel):
    title: str = Field(min_length=1)
    author: str = Field(min_length=1)
    isbn: str = Field(alias="ISBN", min_length=1)
    category: str = Field(min_length=1)
    description: Optional[str] = None
    publication_year: Optional[int] = None
    shelf_location: Optional[str] = None
    image_url: Optional[str] = None
    is_active: bool = True


class BookUpdate(CamelModel):
    title: Optional[str] = Field(default=None, min_length=1)
    author: Optional[str] = Field(default=None, min_length=1)
    isbn: Optional[str] = Field(default=None, alias="ISBN", min_length=1)
    category: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    publication_year: Optional[int] = None
    shelf_location: Optional[str] = None
    image_url: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator("title", "author", "isbn", "category", "is_active", mode="before")
    @classmethod
    def required_fields_are_not_null(cls, value):
        if value is None:
            raise ValueError("may be omitted but not set to null")
        return value


class CopyCreate(CamelModel):
    copy_code: str = Field(min_length=1)


class CopyStatusUpdate(CamelModel):
    status: CopyStatus


class LoanCreate(CamelModel):
    user_id: str = Field(min_length=1)
    book_id: str = Field(min_length=1)
    due_date: datetime


class UnreadCount(CamelModel):
    count: int
