from pydantic import BaseModel, ConfigDict, Field, constr, field_validator
from datetime import date, datetime
from typing import Optional

from library_api.models.models import BookStatus, BorrowStatus, Role
from library_api.services import overdue

EMAIL_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# Authors

class AuthorBase(BaseModel):
    first_name: constr(strip_whitespace=True, min_length=1, max_length=100)
    last_name: constr(strip_whitespace=True, min_length=1, max_length=100)
    email: constr(strip_whitespace=True, pattern=EMAIL_PATTERN)
    image: Optional[str] = None
    date_of_birth: Optional[date] = None
    biography: Optional[str] = None
    phone: Optional[str] = None


class AuthorCreate(AuthorBase):
    pass


class AuthorUpdate(BaseModel):
    first_name: Optional[constr(strip_whitespace=True, min_length=1, max_length=100)] = None
    last_name: Optional[constr(strip_whitespace=True, min_length=1, max_length=100)] = None
    email: Optional[constr(strip_whitespace=True, pattern=EMAIL_PATTERN)] = None
    image: Optional[str] = None
    date_of_birth: Optional[date] = None
    biography: Optional[str] = None
    phone: Optional[str] = None


class AuthorOut(ORMModel, AuthorBase):
    id: int
    full_name: str
    created_at: datetime
    updated_at: Optional[datetime] = None


# Books

class BookBase(BaseModel):
    isbn: constr(strip_whitespace=True, min_length=1, max_length=20)
    title: constr(strip_whitespace=True, min_length=1, max_length=255)
    author_id: int
    description: Optional[str] = None
    cover_image: Optional[str] = None
    genre: Optional[str] = None
    language: Optional[str] = None
    pages: Optional[int] = Field(default=None, ge=1)
    publisher: Optional[str] = None
    published_date: Optional[date] = None


class BookCreate(BookBase):
    total_copies: int = Field(default=1, ge=0)

    @field_validator('total_copies')
    @classmethod
    def ensure_non_negative_copies(cls, v):
        if v < 0:
            raise ValueError('total_copies must be >= 0')
        return v


class BookUpdate(BaseModel):
    isbn: Optional[constr(strip_whitespace=True, min_length=1, max_length=20)] = None
    title: Optional[constr(strip_whitespace=True, min_length=1, max_length=255)] = None
    author_id: Optional[int] = None
    description: Optional[str] = None
    cover_image: Optional[str] = None
    genre: Optional[str] = None
    language: Optional[str] = None
    pages: Optional[int] = Field(default=None, ge=1)
    publisher: Optional[str] = None
    published_date: Optional[date] = None
    total_copies: Optional[int] = Field(default=None, ge=0)


class BookOut(ORMModel, BookBase):
    id: int
    author_name: Optional[str] = None
    total_copies: int
    available_copies: int
    status: BookStatus
    is_available: bool
    created_at: datetime
    updated_at: Optional[datetime] = None


class BookSummary(ORMModel):
    id: int
    title: str
    isbn: str
    available_copies: int
    status: BookStatus


# Users

class UserBase(BaseModel):
    first_name: constr(strip_whitespace=True, min_length=1, max_length=100)
    last_name: constr(strip_whitespace=True, min_length=1, max_length=100)
    user_name: constr(strip_whitespace=True, min_length=3, max_length=50)
    email: constr(strip_whitespace=True, pattern=EMAIL_PATTERN)


class RegisterIn(UserBase):
    # bcrypt only looks at the first 72 bytes
    password: constr(min_length=6, max_length=72)


class UserCreate(RegisterIn):
    role: Role = Role.USER
    is_active: bool = True


class UserUpdate(BaseModel):
    first_name: Optional[constr(strip_whitespace=True, min_length=1, max_length=100)] = None
    last_name: Optional[constr(strip_whitespace=True, min_length=1, max_length=100)] = None
    user_name: Optional[constr(strip_whitespace=True, min_length=3, max_length=50)] = None
    email: Optional[constr(strip_whitespace=True, pattern=EMAIL_PATTERN)] = None
    password: Optional[constr(min_length=6, max_length=72)] = None
    role: Optional[Role] = None
    is_active: Optional[bool] = None


class UserOut(ORMModel, UserBase):
    id: int
    full_name: str
    role: Role
    is_active: bool
    last_login: Optional[datetime] = None
    created_at: datetime


class LoginIn(BaseModel):
    identifier: constr(strip_whitespace=True, min_length=1) = Field(
        description="email or user name")
    password: constr(min_length=1, max_length=72)


# Borrowing

class BorrowIn(BaseModel):
    due_days: Optional[int] = Field(default=None, ge=1, le=365)


class ExtendIn(BaseModel):
    extension_days: Optional[int] = Field(default=None, ge=1, le=365)


class BorrowRecordOut(ORMModel):
    id: int
    user_id: int
    book_id: int
    borrow_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    status: BorrowStatus
    is_active: bool
    is_overdue: bool = False
    days_overdue: int = 0
    late_fee: float = 0.0
    book_title: Optional[str] = None
    book_isbn: Optional[str] = None
    user_name: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record, now: Optional[datetime] = None) -> "BorrowRecordOut":
        """Serialize a record with its lateness computed live against ``now``."""
        out = cls.model_validate(record)
        out.is_overdue = overdue.is_overdue(record, now)
        out.days_overdue = overdue.days_overdue(record, now)
        out.late_fee = overdue.late_fee(record, now=now)
        return out
