import enum
from datetime import datetime, timezone

from sqlalchemy import (Column, Integer, String, Text, Date, DateTime, Boolean, ForeignKey, Index,
                        CheckConstraint, Enum, case)
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import relationship

from library_api.core.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Role(str, enum.Enum):
    ADMIN = "Admin"
    LIBRARIAN = "Librarian"
    USER = "User"


class BookStatus(str, enum.Enum):
    AVAILABLE = "Available"
    BORROWED = "Borrowed"


class BorrowStatus(str, enum.Enum):
    BORROWED = "Borrowed"
    RETURNED = "Returned"
    OVERDUE = "Overdue"


def _values(enum_cls):
    return [member.value for member in enum_cls]


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    user_name = Column(String(50), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(128), nullable=False)
    role = Column(Enum(Role, native_enum=False, values_callable=_values, length=20),
                  nullable=False, default=Role.USER)
    is_active = Column(Boolean, nullable=False, default=True)
    last_login = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    borrow_records = relationship("BorrowRecord", back_populates="user")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class Author(Base):
    __tablename__ = "authors"
    id = Column(Integer, primary_key=True, index=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    image = Column(String(500), nullable=True)
    date_of_birth = Column(Date, nullable=True)
    biography = Column(Text, nullable=True)
    phone = Column(String(30), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    books = relationship("Book", back_populates="author")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class Book(Base):
    __tablename__ = "books"
    __table_args__ = (
        CheckConstraint("total_copies >= 0", name="ck_books_total_non_negative"),
        CheckConstraint("available_copies >= 0", name="ck_books_available_non_negative"),
        CheckConstraint("available_copies <= total_copies", name="ck_books_available_le_total"),
    )
    id = Column(Integer, primary_key=True, index=True)
    isbn = Column(String(20), unique=True, nullable=False, index=True)
    title = Column(String(255), nullable=False, index=True)
    author_id = Column(Integer, ForeignKey("authors.id"), nullable=False, index=True)
    description = Column(Text, nullable=True)
    cover_image = Column(String(500), nullable=True)
    genre = Column(String(100), nullable=True, index=True)
    language = Column(String(50), nullable=True)
    pages = Column(Integer, nullable=True)
    publisher = Column(String(255), nullable=True)
    published_date = Column(Date, nullable=True)
    # Written only by services.ledger
    total_copies = Column(Integer, nullable=False, default=1)
    available_copies = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    author = relationship("Author", back_populates="books")
    borrow_records = relationship("BorrowRecord", back_populates="book")

    @hybrid_property
    def status(self):
        return BookStatus.AVAILABLE if self.available_copies > 0 else BookStatus.BORROWED

    @status.expression
    def status(cls):
        return case((cls.available_copies > 0, BookStatus.AVAILABLE.value),
                    else_=BookStatus.BORROWED.value)

    @property
    def is_available(self) -> bool:
        return self.available_copies > 0

    @property
    def author_name(self):
        return self.author.full_name if self.author else None


Index('ix_books_title_author', Book.title, Book.author_id)


class BorrowRecord(Base):
    __tablename__ = "borrow_records"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    borrow_date = Column(DateTime, nullable=False, default=utcnow)
    due_date = Column(DateTime, nullable=False, index=True)
    # Written only by services.ledger; immutable once set
    return_date = Column(DateTime, nullable=True)
    status = Column(Enum(BorrowStatus, native_enum=False, values_callable=_values, length=20),
                    nullable=False, default=BorrowStatus.BORROWED, index=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    user = relationship("User", back_populates="borrow_records")
    book = relationship("Book", back_populates="borrow_records")

    @property
    def is_active(self) -> bool:
        return self.return_date is None

    @property
    def book_title(self):
        return self.book.title if self.book else None

    @property
    def book_isbn(self):
        return self.book.isbn if self.book else None

    @property
    def user_name(self):
        return self.user.user_name if self.user else None


# At most one open loan per (user, book)
Index(
    'uq_borrow_records_active_loan',
    BorrowRecord.user_id,
    BorrowRecord.book_id,
    unique=True,
    sqlite_where=BorrowRecord.return_date.is_(None),
    postgresql_where=BorrowRecord.return_date.is_(None),
)
