"""Availability ledger: the only writer of book copy counters and return dates.

Each entry point runs one transaction that moves a borrow record and its
book's ``available_copies`` together. Availability is re-checked inside
the UPDATE itself, so of several concurrent borrows of the last copy only
one can match the row; the others see zero affected rows and fail with
``Conflict`` after rolling back.
"""
import logging
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from library_api.core.errors import Conflict, NotFound, ValidationFailed
from library_api.models.models import Book, BorrowRecord, BorrowStatus, User, utcnow

logger = logging.getLogger(__name__)


def active_count_for_book(db: Session, book_id: int) -> int:
    return (db.query(func.count(BorrowRecord.id))
            .filter(BorrowRecord.book_id == book_id, BorrowRecord.return_date.is_(None))
            .scalar())


def find_active_record(db: Session, user_id: int, book_id: int) -> Optional[BorrowRecord]:
    return (db.query(BorrowRecord)
            .filter(BorrowRecord.user_id == user_id,
                    BorrowRecord.book_id == book_id,
                    BorrowRecord.return_date.is_(None))
            .first())


def active_count_for_user(db: Session, user_id: int) -> int:
    return (db.query(func.count(BorrowRecord.id))
            .filter(BorrowRecord.user_id == user_id, BorrowRecord.return_date.is_(None))
            .scalar())


def commit_borrow(db: Session, book_id: int, user_id: int, due_date: datetime,
                  now: Optional[datetime] = None,
                  max_active: Optional[int] = None) -> Tuple[BorrowRecord, Book]:
    """Take one copy of ``book_id`` and open a borrow record for ``user_id``.

    With ``max_active`` the user's open loans are recounted inside the
    transaction, after the insert, so parallel borrows of different books
    by one user cannot overshoot the limit.
    """
    now = now or utcnow()
    try:
        if max_active is not None:
            # serializes one user's borrows where the database has row locks
            db.query(User).filter(User.id == user_id).with_for_update().first()
        taken = db.execute(
            update(Book)
            .where(Book.id == book_id, Book.available_copies > 0)
            .values(available_copies=Book.available_copies - 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if taken.rowcount != 1:
            db.rollback()
            if db.get(Book, book_id) is None:
                raise NotFound("Book not found")
            raise Conflict("Book is not available for borrowing", available_copies=0)

        record = BorrowRecord(user_id=user_id, book_id=book_id, borrow_date=now,
                              due_date=due_date, status=BorrowStatus.BORROWED)
        db.add(record)
        db.flush()
        if max_active is not None:
            active = active_count_for_user(db, user_id)
            if active > max_active:
                db.rollback()
                raise Conflict("Borrow limit exceeded", active_borrows=active - 1,
                               max_allowed=max_active)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict("You have already borrowed this book")
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning(f"Borrow of book {book_id} by user {user_id} rolled back: {exc}")
        raise Conflict("Borrow could not be completed, please retry")

    db.refresh(record)
    book = db.get(Book, book_id)
    db.refresh(book)
    logger.info(f"User {user_id} borrowed book {book_id} record {record.id} "
                f"(available_copies={book.available_copies})")
    return record, book


def commit_return(db: Session, book_id: int, user_id: int,
                  now: Optional[datetime] = None) -> Tuple[BorrowRecord, Book]:
    now = now or utcnow()
    record = find_active_record(db, user_id, book_id)
    if record is None:
        raise NotFound("No active borrow record found for this book")
    record_id = record.id

    try:
        closed = db.execute(
            update(BorrowRecord)
            .where(BorrowRecord.id == record_id, BorrowRecord.return_date.is_(None))
            .values(return_date=now, status=BorrowStatus.RETURNED, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if closed.rowcount != 1:
            db.rollback()
            raise Conflict("This borrow record has already been returned")

        restored = db.execute(
            update(Book)
            .where(Book.id == book_id, Book.available_copies < Book.total_copies)
            .values(available_copies=Book.available_copies + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if restored.rowcount != 1:
            db.rollback()
            logger.error(f"Copy counter for book {book_id} already at total; return of record {record_id} aborted")
            raise Conflict("Book copy counts are inconsistent; return aborted")
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning(f"Return of book {book_id} by user {user_id} rolled back: {exc}")
        raise Conflict("Return could not be completed, please retry")

    record = db.get(BorrowRecord, record_id)
    db.refresh(record)
    book = db.get(Book, book_id)
    db.refresh(book)
    logger.info(f"User {user_id} returned book {book_id} record {record_id}")
    return record, book


def adjust_total_copies(db: Session, book: Book, new_total: int) -> Book:
    """Change a book's total copies, recomputing availability from open loans.

    Must be called inside the caller's transaction; the caller commits.
    """
    if new_total < 0:
        raise ValidationFailed("total_copies must be >= 0")
    active = active_count_for_book(db, book.id)
    if new_total < active:
        raise Conflict(f"Cannot set total_copies below the number of copies currently borrowed ({active})",
                       active_borrows=active)
    book.total_copies = new_total
    book.available_copies = new_total - active
    return book
