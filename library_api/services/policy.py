"""Borrow policy: who may borrow, return or extend, checked before the ledger runs."""
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from library_api.core.config import settings
from library_api.core.errors import Conflict, Forbidden, InvalidState, NotFound, ValidationFailed
from library_api.models.models import Book, BorrowRecord, BorrowStatus, User, utcnow
from library_api.services import ledger, overdue
from library_api.services.access import can_act_on_own

logger = logging.getLogger(__name__)


def active_borrow_count(db: Session, user_id: int) -> int:
    return ledger.active_count_for_user(db, user_id)


def can_borrow(db: Session, user_id: int, max_active: Optional[int] = None) -> bool:
    limit = settings.max_active_borrows if max_active is None else max_active
    return active_borrow_count(db, user_id) < limit


def borrow(db: Session, user_id: int, book_id: int, due_days: Optional[int] = None,
           now: Optional[datetime] = None) -> Tuple[BorrowRecord, Book]:
    due_days = settings.default_due_days if due_days is None else due_days
    if due_days < 1:
        raise ValidationFailed("due_days must be at least 1")
    now = now or utcnow()

    user = db.get(User, user_id)
    if user is None or not user.is_active:
        raise NotFound("User not found")

    book = db.get(Book, book_id)
    if book is None:
        raise NotFound("Book not found")

    # Checked before availability so a repeat borrow of the last copy reports the duplicate
    existing = ledger.find_active_record(db, user_id, book_id)
    if existing is not None:
        raise Conflict("You have already borrowed this book",
                       existing_borrow={"id": existing.id,
                                        "borrowed_date": existing.borrow_date.isoformat(),
                                        "due_date": existing.due_date.isoformat()})

    if not book.is_available:
        raise Conflict("Book is not available for borrowing",
                       available_copies=book.available_copies, status=book.status.value)

    if not can_borrow(db, user_id):
        raise Conflict("Borrow limit exceeded",
                       active_borrows=active_borrow_count(db, user_id),
                       max_allowed=settings.max_active_borrows)

    return ledger.commit_borrow(db, book_id, user_id, now + timedelta(days=due_days), now=now,
                                max_active=settings.max_active_borrows)


def return_book(db: Session, user_id: int, book_id: int,
                now: Optional[datetime] = None) -> Tuple[BorrowRecord, Book, Dict]:
    book = db.get(Book, book_id)
    if book is None:
        raise NotFound("Book not found")
    record, book = ledger.commit_return(db, book_id, user_id, now=now)
    details = overdue.lateness_at_return(record)
    if details["is_overdue"]:
        logger.info(f"Record {record.id} returned {details['days_late']} day(s) late, "
                    f"fee {details['late_fee']:.2f}")
    return record, book, details


def extend(db: Session, record_id: int, actor: User, extension_days: Optional[int] = None
           ) -> Tuple[BorrowRecord, datetime, datetime]:
    """Push a record's due date back by ``extension_days`` from its current due date."""
    extension_days = settings.default_extension_days if extension_days is None else extension_days
    if extension_days < 1:
        raise ValidationFailed("extension_days must be at least 1")

    record = db.get(BorrowRecord, record_id)
    if record is None:
        raise NotFound("Borrow record not found")
    if not can_act_on_own(actor, record.user_id, "borrows", "extend"):
        raise Forbidden("Access denied. You can only extend your own borrow records")
    if record.return_date is not None or record.status == BorrowStatus.RETURNED:
        raise InvalidState("Cannot extend due date for returned book")

    previous_due = record.due_date
    new_due = previous_due + timedelta(days=extension_days)
    try:
        result = db.execute(
            update(BorrowRecord)
            .where(BorrowRecord.id == record_id,
                   BorrowRecord.return_date.is_(None),
                   BorrowRecord.due_date == previous_due)
            .values(due_date=new_due, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            raise Conflict("Borrow record changed while extending, please retry")
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning(f"Extension of record {record_id} rolled back: {exc}")
        raise Conflict("Extension could not be completed, please retry")

    db.refresh(record)
    logger.info(f"Record {record_id} due date extended by {extension_days} day(s) "
                f"by user {actor.id}")
    return record, previous_due, new_due
