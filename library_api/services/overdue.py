"""Lateness derivation for borrow records and the overdue sweep.

Everything here except ``sweep_overdue`` is a pure function of a record
and an instant. The sweep only reclassifies ``Borrowed`` records whose due
date has passed; it never touches copy counters, and the live
``is_overdue`` check stays authoritative for any single record.
"""
import logging
import math
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from library_api.core.config import settings
from library_api.models.models import BorrowRecord, BorrowStatus, utcnow

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


def is_overdue(record: BorrowRecord, now: Optional[datetime] = None) -> bool:
    if record.return_date is not None:
        return False
    now = now or utcnow()
    return now > record.due_date


def days_overdue(record: BorrowRecord, now: Optional[datetime] = None) -> int:
    """Whole days past the due date, partial days rounded up."""
    now = now or utcnow()
    if not is_overdue(record, now):
        return 0
    return math.ceil((now - record.due_date).total_seconds() / SECONDS_PER_DAY)


def late_fee(record: BorrowRecord, daily_rate: Optional[float] = None,
             now: Optional[datetime] = None) -> float:
    rate = settings.late_fee_daily_rate if daily_rate is None else daily_rate
    return round(days_overdue(record, now) * rate, 2)


def _days_late_at(due_date: datetime, returned_at: datetime) -> int:
    if returned_at <= due_date:
        return 0
    return math.ceil((returned_at - due_date).total_seconds() / SECONDS_PER_DAY)


def lateness_at_return(record: BorrowRecord, daily_rate: Optional[float] = None) -> Dict:
    """Lateness of a returned record, measured at its own return instant."""
    rate = settings.late_fee_daily_rate if daily_rate is None else daily_rate
    days_late = _days_late_at(record.due_date, record.return_date)
    return {
        "borrowed_date": record.borrow_date,
        "due_date": record.due_date,
        "returned_date": record.return_date,
        "is_overdue": days_late > 0,
        "days_late": days_late,
        "late_fee": round(days_late * rate, 2),
    }


def sweep_overdue(db: Session, now: Optional[datetime] = None) -> int:
    """Mark every unreturned ``Borrowed`` record past its due date as ``Overdue``.

    Returns the number of records transitioned. Failures are logged and
    reported as zero so read endpoints calling this are never blocked.
    """
    now = now or utcnow()
    stmt = (
        update(BorrowRecord)
        .where(BorrowRecord.return_date.is_(None),
               BorrowRecord.status == BorrowStatus.BORROWED,
               BorrowRecord.due_date < now)
        .values(status=BorrowStatus.OVERDUE, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    try:
        result = db.execute(stmt)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Overdue sweep failed")
        return 0
    updated = result.rowcount or 0
    if updated:
        logger.info(f"Overdue sweep marked {updated} record(s) as overdue")
    return updated
