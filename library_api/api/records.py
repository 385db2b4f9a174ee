import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import case, func
from sqlalchemy.orm import Session

from library_api.api.deps import get_current_user, paginate, require_permission
from library_api.core.database import get_db
from library_api.core.errors import envelope
from library_api.models import models
from library_api.models.models import BorrowRecord, utcnow
from library_api.schemas import schemas
from library_api.services import overdue, policy

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/borrow-records", tags=["borrow-records"])

staff_reports = require_permission("reports", "read")


def _borrow_days(db: Session, now):
    """SQL expression for a loan's length in days, open loans measured up to ``now``."""
    end = func.coalesce(BorrowRecord.return_date, now)
    if db.get_bind().dialect.name == "sqlite":
        return func.julianday(end) - func.julianday(BorrowRecord.borrow_date)
    return func.extract("epoch", end - BorrowRecord.borrow_date) / overdue.SECONDS_PER_DAY


@router.get("/statistics")
def borrowing_statistics(db: Session = Depends(get_db), user: models.User = Depends(staff_reports)):
    now = utcnow()
    active = BorrowRecord.return_date.is_(None)
    counts = db.query(
        func.count(BorrowRecord.id),
        func.count(case((active, 1))),
        func.count(case((BorrowRecord.return_date.isnot(None), 1))),
        func.count(case((active & (BorrowRecord.due_date < now), 1))),
        func.avg(_borrow_days(db, now)),
    ).one()
    avg_days = round(float(counts[4]), 2) if counts[4] is not None else 0.0
    return envelope("Borrowing statistics retrieved successfully", data={
        "total_borrows": counts[0],
        "active_borrows": counts[1],
        "returned_borrows": counts[2],
        "overdue_borrows": counts[3],
        "avg_borrow_days": avg_days,
        "generated_at": now,
    })


@router.get("/overdue")
def overdue_records(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                    db: Session = Depends(get_db),
                    user: models.User = Depends(staff_reports)):
    updated = overdue.sweep_overdue(db)
    now = utcnow()
    query = (db.query(BorrowRecord)
             .filter(BorrowRecord.return_date.is_(None), BorrowRecord.due_date < now)
             .order_by(BorrowRecord.due_date.asc()))
    records, pagination = paginate(query, page, limit)
    return envelope("Overdue records retrieved successfully",
                    data=[schemas.BorrowRecordOut.from_record(r, now) for r in records],
                    pagination=pagination,
                    summary={"total_overdue_books": pagination["total_items"],
                             "updated_records": updated})


@router.get("")
def list_borrow_records(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                        user_id: Optional[int] = None, book_id: Optional[int] = None,
                        status: Optional[models.BorrowStatus] = None,
                        overdue_only: bool = False,
                        db: Session = Depends(get_db),
                        user: models.User = Depends(staff_reports)):
    overdue.sweep_overdue(db)
    now = utcnow()
    query = db.query(BorrowRecord)
    if user_id:
        query = query.filter(BorrowRecord.user_id == user_id)
    if book_id:
        query = query.filter(BorrowRecord.book_id == book_id)
    if status:
        query = query.filter(BorrowRecord.status == status)
    if overdue_only:
        query = query.filter(BorrowRecord.return_date.is_(None), BorrowRecord.due_date < now)
    records, pagination = paginate(query.order_by(BorrowRecord.borrow_date.desc(), BorrowRecord.id.desc()),
                                   page, limit)
    return envelope("Borrow records retrieved successfully",
                    data=[schemas.BorrowRecordOut.from_record(r, now) for r in records],
                    pagination=pagination,
                    filters={"user_id": user_id, "book_id": book_id,
                             "status": status.value if status else None,
                             "overdue_only": overdue_only})


@router.post("/{record_id}/extend")
def extend_due_date(record_id: int, payload: Optional[schemas.ExtendIn] = None,
                    db: Session = Depends(get_db),
                    user: models.User = Depends(get_current_user)):
    extension_days = payload.extension_days if payload else None
    record, previous_due, new_due = policy.extend(db, record_id, user, extension_days=extension_days)
    return envelope("Due date extended successfully", data={
        "borrow_record": schemas.BorrowRecordOut.from_record(record),
        "extension": {
            "previous_due_date": previous_due,
            "new_due_date": new_due,
            "extension_days": (new_due - previous_due).days,
        },
    })
