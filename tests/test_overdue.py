from datetime import datetime, timedelta

from library_api.models.models import BorrowRecord, BorrowStatus
from library_api.services import overdue

NOW = datetime(2024, 3, 15, 12, 0, 0)


def make_record(due, returned=None, status=BorrowStatus.BORROWED):
    return BorrowRecord(user_id=1, book_id=1, borrow_date=due - timedelta(days=14),
                        due_date=due, return_date=returned, status=status)


def test_not_overdue_before_due_date():
    record = make_record(NOW + timedelta(hours=1))
    assert overdue.is_overdue(record, NOW) is False
    assert overdue.days_overdue(record, NOW) == 0
    assert overdue.late_fee(record, 1.0, NOW) == 0


def test_returned_record_is_never_overdue():
    record = make_record(NOW - timedelta(days=5), returned=NOW - timedelta(days=1),
                         status=BorrowStatus.RETURNED)
    assert overdue.is_overdue(record, NOW) is False
    assert overdue.days_overdue(record, NOW) == 0


def test_partial_days_round_up():
    record = make_record(NOW - timedelta(days=2, hours=3))
    assert overdue.is_overdue(record, NOW) is True
    assert overdue.days_overdue(record, NOW) == 3


def test_late_fee_uses_daily_rate():
    record = make_record(NOW - timedelta(days=4))
    assert overdue.late_fee(record, 1.0, NOW) == 4.0
    assert overdue.late_fee(record, 0.25, NOW) == 1.0


def test_lateness_at_return_measures_the_return_instant():
    due = NOW - timedelta(days=10)
    record = make_record(due, returned=NOW, status=BorrowStatus.RETURNED)
    details = overdue.lateness_at_return(record, daily_rate=1.0)
    assert details["is_overdue"] is True
    assert details["days_late"] == 10
    assert details["late_fee"] == 10.0

    on_time = make_record(NOW, returned=NOW - timedelta(minutes=1), status=BorrowStatus.RETURNED)
    assert overdue.lateness_at_return(on_time)["days_late"] == 0


def test_sweep_marks_stale_records_once(db, make_user, make_book, open_loan):
    user = make_user()
    stale = open_loan(user, make_book(), due_in=timedelta(days=-1))
    current = open_loan(user, make_book(), due_in=timedelta(days=3))
    returned = open_loan(user, make_book(), due_in=timedelta(days=-2))
    returned.return_date = returned.due_date - timedelta(hours=1)
    returned.status = BorrowStatus.RETURNED
    db.commit()

    assert overdue.sweep_overdue(db) == 1
    assert overdue.sweep_overdue(db) == 0

    db.expire_all()
    assert db.get(BorrowRecord, stale.id).status == BorrowStatus.OVERDUE
    assert db.get(BorrowRecord, current.id).status == BorrowStatus.BORROWED
    assert db.get(BorrowRecord, returned.id).status == BorrowStatus.RETURNED


def test_sweep_does_not_touch_copy_counts(db, make_user, make_book, open_loan):
    book = make_book(total_copies=2)
    open_loan(make_user(), book, due_in=timedelta(days=-1))
    overdue.sweep_overdue(db)
    db.refresh(book)
    assert book.available_copies == 1
