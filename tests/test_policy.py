from datetime import timedelta

import pytest

from library_api.core.errors import Conflict, Forbidden, InvalidState, NotFound, ValidationFailed
from library_api.models.models import Book, Role
from library_api.services import ledger, policy


def test_can_borrow_until_limit(db, make_user, make_book, open_loan):
    user = make_user()
    for _ in range(2):
        open_loan(user, make_book())
    assert policy.active_borrow_count(db, user.id) == 2
    assert policy.can_borrow(db, user.id, max_active=3) is True
    assert policy.can_borrow(db, user.id, max_active=2) is False


def test_borrow_sets_due_date_from_due_days(db, make_user, make_book):
    user, book = make_user(), make_book(total_copies=2)
    record, updated = policy.borrow(db, user.id, book.id, due_days=10)
    assert record.due_date - record.borrow_date == timedelta(days=10)
    assert updated.available_copies == 1


def test_same_user_cannot_borrow_same_book_twice(db, make_user, make_book):
    user, book = make_user(), make_book(total_copies=1)
    _, updated = policy.borrow(db, user.id, book.id, due_days=14)
    assert updated.available_copies == 0
    assert updated.status.value == "Borrowed"

    with pytest.raises(Conflict, match="already borrowed"):
        policy.borrow(db, user.id, book.id)


def test_other_user_sees_book_unavailable(db, make_user, make_book):
    book = make_book(total_copies=1)
    policy.borrow(db, make_user().id, book.id)
    with pytest.raises(Conflict, match="not available"):
        policy.borrow(db, make_user().id, book.id)


def test_borrow_limit_exceeded(db, make_user, make_book, open_loan):
    user = make_user()
    for _ in range(5):
        open_loan(user, make_book())
    sixth = make_book(total_copies=3)

    with pytest.raises(Conflict, match="Borrow limit exceeded") as exc:
        policy.borrow(db, user.id, sixth.id)
    assert exc.value.extra["active_borrows"] == 5
    db.expire_all()
    assert db.get(Book, sixth.id).available_copies == 3


def test_borrow_unknown_book_or_user(db, make_user, make_book):
    with pytest.raises(NotFound, match="Book"):
        policy.borrow(db, make_user().id, 12345)
    with pytest.raises(NotFound, match="User"):
        policy.borrow(db, 12345, make_book().id)


def test_borrow_rejects_non_positive_due_days(db, make_user, make_book):
    with pytest.raises(ValidationFailed):
        policy.borrow(db, make_user().id, make_book().id, due_days=0)


def test_return_requires_active_record(db, make_user, make_book):
    book = make_book()
    with pytest.raises(NotFound, match="No active borrow record"):
        policy.return_book(db, make_user().id, book.id)
    with pytest.raises(NotFound, match="Book not found"):
        policy.return_book(db, make_user().id, 999)


def test_extensions_stack_from_current_due_date(db, make_user, make_book, open_loan):
    user = make_user()
    record = open_loan(user, make_book(), due_in=timedelta(days=2))
    original_due = record.due_date

    _, previous, new_due = policy.extend(db, record.id, user, extension_days=7)
    assert previous == original_due
    assert new_due == original_due + timedelta(days=7)

    _, previous, new_due = policy.extend(db, record.id, user, extension_days=7)
    assert previous == original_due + timedelta(days=7)
    assert new_due == original_due + timedelta(days=14)


def test_extend_permissions(db, make_user, make_book, open_loan):
    owner, stranger = make_user(), make_user()
    librarian = make_user(role=Role.LIBRARIAN)
    record = open_loan(owner, make_book())

    with pytest.raises(Forbidden):
        policy.extend(db, record.id, stranger)
    updated, _, _ = policy.extend(db, record.id, librarian, extension_days=3)
    assert updated.id == record.id


def test_extend_returned_record_is_invalid(db, make_user, make_book):
    user, book = make_user(), make_book()
    record, _ = policy.borrow(db, user.id, book.id)
    ledger.commit_return(db, book.id, user.id)

    with pytest.raises(InvalidState, match="returned"):
        policy.extend(db, record.id, user)
    with pytest.raises(NotFound):
        policy.extend(db, 999, user)
