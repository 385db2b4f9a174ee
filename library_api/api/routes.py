import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import or_
from sqlalchemy.orm import Session

from library_api.api.deps import get_current_user, paginate, require_permission
from library_api.core.database import get_db
from library_api.core.errors import Conflict, NotFound, ValidationFailed, envelope
from library_api.models import models
from library_api.schemas import schemas
from library_api.services import ledger, policy

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/books", tags=["books"])


def _get_book(db: Session, book_id: int) -> models.Book:
    book = db.get(models.Book, book_id)
    if not book:
        raise NotFound("Book not found")
    return book


@router.post("", status_code=201)
def create_book(book_in: schemas.BookCreate, db: Session = Depends(get_db),
                user: models.User = Depends(require_permission("books", "create"))):
    if db.query(models.Book).filter(models.Book.isbn == book_in.isbn).first():
        raise Conflict("A book with this ISBN already exists")
    if not db.get(models.Author, book_in.author_id):
        raise NotFound("Author not found")
    book = models.Book(**book_in.model_dump(exclude={"total_copies"}),
                       total_copies=book_in.total_copies,
                       available_copies=book_in.total_copies)
    db.add(book)
    db.commit()
    db.refresh(book)
    logger.info(f"Created book id={book.id} title={book.title} by user {user.id}")
    return envelope("Book created successfully", data=schemas.BookOut.model_validate(book))


@router.get("")
def list_books(search: Optional[str] = Query(None, description="search title, isbn or author"),
               author_id: Optional[int] = None,
               genre: Optional[str] = None,
               status: Optional[models.BookStatus] = None,
               page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
               db: Session = Depends(get_db),
               user: models.User = Depends(require_permission("books", "read"))):
    query = db.query(models.Book).outerjoin(models.Author)
    if search:
        like_q = f"%{search}%"
        query = query.filter(or_(models.Book.title.ilike(like_q),
                                 models.Book.isbn.ilike(like_q),
                                 models.Author.first_name.ilike(like_q),
                                 models.Author.last_name.ilike(like_q)))
    if author_id:
        query = query.filter(models.Book.author_id == author_id)
    if genre:
        query = query.filter(models.Book.genre == genre)
    if status:
        query = query.filter(models.Book.status == status.value)
    books, pagination = paginate(query.order_by(models.Book.created_at.desc(), models.Book.id.desc()),
                                 page, limit)
    return envelope("Books retrieved successfully",
                    data=[schemas.BookOut.model_validate(b) for b in books],
                    pagination=pagination,
                    filters={"search": search, "author_id": author_id, "genre": genre,
                             "status": status.value if status else None})


@router.get("/{book_id}")
def read_book(book_id: int, include_author: bool = False, include_borrows: bool = False,
              db: Session = Depends(get_db),
              user: models.User = Depends(require_permission("books", "read"))):
    book = _get_book(db, book_id)
    data = schemas.BookOut.model_validate(book).model_dump(mode="json")
    if include_author and book.author:
        data["author_details"] = schemas.AuthorOut.model_validate(book.author).model_dump(mode="json")
    if include_borrows:
        records = sorted(book.borrow_records, key=lambda r: r.borrow_date, reverse=True)
        data["borrow_records"] = [schemas.BorrowRecordOut.from_record(r).model_dump(mode="json")
                                  for r in records]
        data["total_borrows"] = len(records)
    return envelope("Book retrieved successfully", data=data)


@router.put("/{book_id}")
def update_book(book_id: int, book_upd: schemas.BookUpdate, db: Session = Depends(get_db),
                user: models.User = Depends(require_permission("books", "update"))):
    book = _get_book(db, book_id)
    data = book_upd.model_dump(exclude_unset=True, exclude_none=True)
    if not data:
        raise ValidationFailed("No valid fields to update")
    if 'isbn' in data and data['isbn'] != book.isbn:
        if db.query(models.Book).filter(models.Book.isbn == data['isbn']).first():
            raise Conflict("ISBN is already taken by another book")
    if 'author_id' in data and not db.get(models.Author, data['author_id']):
        raise NotFound("Author not found")
    # Copy counters only change through the ledger
    if 'total_copies' in data:
        ledger.adjust_total_copies(db, book, data.pop('total_copies'))
    for k, v in data.items():
        setattr(book, k, v)
    db.commit()
    db.refresh(book)
    logger.info(f"Updated book id={book.id} by user {user.id}")
    return envelope("Book updated successfully", data=schemas.BookOut.model_validate(book))


@router.delete("/{book_id}")
def delete_book(book_id: int, db: Session = Depends(get_db),
                user: models.User = Depends(require_permission("books", "delete"))):
    book = _get_book(db, book_id)
    # prevent deletion when active loans exist
    active = ledger.active_count_for_book(db, book.id)
    if active > 0:
        raise Conflict(f"Cannot delete book. Book has {active} active borrow(s)", active_borrows=active)
    db.query(models.BorrowRecord).filter(models.BorrowRecord.book_id == book.id).delete(
        synchronize_session=False)
    db.delete(book)
    db.commit()
    logger.info(f"Deleted book id={book_id} by user {user.id}")
    return envelope("Book successfully deleted")


@router.post("/{book_id}/borrow", status_code=201)
def borrow_book(book_id: int, payload: Optional[schemas.BorrowIn] = None,
                db: Session = Depends(get_db),
                user: models.User = Depends(require_permission("borrows", "create"))):
    due_days = payload.due_days if payload else None
    record, book = policy.borrow(db, user.id, book_id, due_days=due_days)
    days_allowed = (record.due_date - record.borrow_date).days
    return envelope("Book borrowed successfully", data={
        "borrow_record": schemas.BorrowRecordOut.from_record(record),
        "book": schemas.BookSummary.model_validate(book),
        "due_date": record.due_date,
        "days_allowed": days_allowed,
    })


@router.post("/{book_id}/return")
def return_book(book_id: int, db: Session = Depends(get_db),
                user: models.User = Depends(get_current_user)):
    record, book, details = policy.return_book(db, user.id, book_id)
    if details["is_overdue"]:
        message = (f"Book returned successfully. Late fee: {details['late_fee']:.2f} "
                   f"({details['days_late']} day(s) late)")
    else:
        message = "Book returned successfully"
    return envelope(message, data={
        "borrow_record": schemas.BorrowRecordOut.from_record(record),
        "book": schemas.BookSummary.model_validate(book),
        "return_details": details,
    })
