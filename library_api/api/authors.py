import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import or_
from sqlalchemy.orm import Session

from library_api.api.deps import paginate, require_permission
from library_api.core.database import get_db
from library_api.core.errors import Conflict, NotFound, ValidationFailed, envelope
from library_api.models import models
from library_api.schemas import schemas

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/authors", tags=["authors"])


def _get_author(db: Session, author_id: int) -> models.Author:
    author = db.get(models.Author, author_id)
    if not author:
        raise NotFound("Author not found")
    return author


def _ensure_unique_email(db: Session, email: str, exclude_id: Optional[int] = None) -> None:
    query = db.query(models.Author).filter(models.Author.email == email)
    if exclude_id is not None:
        query = query.filter(models.Author.id != exclude_id)
    if query.first():
        raise Conflict("An author with this email already exists")


@router.post("", status_code=201)
def create_author(author_in: schemas.AuthorCreate, db: Session = Depends(get_db),
                  user: models.User = Depends(require_permission("authors", "create"))):
    _ensure_unique_email(db, author_in.email)
    author = models.Author(**author_in.model_dump())
    db.add(author)
    db.commit()
    db.refresh(author)
    logger.info(f"Created author id={author.id} name={author.full_name}")
    return envelope("Author profile created successfully", data=schemas.AuthorOut.model_validate(author))


@router.get("")
def list_authors(search: Optional[str] = None,
                 page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                 db: Session = Depends(get_db),
                 user: models.User = Depends(require_permission("authors", "read"))):
    query = db.query(models.Author)
    if search:
        like_q = f"%{search}%"
        query = query.filter(or_(models.Author.first_name.ilike(like_q),
                                 models.Author.last_name.ilike(like_q),
                                 models.Author.email.ilike(like_q)))
    authors, pagination = paginate(query.order_by(models.Author.last_name, models.Author.id), page, limit)
    return envelope("Authors retrieved successfully",
                    data=[schemas.AuthorOut.model_validate(a) for a in authors],
                    pagination=pagination)


@router.get("/{author_id}")
def read_author(author_id: int, include_books: bool = False, db: Session = Depends(get_db),
                user: models.User = Depends(require_permission("authors", "read"))):
    author = _get_author(db, author_id)
    data = schemas.AuthorOut.model_validate(author).model_dump(mode="json")
    if include_books:
        data["books"] = [schemas.BookSummary.model_validate(b).model_dump(mode="json") for b in author.books]
    return envelope("Author retrieved successfully", data=data)


@router.put("/{author_id}")
def update_author(author_id: int, author_upd: schemas.AuthorUpdate, db: Session = Depends(get_db),
                  user: models.User = Depends(require_permission("authors", "update"))):
    author = _get_author(db, author_id)
    data = author_upd.model_dump(exclude_unset=True, exclude_none=True)
    if not data:
        raise ValidationFailed("No valid fields to update")
    if "email" in data:
        _ensure_unique_email(db, data["email"], exclude_id=author.id)
    for k, v in data.items():
        setattr(author, k, v)
    db.commit()
    db.refresh(author)
    logger.info(f"Updated author id={author.id}")
    return envelope("Author updated successfully", data=schemas.AuthorOut.model_validate(author))


@router.delete("/{author_id}")
def delete_author(author_id: int, db: Session = Depends(get_db),
                  user: models.User = Depends(require_permission("authors", "delete"))):
    author = _get_author(db, author_id)
    book_count = db.query(models.Book).filter(models.Book.author_id == author.id).count()
    if book_count:
        raise Conflict(f"Cannot delete author. {book_count} book(s) still reference this author",
                       book_count=book_count)
    db.delete(author)
    db.commit()
    logger.info(f"Deleted author id={author_id}")
    return envelope("Author successfully deleted")
