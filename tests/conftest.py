import os

# Cheap hashing and an in-memory database before the app is imported
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ELIB_DB", "sqlite://")

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from library_api.api.deps import get_ttl_store
from library_api.core.database import Base, get_db, make_engine
from library_api.core.security import create_access_token, hash_password
from library_api.core.ttl_store import TTLStore
from library_api.main import app
from library_api.models.models import Author, Book, BorrowRecord, BorrowStatus, Role, User, utcnow

PASSWORD = "Secret123"


@pytest.fixture
def engine():
    engine = make_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def ttl_store():
    return TTLStore()


@pytest.fixture
def client(session_factory, ttl_store):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_ttl_store] = lambda: ttl_store
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def factory(role=Role.USER, is_active=True, password=PASSWORD):
        counter["n"] += 1
        n = counter["n"]
        user = User(first_name=f"First{n}", last_name=f"Last{n}", user_name=f"user{n}",
                    email=f"user{n}@example.com", password_hash=hash_password(password),
                    role=role, is_active=is_active)
        db.add(user)
        db.commit()
        db.refresh(user)
        return user
    return factory


@pytest.fixture
def author(db):
    author = Author(first_name="Ursula", last_name="Le Guin", email="ursula@example.com")
    db.add(author)
    db.commit()
    db.refresh(author)
    return author


@pytest.fixture
def make_book(db, author):
    counter = {"n": 0}

    def factory(total_copies=1, title=None):
        counter["n"] += 1
        n = counter["n"]
        book = Book(isbn=f"978-000000{n:04d}", title=title or f"Book {n}", author_id=author.id,
                    total_copies=total_copies, available_copies=total_copies)
        db.add(book)
        db.commit()
        db.refresh(book)
        return book
    return factory


@pytest.fixture
def open_loan(db):
    """Insert an active borrow record directly, keeping the book's counter consistent."""
    def factory(user, book, due_in=timedelta(days=14), borrowed_ago=timedelta(days=14),
                status=BorrowStatus.BORROWED):
        now = utcnow()
        record = BorrowRecord(user_id=user.id, book_id=book.id, borrow_date=now - borrowed_ago,
                              due_date=now + due_in, status=status)
        book.available_copies -= 1
        db.add(record)
        db.commit()
        db.refresh(record)
        return record
    return factory


@pytest.fixture
def headers_for():
    def build(user):
        return {"Authorization": f"Bearer {create_access_token(user.id, Role(user.role).value)}"}
    return build
