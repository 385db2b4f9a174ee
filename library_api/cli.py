"""Small maintenance utilities: create tables, seed sample data, run the overdue sweep."""
import argparse
import logging
import os

import uvicorn

from library_api.core.config import configure_logging
from library_api.core.database import Base, SessionLocal, engine
from library_api.core.security import hash_password
from library_api.models.models import Author, Book, Role, User
from library_api.services.overdue import sweep_overdue

logger = logging.getLogger("library_api.cli")

SEED_USERS = [
    ("Ada", "Admin", "admin", "admin@library.local", Role.ADMIN),
    ("Lena", "Librarian", "librarian", "librarian@library.local", Role.LIBRARIAN),
    ("Mo", "Member", "member", "member@library.local", Role.USER),
]


def seed(db, password: str) -> None:
    # quick idempotent seed
    if db.query(User).count() == 0:
        db.add_all([
            User(first_name=first, last_name=last, user_name=user_name, email=email,
                 password_hash=hash_password(password), role=role)
            for first, last, user_name, email, role in SEED_USERS
        ])
    if db.query(Book).count() == 0:
        author = Author(first_name="Martin", last_name="Kleppmann", email="martin@example.com")
        db.add(author)
        db.flush()
        db.add_all([
            Book(title='Designing Data-Intensive Applications', author_id=author.id,
                 isbn='978-1449373320', total_copies=2, available_copies=2),
            Book(title='Data Engineering with Python', author_id=author.id,
                 isbn='978-1839214189', total_copies=3, available_copies=3),
        ])
    db.commit()
    logger.info('Seeded sample data')


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description='Library management utilities')
    parser.add_argument('--initdb', action='store_true', help='Create tables')
    parser.add_argument('--seed', action='store_true', help='Seed sample users, an author and books')
    parser.add_argument('--sweep', action='store_true', help='Mark overdue borrow records')
    parser.add_argument('--serve', action='store_true', help='Run the API with uvicorn')
    parser.add_argument('--host', default=os.getenv('API_HOST', '127.0.0.1'))
    parser.add_argument('--port', type=int, default=int(os.getenv('API_PORT', '8000')))
    parser.add_argument('--seed-password', default=os.getenv('SEED_PASSWORD', 'ChangeMe123'),
                        help='Password given to seeded accounts')
    args = parser.parse_args(argv)
    configure_logging()
    if args.initdb or args.seed:
        Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        if args.seed:
            seed(db, args.seed_password)
        if args.sweep:
            print(f'Marked {sweep_overdue(db)} record(s) overdue')
    finally:
        db.close()
    if args.serve:
        uvicorn.run('library_api.main:app', host=args.host, port=args.port)
        return
    print('Done')


if __name__ == '__main__':
    main()
