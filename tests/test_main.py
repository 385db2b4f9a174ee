from datetime import timedelta

from library_api.models.models import Book, Role


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_register_create_book_and_borrow_return(client, make_user, headers_for):
    # Register a member
    member = {"first_name": "Test", "last_name": "User", "user_name": "tester",
              "email": "test@example.com", "password": "Secret123"}
    r = client.post("/api/auth/register", json=member)
    assert r.status_code == 201
    member_headers = {"Authorization": f"Bearer {r.json()['data']['token']}"}

    # Librarian creates author and book
    staff = headers_for(make_user(role=Role.LIBRARIAN))
    r = client.post("/api/authors", headers=staff,
                    json={"first_name": "Octavia", "last_name": "Butler", "email": "ob@example.com"})
    assert r.status_code == 201
    author_id = r.json()["data"]["id"]
    r = client.post("/api/books", headers=staff,
                    json={"title": "Kindred", "isbn": "12345", "author_id": author_id, "total_copies": 1})
    assert r.status_code == 201
    book_id = r.json()["data"]["id"]

    # Borrow book
    r = client.post(f"/api/books/{book_id}/borrow", headers=member_headers, json={"due_days": 7})
    assert r.status_code == 201
    body = r.json()
    assert body["success"] is True
    assert body["data"]["borrow_record"]["is_active"] is True
    assert body["data"]["days_allowed"] == 7
    assert body["data"]["book"]["available_copies"] == 0

    # Return book
    r = client.post(f"/api/books/{book_id}/return", headers=member_headers)
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["borrow_record"]["is_active"] is False
    assert data["borrow_record"]["status"] == "Returned"
    assert data["book"]["available_copies"] == 1
    assert data["return_details"] == {**data["return_details"], "is_overdue": False,
                                      "days_late": 0, "late_fee": 0.0}


def test_borrow_without_body_uses_default_due_days(client, make_user, make_book, headers_for):
    book = make_book(total_copies=2)
    r = client.post(f"/api/books/{book.id}/borrow", headers=headers_for(make_user()))
    assert r.status_code == 201
    assert r.json()["data"]["days_allowed"] == 14


def test_repeat_borrow_of_single_copy_reports_already_borrowed(client, db, make_user, make_book,
                                                               headers_for):
    book = make_book(total_copies=1)
    headers = headers_for(make_user())

    r = client.post(f"/api/books/{book.id}/borrow", headers=headers, json={"due_days": 14})
    assert r.status_code == 201
    assert r.json()["data"]["book"]["status"] == "Borrowed"

    r = client.post(f"/api/books/{book.id}/borrow", headers=headers, json={"due_days": 14})
    assert r.status_code == 409
    assert r.json()["success"] is False
    assert "already borrowed" in r.json()["message"]
    db.expire_all()
    assert db.get(Book, book.id).available_copies == 0


def test_sixth_borrow_exceeds_limit(client, make_user, make_book, open_loan, headers_for):
    user = make_user()
    for _ in range(5):
        open_loan(user, make_book())
    r = client.post(f"/api/books/{make_book().id}/borrow", headers=headers_for(user))
    assert r.status_code == 409
    assert r.json()["message"] == "Borrow limit exceeded"
    assert r.json()["max_allowed"] == 5


def test_borrow_missing_book(client, make_user, headers_for):
    r = client.post("/api/books/404/borrow", headers=headers_for(make_user()))
    assert r.status_code == 404
    assert r.json() == {"success": False, "message": "Book not found"}


def test_overdue_return_reports_late_fee(client, make_user, make_book, open_loan, headers_for):
    user, book = make_user(), make_book()
    # due ten days ago, give or take the time this test takes
    open_loan(user, book, due_in=-timedelta(days=10) + timedelta(minutes=5))

    r = client.post(f"/api/books/{book.id}/return", headers=headers_for(user))
    assert r.status_code == 200
    details = r.json()["data"]["return_details"]
    assert details["is_overdue"] is True
    assert details["days_late"] == 10
    assert details["late_fee"] == 10.0
    assert "Late fee" in r.json()["message"]


def test_return_without_active_record(client, make_user, make_book, headers_for):
    r = client.post(f"/api/books/{make_book().id}/return", headers=headers_for(make_user()))
    assert r.status_code == 404
    assert r.json()["message"] == "No active borrow record found for this book"


def test_invalid_due_days_is_a_validation_error(client, make_user, make_book, headers_for):
    r = client.post(f"/api/books/{make_book().id}/borrow", headers=headers_for(make_user()),
                    json={"due_days": 0})
    assert r.status_code == 400
    assert r.json()["success"] is False
