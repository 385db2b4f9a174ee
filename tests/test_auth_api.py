from datetime import datetime, timedelta, timezone

import jwt

from library_api.core.config import settings
from library_api.models.models import Role, User

PASSWORD = "Secret123"


def register(client, **overrides):
    payload = {"first_name": "Grace", "last_name": "Hopper", "user_name": "ghopper",
               "email": "grace@example.com", "password": "Cobol1959"}
    payload.update(overrides)
    return client.post("/api/auth/register", json=payload)


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


def test_register_returns_member_and_token(client):
    r = register(client)
    assert r.status_code == 201
    data = r.json()["data"]
    assert data["user"]["role"] == "User"
    assert data["user"]["full_name"] == "Grace Hopper"
    assert "password_hash" not in data["user"]

    claims = jwt.decode(data["token"], settings.jwt_secret, algorithms=[settings.jwt_algorithm],
                        audience=settings.jwt_audience, issuer=settings.jwt_issuer)
    assert claims["sub"] == str(data["user"]["id"])
    assert claims["role"] == "User"


def test_register_rejects_duplicates_and_bad_input(client):
    register(client)
    r = register(client, user_name="someone")
    assert r.status_code == 409
    assert "email" in r.json()["message"]

    r = register(client, email="not-an-email", user_name="other")
    assert r.status_code == 400
    assert r.json()["message"] == "Validation failed"
    assert r.json()["errors"][0]["field"] == "email"


def test_login_by_email_or_user_name(client, make_user):
    user = make_user()
    for identifier in (user.email, user.user_name):
        r = client.post("/api/auth/login", json={"identifier": identifier, "password": PASSWORD})
        assert r.status_code == 200
        assert r.json()["data"]["user"]["last_login"] is not None

    r = client.post("/api/auth/login", json={"identifier": user.email, "password": "wrong-one"})
    assert r.status_code == 401
    assert r.json() == {"success": False, "message": "Invalid credentials"}


def test_deactivated_account_cannot_log_in(client, make_user, headers_for):
    user = make_user(is_active=False)
    r = client.post("/api/auth/login", json={"identifier": user.email, "password": PASSWORD})
    assert r.status_code == 401

    r = client.get("/api/auth/me", headers=headers_for(user))
    assert r.status_code == 401
    assert r.json()["message"] == "Access denied. Account is deactivated"


def test_me_and_logout_revokes_token(client):
    token = register(client).json()["data"]["token"]

    r = client.get("/api/auth/me", headers=bearer(token))
    assert r.status_code == 200
    assert r.json()["data"]["user_name"] == "ghopper"

    r = client.post("/api/auth/logout", headers=bearer(token))
    assert r.status_code == 200

    r = client.get("/api/auth/me", headers=bearer(token))
    assert r.status_code == 401
    assert r.json()["message"] == "Access denied. Token has been revoked"


def test_missing_invalid_and_expired_tokens(client, make_user):
    r = client.get("/api/auth/me")
    assert r.status_code == 401
    assert r.json()["message"] == "Access denied. No token provided"

    r = client.get("/api/auth/me", headers=bearer("garbage"))
    assert r.json()["message"] == "Access denied. Invalid token"

    user = make_user()
    past = datetime.now(timezone.utc) - timedelta(hours=2)
    expired = jwt.encode({"sub": str(user.id), "role": "User", "jti": "x", "iat": past,
                          "exp": past + timedelta(hours=1), "iss": settings.jwt_issuer,
                          "aud": settings.jwt_audience},
                         settings.jwt_secret, algorithm=settings.jwt_algorithm)
    r = client.get("/api/auth/me", headers=bearer(expired))
    assert r.status_code == 401
    assert r.json()["message"] == "Access denied. Token has expired"


def test_token_for_deleted_user_is_rejected(client, headers_for):
    ghost = User(id=4242, role=Role.USER)
    r = client.get("/api/auth/me", headers=headers_for(ghost))
    assert r.status_code == 401
    assert r.json()["message"] == "Access denied. User not found"


def test_guest_rate_limit(client):
    limit = settings.rate_limit_guest
    for _ in range(limit):
        r = client.get("/api/auth/me")
        assert r.status_code == 401

    r = client.get("/api/auth/me")
    assert r.status_code == 429
    assert r.json()["success"] is False
    assert r.headers["X-RateLimit-Remaining"] == "0"
    assert r.headers["X-RateLimit-Limit"] == str(limit)


def test_successful_responses_carry_rate_limit_headers(client, make_user, headers_for):
    r = client.get("/api/auth/me", headers=headers_for(make_user(role=Role.LIBRARIAN)))
    assert r.status_code == 200
    assert r.headers["X-RateLimit-Limit"] == str(settings.rate_limit_librarian)
    assert int(r.headers["X-RateLimit-Remaining"]) == settings.rate_limit_librarian - 1
