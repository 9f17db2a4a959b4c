from datetime import timedelta

import pytest

from storefront import config
from storefront.auth import hash_password, verify_password
from storefront.database import utcnow
from storefront.models import EmailVerification, EventOutbox, User
from storefront.sessions import DatabaseSessionStore, InMemorySessionStore, build_session_store


def register(client, **kw):
    body = {"name": "Ada", "email": "Ada@Example.com", "password": "hunter22"}
    body.update(kw)
    return client.post("/auth/register", json=body)


def test_register_creates_unverified_user_and_event(client, db):
    resp = register(client)
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "ok"
    assert "/verify-email?token=" in body["verify_url"]

    user = db.get(User, body["user_id"])
    assert user.email == "ada@example.com"
    assert user.role == "user"
    assert user.is_verified is False

    event = db.query(EventOutbox).filter(EventOutbox.event_type == "user.registered").one()
    assert event.payload["email"] == "ada@example.com"
    assert event.payload["verify_url"] == body["verify_url"]
    assert event.status == "NEW"


def test_register_validation_collects_errors(client):
    resp = register(client, name=" ", email="nope", password="123")
    assert resp.status_code == 400
    assert resp.json()["errors"] == [
        "Name is required",
        "Valid email is required",
        "Password must be at least 6 characters",
    ]


def test_register_duplicate_email(client):
    assert register(client).status_code == 201
    resp = register(client, email="ada@example.com")
    assert resp.status_code == 400
    assert resp.json()["message"] == "Email is already registered"


def test_verification_link_works_once(client, db):
    token = register(client).json()["verify_url"].split("token=", 1)[1]

    resp = client.get("/auth/verify-email", params={"token": token})
    assert resp.status_code == 200
    assert db.query(User).one().is_verified is True

    resp = client.get("/auth/verify-email", params={"token": token})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Token already used"


@pytest.mark.parametrize("token,message", [
    ("", "Missing or invalid token"),
    ("short", "Missing or invalid token"),
    ("x" * 43, "Invalid token"),
])
def test_verification_rejects_bad_tokens(client, token, message):
    resp = client.get("/auth/verify-email", params={"token": token})
    assert resp.status_code == 400
    assert resp.json()["message"] == message


def test_verification_token_expires(client, db):
    token = register(client).json()["verify_url"].split("token=", 1)[1]
    row = db.query(EmailVerification).one()
    row.expires_at = utcnow() - timedelta(minutes=1)
    db.commit()

    resp = client.get("/auth/verify-email", params={"token": token})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Token expired"


def test_login_me_logout_cycle(client, make_user, login):
    make_user("driver@example.com", name="Driver")

    resp = login("driver@example.com")
    assert config.SESSION_COOKIE_NAME in resp.cookies
    cookie_header = resp.headers["set-cookie"].lower()
    assert "httponly" in cookie_header
    assert "samesite=lax" in cookie_header

    me = client.get("/auth/me")
    assert me.status_code == 200
    assert me.json()["user"]["email"] == "driver@example.com"
    assert "password_hash" not in me.json()["user"]

    assert client.post("/auth/logout").json() == {"status": "ok"}
    assert client.get("/auth/me").status_code == 401


def test_login_failures(client, make_user):
    make_user("driver@example.com")
    resp = client.post("/auth/login", json={"email": "driver@example.com", "password": "wrong-one"})
    assert resp.status_code == 401
    assert resp.json()["message"] == "Invalid email or password"

    resp = client.post("/auth/login", json={"email": "ghost@example.com", "password": "whatever"})
    assert resp.status_code == 401

    resp = client.post("/auth/login", json={"email": "", "password": ""})
    assert resp.status_code == 400


def test_guards(client, make_user, login):
    assert client.get("/auth/me").status_code == 401
    assert client.get("/admin/ping").status_code == 401

    make_user("driver@example.com")
    login("driver@example.com")
    resp = client.get("/admin/ping")
    assert resp.status_code == 403
    assert resp.json()["message"] == "Admin privileges required"


def test_admin_ping(client, admin):
    resp = client.get("/admin/ping")
    assert resp.status_code == 200
    assert resp.json()["admin"]["id"] == admin


def test_session_of_deleted_user_is_rejected(client, customer, db):
    db.delete(db.get(User, customer))
    db.commit()
    resp = client.get("/auth/me")
    assert resp.status_code == 401
    assert resp.json()["message"] == "User not found"


def test_password_hashing():
    stored = hash_password("s3cret!")
    assert stored.startswith("pbkdf2_sha256$")
    assert verify_password("s3cret!", stored)
    assert not verify_password("s3cret?", stored)
    assert not verify_password("s3cret!", "md5$garbage")


def test_memory_store_expires_sessions(db):
    store = InMemorySessionStore()
    sid = store.create(db, 7)
    assert store.get(db, sid) == 7
    store.delete(db, sid)
    assert store.get(db, sid) is None

    expired = InMemorySessionStore(ttl=timedelta(seconds=-1))
    assert expired.get(db, expired.create(db, 7)) is None


def test_memory_store_drops_abandoned_sessions(db):
    store = InMemorySessionStore(ttl=timedelta(seconds=-1))
    for user_id in (1, 2, 3):
        store.create(db, user_id)
    assert len(store) == 1

    store.ttl = timedelta(hours=1)
    sid = store.create(db, 4)
    assert len(store) == 1
    assert store.get(db, sid) == 4


def test_database_store_round_trip(db, make_user):
    user_id = make_user()
    store = DatabaseSessionStore()
    sid = store.create(db, user_id)
    assert store.get(db, sid) == user_id
    assert store.get(db, "not-a-session") is None
    store.delete(db, sid)
    assert store.get(db, sid) is None


def test_unknown_session_backend():
    assert isinstance(build_session_store("memory"), InMemorySessionStore)
    with pytest.raises(ValueError):
        build_session_store("redis")
