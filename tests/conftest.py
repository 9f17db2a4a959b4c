import json
import os
import tempfile
import time
from decimal import Decimal
from urllib.parse import parse_qs

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="storefront-assets-"))

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from storefront import auth, config, database, sessions
from storefront.main import app
from storefront.models import Product, User
from storefront.payments import StripeClient, compute_signature, get_payment_client

WEBHOOK_SECRET = "whsec_test_secret"
PASSWORD = "secret123"


class FakeStripe:
    """httpx transport handler standing in for the Stripe REST API."""

    def __init__(self):
        self.requests = []
        self.fail = False
        self.timeout = False
        self._seq = 0

    def forms(self, path):
        return [form for method, p, form in self.requests if p == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.replace("/v1", "", 1)
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.requests.append((request.method, path, form))
        if self.timeout:
            raise httpx.ReadTimeout("timed out", request=request)
        if self.fail:
            return httpx.Response(500, json={"error": {"message": "boom"}})

        self._seq += 1
        if request.method == "POST" and path == "/coupons":
            return httpx.Response(200, json={"id": f"co_test_{self._seq}", "amount_off": int(form["amount_off"])})
        if request.method == "POST" and path == "/checkout/sessions":
            sid = f"cs_test_{self._seq}"
            return httpx.Response(200, json={"id": sid, "url": f"https://checkout.stripe.test/pay/{sid}"})
        if request.method == "GET" and path.startswith("/checkout/sessions/"):
            sid = path.rsplit("/", 1)[1]
            return httpx.Response(200, json={"id": sid, "payment_status": "paid",
                                             "amount_total": 9998, "currency": "eur"})
        return httpx.Response(404, json={"error": {"message": "not found"}})


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    database.Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def Session(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(Session):
    s = Session()
    yield s
    s.close()


@pytest.fixture
def stripe():
    return FakeStripe()


@pytest.fixture
def stripe_client(stripe):
    c = StripeClient("sk_test_123", base_url="https://api.stripe.test/v1", transport=httpx.MockTransport(stripe))
    yield c
    c.close()


@pytest.fixture
def client(Session, stripe_client, monkeypatch, tmp_path):
    def override_get_db():
        s = Session()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[database.get_db] = override_get_db
    app.dependency_overrides[get_payment_client] = lambda: stripe_client
    monkeypatch.setattr(sessions, "_store", sessions.InMemorySessionStore())
    monkeypatch.setattr(auth, "PBKDF2_ITERATIONS", 1000)
    monkeypatch.setattr(config, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(config, "UPLOAD_DIR", str(tmp_path))
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(Session, monkeypatch):
    monkeypatch.setattr(auth, "PBKDF2_ITERATIONS", 1000)

    def _make(email="user@example.com", role="user", name="Test User", password=PASSWORD, verified=True):
        with Session() as s:
            user = User(name=name, email=email, password_hash=auth.hash_password(password),
                        role=role, is_verified=verified)
            s.add(user)
            s.commit()
            return user.id
    return _make


@pytest.fixture
def make_product(Session):
    def _make(name="Brake Pads", brand="Bosch", category="Brakes", price="49.99", stock=10, **extra):
        with Session() as s:
            product = Product(name=name, brand=brand, category=category, price=Decimal(str(price)), stock=stock, **extra)
            s.add(product)
            s.commit()
            return product.id
    return _make


@pytest.fixture
def login(client):
    def _login(email, password=PASSWORD):
        resp = client.post("/auth/login", json={"email": email, "password": password})
        assert resp.status_code == 200, resp.text
        return resp
    return _login


@pytest.fixture
def customer(make_user, login):
    user_id = make_user("buyer@example.com", name="Buyer")
    login("buyer@example.com")
    return user_id


@pytest.fixture
def admin(make_user, login):
    admin_id = make_user("admin@example.com", role="admin", name="Admin")
    login("admin@example.com")
    return admin_id


@pytest.fixture
def sign():
    return signed


def signed(payload: dict, secret=WEBHOOK_SECRET, timestamp=None):
    body = json.dumps(payload).encode("utf-8")
    ts = str(int(time.time()) if timestamp is None else timestamp)
    header = f"t={ts},v1={compute_signature(secret, ts, body)}"
    return body, header


class DatabaseOutage:
    """Fails matching statements as if the database connection dropped."""

    def __init__(self):
        self.matches = None

    def fail_when(self, matches=lambda statement: True):
        self.matches = matches

    def clear(self):
        self.matches = None

    def before_cursor_execute(self, conn, cursor, statement, parameters, context, executemany):
        if self.matches is not None and self.matches(statement):
            raise OperationalError(statement, parameters, Exception("db down"))


@pytest.fixture
def outage(engine):
    down = DatabaseOutage()
    event.listen(engine, "before_cursor_execute", down.before_cursor_execute)
    yield down
    event.remove(engine, "before_cursor_execute", down.before_cursor_execute)
