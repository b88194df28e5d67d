"""
Pytest configuration and fixtures

Every test runs against a fresh in-memory SQLite schema. Environment
variables are set before the application modules are imported so settings
pick them up.

Fixtures commit their writes: the app and the test share one connection,
so nothing may be left pending when a request is made.
"""
import hashlib
import hmac
import json
import os
import time
from typing import Optional

os.environ["SECRET_KEY"] = "test-secret-key-0123456789-abcdefghijklmnop"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["RATE_LIMIT_BACKEND"] = "memory"
os.environ["RATE_LIMIT_ENABLED"] = "true"
os.environ["LOG_FORMAT"] = "text"
os.environ["LOG_LEVEL"] = "INFO"
os.environ["EMAIL_ENABLED"] = "false"
os.environ["SENTRY_DSN"] = ""
os.environ["ENVIRONMENT"] = "test"
os.environ["DEBUG"] = "false"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["STRIPE_PRICE_1_MONTH"] = "price_1m"
os.environ["STRIPE_PRICE_3_MONTH"] = "price_3m"
os.environ["STRIPE_PRICE_6_MONTH"] = "price_6m"
os.environ["STRIPE_PRICE_12_MONTH"] = "price_12m"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from core.database import Base, SessionLocal, engine  # noqa: E402
from core.logging import log_buffer  # noqa: E402
from core.rate_limit import limiter  # noqa: E402
from core.security import get_password_hash, issue_session_token  # noqa: E402
from main import app  # noqa: E402
from models import Program, User  # noqa: E402
from services.mail_service import mail_service  # noqa: E402
from services.payment_gateway import get_payment_gateway  # noqa: E402

WEBHOOK_SECRET = "whsec_test"
DEFAULT_PASSWORD = "GoodP@ss1"


@pytest.fixture(autouse=True)
def _fresh_state():
    """Recreate the schema and clear process-wide state for each test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    limiter.reset()
    log_buffer.clear()
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def db_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def client():
    """Startup and shutdown hooks are not run: the schema is managed per test,
    and shutdown disposes the engine, which would drop the in-memory store."""
    return TestClient(app)


@pytest.fixture
def make_user(db_session):
    """Factory for users written straight to the store (verified by default)."""
    counter = {"n": 0}

    def _make(
        email: Optional[str] = None,
        password: str = DEFAULT_PASSWORD,
        role: str = "user",
        verified: bool = True,
        **fields,
    ) -> User:
        counter["n"] += 1
        user = User(
            email=email or f"member{counter['n']}@example.com",
            password_hash=get_password_hash(password),
            first_name=fields.pop("first_name", "Test"),
            last_name=fields.pop("last_name", f"Member{counter['n']}"),
            role=role,
            is_email_verified=verified,
            **fields,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make


@pytest.fixture
def make_program(db_session):
    def _make(slug: str, title: Optional[str] = None, price_id: Optional[str] = "price_prog", **fields) -> Program:
        program = Program(
            slug=slug,
            title=title or slug.replace("-", " ").title(),
            description=fields.pop("description", "A training program"),
            price_id=price_id,
            **fields,
        )
        db_session.add(program)
        db_session.commit()
        db_session.refresh(program)
        return program

    return _make


@pytest.fixture
def auth_headers():
    def _headers(user: User) -> dict:
        return {"Authorization": f"Bearer {issue_session_token(user)}"}

    return _headers


@pytest.fixture
def outbox(monkeypatch):
    """Captures mail instead of sending it."""
    sent = []

    def _send_email(to_email, subject, html_content, text_content=None):
        sent.append({"to": to_email, "subject": subject, "html": html_content, "text": text_content})

    monkeypatch.setattr(mail_service, "send_email", _send_email)
    return sent


class FakeGateway:
    """Records calls the entitlement engine makes to the payment provider."""

    def __init__(self):
        self.calls = []

    def ensure_customer(self, user) -> str:
        self.calls.append(("ensure_customer", str(user.id)))
        return f"cus_{user.id.hex[:12]}"

    def create_subscription_checkout(self, *, customer_id, user, plan) -> str:
        self.calls.append(("subscription_checkout", customer_id, plan.plan_id))
        return f"https://checkout.test/subscription/{plan.plan_id}"

    def create_program_checkout(self, *, customer_id, user, program) -> str:
        self.calls.append(("program_checkout", customer_id, program.slug))
        return f"https://checkout.test/program/{program.slug}"

    def cancel_subscription(self, subscription_id, *, at_period_end) -> None:
        self.calls.append(("cancel", subscription_id, at_period_end))

    def resume_subscription(self, subscription_id) -> None:
        self.calls.append(("resume", subscription_id))


@pytest.fixture
def gateway():
    fake = FakeGateway()
    app.dependency_overrides[get_payment_gateway] = lambda: fake
    return fake


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Provider signature header: t=<ts>,v1=HMAC-SHA256(secret, "<ts>.<payload>")."""
    ts = int(timestamp if timestamp is not None else time.time())
    signed = f"{ts}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


@pytest.fixture
def post_event(client):
    """Deliver a signed provider event to the webhook endpoint."""
    def _post(event: dict, secret: str = WEBHOOK_SECRET):
        payload = json.dumps(event).encode("utf-8")
        return client.post(
            "/api/v1/webhooks/payment",
            content=payload,
            headers={"Stripe-Signature": sign_payload(payload, secret), "Content-Type": "application/json"},
        )

    return _post


def error_code(response) -> str:
    return response.json()["error"]["code"]
