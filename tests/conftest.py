"""Shared fixtures: in-memory SQLite, a scriptable fake gateway, seeded plans/users."""
import os

os.environ["DATABASE_URL"] = "sqlite://"

import itertools
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401
from app.api.deps import get_gateway
from app.core.security import create_access_token
from app.db.session import Base, get_db
from app.main import app as fastapi_app
from app.models.coupon import Coupon
from app.models.plan import Plan
from app.models.user import User, UserRole
from app.services import payment_intents
from app.services.errors import GatewayDeclined, GatewayUndetermined
from app.services.gateway import GatewayCharge, GatewaySession

_RAW_STATUS = {
    "approved": "succeeded",
    "declined": "requires_payment_method",
    "in_review": "processing",
    "timeout_after_charge": "succeeded",
}


class FakeGateway:
    """
    In-memory stand-in for StripeGateway.

    Outcomes for submit_charge are queued with script(); each is one of
    approved, declined, in_review, timeout (nothing reaches the gateway) or
    timeout_after_charge (the charge exists but the caller never hears back).
    Repeating an idempotency key replays the first outcome, like Stripe does.
    """

    def __init__(self):
        self.outcomes = []
        self.charges = {}
        self.sessions = {}
        self.idempotency_keys = []
        self.charge_sessions = {}
        self._by_key = {}
        self._ids = itertools.count(1)
        self.fail_sessions = False

    def script(self, *outcomes):
        self.outcomes.extend(outcomes)

    def create_session(self, amount_cents, currency, product_name, metadata, idempotency_key, customer_email=None):
        if self.fail_sessions:
            raise GatewayUndetermined("Read timed out")
        session_id = f"cs_test_{next(self._ids)}"
        self.sessions[session_id] = {"amount_cents": amount_cents, "metadata": dict(metadata)}
        return GatewaySession(id=session_id, url=f"https://checkout.test/{session_id}")

    def add_charge(self, status="succeeded", amount_cents=2990, metadata=None, charge_id=None, status_detail=None,
                   session_id=None):
        """session_id marks the charge as created by that hosted checkout session."""
        charge_id = charge_id or f"pi_test_{next(self._ids)}"
        if session_id:
            self.charge_sessions[charge_id] = session_id
        self.charges[charge_id] = GatewayCharge(
            id=charge_id,
            status=status,
            status_detail=status_detail or status,
            amount_cents=amount_cents,
            currency="brl",
            metadata={k: "" if v is None else str(v) for k, v in (metadata or {}).items()},
        )
        return self.charges[charge_id]

    def set_status(self, charge_id, status, amount_cents=None):
        charge = self.charges[charge_id]
        charge.status = status
        charge.status_detail = status
        if amount_cents is not None:
            charge.amount_cents = amount_cents

    def submit_charge(self, amount_cents, currency, instrument_token, metadata, idempotency_key,
                      description=None, receipt_email=None):
        self.idempotency_keys.append(idempotency_key)
        if idempotency_key in self._by_key:
            outcome, charge_id = self._by_key[idempotency_key]
        else:
            outcome = self.outcomes.pop(0) if self.outcomes else "approved"
            charge_id = None
            if outcome != "timeout":
                charge_id = self.add_charge(_RAW_STATUS[outcome], amount_cents, metadata).id
            self._by_key[idempotency_key] = (outcome, charge_id)

        if outcome == "timeout":
            # Nothing was created; a retry with the same key gets a fresh outcome
            del self._by_key[idempotency_key]
            raise GatewayUndetermined("Read timed out")
        if outcome == "timeout_after_charge":
            self._by_key[idempotency_key] = ("approved", charge_id)
            raise GatewayUndetermined("Read timed out")
        if outcome == "declined":
            raise GatewayDeclined("Your card was declined.", charge_id=charge_id, status_detail="card_declined")
        return self.charges[charge_id]

    def retrieve_charge(self, charge_id):
        if charge_id not in self.charges:
            raise GatewayDeclined(f"No such payment_intent: '{charge_id}'", status_detail="resource_missing")
        return self.charges[charge_id]

    def find_session_id(self, charge_id):
        return self.charge_sessions.get(charge_id)

    def verify_webhook(self, payload, signature):
        return None


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
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
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(session_factory, gateway):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(fastapi_app)
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def plans(db):
    monthly = Plan(id="monthly", name="Plano Mensal", price_cents=2990, duration_months=1, active=True)
    semester = Plan(id="semester", name="Plano Semestral", price_cents=14300, duration_months=6, active=True)
    db.add_all([monthly, semester])
    db.commit()
    return {"monthly": monthly, "semester": semester}


@pytest.fixture
def user(db):
    user = User(id="user-1", email="aluno@example.com", name="Aluno", role=UserRole.STUDENT.value)
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def other_user(db):
    user = User(id="user-2", email="outro@example.com", name="Outro", role=UserRole.STUDENT.value)
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def admin_user(db):
    user = User(id="admin-1", email="admin@example.com", name="Admin", role=UserRole.ADMIN_MASTER.value)
    db.add(user)
    db.commit()
    return user


def auth_headers(user_id):
    return {"Authorization": f"Bearer {create_access_token({'sub': user_id})}"}


@pytest.fixture
def token_for():
    return auth_headers


@pytest.fixture
def headers(user):
    return auth_headers(user.id)


@pytest.fixture
def make_coupon(db):
    def _make(code="PROMO10", discount="10", valid_from=None, valid_until=None, **kwargs):
        now = datetime.utcnow()
        coupon = Coupon(
            code=code,
            discount=Decimal(discount),
            description=kwargs.pop("description", f"{discount}% off"),
            active=kwargs.pop("active", True),
            valid_from=valid_from or now - timedelta(days=30),
            valid_until=valid_until or now + timedelta(days=30),
            **kwargs,
        )
        db.add(coupon)
        db.commit()
        return coupon
    return _make


@pytest.fixture
def make_intent(db):
    def _make(user_id="user-1", plan_id="monthly", session_id="cs_test_session", base_price_cents=2990,
              discount="0", coupon_code=None, status=None, charge_id=None, now=None, attempt=1):
        intent = payment_intents.create_intent(
            db,
            user_id=user_id,
            plan_id=plan_id,
            base_price_cents=base_price_cents,
            discount_percent=Decimal(discount),
            coupon_code=coupon_code,
            session_id=session_id,
            duration_months=1 if plan_id == "monthly" else 6,
            now=now,
            attempt=attempt,
        )
        if status:
            intent.status = status
        if charge_id:
            intent.charge_id = charge_id
        db.commit()
        db.refresh(intent)
        return intent
    return _make
