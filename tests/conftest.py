import os
import tempfile
import threading
import time

# Process configuration must be in place before the application modules load
_TMP = tempfile.mkdtemp(prefix="course-payments-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP, 'app.db')}"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["LOG_DIR"] = os.path.join(_TMP, "logs")
os.environ.pop("TOSS_SECRET_KEY", None)
os.environ.pop("IAMPORT_KEY", None)

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from config import get_settings
from database import init_db, make_engine, make_session_factory, session_scope
from gateways.base import GatewayAdapter, GatewayResult
from models import Course, User
from services.payment_orchestrator import PaymentOrchestrator
from utils.time import utcnow

get_settings.cache_clear()

COURSE_PRICE = 480000


class FakeGateway(GatewayAdapter):
    """In-process adapter. Settles whatever it is asked to, unless told otherwise."""

    def __init__(self, provider="tosspayments"):
        super().__init__()
        self.provider = provider
        self.confirm_calls = []
        self.cancel_calls = []
        self.query_calls = []
        self.confirm_result = None
        self.confirm_error = None
        self.cancel_result = None
        self.cancel_error = None
        self.query_result = None
        self.query_error = None
        self.settled_amount = None
        self.delay = 0
        self._lock = threading.Lock()

    def _paid(self, payment_key, order_id, amount, status="paid"):
        return GatewayResult(
            success=True,
            provider=self.provider,
            order_id=order_id,
            payment_key=payment_key,
            amount=amount,
            status=status,
            method="card",
            approved_at=utcnow(),
            receipt_url=f"https://receipts.example.com/{payment_key}",
        )

    def confirm(self, payment_key, order_id, amount):
        with self._lock:
            self.confirm_calls.append((payment_key, order_id, amount))
        if self.delay:
            time.sleep(self.delay)
        if self.confirm_error is not None:
            raise self.confirm_error
        if self.confirm_result is not None:
            return self.confirm_result
        settled = self.settled_amount if self.settled_amount is not None else amount
        return self._paid(payment_key, order_id, settled)

    def cancel(self, payment_key, reason, amount=None):
        with self._lock:
            self.cancel_calls.append((payment_key, reason, amount))
        if self.cancel_error is not None:
            raise self.cancel_error
        if self.cancel_result is not None:
            return self.cancel_result
        return GatewayResult(
            success=True,
            provider=self.provider,
            payment_key=payment_key,
            amount=amount,
            status="refunded" if amount else "cancelled",
        )

    def query(self, payment_key):
        with self._lock:
            self.query_calls.append(payment_key)
        if self.query_error is not None:
            raise self.query_error
        return self.query_result

    def launch_credentials(self):
        return {"clientKey": f"test_ck_{self.provider}"}


@pytest.fixture
def engine(tmp_path):
    db_engine = make_engine(f"sqlite:///{tmp_path / 'payments.db'}")
    init_db(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def catalog(session_factory):
    with session_scope(session_factory) as db:
        db.add_all([
            User(id="user-1", email="minji@example.com", name="Kim Minji"),
            User(id="user-2", email="jihoon@example.com", name="Park Jihoon"),
            Course(id="course-101", title="Backend Engineering Bootcamp", price=COURSE_PRICE, is_active=True),
            Course(id="course-free", title="Orientation", price=0, is_active=True),
            Course(id="course-closed", title="Archived Course", price=300000, is_active=False),
        ])
    return session_factory


@pytest.fixture
def toss():
    return FakeGateway("tosspayments")


@pytest.fixture
def iamport():
    return FakeGateway("iamport")


@pytest.fixture
def orchestrator(catalog, toss, iamport):
    return PaymentOrchestrator(
        catalog,
        {"tosspayments": toss, "iamport": iamport},
        default_success_url="http://localhost:3000/payment/success",
        default_fail_url="http://localhost:3000/payment/fail",
    )


@pytest.fixture
def prepare_order(orchestrator):
    def _prepare(user_id="user-1", course_id="course-101", provider="tosspayments", **kwargs):
        return orchestrator.prepare(
            user_id=user_id,
            course_id=course_id,
            customer_name=kwargs.pop("customer_name", "Kim Minji"),
            customer_email=kwargs.pop("customer_email", "minji@example.com"),
            provider=provider,
            **kwargs,
        )
    return _prepare


@pytest.fixture
def paid_order(orchestrator, prepare_order):
    descriptor = prepare_order()
    orchestrator.confirm(
        order_id=descriptor.order_id,
        payment_key="pk_paid",
        amount=descriptor.amount,
        provider="tosspayments",
    )
    return descriptor


def make_token(user_id="user-1"):
    return jwt.encode({"id": user_id}, "test-secret", algorithm="HS256")


def auth_header(user_id="user-1"):
    return {"Authorization": f"Bearer {make_token(user_id)}"}


@pytest.fixture
def client(orchestrator, engine):
    from main import create_app

    app = create_app(orchestrator=orchestrator, db_engine=engine)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth():
    return auth_header
