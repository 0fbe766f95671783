import httpx
import pytest
from fastapi.testclient import TestClient

from course_payments.config import Settings
from course_payments.database import Base, make_engine, make_session_factory
from course_payments.main import create_app
from course_payments.models import Course, Provider, User
from course_payments.paystack_service import PaystackClient
from course_payments.services import build_services
from course_payments.stripe_service import StripeClient
from tests.utils import (
    JWT_SECRET,
    PAYSTACK_SECRET,
    STRIPE_SECRET,
    STRIPE_WEBHOOK_SECRET,
    FakePaystack,
)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'payments.db'}",
        jwt_secret=JWT_SECRET,
        payment_provider="paystack",
        payment_currency="NGN",
        paystack_secret_key=PAYSTACK_SECRET,
        paystack_webhook_secret=PAYSTACK_SECRET,
        stripe_secret_key=STRIPE_SECRET,
        stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
        json_logs=False,
    )


@pytest.fixture
def session_factory(settings):
    engine = make_engine(settings.database_url)
    Base.metadata.create_all(bind=engine)
    yield make_session_factory(engine)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def catalog(session_factory):
    with session_factory() as db:
        db.add_all([
            User(id="user-1", email="ada@example.com"),
            User(id="user-2", email="grace@example.com"),
            User(id="user-no-email", email=None),
            Course(id="course-1", title="Intro to Python"),
            Course(id="course-2", title="Data Engineering"),
            Course(id="course-draft", title="Unreleased", is_published=False),
        ])
        db.commit()


@pytest.fixture
def fake_paystack():
    return FakePaystack()


@pytest.fixture
def paystack(fake_paystack):
    http = httpx.Client(
        base_url="https://api.paystack.co",
        headers={"Authorization": f"Bearer {PAYSTACK_SECRET}"},
        transport=httpx.MockTransport(fake_paystack),
    )
    return PaystackClient(secret_key=PAYSTACK_SECRET, http_client=http)


@pytest.fixture
def stripe_client():
    return StripeClient(secret_key=STRIPE_SECRET, webhook_secret=STRIPE_WEBHOOK_SECRET)


@pytest.fixture
def services(settings, session_factory, catalog, paystack, stripe_client):
    return build_services(
        settings,
        session_factory=session_factory,
        providers={Provider.PAYSTACK: paystack, Provider.STRIPE: stripe_client},
    )


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as c:
        yield c
