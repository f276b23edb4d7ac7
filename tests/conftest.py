import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import AuthService
from cart import CartService
from changefeed import ChangeFeed
from checkout import CheckoutService
from config import Settings
from database import create_document, ensure_indexes
from inflight import InFlightGuard
from notifications import NotificationQueue
from payments import PaymentService
from referrals import ReferralLedger
from schemas import Product


@pytest.fixture
def db():
    database = mongomock.MongoClient().db
    ensure_indexes(database)
    return database


@pytest.fixture
def settings():
    return Settings(payment_simulation_enabled=True)


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def notifications():
    return NotificationQueue()


@pytest.fixture
def guard():
    return InFlightGuard()


@pytest.fixture
def cart(db, feed, notifications, guard):
    return CartService(db, feed, notifications, guard)


@pytest.fixture
def referrals(db, settings):
    return ReferralLedger(db, settings)


@pytest.fixture
def checkout(db, cart, referrals, feed, notifications, guard):
    return CheckoutService(db, cart, referrals, feed, notifications, guard)


@pytest.fixture
def auth(db, settings, feed, referrals):
    return AuthService(db, settings, feed, referrals)


@pytest.fixture
def payments(db, checkout, settings):
    return PaymentService(db, checkout, settings)


@pytest.fixture
def make_product(db):
    def _make(price=500, title="Desk Lamp", category="dorm", **extra):
        return create_document(db, "product", Product(title=title, price=price, category=category, **extra))
    return _make


@pytest.fixture
def make_user(auth):
    def _make(email="asha@daykart.in", password="secret123", referral_code=None):
        result = auth.sign_up(email, password, referral_code=referral_code)
        assert result.success, result.error
        return result.data["user"]["id"]
    return _make


@pytest.fixture
def client(db, settings):
    import main

    main.app.dependency_overrides[main.get_db] = lambda: db
    main.app.dependency_overrides[main.get_settings] = lambda: settings
    shared_feed, shared_notes, shared_guard = ChangeFeed(), NotificationQueue(), InFlightGuard()
    main.app.dependency_overrides[main.get_feed] = lambda: shared_feed
    main.app.dependency_overrides[main.get_notifications] = lambda: shared_notes
    main.app.dependency_overrides[main.get_guard] = lambda: shared_guard
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()
