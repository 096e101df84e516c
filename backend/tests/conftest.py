"""
Pytest configuration and shared fixtures for backend tests.

WHAT: Centralized test configuration with markers and a wired service stack
WHY: Every test gets an isolated database and deterministic notifications
HOW: Fresh file-backed SQLite per test, in-memory collaborators, inline dispatch
"""

from decimal import Decimal

import pytest

from marketplace.core.database import build_engine, init_db, make_session_factory
from marketplace.core.models import DeliveryMethod
from marketplace.models.domain import Actor, Role
from marketplace.services.collaborators import InMemoryEvidenceStorage, InMemoryListings
from marketplace.services.factory import Marketplace, reset_marketplace, set_marketplace
from marketplace.services.notifications import RecordingNotifier


# Listing catalogue shared by the fixtures below
PICKUP_ITEM = 1        # seller 10, 75.00 GBP, pickup
DELIVERY_ITEM = 2      # seller 10, 120.00 GBP, delivery
SOLD_ITEM = 3          # seller 10, no longer active
OTHER_SELLER_ITEM = 4  # seller 11, 30.00 GBP, pickup


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (isolated component tests)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (multiple components, HTTP surface)"
    )
    config.addinivalue_line(
        "markers", "concurrency: Tests that race threads against the entity store"
    )


@pytest.fixture(autouse=True)
def reset_marketplace_singleton():
    """
    Reset the service singleton before and after each test.

    WHAT: Clear cached wiring between tests
    WHY: Prevent test pollution through the module-level instance
    HOW: Call reset_marketplace() around each test
    """
    reset_marketplace()
    yield
    reset_marketplace()


@pytest.fixture
def engine(tmp_path):
    """A fresh SQLite database file per test (WAL needs a real file)."""
    test_engine = build_engine(f"sqlite:///{tmp_path / 'marketplace_test.db'}")
    init_db(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def listings():
    catalogue = InMemoryListings()
    catalogue.add(PICKUP_ITEM, seller_id=10, price="75.00")
    catalogue.add(DELIVERY_ITEM, seller_id=10, price="120.00", delivery_method=DeliveryMethod.DELIVERY)
    catalogue.add(SOLD_ITEM, seller_id=10, price="20.00", status="sold")
    catalogue.add(OTHER_SELLER_ITEM, seller_id=11, price="30.00")
    return catalogue


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def storage():
    return InMemoryEvidenceStorage()


@pytest.fixture
def services(session_factory, listings, storage, notifier):
    """Fully wired services with inline notification dispatch."""
    marketplace = Marketplace(
        session_factory=session_factory,
        listings=listings,
        storage=storage,
        notifier=notifier,
        notification_workers=0,
    )
    set_marketplace(marketplace)
    yield marketplace
    marketplace.shutdown()


@pytest.fixture
def buyer():
    return Actor(id=20)


@pytest.fixture
def other_buyer():
    return Actor(id=21)


@pytest.fixture
def seller():
    return Actor(id=10)


@pytest.fixture
def stranger():
    return Actor(id=30)


@pytest.fixture
def admin():
    return Actor(id=99, role=Role.ADMIN)


@pytest.fixture
def pending_txn(services, buyer, seller):
    """Pickup transaction at 50.00 created by accepting an offer."""
    offer = services.offers.create_offer(PICKUP_ITEM, buyer, Decimal("50"))
    resolution = services.offers.respond_to_offer(offer.id, seller, "accept")
    return resolution.transaction


@pytest.fixture
def paid_txn(services, pending_txn, buyer):
    return services.transactions.mark_paid(pending_txn.id, buyer)


@pytest.fixture
def shipped_txn(services, paid_txn, seller):
    return services.transactions.set_delivery_status(paid_txn.id, seller, "ready_for_pickup")


@pytest.fixture
def delivered_txn(services, shipped_txn, seller):
    return services.transactions.set_delivery_status(shipped_txn.id, seller, "delivered")


@pytest.fixture
def delivery_txn(services, buyer):
    """Delivery-method transaction bought outright at the listing price."""
    return services.transactions.create_direct_purchase(
        DELIVERY_ITEM, buyer, delivery_address="12 Campus Road, Leeds"
    )
