"""
Unit tests for the in-process collaborators and default wiring.

WHAT: Test the JSON listing catalogue and how the singleton picks it up
WHY: The shipped app can only sell what its listings collaborator knows about
HOW: Write catalogues to tmp_path and point LISTINGS_FILE at them
"""

import json
from decimal import Decimal

import pydantic
import pytest

from marketplace.core.config import settings
from marketplace.core.models import DeliveryMethod
from marketplace.services.collaborators import InMemoryListings
from marketplace.services.factory import get_marketplace
from marketplace.utils.exceptions import NotFoundError

CATALOGUE = [
    {"item_id": 1, "seller_id": 10, "price": "75.00"},
    {"item_id": 2, "seller_id": 10, "price": "120.00", "delivery_method": "delivery", "currency": "EUR"},
    {"item_id": 3, "seller_id": 11, "price": "20.00", "status": "sold"},
]


@pytest.fixture
def catalogue_file(tmp_path):
    path = tmp_path / "listings.json"
    path.write_text(json.dumps(CATALOGUE), encoding="utf-8")
    return path


@pytest.mark.unit
class TestListingsFromFile:

    def test_loads_every_entry(self, catalogue_file):
        listings = InMemoryListings.from_file(str(catalogue_file))

        assert len(listings) == 3
        pickup = listings.get(1)
        assert pickup.price == Decimal("75.00")
        assert pickup.currency == settings.DEFAULT_CURRENCY
        assert pickup.delivery_method == DeliveryMethod.PICKUP
        assert pickup.is_available

        delivery = listings.get(2)
        assert delivery.delivery_method == DeliveryMethod.DELIVERY
        assert delivery.currency == "EUR"
        assert not listings.get(3).is_available

        with pytest.raises(NotFoundError):
            listings.get(4)

    def test_malformed_entry_is_rejected(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text(json.dumps([{"item_id": 1, "price": "75.00"}]), encoding="utf-8")
        with pytest.raises(pydantic.ValidationError):
            InMemoryListings.from_file(str(path))


@pytest.mark.unit
class TestDefaultWiring:

    def test_singleton_uses_listings_file(self, monkeypatch, catalogue_file):
        monkeypatch.setattr(settings, "LISTINGS_FILE", str(catalogue_file))
        monkeypatch.setattr(settings, "NOTIFICATION_WORKERS", 0)

        services = get_marketplace()
        try:
            assert len(services.listings) == 3
            assert services.listings.get(1).seller_id == 10
            assert get_marketplace() is services
        finally:
            services.shutdown()

    def test_without_listings_file_catalogue_is_empty(self, monkeypatch):
        monkeypatch.setattr(settings, "LISTINGS_FILE", "")
        monkeypatch.setattr(settings, "NOTIFICATION_WORKERS", 0)

        services = get_marketplace()
        try:
            assert len(services.listings) == 0
        finally:
            services.shutdown()
