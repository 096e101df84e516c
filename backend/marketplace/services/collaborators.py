"""
External collaborator interfaces.

WHAT: Listings, evidence storage and identity contracts consumed by the engines
WHY: Listing CRUD, file storage and authentication live in other subsystems;
     the engines only depend on these narrow shapes
HOW: typing.Protocol contracts plus thread-safe in-process implementations
     used for development and tests
"""

import json
import threading
import uuid
from decimal import Decimal
from pathlib import Path
from typing import Dict, Optional, Protocol

from ..models.domain import Actor, Listing, Role
from ..core.config import settings
from ..core.models import DeliveryMethod
from ..utils.exceptions import NotAuthorizedError, NotFoundError, ValidationError


class Listings(Protocol):
    """Read-only listing lookup."""

    def get(self, item_id: int) -> Listing:
        """Return the listing or raise NotFoundError."""
        ...


class EvidenceStorage(Protocol):
    """Binary object storage; the evidence store only keeps references."""

    def put(self, data: bytes) -> str:
        ...

    def delete(self, ref: str) -> None:
        ...


class Identity(Protocol):
    """Resolves the authenticated caller."""

    def current_user(self) -> Actor:
        ...


class InMemoryListings:
    """Dictionary-backed listing catalogue."""

    def __init__(self):
        self._items: Dict[int, Listing] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_file(cls, path: str) -> "InMemoryListings":
        """
        Load a catalogue from a JSON array of listings.

        Entries use the Listing fields, e.g.
        {"item_id": 1, "seller_id": 10, "price": "75.00", "delivery_method": "pickup"};
        currency defaults to DEFAULT_CURRENCY.
        """
        catalogue = cls()
        for entry in json.loads(Path(path).read_text(encoding="utf-8")):
            catalogue._put(Listing.model_validate({"currency": settings.DEFAULT_CURRENCY, **entry}))
        return catalogue

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def add(
        self,
        item_id: int,
        seller_id: int,
        price: Decimal | str,
        currency: Optional[str] = None,
        delivery_method: DeliveryMethod = DeliveryMethod.PICKUP,
        status: str = "active",
    ) -> Listing:
        listing = Listing(
            item_id=item_id,
            seller_id=seller_id,
            price=Decimal(str(price)),
            currency=currency or settings.DEFAULT_CURRENCY,
            delivery_method=delivery_method,
            status=status,
        )
        self._put(listing)
        return listing

    def _put(self, listing: Listing) -> None:
        with self._lock:
            self._items[listing.item_id] = listing

    def get(self, item_id: int) -> Listing:
        with self._lock:
            listing = self._items.get(item_id)
        if listing is None:
            raise NotFoundError("Listing", item_id)
        return listing


class InMemoryEvidenceStorage:
    """Dictionary-backed blob store; every put gets a fresh reference."""

    def __init__(self, prefix: str = "/uploads/marketplace/"):
        self.prefix = prefix
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, data: bytes) -> str:
        if not data:
            raise ValidationError("Evidence file is empty")
        ref = f"{self.prefix}{uuid.uuid4().hex}"
        with self._lock:
            self._blobs[ref] = data
        return ref

    def delete(self, ref: str) -> None:
        with self._lock:
            self._blobs.pop(ref, None)

    def exists(self, ref: str) -> bool:
        with self._lock:
            return ref in self._blobs


class HeaderIdentity:
    """
    Identity taken from trusted gateway headers.

    WHAT: Builds an Actor from X-User-Id / X-User-Role
    WHY: Authentication happens upstream; the engine only needs id and role
    HOW: Parse and validate the raw header values
    """

    def __init__(self, user_id: Optional[str], role: Optional[str] = None):
        self._user_id = user_id
        self._role = role

    def current_user(self) -> Actor:
        if not self._user_id:
            raise NotAuthorizedError("Missing X-User-Id header")
        try:
            user_id = int(self._user_id)
        except ValueError:
            raise NotAuthorizedError(f"Invalid user id: {self._user_id}")

        role = (self._role or Role.USER.value).lower()
        if role not in (Role.USER.value, Role.ADMIN.value):
            # system identity is internal only; never accepted from a request
            raise NotAuthorizedError(f"Role not allowed: {role}", actor_id=user_id)
        if user_id <= 0:
            raise NotAuthorizedError(f"Invalid user id: {user_id}")
        return Actor(id=user_id, role=Role(role))
