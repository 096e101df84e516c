"""
Domain snapshot models.

WHAT: Immutable pydantic views of offers, transactions, messages and evidence,
      plus the actor, listing and notification shapes exchanged with collaborators
WHY: Services return the authoritative entity after every mutation; the
     snapshot must serialize and deserialize without losing the version stamp
HOW: Pydantic v2 models built from ORM rows with from_attributes
"""

import enum
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..core.models import (
    DeliveryMethod,
    DeliveryStatus,
    EvidenceKind,
    OfferStatus,
    PaymentStatus,
    SenderType,
    TransactionStatus,
    utcnow,
)


class Role(str, enum.Enum):
    """Platform role of an authenticated caller."""
    USER = "user"
    ADMIN = "admin"
    SYSTEM = "system"


class Actor(BaseModel):
    """The caller on whose behalf an operation runs."""
    model_config = ConfigDict(frozen=True)

    id: int
    role: Role = Role.USER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_system(self) -> bool:
        return self.role == Role.SYSTEM


SYSTEM_ACTOR = Actor(id=0, role=Role.SYSTEM)


class Listing(BaseModel):
    """Read-only listing data consulted at offer/transaction creation."""
    model_config = ConfigDict(frozen=True)

    item_id: int
    seller_id: int
    price: Decimal
    currency: str
    delivery_method: DeliveryMethod = DeliveryMethod.PICKUP
    status: str = "active"

    @property
    def is_available(self) -> bool:
        return self.status == "active"


class _Snapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)


class OfferView(_Snapshot):
    id: int
    item_id: int
    buyer_id: int
    seller_id: int
    amount: Decimal
    currency: str
    status: OfferStatus
    note: Optional[str] = None
    transaction_id: Optional[int] = None
    expires_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    version: int


class EvidenceView(_Snapshot):
    id: int
    transaction_id: int
    kind: EvidenceKind
    ref: str
    added_by: int
    created_at: datetime


class TransactionView(_Snapshot):
    id: int
    offer_id: Optional[int] = None
    item_id: int
    buyer_id: int
    seller_id: int
    amount: Decimal
    currency: str
    status: TransactionStatus
    payment_status: PaymentStatus
    delivery_method: DeliveryMethod
    delivery_status: DeliveryStatus
    delivery_address: Optional[str] = None
    delivery_tracking_number: Optional[str] = None
    delivery_proof_images: list[str] = Field(default_factory=list)
    payment_receipt: Optional[str] = None
    cancellation_reason: Optional[str] = None
    dispute_reason: Optional[str] = None
    delivered_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    version: int


class MessageView(_Snapshot):
    id: int
    transaction_id: int
    sender_id: int
    sender_type: SenderType
    message: str
    created_at: datetime
    read_at: Optional[datetime] = None


class OfferResolution(BaseModel):
    """Result of respond_to_offer: the offer plus the transaction on accept."""
    offer: OfferView
    transaction: Optional[TransactionView] = None


class NotificationEvent(BaseModel):
    """
    Domain event handed to the notification collaborator after commit.

    Exactly one of transaction_id / offer_id is normally set.
    """
    type: str
    recipient_id: int
    transaction_id: Optional[int] = None
    offer_id: Optional[int] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utcnow)
