"""
Pydantic API schemas for the offer/transaction endpoints.

WHAT: Request and response models for FastAPI
WHY: Type-safe validation of request bodies; responses reuse the domain snapshots
HOW: Pydantic v2 models; business rules stay in the services
"""

import base64
import binascii
from typing import List, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from .domain import MessageView
from ..core.config import settings
from ..core.models import DeliveryMethod, DeliveryStatus, EvidenceKind
from ..services.offer_engine import OfferAction
from ..services.transaction_machine import DisputeOutcome


class VersionedRequest(BaseModel):
    """Base for mutating requests; expected_version enables optimistic concurrency."""
    expected_version: Optional[int] = Field(default=None, ge=1, description="Version the caller last saw")


# ========== Offers ==========

class CreateOfferRequest(BaseModel):
    """Buyer offer on a listing."""
    # Kept loose so malformed amounts reach the domain check (INVALID_AMOUNT)
    amount: Union[int, float, str] = Field(..., description="Offered price, e.g. \"50.00\"")
    note: Optional[str] = Field(default=None, max_length=500, description="Message to the seller")
    ttl_hours: Optional[float] = Field(
        default=None, gt=0, le=settings.OFFER_MAX_TTL_HOURS,
        description="Hours until the offer expires"
    )


class RespondOfferRequest(VersionedRequest):
    """Seller decision on a pending offer."""
    action: OfferAction


class DirectPurchaseRequest(BaseModel):
    """Buy a listing at its asking price."""
    delivery_method: Optional[DeliveryMethod] = Field(default=None, description="Defaults to the listing's method")
    delivery_address: Optional[str] = Field(default=None, max_length=500)


# ========== Transactions ==========

class DeliveryStatusRequest(VersionedRequest):
    delivery_status: DeliveryStatus


class TrackingNumberRequest(VersionedRequest):
    tracking_number: str = Field(..., max_length=100)


class DeliveryAddressRequest(VersionedRequest):
    address: str = Field(..., max_length=500)


class CancelTransactionRequest(VersionedRequest):
    reason: str = Field(..., max_length=1000)


class ReportProblemRequest(VersionedRequest):
    description: str = Field(..., max_length=2000)


class RefundRequest(VersionedRequest):
    note: Optional[str] = Field(default=None, max_length=1000)


class ResolveDisputeRequest(VersionedRequest):
    outcome: DisputeOutcome
    note: Optional[str] = Field(default=None, max_length=1000)


# ========== Evidence ==========

class AddEvidenceRequest(VersionedRequest):
    """
    Attach evidence either by an existing storage reference or by uploading
    base64-encoded content.
    """
    kind: EvidenceKind
    ref: Optional[str] = Field(default=None, max_length=500)
    content_base64: Optional[str] = Field(default=None, description="File content, base64 encoded")

    @model_validator(mode="after")
    def validate_source(self):
        """Exactly one of ref / content_base64."""
        if (self.ref is None) == (self.content_base64 is None):
            raise ValueError("Provide exactly one of ref or content_base64")
        return self

    @field_validator("content_base64")
    @classmethod
    def validate_base64(cls, v):
        if v is None:
            return v
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("content_base64 is not valid base64")
        return v

    def content(self) -> bytes:
        return base64.b64decode(self.content_base64)


# ========== Messages ==========

class PostMessageRequest(BaseModel):
    message: str = Field(..., max_length=2000, description="Message content")


class MessageListResponse(BaseModel):
    transaction_id: int
    messages: List[MessageView]
    total: int


class MarkReadResponse(BaseModel):
    transaction_id: int
    marked_read: int
