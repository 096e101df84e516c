"""
ORM models for offers, transactions and their child collections.

WHAT: SQLAlchemy models for the four persisted tables
WHY: Offer and Transaction are the top-level aggregates; messages and
     evidence refs are child collections keyed by transaction_id
HOW: Declarative models with version_id_col for optimistic concurrency,
     CHECK constraints and partial unique indexes for the pending-offer
     and one-live-sale-per-item rules
"""

import enum
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Column, Integer, String, DateTime, Text, ForeignKey, CheckConstraint, Index,
    Enum as SQLEnum, text
)
from sqlalchemy.orm import relationship, validates
from sqlalchemy.types import TypeDecorator

from .database import Base
from ..utils.money import quantize


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite does not round-trip tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Money(TypeDecorator):
    """
    Fixed-point amount stored as text.

    SQLite has no decimal type and SQLAlchemy's Numeric goes through float on
    that backend, so amounts are persisted as their exact decimal string.
    """
    impl = String(32)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(quantize(Decimal(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)


def _enum(enum_cls):
    """Store enum values ("ready_for_pickup"), not member names."""
    return SQLEnum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        validate_strings=True,
        length=32,
    )


# Enums for status fields
class OfferStatus(str, enum.Enum):
    """Offer status values."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class TransactionStatus(str, enum.Enum):
    """Transaction status values."""
    PENDING = "pending"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


class PaymentStatus(str, enum.Enum):
    """Payment status values."""
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class DeliveryMethod(str, enum.Enum):
    """How the item changes hands."""
    PICKUP = "pickup"
    DELIVERY = "delivery"


class DeliveryStatus(str, enum.Enum):
    """Delivery status values."""
    PENDING = "pending"
    READY_FOR_PICKUP = "ready_for_pickup"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    FAILED = "failed"


class SenderType(str, enum.Enum):
    """Author of a ledger message."""
    BUYER = "buyer"
    SELLER = "seller"
    SYSTEM = "system"


class EvidenceKind(str, enum.Enum):
    """Kinds of proof attached to a transaction."""
    RECEIPT = "receipt"
    DELIVERY_PROOF = "delivery_proof"


OFFER_TERMINAL_STATUSES = frozenset({
    OfferStatus.ACCEPTED, OfferStatus.REJECTED, OfferStatus.EXPIRED, OfferStatus.CANCELLED
})

TRANSACTION_TERMINAL_STATUSES = frozenset({
    TransactionStatus.COMPLETED, TransactionStatus.CANCELLED, TransactionStatus.REFUNDED
})

# A sale that ends in one of these puts the item back on the market
ITEM_RELEASING_STATUSES = frozenset({TransactionStatus.CANCELLED, TransactionStatus.REFUNDED})


class Offer(Base):
    """
    Offer table - a buyer's proposed price for a listing.

    WHAT: Negotiated price pending seller response
    WHY: Accepted offers become transactions; all offers are kept for audit
    HOW: Versioned row; partial unique index keeps one pending offer per (item, buyer)
    """
    __tablename__ = "offers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    item_id = Column(Integer, nullable=False)
    buyer_id = Column(Integer, nullable=False)
    seller_id = Column(Integer, nullable=False)
    amount = Column(Money, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(_enum(OfferStatus), nullable=False, default=OfferStatus.PENDING)
    note = Column(Text, nullable=True)
    transaction_id = Column(Integer, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    version = Column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint("buyer_id <> seller_id", name="check_offer_not_self_dealing"),
        Index("idx_offer_item_status", "item_id", "status"),
        Index("idx_offer_buyer", "buyer_id"),
        Index("idx_offer_seller", "seller_id"),
        Index("idx_offer_expires", "status", "expires_at"),
        Index(
            "uq_offer_pending_per_buyer_item", "item_id", "buyer_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_terminal(self) -> bool:
        return self.status in OFFER_TERMINAL_STATUSES

    def __repr__(self):
        return f"<Offer(id={self.id}, item={self.item_id}, amount={self.amount}, status={self.status})>"


class Transaction(Base):
    """
    Transaction table - a bound sale tracked through payment and delivery.

    WHAT: Sale created from an accepted offer or a direct purchase
    WHY: Single authoritative record of status, payment and delivery progress
    HOW: Versioned row; messages and evidence hang off it as child collections
    """
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    offer_id = Column(Integer, ForeignKey("offers.id"), nullable=True, unique=True)
    item_id = Column(Integer, nullable=False)
    buyer_id = Column(Integer, nullable=False)
    seller_id = Column(Integer, nullable=False)
    amount = Column(Money, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(_enum(TransactionStatus), nullable=False, default=TransactionStatus.PENDING)
    payment_status = Column(_enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    delivery_method = Column(_enum(DeliveryMethod), nullable=False)
    delivery_status = Column(_enum(DeliveryStatus), nullable=False, default=DeliveryStatus.PENDING)
    delivery_address = Column(Text, nullable=True)
    delivery_tracking_number = Column(String(100), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    dispute_reason = Column(Text, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    version = Column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint("buyer_id <> seller_id", name="check_transaction_not_self_dealing"),
        Index("idx_transaction_buyer", "buyer_id"),
        Index("idx_transaction_seller", "seller_id"),
        Index("idx_transaction_status", "status"),
        Index("idx_transaction_delivered", "status", "delivered_at"),
        Index(
            "uq_transaction_live_per_item", "item_id",
            unique=True,
            sqlite_where=text("status NOT IN ('cancelled', 'refunded')"),
            postgresql_where=text("status NOT IN ('cancelled', 'refunded')"),
        ),
    )

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    messages = relationship(
        "TransactionMessage", back_populates="transaction",
        order_by="TransactionMessage.id", lazy="noload"
    )
    evidence = relationship(
        "EvidenceRef", back_populates="transaction",
        order_by="EvidenceRef.id", lazy="selectin",
        cascade="all, delete-orphan"
    )

    @validates("amount")
    def _amount_is_fixed(self, key, value):
        if self.amount is not None and Decimal(value) != self.amount:
            raise ValueError(f"Transaction {self.id} amount is immutable")
        return value

    @property
    def is_terminal(self) -> bool:
        return self.status in TRANSACTION_TERMINAL_STATUSES

    @property
    def delivery_proof_images(self) -> list[str]:
        return [e.ref for e in self.evidence if e.kind == EvidenceKind.DELIVERY_PROOF]

    @property
    def payment_receipt(self) -> str | None:
        receipts = [e.ref for e in self.evidence if e.kind == EvidenceKind.RECEIPT]
        return receipts[-1] if receipts else None

    def party_of(self, user_id: int) -> SenderType | None:
        """Which side of the sale a user is on, if any."""
        if user_id == self.buyer_id:
            return SenderType.BUYER
        if user_id == self.seller_id:
            return SenderType.SELLER
        return None

    def __repr__(self):
        return f"<Transaction(id={self.id}, status={self.status}, amount={self.amount})>"


class TransactionMessage(Base):
    """
    Message table - append-only buyer/seller/system ledger per transaction.
    """
    __tablename__ = "transaction_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=False)
    sender_id = Column(Integer, nullable=False)  # 0 for system
    sender_type = Column(_enum(SenderType), nullable=False)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    read_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_message_transaction_id", "transaction_id", "id"),
    )

    transaction = relationship("Transaction", back_populates="messages")

    def __repr__(self):
        return f"<TransactionMessage(id={self.id}, txn={self.transaction_id}, sender={self.sender_type})>"


class EvidenceRef(Base):
    """
    Evidence table - references to receipts and delivery-proof images.

    Only the reference is stored here; the bytes live in external storage.
    """
    __tablename__ = "evidence_refs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=False)
    kind = Column(_enum(EvidenceKind), nullable=False)
    ref = Column(String(500), nullable=False)
    added_by = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("uq_evidence_transaction_ref", "transaction_id", "ref", unique=True),
    )

    transaction = relationship("Transaction", back_populates="evidence")

    def __repr__(self):
        return f"<EvidenceRef(id={self.id}, kind={self.kind}, ref={self.ref})>"
