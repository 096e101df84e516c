"""Offer and transaction services."""

from .collaborators import (
    EvidenceStorage,
    HeaderIdentity,
    Identity,
    InMemoryEvidenceStorage,
    InMemoryListings,
    Listings,
)
from .evidence_store import EvidenceStore
from .factory import Marketplace, get_marketplace, reset_marketplace, set_marketplace
from .messaging_ledger import MessageListing, MessagingLedger
from .notifications import LoggingNotifier, NotificationDispatcher, Notifications, RecordingNotifier
from .offer_engine import OfferAction, OfferEngine, OfferRole
from .scheduler import SweepScheduler
from .transaction_machine import DisputeOutcome, TransactionStateMachine

__all__ = [
    "EvidenceStorage",
    "HeaderIdentity",
    "Identity",
    "InMemoryEvidenceStorage",
    "InMemoryListings",
    "Listings",
    "EvidenceStore",
    "Marketplace",
    "get_marketplace",
    "reset_marketplace",
    "set_marketplace",
    "MessageListing",
    "MessagingLedger",
    "LoggingNotifier",
    "NotificationDispatcher",
    "Notifications",
    "RecordingNotifier",
    "OfferAction",
    "OfferEngine",
    "OfferRole",
    "SweepScheduler",
    "DisputeOutcome",
    "TransactionStateMachine",
]
