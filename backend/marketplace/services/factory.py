"""
Service wiring with singleton pattern.

WHAT: Builds the engines once and hands the same instances to every request
WHY: Engines share the session factory, dispatcher and collaborators; the
     API layer and the lifespan hook must see one consistent set
HOW: Marketplace bundle cached in a module global; tests swap it with
     set_marketplace() and clear it with reset_marketplace()
"""

from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .collaborators import EvidenceStorage, InMemoryEvidenceStorage, InMemoryListings, Listings
from .evidence_store import EvidenceStore
from .messaging_ledger import MessagingLedger
from .notifications import LoggingNotifier, NotificationDispatcher, Notifications
from .offer_engine import OfferEngine
from .scheduler import SweepScheduler
from .transaction_machine import TransactionStateMachine
from ..core.config import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)


class Marketplace:
    """All offer/transaction services wired against one database."""

    def __init__(
        self,
        session_factory: sessionmaker,
        listings: Listings,
        storage: EvidenceStorage,
        notifier: Notifications,
        notification_workers: int = 0,
    ):
        self.session_factory = session_factory
        self.listings = listings
        self.storage = storage
        self.dispatcher = NotificationDispatcher(notifier, workers=notification_workers)
        self.messages = MessagingLedger(session_factory, self.dispatcher)
        self.transactions = TransactionStateMachine(session_factory, listings, self.messages, self.dispatcher)
        self.offers = OfferEngine(session_factory, listings, self.transactions, self.dispatcher)
        self.evidence = EvidenceStore(session_factory, storage, self.messages, self.dispatcher)
        self.sweeps = SweepScheduler(self.offers, self.transactions)

    @property
    def engine(self) -> Engine:
        return self.session_factory.kw["bind"]

    def shutdown(self) -> None:
        """Stop sweeps and drain pending notifications."""
        self.sweeps.stop()
        self.dispatcher.shutdown(wait=True)


# Singleton instance
_marketplace_instance: Optional[Marketplace] = None


def _default_listings() -> InMemoryListings:
    if not settings.LISTINGS_FILE:
        logger.warning("LISTINGS_FILE is not set; every offer and purchase will find no listing")
        return InMemoryListings()
    return InMemoryListings.from_file(settings.LISTINGS_FILE)


def get_marketplace() -> Marketplace:
    """
    Get the configured Marketplace singleton.

    The default wiring uses the application database, in-process listing and
    evidence collaborators, and the logging notifier. Listings come from
    LISTINGS_FILE; an application with its own catalogue installs a wiring
    with set_marketplace() before the first request.
    """
    global _marketplace_instance

    if _marketplace_instance is None:
        # Import here so tests can swap the engine before first use
        from ..core.database import SessionLocal

        listings = _default_listings()
        _marketplace_instance = Marketplace(
            session_factory=SessionLocal,
            listings=listings,
            storage=InMemoryEvidenceStorage(),
            notifier=LoggingNotifier(),
            notification_workers=settings.NOTIFICATION_WORKERS,
        )
        logger.info(f"Marketplace services initialized ({len(listings)} listings, "
                    f"notification workers: {settings.NOTIFICATION_WORKERS})")

    return _marketplace_instance


def set_marketplace(marketplace: Marketplace) -> None:
    """Install a custom wiring (tests, embedding applications)."""
    global _marketplace_instance
    _marketplace_instance = marketplace


def reset_marketplace() -> None:
    """Reset the singleton (useful for testing)."""
    global _marketplace_instance
    _marketplace_instance = None
