"""
Offer engine.

WHAT: Create, accept/reject, cancel and expire buyer offers on listings
WHY: An accepted offer is the only negotiated way into a transaction, so the
     accept path must be atomic and preserve the agreed amount exactly
HOW: Version-checked updates through the entity store; acceptance marks the
     offer and creates the transaction in one unit of work via the state machine
"""

import enum
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .collaborators import Listings
from .notifications import NotificationDispatcher
from .transaction_machine import TransactionStateMachine, offer_voided_event
from ..core.config import settings
from ..core.models import Offer, OfferStatus, utcnow
from ..core.store import offer_store, unit_of_work
from ..models.domain import Actor, NotificationEvent, OfferResolution, OfferView, TransactionView
from ..utils.exceptions import (
    InvalidStateError,
    NotAuthorizedError,
    SelfDealingError,
    ValidationError,
    VersionConflictError,
)
from ..utils.logger import get_audit_logger, get_logger
from ..utils.money import parse_amount

logger = get_logger(__name__)
audit = get_audit_logger()

MAX_NOTE_LENGTH = 500


class OfferAction(str, enum.Enum):
    """Seller response to a pending offer."""
    ACCEPT = "accept"
    REJECT = "reject"


class OfferRole(str, enum.Enum):
    """Which side of the offers a listing call asks for."""
    BUYER = "buyer"
    SELLER = "seller"


def _require_pending(offer: Offer, now: datetime) -> None:
    if offer.status != OfferStatus.PENDING:
        raise InvalidStateError(f"Offer already {offer.status.value}", current_status=offer.status.value)
    if offer.expires_at is not None and offer.expires_at <= now:
        # not swept yet, but no longer actionable
        raise InvalidStateError("Offer has expired", current_status=OfferStatus.EXPIRED.value)


class OfferEngine:
    """Lifecycle of buyer offers."""

    def __init__(
        self,
        session_factory: sessionmaker,
        listings: Listings,
        transactions: TransactionStateMachine,
        dispatcher: NotificationDispatcher,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._listings = listings
        self._transactions = transactions
        self._dispatcher = dispatcher
        self._clock = clock

    def create_offer(
        self,
        item_id: int,
        actor: Actor,
        amount,
        note: Optional[str] = None,
        ttl: Optional[timedelta] = None,
    ) -> OfferView:
        """
        Make an offer on a listing.

        Any pending offer of the same buyer on the same item is cancelled in the
        same unit of work, so a buyer has at most one live offer per item.

        Args:
            item_id: Listing being bid on
            actor: The buyer
            amount: Decimal, int or numeric string
            note: Optional message to the seller
            ttl: Time to live; defaults to OFFER_DEFAULT_TTL_HOURS

        Raises:
            InvalidAmountError: amount not a positive decimal
            NotFoundError: unknown listing
            InvalidStateError: listing not available or item already sold
            SelfDealingError: offer on own listing
            ValidationError: ttl out of range or oversized note
        """
        value = parse_amount(amount)
        if ttl is None:
            ttl = timedelta(hours=settings.OFFER_DEFAULT_TTL_HOURS)
        if ttl <= timedelta(0):
            raise ValidationError("Offer TTL must be positive", [{"field": "ttl", "error": "not_positive"}])
        if ttl > timedelta(hours=settings.OFFER_MAX_TTL_HOURS):
            raise ValidationError(f"Offer TTL exceeds {settings.OFFER_MAX_TTL_HOURS} hours",
                                  [{"field": "ttl", "error": "too_long"}])
        note = (note or "").strip() or None
        if note is not None and len(note) > MAX_NOTE_LENGTH:
            raise ValidationError(f"Note exceeds {MAX_NOTE_LENGTH} characters",
                                  [{"field": "note", "error": "too_long"}])

        listing = self._listings.get(item_id)
        if listing.seller_id == actor.id:
            raise SelfDealingError(actor.id, item_id)

        now = self._clock()
        try:
            expires_at = now + ttl
        except OverflowError:
            raise ValidationError("Offer TTL is out of range", [{"field": "ttl", "error": "out_of_range"}])

        with unit_of_work(self._session_factory) as db:
            self._transactions.require_item_available(db, listing)
            superseded = self._supersede_pending(db, item_id, actor.id)
            try:
                offer = offer_store.create(db, Offer(
                    item_id=item_id,
                    buyer_id=actor.id,
                    seller_id=listing.seller_id,
                    amount=value,
                    currency=listing.currency,
                    status=OfferStatus.PENDING,
                    note=note,
                    expires_at=expires_at,
                    created_at=now,
                    updated_at=now,
                ))
            except IntegrityError as e:
                # a concurrent create_offer from the same buyer inserted first
                raise VersionConflictError("Offer", None) from e
            view = OfferView.model_validate(offer)

        if superseded:
            logger.info(f"Offer {view.id} supersedes offers {superseded} on item {item_id}")
        audit.info(f"Offer {view.id} created: buyer={actor.id} item={item_id} amount={value} {view.currency}")
        self._dispatcher.dispatch([self._event("offer.created", view, view.seller_id)])
        return view

    def respond_to_offer(
        self,
        offer_id: int,
        actor: Actor,
        action: OfferAction,
        expected_version: Optional[int] = None,
    ) -> OfferResolution:
        """
        Seller accepts or rejects a pending offer.

        Accepting creates the transaction at the offered amount and cancels the
        other pending offers on the item; all of it commits or none of it does.
        """
        action = OfferAction(action)
        now = self._clock()
        events: List[NotificationEvent] = []

        with unit_of_work(self._session_factory) as db:
            def check(offer: Offer) -> None:
                if offer.seller_id != actor.id:
                    raise NotAuthorizedError("Only the seller can respond to an offer", actor_id=actor.id)
                _require_pending(offer, now)
                offer.status = OfferStatus.ACCEPTED if action == OfferAction.ACCEPT else OfferStatus.REJECTED

            offer = offer_store.update(db, offer_id, expected_version, check)
            transaction_view: Optional[TransactionView] = None

            if action == OfferAction.ACCEPT:
                listing = self._listings.get(offer.item_id)
                binding = self._transactions.create_from_offer(db, offer, listing)
                txn = binding.transaction
                offer = offer_store.update(
                    db, offer.id, offer.version,
                    lambda o: setattr(o, "transaction_id", txn.id)
                )
                transaction_view = TransactionView.model_validate(txn)
                events.extend(offer_voided_event(o) for o in binding.voided_offers)

            view = OfferView.model_validate(offer)

        event_type = "offer.accepted" if action == OfferAction.ACCEPT else "offer.rejected"
        event = self._event(event_type, view, view.buyer_id)
        if transaction_view is not None:
            event = event.model_copy(update={"transaction_id": transaction_view.id})
        self._dispatcher.dispatch([event] + events)

        audit.info(f"Offer {offer_id} {view.status.value} by seller {actor.id}"
                    + (f" -> transaction {transaction_view.id}" if transaction_view else ""))
        return OfferResolution(offer=view, transaction=transaction_view)

    def cancel_offer(self, offer_id: int, actor: Actor, expected_version: Optional[int] = None) -> OfferView:
        """Buyer withdraws their pending offer."""
        now = self._clock()

        def apply(offer: Offer) -> None:
            if offer.buyer_id != actor.id:
                raise NotAuthorizedError("Only the buyer can cancel their offer", actor_id=actor.id)
            _require_pending(offer, now)
            offer.status = OfferStatus.CANCELLED

        with unit_of_work(self._session_factory) as db:
            view = OfferView.model_validate(offer_store.update(db, offer_id, expected_version, apply))

        audit.info(f"Offer {offer_id} cancelled by buyer {actor.id}")
        self._dispatcher.dispatch([self._event("offer.cancelled", view, view.seller_id)])
        return view

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """
        Mark pending offers past their expiry as expired.

        Returns the number of offers expired by this sweep. An offer accepted or
        cancelled concurrently keeps that outcome and is not counted.
        """
        now = now or self._clock()
        with unit_of_work(self._session_factory) as db:
            due = [
                (o.id, o.version) for o in offer_store.find(
                    db,
                    Offer.status == OfferStatus.PENDING,
                    Offer.expires_at.is_not(None),
                    Offer.expires_at <= now,
                    order_by=Offer.id,
                )
            ]

        expired: List[OfferView] = []
        for offer_id, version in due:
            try:
                with unit_of_work(self._session_factory) as db:
                    offer = offer_store.update(
                        db, offer_id, version,
                        lambda o: setattr(o, "status", OfferStatus.EXPIRED)
                    )
                    expired.append(OfferView.model_validate(offer))
            except VersionConflictError:
                logger.debug(f"Offer {offer_id} changed during expiry sweep, skipped")

        for view in expired:
            audit.info(f"Offer {view.id} expired (item={view.item_id}, buyer={view.buyer_id})")
            self._dispatcher.dispatch([
                self._event("offer.expired", view, view.buyer_id),
                self._event("offer.expired", view, view.seller_id),
            ])
        if expired:
            logger.info(f"Expired {len(expired)} offers")
        return len(expired)

    def get_offer(self, offer_id: int, actor: Actor) -> OfferView:
        with unit_of_work(self._session_factory) as db:
            offer = offer_store.get(db, offer_id)
            if not (actor.is_admin or actor.is_system or actor.id in (offer.buyer_id, offer.seller_id)):
                raise NotAuthorizedError(f"User {actor.id} cannot view offer {offer_id}", actor_id=actor.id)
            return OfferView.model_validate(offer)

    def list_offers(
        self,
        actor: Actor,
        role: Optional[OfferRole] = None,
        status: Optional[OfferStatus] = None,
        item_id: Optional[int] = None,
    ) -> List[OfferView]:
        """Offers the actor made or received, newest first."""
        if role == OfferRole.BUYER:
            criteria = [Offer.buyer_id == actor.id]
        elif role == OfferRole.SELLER:
            criteria = [Offer.seller_id == actor.id]
        else:
            criteria = [or_(Offer.buyer_id == actor.id, Offer.seller_id == actor.id)]
        if status is not None:
            criteria.append(Offer.status == status)
        if item_id is not None:
            criteria.append(Offer.item_id == item_id)

        with unit_of_work(self._session_factory) as db:
            return [OfferView.model_validate(o) for o in offer_store.find(db, *criteria, order_by=Offer.id.desc())]

    def _supersede_pending(self, db: Session, item_id: int, buyer_id: int) -> List[int]:
        previous = offer_store.find(
            db,
            Offer.item_id == item_id,
            Offer.buyer_id == buyer_id,
            Offer.status == OfferStatus.PENDING,
        )
        for offer in previous:
            offer_store.update(db, offer.id, offer.version, lambda o: setattr(o, "status", OfferStatus.CANCELLED))
        return [o.id for o in previous]

    @staticmethod
    def _event(event_type: str, offer: OfferView, recipient_id: int) -> NotificationEvent:
        return NotificationEvent(
            type=event_type,
            recipient_id=recipient_id,
            offer_id=offer.id,
            payload={
                "item_id": offer.item_id,
                "amount": str(offer.amount),
                "currency": offer.currency,
                "status": offer.status.value,
                "version": offer.version,
            },
        )
