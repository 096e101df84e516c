"""
Transaction state machine.

WHAT: Owns every status / payment-status / delivery-status change of a Transaction
WHY: Transition legality is encoded once here instead of being re-checked at
     each call site; callers only see the updated entity or a precise error
HOW: Each operation runs one unit of work: version-checked update, one system
     message in the ledger, then post-commit notifications to the counterparties

Edges (terminal states: completed, cancelled, refunded):

    pending                -> paid       mark_paid                 buyer | system
    paid                   -> shipped    set_delivery_status(ready_for_pickup | in_transit), set_tracking_number   seller
    shipped                -> delivered  set_delivery_status(delivered)                     seller
    delivered              -> completed  complete                  buyer | system
    non-terminal           -> cancelled  cancel(reason)            buyer | seller (admin only from disputed)
    paid|shipped|delivered -> disputed   report_problem            buyer | seller
    disputed               -> refunded   refund, resolve_dispute(refund)     admin
    disputed               -> completed  resolve_dispute(release)            admin
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .collaborators import Listings
from .guards import require, require_party, require_party_or_admin
from .messaging_ledger import MessagingLedger
from .notifications import NotificationDispatcher
from ..core.config import settings
from ..core.models import (
    DeliveryMethod,
    DeliveryStatus,
    ITEM_RELEASING_STATUSES,
    Offer,
    OfferStatus,
    PaymentStatus,
    Transaction,
    TransactionStatus,
    utcnow,
)
from ..core.store import offer_store, transaction_store, unit_of_work
from ..models.domain import SYSTEM_ACTOR, Actor, Listing, NotificationEvent, TransactionView
from ..utils.exceptions import (
    InvalidStateError,
    MarketplaceException,
    SelfDealingError,
    ValidationError,
)
from ..utils.logger import get_audit_logger, get_logger
from ..utils.money import format_amount, quantize

logger = get_logger(__name__)
audit = get_audit_logger()


class DisputeOutcome(str, enum.Enum):
    """Administrator decision on a disputed transaction."""
    RELEASE = "release"  # funds go to the seller, sale completes
    REFUND = "refund"    # funds go back to the buyer


DELIVERY_STATUS_MESSAGES = {
    DeliveryStatus.READY_FOR_PICKUP: "Item is ready for pickup.",
    DeliveryStatus.IN_TRANSIT: "Item is in transit.",
    DeliveryStatus.DELIVERED: "Item has been delivered. The transaction completes automatically "
                              "if no problem is reported.",
    DeliveryStatus.FAILED: "Delivery attempt failed. Please contact the seller.",
}

DISPATCHABLE_STATUSES = (TransactionStatus.PAID, TransactionStatus.SHIPPED)
DISPUTABLE_STATUSES = (TransactionStatus.PAID, TransactionStatus.SHIPPED, TransactionStatus.DELIVERED)


@dataclass
class SaleBinding:
    """A freshly created transaction plus the competing offers it voided."""
    transaction: Transaction
    voided_offers: List[Offer] = field(default_factory=list)


def _not_blank(value: Optional[str], field_name: str, label: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{label} is required", [{"field": field_name, "error": "required"}])
    return cleaned


def _require_not_terminal(txn: Transaction) -> None:
    if txn.is_terminal:
        raise InvalidStateError(
            f"Transaction is already {txn.status.value}",
            current_status=txn.status.value
        )


def _require_status(txn: Transaction, allowed: Iterable[TransactionStatus], action: str) -> None:
    allowed = tuple(allowed)
    if txn.status not in allowed:
        expected = " or ".join(s.value for s in allowed)
        raise InvalidStateError(
            f"Cannot {action}: transaction is {txn.status.value}, must be {expected}",
            current_status=txn.status.value
        )


class TransactionStateMachine:
    """Authoritative transitions for marketplace transactions."""

    def __init__(
        self,
        session_factory: sessionmaker,
        listings: Listings,
        ledger: MessagingLedger,
        dispatcher: NotificationDispatcher,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._listings = listings
        self._ledger = ledger
        self._dispatcher = dispatcher
        self._clock = clock

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def require_item_available(self, db: Session, listing: Listing) -> None:
        """
        Refuse to start a sale, or take offers, on an item that is already sold.

        The item is sold while any transaction on it is live or completed;
        a cancelled or refunded sale releases it.
        """
        if not listing.is_available:
            raise InvalidStateError("Item is no longer available", current_status=listing.status)
        live = transaction_store.find(
            db,
            Transaction.item_id == listing.item_id,
            Transaction.status.not_in(ITEM_RELEASING_STATUSES),
            limit=1,
        )
        if live:
            raise InvalidStateError("Item is no longer available", current_status="sold")

    def _insert_sale(self, db: Session, txn: Transaction) -> Transaction:
        try:
            return transaction_store.create(db, txn)
        except IntegrityError as e:
            # a concurrent sale of the same item committed first
            raise InvalidStateError("Item is no longer available", current_status="sold") from e

    def create_from_offer(self, db: Session, offer: Offer, listing: Listing) -> SaleBinding:
        """
        Bind an accepted offer into a transaction inside the caller's unit of work.

        Called by the offer engine only, after it has marked the offer
        accepted in the same session; both rows commit together or not at all.
        """
        self.require_item_available(db, listing)
        txn = self._insert_sale(db, Transaction(
            offer_id=offer.id,
            item_id=offer.item_id,
            buyer_id=offer.buyer_id,
            seller_id=offer.seller_id,
            amount=offer.amount,
            currency=offer.currency,
            status=TransactionStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            delivery_method=listing.delivery_method,
            delivery_status=DeliveryStatus.PENDING,
            created_at=self._clock(),
            updated_at=self._clock(),
        ))
        self._ledger.append_system(
            db, txn.id,
            f"Offer accepted. Transaction created for {format_amount(txn.amount, txn.currency)}. "
            f"Awaiting payment."
        )
        voided = self._void_competing_offers(db, offer.item_id, keep_offer_id=offer.id)
        logger.debug(f"Transaction {txn.id} created from offer {offer.id} (amount={txn.amount} {txn.currency})")
        return SaleBinding(transaction=txn, voided_offers=voided)

    def create_direct_purchase(
        self,
        item_id: int,
        actor: Actor,
        delivery_method: Optional[DeliveryMethod] = None,
        delivery_address: Optional[str] = None,
    ) -> TransactionView:
        """
        Buy a listing outright at its asking price.

        Raises:
            NotFoundError: unknown listing
            InvalidStateError: listing not available or item already sold
            SelfDealingError: buyer owns the listing
            ValidationError: delivery chosen without an address
        """
        listing = self._listings.get(item_id)
        if listing.seller_id == actor.id:
            raise SelfDealingError(actor.id, item_id)

        method = delivery_method or listing.delivery_method
        address = (delivery_address or "").strip() or None
        if method == DeliveryMethod.DELIVERY and not address:
            raise ValidationError(
                "Delivery address is required for delivery method",
                [{"field": "delivery_address", "error": "required"}]
            )

        with unit_of_work(self._session_factory) as db:
            self.require_item_available(db, listing)
            txn = self._insert_sale(db, Transaction(
                item_id=item_id,
                buyer_id=actor.id,
                seller_id=listing.seller_id,
                amount=quantize(listing.price),
                currency=listing.currency,
                status=TransactionStatus.PENDING,
                payment_status=PaymentStatus.PENDING,
                delivery_method=method,
                delivery_status=DeliveryStatus.PENDING,
                delivery_address=address,
                created_at=self._clock(),
                updated_at=self._clock(),
            ))
            self._ledger.append_system(
                db, txn.id,
                f"Purchase started for {format_amount(txn.amount, txn.currency)}. Awaiting payment."
            )
            voided = self._void_competing_offers(db, item_id)
            view = TransactionView.model_validate(txn)
            events = self._events(txn, actor, "transaction.created")
            events += [offer_voided_event(o) for o in voided]

        self._dispatcher.dispatch(events)
        audit.info(f"Transaction {view.id} created by direct purchase of item {item_id} by user {actor.id}")
        return view

    def _void_competing_offers(self, db: Session, item_id: int, keep_offer_id: Optional[int] = None) -> List[Offer]:
        """The item is sold: every other pending offer on it is cancelled."""
        criteria = [Offer.item_id == item_id, Offer.status == OfferStatus.PENDING]
        if keep_offer_id is not None:
            criteria.append(Offer.id != keep_offer_id)

        voided = []
        for other in offer_store.find(db, *criteria, order_by=Offer.id):
            voided.append(offer_store.update(
                db, other.id, other.version,
                lambda o: setattr(o, "status", OfferStatus.CANCELLED)
            ))
        if voided:
            logger.info(f"Cancelled {len(voided)} competing offers on item {item_id}")
        return voided

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_transaction(self, transaction_id: int, actor: Actor) -> TransactionView:
        with unit_of_work(self._session_factory) as db:
            txn = transaction_store.get(db, transaction_id)
            require_party_or_admin(txn, actor)
            return TransactionView.model_validate(txn)

    def list_transactions(
        self,
        actor: Actor,
        status: Optional[TransactionStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[TransactionView]:
        """Transactions where the actor is buyer or seller (all of them for admins), newest first."""
        criteria = []
        if not (actor.is_admin or actor.is_system):
            criteria.append(or_(Transaction.buyer_id == actor.id, Transaction.seller_id == actor.id))
        if status is not None:
            criteria.append(Transaction.status == status)

        with unit_of_work(self._session_factory) as db:
            rows = transaction_store.find(
                db, *criteria, order_by=Transaction.id.desc(), limit=limit + offset
            )
            return [TransactionView.model_validate(t) for t in rows[offset:]]

    # ------------------------------------------------------------------
    # Payment
    # ------------------------------------------------------------------

    def mark_paid(self, transaction_id: int, actor: Actor, expected_version: Optional[int] = None) -> TransactionView:
        """pending -> paid (buyer or payment processor)."""
        def apply(txn: Transaction) -> str:
            require(actor.is_system or txn.buyer_id == actor.id,
                    "Only the buyer or the payment processor can confirm payment", actor)
            _require_not_terminal(txn)
            if txn.payment_status == PaymentStatus.PAID:
                raise InvalidStateError("Payment has already been recorded",
                                        current_status=txn.status.value)
            _require_status(txn, [TransactionStatus.PENDING], "record payment")
            txn.payment_status = PaymentStatus.PAID
            txn.status = TransactionStatus.PAID
            return "Payment confirmed. Waiting for the seller to hand over or ship the item."

        return self._transition(transaction_id, actor, expected_version, apply, "transaction.paid")

    def record_payment_failure(
        self, transaction_id: int, actor: Actor, reason: str, expected_version: Optional[int] = None
    ) -> TransactionView:
        """Payment processor reports a failed charge; the transaction stays pending."""
        reason = _not_blank(reason, "reason", "Failure reason")

        def apply(txn: Transaction) -> str:
            require(actor.is_system, "Only the payment processor can report payment failures", actor)
            _require_status(txn, [TransactionStatus.PENDING], "record a payment failure")
            txn.payment_status = PaymentStatus.FAILED
            return f"Payment failed: {reason}"

        return self._transition(transaction_id, actor, expected_version, apply, "transaction.payment_failed")

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def set_delivery_status(
        self,
        transaction_id: int,
        actor: Actor,
        delivery_status: DeliveryStatus,
        expected_version: Optional[int] = None,
    ) -> TransactionView:
        """
        Seller reports delivery progress.

        ready_for_pickup (pickup) / in_transit (delivery) move paid -> shipped,
        delivered moves shipped -> delivered, failed is recorded on a shipped
        transaction without changing its status.
        """
        delivery_status = DeliveryStatus(delivery_status)

        def apply(txn: Transaction) -> str:
            require(txn.seller_id == actor.id, "Only the seller can update delivery status", actor)
            _require_not_terminal(txn)
            _require_status(txn, DISPATCHABLE_STATUSES, "update delivery status")

            if delivery_status == DeliveryStatus.PENDING:
                raise InvalidStateError("Delivery status cannot be reset to pending",
                                        current_status=txn.status.value)

            if delivery_status in (DeliveryStatus.READY_FOR_PICKUP, DeliveryStatus.IN_TRANSIT):
                expected_method = (DeliveryMethod.PICKUP if delivery_status == DeliveryStatus.READY_FOR_PICKUP
                                   else DeliveryMethod.DELIVERY)
                if txn.delivery_method != expected_method:
                    raise ValidationError(
                        f"{delivery_status.value} does not apply to {txn.delivery_method.value} transactions",
                        [{"field": "delivery_status", "error": "method_mismatch"}]
                    )
                txn.status = TransactionStatus.SHIPPED
            elif delivery_status == DeliveryStatus.DELIVERED:
                _require_status(txn, [TransactionStatus.SHIPPED], "mark delivered")
                txn.status = TransactionStatus.DELIVERED
                txn.delivered_at = self._clock()
            elif delivery_status == DeliveryStatus.FAILED:
                _require_status(txn, [TransactionStatus.SHIPPED], "record a failed delivery")

            txn.delivery_status = delivery_status
            return DELIVERY_STATUS_MESSAGES[delivery_status]

        return self._transition(
            transaction_id, actor, expected_version, apply, f"transaction.delivery.{delivery_status.value}"
        )

    def set_tracking_number(
        self, transaction_id: int, actor: Actor, tracking_number: str, expected_version: Optional[int] = None
    ) -> TransactionView:
        """Seller records a carrier tracking number; from paid this ships the item."""
        tracking_number = _not_blank(tracking_number, "tracking_number", "Tracking number")

        def apply(txn: Transaction) -> str:
            require(txn.seller_id == actor.id, "Only the seller can add tracking information", actor)
            _require_not_terminal(txn)
            _require_status(txn, DISPATCHABLE_STATUSES, "add tracking information")
            if txn.delivery_method != DeliveryMethod.DELIVERY:
                raise ValidationError("Tracking numbers only apply to delivery transactions",
                                      [{"field": "tracking_number", "error": "method_mismatch"}])
            txn.delivery_tracking_number = tracking_number
            if txn.status == TransactionStatus.PAID:
                txn.status = TransactionStatus.SHIPPED
                txn.delivery_status = DeliveryStatus.IN_TRANSIT
            return f"Item shipped. Tracking number: {tracking_number}"

        return self._transition(transaction_id, actor, expected_version, apply, "transaction.tracking_updated")

    def set_delivery_address(
        self, transaction_id: int, actor: Actor, address: str, expected_version: Optional[int] = None
    ) -> TransactionView:
        """Buyer sets or corrects the delivery address before the item ships."""
        address = _not_blank(address, "address", "Address")

        def apply(txn: Transaction) -> str:
            require(txn.buyer_id == actor.id, "Only the buyer can change the delivery address", actor)
            _require_not_terminal(txn)
            _require_status(txn, [TransactionStatus.PENDING, TransactionStatus.PAID], "change the delivery address")
            if txn.delivery_method != DeliveryMethod.DELIVERY:
                raise ValidationError("Pickup transactions have no delivery address",
                                      [{"field": "address", "error": "method_mismatch"}])
            txn.delivery_address = address
            return "Delivery address updated."

        return self._transition(transaction_id, actor, expected_version, apply, "transaction.address_updated")

    # ------------------------------------------------------------------
    # Completion and exceptional edges
    # ------------------------------------------------------------------

    def complete(self, transaction_id: int, actor: Actor, expected_version: Optional[int] = None) -> TransactionView:
        """delivered -> completed; completed_at is stamped exactly once."""
        def apply(txn: Transaction) -> str:
            require(actor.is_system or txn.buyer_id == actor.id,
                    "Only the buyer can confirm receipt", actor)
            _require_status(txn, [TransactionStatus.DELIVERED], "complete")
            txn.status = TransactionStatus.COMPLETED
            txn.completed_at = self._clock()
            if actor.is_system:
                return "Transaction automatically completed."
            return "Buyer confirmed receipt. Transaction completed."

        return self._transition(transaction_id, actor, expected_version, apply, "transaction.completed")

    def cancel(
        self, transaction_id: int, actor: Actor, reason: str, expected_version: Optional[int] = None
    ) -> TransactionView:
        """Any non-terminal state -> cancelled; disputed transactions only by an administrator."""
        reason = _not_blank(reason, "reason", "Cancellation reason")

        def apply(txn: Transaction) -> str:
            if actor.is_admin:
                who = "an administrator"
            else:
                who = f"the {require_party(txn, actor).value}"
            _require_not_terminal(txn)
            if txn.status == TransactionStatus.DISPUTED and not actor.is_admin:
                raise InvalidStateError(
                    "Transaction is disputed; only an administrator can cancel it",
                    current_status=txn.status.value
                )
            txn.status = TransactionStatus.CANCELLED
            txn.cancellation_reason = reason
            return f"Transaction cancelled by {who}. Reason: {reason}"

        return self._transition(transaction_id, actor, expected_version, apply, "transaction.cancelled",
                                extra_payload={"reason": reason})

    def report_problem(
        self, transaction_id: int, actor: Actor, description: str, expected_version: Optional[int] = None
    ) -> TransactionView:
        """paid | shipped | delivered -> disputed; payment and delivery status are left alone."""
        description = _not_blank(description, "description", "Problem description")

        def apply(txn: Transaction) -> str:
            party = require_party(txn, actor)
            _require_not_terminal(txn)
            if txn.status == TransactionStatus.DISPUTED:
                raise InvalidStateError("A problem has already been reported on this transaction",
                                        current_status=txn.status.value)
            _require_status(txn, DISPUTABLE_STATUSES, "report a problem")
            txn.status = TransactionStatus.DISPUTED
            txn.dispute_reason = description
            return f"A problem has been reported by the {party.value}: {description}"

        return self._transition(transaction_id, actor, expected_version, apply, "transaction.disputed",
                                extra_payload={"description": description})

    def refund(
        self, transaction_id: int, actor: Actor, note: Optional[str] = None, expected_version: Optional[int] = None
    ) -> TransactionView:
        """disputed -> refunded (administrator)."""
        def apply(txn: Transaction) -> str:
            require(actor.is_admin, "Only an administrator can refund a transaction", actor)
            _require_not_terminal(txn)
            _require_status(txn, [TransactionStatus.DISPUTED], "refund")
            txn.status = TransactionStatus.REFUNDED
            txn.payment_status = PaymentStatus.REFUNDED
            return _with_note("Dispute resolved in favour of the buyer. Payment refunded.", note)

        return self._transition(transaction_id, actor, expected_version, apply, "transaction.refunded")

    def resolve_dispute(
        self,
        transaction_id: int,
        actor: Actor,
        outcome: DisputeOutcome,
        note: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> TransactionView:
        """Administrator decision on a disputed transaction."""
        outcome = DisputeOutcome(outcome)
        if outcome == DisputeOutcome.REFUND:
            return self.refund(transaction_id, actor, note=note, expected_version=expected_version)

        def apply(txn: Transaction) -> str:
            require(actor.is_admin, "Only an administrator can resolve a dispute", actor)
            _require_not_terminal(txn)
            _require_status(txn, [TransactionStatus.DISPUTED], "resolve a dispute")
            txn.status = TransactionStatus.COMPLETED
            txn.completed_at = self._clock()
            return _with_note("Dispute resolved in favour of the seller. Transaction completed.", note)

        return self._transition(transaction_id, actor, expected_version, apply, "transaction.completed",
                                extra_payload={"resolution": outcome.value})

    # ------------------------------------------------------------------
    # Background sweep
    # ------------------------------------------------------------------

    def sweep_auto_complete(self, now: Optional[datetime] = None) -> int:
        """
        Complete transactions that have sat in delivered long enough.

        Each candidate is completed in its own unit of work at the version it
        was read with; a buyer who reports a problem in the meantime wins and
        the sweep skips that transaction.
        """
        now = now or self._clock()
        cutoff = now - timedelta(hours=settings.AUTO_COMPLETE_AFTER_HOURS)

        with unit_of_work(self._session_factory) as db:
            candidates = [
                (t.id, t.version) for t in transaction_store.find(
                    db,
                    Transaction.status == TransactionStatus.DELIVERED,
                    Transaction.delivered_at <= cutoff,
                    order_by=Transaction.id,
                )
            ]

        completed = 0
        for transaction_id, version in candidates:
            try:
                self.complete(transaction_id, SYSTEM_ACTOR, expected_version=version)
                completed += 1
            except MarketplaceException as e:
                logger.debug(f"Auto-complete skipped transaction {transaction_id}: {e.code} {e.message}")

        if completed:
            logger.info(f"Auto-completed {completed} delivered transactions")
        return completed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transition(
        self,
        transaction_id: int,
        actor: Actor,
        expected_version: Optional[int],
        apply: Callable[[Transaction], str],
        event_type: str,
        extra_payload: Optional[dict] = None,
    ) -> TransactionView:
        """Run one guarded transition as a single unit of work, then notify."""
        with unit_of_work(self._session_factory) as db:
            notes: List[str] = []
            before = {}

            def mutator(txn: Transaction) -> None:
                before["status"] = txn.status
                notes.append(apply(txn))

            txn = transaction_store.update(db, transaction_id, expected_version, mutator)
            self._ledger.append_system(db, txn.id, notes[0])
            view = TransactionView.model_validate(txn)
            events = self._events(txn, actor, event_type, extra_payload)

        self._dispatcher.dispatch(events)
        audit.info(
            f"Transaction {transaction_id}: {before['status'].value} -> {view.status.value} "
            f"({event_type}, actor={actor.id}/{actor.role.value}, version={view.version})"
        )
        return view

    def _events(
        self, txn: Transaction, actor: Actor, event_type: str, extra_payload: Optional[dict] = None
    ) -> List[NotificationEvent]:
        """One event per counterparty; the acting party is not notified about its own action."""
        payload = {
            "status": txn.status.value,
            "payment_status": txn.payment_status.value,
            "delivery_status": txn.delivery_status.value,
            "version": txn.version,
        }
        if extra_payload:
            payload.update(extra_payload)
        return [
            NotificationEvent(type=event_type, recipient_id=recipient, transaction_id=txn.id, payload=payload)
            for recipient in (txn.buyer_id, txn.seller_id)
            if recipient != actor.id
        ]


def offer_voided_event(offer: Offer) -> NotificationEvent:
    """Tell a buyer that their pending offer died because the item sold."""
    return NotificationEvent(
        type="offer.cancelled",
        recipient_id=offer.buyer_id,
        offer_id=offer.id,
        payload={"reason": "item_sold", "item_id": offer.item_id},
    )


def _with_note(message: str, note: Optional[str]) -> str:
    note = (note or "").strip()
    return f"{message} Note: {note}" if note else message
