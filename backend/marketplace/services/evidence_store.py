"""
Evidence store.

WHAT: Attach and detach payment receipts and delivery-proof images
WHY: Receipts back a buyer's payment claim and delivery proof backs the
     seller's; both are part of the transaction snapshot
HOW: Evidence rows are children of the transaction and change it through a
     version-checked update; bytes live in EvidenceStorage, only refs are kept
"""

from typing import List, Optional

from sqlalchemy.orm import sessionmaker

from .collaborators import EvidenceStorage
from .guards import require, require_party_or_admin
from .messaging_ledger import MessagingLedger
from .notifications import NotificationDispatcher
from ..core.models import EvidenceKind, EvidenceRef, PaymentStatus, Transaction, TransactionStatus, utcnow
from ..core.store import transaction_store, unit_of_work
from ..models.domain import Actor, EvidenceView, NotificationEvent, TransactionView
from ..utils.exceptions import InvalidStateError, NotAuthorizedError, NotFoundError, ValidationError
from ..utils.logger import get_audit_logger, get_logger

logger = get_logger(__name__)
audit = get_audit_logger()

# Statuses in which a party may still add or remove each kind of evidence
MANAGEABLE_STATUSES = {
    EvidenceKind.RECEIPT: (TransactionStatus.PENDING,),
    EvidenceKind.DELIVERY_PROOF: (TransactionStatus.PAID, TransactionStatus.SHIPPED, TransactionStatus.DELIVERED),
}


def _owner_id(txn: Transaction, kind: EvidenceKind) -> int:
    """Receipts belong to the buyer, delivery proof to the seller."""
    return txn.buyer_id if kind == EvidenceKind.RECEIPT else txn.seller_id


def _require_manageable(txn: Transaction, kind: EvidenceKind) -> None:
    allowed = MANAGEABLE_STATUSES[kind]
    if txn.status not in allowed:
        raise InvalidStateError(
            f"Cannot change {kind.value} evidence: transaction is {txn.status.value}, "
            f"must be {' or '.join(s.value for s in allowed)}",
            current_status=txn.status.value
        )


class EvidenceStore:
    """Receipt and delivery-proof references of transactions."""

    def __init__(
        self,
        session_factory: sessionmaker,
        storage: EvidenceStorage,
        ledger: MessagingLedger,
        dispatcher: NotificationDispatcher,
    ):
        self._session_factory = session_factory
        self._storage = storage
        self._ledger = ledger
        self._dispatcher = dispatcher

    def add_evidence(
        self,
        transaction_id: int,
        kind: EvidenceKind,
        ref: str,
        actor: Actor,
        expected_version: Optional[int] = None,
    ) -> TransactionView:
        """
        Attach a stored object to the transaction.

        Receipts: buyer only, while pending; moves payment_status to processing.
        Delivery proof: seller only, while paid, shipped or delivered.
        """
        kind = EvidenceKind(kind)
        ref = (ref or "").strip()
        if not ref:
            raise ValidationError("Evidence reference is required", [{"field": "ref", "error": "required"}])

        def apply(txn: Transaction) -> str:
            owner = "buyer" if kind == EvidenceKind.RECEIPT else "seller"
            require(_owner_id(txn, kind) == actor.id, f"Only the {owner} can add {kind.value} evidence", actor)
            _require_manageable(txn, kind)
            if any(e.ref == ref for e in txn.evidence):
                raise ValidationError(f"Evidence {ref} is already attached",
                                      [{"field": "ref", "error": "duplicate"}])

            txn.evidence.append(EvidenceRef(kind=kind, ref=ref, added_by=actor.id, created_at=utcnow()))
            if kind == EvidenceKind.RECEIPT:
                if txn.payment_status in (PaymentStatus.PENDING, PaymentStatus.FAILED):
                    txn.payment_status = PaymentStatus.PROCESSING
                return "Payment receipt uploaded. Waiting for payment confirmation."
            return "Delivery proof added."

        return self._change(transaction_id, actor, expected_version, apply, "transaction.evidence_added",
                            {"kind": kind.value, "ref": ref})

    def upload_evidence(
        self,
        transaction_id: int,
        kind: EvidenceKind,
        data: bytes,
        actor: Actor,
        expected_version: Optional[int] = None,
    ) -> TransactionView:
        """Store the bytes, then attach the reference; the blob is removed again if attaching fails."""
        ref = self._storage.put(data)
        try:
            return self.add_evidence(transaction_id, kind, ref, actor, expected_version=expected_version)
        except Exception:
            self._discard(ref)
            raise

    def remove_evidence(
        self,
        transaction_id: int,
        ref: str,
        actor: Actor,
        expected_version: Optional[int] = None,
    ) -> TransactionView:
        """
        Detach evidence and delete the stored object.

        Allowed for the party who added it, while its kind is still manageable
        in the current status, and for administrators at any time.
        """
        def apply(txn: Transaction) -> str:
            match = next((e for e in txn.evidence if e.ref == ref), None)
            if match is None:
                raise NotFoundError("Evidence", ref)
            if not (actor.is_admin or match.added_by == actor.id):
                raise NotAuthorizedError(f"User {actor.id} did not add evidence {ref}", actor_id=actor.id)
            if not actor.is_admin:
                _require_manageable(txn, match.kind)

            txn.evidence.remove(match)
            if (match.kind == EvidenceKind.RECEIPT and txn.payment_receipt is None
                    and txn.payment_status == PaymentStatus.PROCESSING):
                txn.payment_status = PaymentStatus.PENDING
            label = "Payment receipt" if match.kind == EvidenceKind.RECEIPT else "Delivery proof"
            return f"{label} removed."

        view = self._change(transaction_id, actor, expected_version, apply, "transaction.evidence_removed",
                            {"ref": ref})
        self._discard(ref)
        return view

    def list_evidence(self, transaction_id: int, actor: Actor) -> List[EvidenceView]:
        with unit_of_work(self._session_factory) as db:
            txn = transaction_store.get(db, transaction_id)
            require_party_or_admin(txn, actor)
            return [EvidenceView.model_validate(e) for e in txn.evidence]

    def _change(self, transaction_id, actor, expected_version, apply, event_type, extra_payload) -> TransactionView:
        with unit_of_work(self._session_factory) as db:
            notes = []
            txn = transaction_store.update(db, transaction_id, expected_version, lambda t: notes.append(apply(t)))
            self._ledger.append_system(db, txn.id, notes[0])
            view = TransactionView.model_validate(txn)

        payload = {"status": view.status.value, "payment_status": view.payment_status.value,
                   "version": view.version, **extra_payload}
        self._dispatcher.dispatch([
            NotificationEvent(type=event_type, recipient_id=recipient, transaction_id=view.id, payload=payload)
            for recipient in (view.buyer_id, view.seller_id)
            if recipient != actor.id
        ])
        audit.info(f"Transaction {transaction_id}: {event_type} by user {actor.id} (version={view.version})")
        return view

    def _discard(self, ref: str) -> None:
        try:
            self._storage.delete(ref)
        except Exception as e:
            logger.warning(f"Could not delete stored evidence {ref}: {e}")
