"""
Messaging ledger for transactions.

WHAT: Append-only buyer/seller/system message log per transaction
WHY: Parties talk through the transaction, and every state change leaves a
     system annotation behind for audit
HOW: Rows in transaction_messages; human posts are gated on party membership
     and non-terminal status, system posts are always allowed
"""

from typing import Iterator

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, sessionmaker

from .guards import require_party, require_party_or_admin
from .notifications import NotificationDispatcher
from ..core.models import SenderType, TransactionMessage, utcnow
from ..core.store import transaction_store, unit_of_work
from ..models.domain import Actor, MessageView, NotificationEvent
from ..utils.exceptions import InvalidStateError, ValidationError
from ..utils.logger import get_logger

logger = get_logger(__name__)

SYSTEM_SENDER_ID = 0
MAX_MESSAGE_LENGTH = 2000


class MessageListing:
    """
    Lazy, restartable view over a transaction's messages.

    Each iteration is a fresh read in id (= chronological) order, fetched in
    keyset pages. The upper bound is fixed when iteration starts, so a single
    pass is finite even while new messages are being appended.
    """

    def __init__(self, session_factory: sessionmaker, transaction_id: int, after_id: int = 0, page_size: int = 100):
        self._session_factory = session_factory
        self.transaction_id = transaction_id
        self.after_id = after_id
        self.page_size = page_size

    def __iter__(self) -> Iterator[MessageView]:
        with self._session_factory() as db:
            upper = db.scalar(
                select(func.max(TransactionMessage.id))
                .where(TransactionMessage.transaction_id == self.transaction_id)
            )
        if upper is None or upper <= self.after_id:
            return

        last_id = self.after_id
        while True:
            with self._session_factory() as db:
                rows = db.scalars(
                    select(TransactionMessage)
                    .where(
                        TransactionMessage.transaction_id == self.transaction_id,
                        TransactionMessage.id > last_id,
                        TransactionMessage.id <= upper,
                    )
                    .order_by(TransactionMessage.id)
                    .limit(self.page_size)
                ).all()
                page = [MessageView.model_validate(row) for row in rows]

            yield from page
            if len(page) < self.page_size:
                return
            last_id = page[-1].id


class MessagingLedger:
    """Posts and lists transaction messages."""

    def __init__(self, session_factory: sessionmaker, dispatcher: NotificationDispatcher):
        self._session_factory = session_factory
        self._dispatcher = dispatcher

    def append_system(self, db: Session, transaction_id: int, text: str) -> TransactionMessage:
        """
        Record a system annotation inside the caller's unit of work.

        Allowed in every state, including terminal ones.
        """
        message = TransactionMessage(
            transaction_id=transaction_id,
            sender_id=SYSTEM_SENDER_ID,
            sender_type=SenderType.SYSTEM,
            message=text,
            created_at=utcnow(),
        )
        db.add(message)
        db.flush()
        return message

    def post_message(self, transaction_id: int, actor: Actor, text: str) -> MessageView:
        """
        Post a human message from the buyer or seller.

        Raises:
            NotFoundError: unknown transaction
            NotAuthorizedError: actor is not a party to the transaction
            ValidationError: empty or oversized text
            InvalidStateError: transaction already completed, cancelled or refunded
        """
        body = (text or "").strip()
        if not body:
            raise ValidationError("Message text is required",
                                  [{"field": "message", "error": "required"}])
        if len(body) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message exceeds {MAX_MESSAGE_LENGTH} characters",
                                  [{"field": "message", "error": "too_long"}])

        with unit_of_work(self._session_factory) as db:
            txn = transaction_store.get(db, transaction_id)
            sender_type = require_party(txn, actor)
            if txn.is_terminal:
                raise InvalidStateError(
                    f"Cannot post messages on a {txn.status.value} transaction",
                    current_status=txn.status.value
                )

            message = TransactionMessage(
                transaction_id=transaction_id,
                sender_id=actor.id,
                sender_type=sender_type,
                message=body,
                created_at=utcnow(),
            )
            db.add(message)
            db.flush()
            view = MessageView.model_validate(message)
            recipient = txn.seller_id if sender_type == SenderType.BUYER else txn.buyer_id

        self._dispatcher.dispatch([NotificationEvent(
            type="message.posted",
            recipient_id=recipient,
            transaction_id=transaction_id,
            payload={"message_id": view.id, "sender_type": sender_type.value},
        )])
        return view

    def list_messages(self, transaction_id: int, actor: Actor, after_id: int = 0) -> MessageListing:
        """
        Messages of a transaction, oldest first; after_id skips those already seen.

        Access is checked now; the messages themselves are read lazily.
        """
        with unit_of_work(self._session_factory) as db:
            txn = transaction_store.get(db, transaction_id)
            require_party_or_admin(txn, actor)
        return MessageListing(self._session_factory, transaction_id, after_id=after_id)

    def mark_read(self, transaction_id: int, actor: Actor) -> int:
        """Stamp read_at on the counterparty's unread messages; returns how many."""
        with unit_of_work(self._session_factory) as db:
            txn = transaction_store.get(db, transaction_id)
            require_party(txn, actor)
            result = db.execute(
                update(TransactionMessage)
                .where(
                    TransactionMessage.transaction_id == transaction_id,
                    TransactionMessage.sender_type != SenderType.SYSTEM,
                    TransactionMessage.sender_id != actor.id,
                    TransactionMessage.read_at.is_(None),
                )
                .values(read_at=utcnow())
            )
            count = result.rowcount or 0
        logger.debug(f"User {actor.id} read {count} messages on transaction {transaction_id}")
        return count

