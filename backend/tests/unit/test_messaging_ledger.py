"""
Unit tests for the messaging ledger.

WHAT: Test posting, lazy listing and read receipts
WHY: The ledger is the audit trail of every transaction
HOW: Post through the services and iterate the returned listing
"""

import pytest

from marketplace.core.models import SenderType, TransactionMessage
from marketplace.core.store import unit_of_work
from marketplace.services.messaging_ledger import MAX_MESSAGE_LENGTH, MessageListing, SYSTEM_SENDER_ID
from marketplace.utils.exceptions import InvalidStateError, NotAuthorizedError, NotFoundError, ValidationError


@pytest.mark.unit
class TestPostMessage:

    def test_sender_type_follows_actor(self, services, pending_txn, buyer, seller, notifier):
        from_buyer = services.messages.post_message(pending_txn.id, buyer, "When can I collect?")
        from_seller = services.messages.post_message(pending_txn.id, seller, "  Tomorrow at 5  ")

        assert from_buyer.sender_type == SenderType.BUYER
        assert from_buyer.sender_id == buyer.id
        assert from_seller.sender_type == SenderType.SELLER
        assert from_seller.message == "Tomorrow at 5"
        assert [e.recipient_id for e in notifier.of_type("message.posted")] == [seller.id, buyer.id]

    def test_stranger_and_admin_cannot_post(self, services, pending_txn, stranger, admin):
        for actor in (stranger, admin):
            with pytest.raises(NotAuthorizedError):
                services.messages.post_message(pending_txn.id, actor, "hello")

    @pytest.mark.parametrize("text", ["", "   ", None, "x" * (MAX_MESSAGE_LENGTH + 1)])
    def test_invalid_text(self, services, pending_txn, buyer, text):
        with pytest.raises(ValidationError):
            services.messages.post_message(pending_txn.id, buyer, text)

    def test_no_posts_on_terminal_transaction(self, services, pending_txn, buyer):
        services.transactions.cancel(pending_txn.id, buyer, "found another")
        with pytest.raises(InvalidStateError):
            services.messages.post_message(pending_txn.id, buyer, "sorry")

        # the cancellation itself was still recorded
        last = list(services.messages.list_messages(pending_txn.id, buyer))[-1]
        assert last.sender_type == SenderType.SYSTEM
        assert last.sender_id == SYSTEM_SENDER_ID
        assert "found another" in last.message

    def test_unknown_transaction(self, services, buyer):
        with pytest.raises(NotFoundError):
            services.messages.post_message(404, buyer, "hi")


@pytest.mark.unit
class TestListMessages:

    def test_chronological_and_restartable(self, services, pending_txn, buyer, seller):
        listing = services.messages.list_messages(pending_txn.id, seller)
        assert isinstance(listing, MessageListing)

        first_pass = list(listing)
        services.messages.post_message(pending_txn.id, buyer, "one")
        services.messages.post_message(pending_txn.id, seller, "two")
        second_pass = list(listing)

        assert len(first_pass) == 1
        assert [m.message for m in second_pass[1:]] == ["one", "two"]
        assert [m.id for m in second_pass] == sorted(m.id for m in second_pass)

    def test_pages_through_long_history(self, services, session_factory, pending_txn, buyer):
        for n in range(7):
            services.messages.post_message(pending_txn.id, buyer, f"message {n}")

        listing = MessageListing(session_factory, pending_txn.id, page_size=3)
        messages = list(listing)
        assert len(messages) == 8
        assert messages[-1].message == "message 6"

    def test_pass_is_bounded_while_appending(self, services, session_factory, pending_txn, buyer):
        listing = MessageListing(session_factory, pending_txn.id, page_size=1)
        seen = []
        for message in listing:
            seen.append(message.id)
            if len(seen) == 1:
                services.messages.post_message(pending_txn.id, buyer, "late arrival")
        assert len(seen) == 1

    def test_after_id_resumes_past_seen_messages(self, services, pending_txn, buyer, seller):
        posted = [services.messages.post_message(pending_txn.id, buyer, f"poll {n}") for n in range(5)]

        listing = services.messages.list_messages(pending_txn.id, seller, after_id=posted[1].id)
        listing.page_size = 2

        assert [m.id for m in listing] == [m.id for m in posted[2:]]
        assert list(services.messages.list_messages(pending_txn.id, seller, after_id=posted[-1].id)) == []

    def test_admin_can_read_stranger_cannot(self, services, pending_txn, admin, stranger):
        assert len(list(services.messages.list_messages(pending_txn.id, admin))) == 1
        with pytest.raises(NotAuthorizedError):
            services.messages.list_messages(pending_txn.id, stranger)


@pytest.mark.unit
def test_mark_read_only_touches_counterparty_messages(services, session_factory, pending_txn, buyer, seller):
    services.messages.post_message(pending_txn.id, buyer, "hi")
    services.messages.post_message(pending_txn.id, seller, "hello")
    services.messages.post_message(pending_txn.id, seller, "still there?")

    assert services.messages.mark_read(pending_txn.id, buyer) == 2
    assert services.messages.mark_read(pending_txn.id, buyer) == 0

    with unit_of_work(session_factory) as db:
        rows = db.query(TransactionMessage).filter_by(transaction_id=pending_txn.id).all()
        unread = {(r.sender_type, r.read_at is None) for r in rows}
    assert (SenderType.SELLER, False) in unread
    assert (SenderType.BUYER, True) in unread
    assert (SenderType.SYSTEM, True) in unread
