"""
Unit tests for the versioned entity store.

WHAT: Test get/create/update, version stamps and unit-of-work semantics
WHY: First-writer-wins must hold without global locks
HOW: Drive EntityStore directly against a fresh SQLite database
"""

import threading
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from marketplace.core.models import Offer, OfferStatus, utcnow
from marketplace.core.store import offer_store, unit_of_work
from marketplace.utils.exceptions import (
    InvalidStateError,
    NotFoundError,
    UnavailableError,
    VersionConflictError,
)


def _new_offer(buyer_id=20, item_id=1, status=OfferStatus.PENDING):
    return Offer(
        item_id=item_id,
        buyer_id=buyer_id,
        seller_id=10,
        amount=Decimal("50.00"),
        currency="GBP",
        status=status,
        expires_at=utcnow() + timedelta(days=7),
    )


@pytest.fixture
def offer_id(session_factory):
    with unit_of_work(session_factory) as db:
        return offer_store.create(db, _new_offer()).id


@pytest.mark.unit
class TestEntityStore:

    def test_create_assigns_id_and_version_one(self, session_factory):
        with unit_of_work(session_factory) as db:
            offer = offer_store.create(db, _new_offer())
            assert offer.id is not None
            assert offer.version == 1

    def test_get_unknown_raises_not_found(self, session_factory):
        with pytest.raises(NotFoundError) as exc_info:
            with unit_of_work(session_factory) as db:
                offer_store.get(db, 12345)
        assert exc_info.value.details == {"entity": "Offer", "id": 12345}

    def test_update_bumps_version(self, session_factory, offer_id):
        with unit_of_work(session_factory) as db:
            offer = offer_store.update(db, offer_id, 1, lambda o: setattr(o, "note", "hello"))
            assert offer.version == 2

        with unit_of_work(session_factory) as db:
            offer = offer_store.get(db, offer_id)
            assert offer.note == "hello"
            assert offer.version == 2

    def test_update_with_stale_version_conflicts(self, session_factory, offer_id):
        with unit_of_work(session_factory) as db:
            offer_store.update(db, offer_id, 1, lambda o: setattr(o, "note", "first"))

        with pytest.raises(VersionConflictError) as exc_info:
            with unit_of_work(session_factory) as db:
                offer_store.update(db, offer_id, 1, lambda o: setattr(o, "note", "second"))

        assert exc_info.value.details["expected_version"] == 1
        assert exc_info.value.details["actual_version"] == 2
        assert exc_info.value.retryable is True

        with unit_of_work(session_factory) as db:
            assert offer_store.get(db, offer_id).note == "first"

    def test_concurrent_writer_loses_compare_and_swap(self, session_factory, offer_id):
        """Both sessions read version 1; the one that flushes second gets a conflict."""
        slow = session_factory()
        try:
            loaded = slow.get(Offer, offer_id)
            assert loaded.version == 1

            with unit_of_work(session_factory) as db:
                offer_store.update(db, offer_id, 1, lambda o: setattr(o, "status", OfferStatus.CANCELLED))

            loaded.status = OfferStatus.ACCEPTED
            with pytest.raises(VersionConflictError):
                with unit_of_work(lambda: slow) as db:
                    db.flush()
        finally:
            slow.close()

        with unit_of_work(session_factory) as db:
            assert offer_store.get(db, offer_id).status == OfferStatus.CANCELLED

    def test_failed_mutator_rolls_back_everything(self, session_factory, offer_id):
        def mutator(offer):
            offer.note = "partial"
            raise InvalidStateError("nope")

        with pytest.raises(InvalidStateError):
            with unit_of_work(session_factory) as db:
                offer_store.create(db, _new_offer(buyer_id=21))
                offer_store.update(db, offer_id, None, mutator)

        with unit_of_work(session_factory) as db:
            assert offer_store.get(db, offer_id).note is None
            assert db.scalar(select(func.count()).select_from(Offer)) == 1

    def test_one_pending_offer_per_buyer_and_item_enforced_by_index(self, session_factory, offer_id):
        with pytest.raises(IntegrityError):
            with unit_of_work(session_factory) as db:
                offer_store.create(db, _new_offer())

        # a terminal offer for the same pair is fine
        with unit_of_work(session_factory) as db:
            offer_store.create(db, _new_offer(status=OfferStatus.REJECTED))

    def test_unreachable_store_is_unavailable(self, tmp_path):
        from marketplace.core.database import build_engine, make_session_factory

        missing = build_engine(f"sqlite:///{tmp_path / 'no_tables.db'}")
        try:
            with pytest.raises(UnavailableError) as exc_info:
                with unit_of_work(make_session_factory(missing)) as db:
                    offer_store.find(db, Offer.id == 1)
            assert exc_info.value.retryable is True
        finally:
            missing.dispose()


@pytest.mark.unit
@pytest.mark.concurrency
def test_racing_updates_produce_one_winner(session_factory, offer_id):
    """Threads updating from the same version: exactly one commits."""
    barrier = threading.Barrier(4)
    outcomes = []
    lock = threading.Lock()

    def worker(n):
        barrier.wait()
        try:
            with unit_of_work(session_factory) as db:
                offer_store.update(db, offer_id, 1, lambda o: setattr(o, "note", f"writer {n}"))
            result = "ok"
        except VersionConflictError:
            result = "conflict"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert sorted(outcomes) == ["conflict", "conflict", "conflict", "ok"]
    with unit_of_work(session_factory) as db:
        assert offer_store.get(db, offer_id).version == 2
