"""
Unit tests for logging setup.

WHAT: Test that transitions reach the audit trail and the application log
WHY: Disputes are investigated from the audit file
HOW: Point setup_logging at tmp_path files, drive a sale, read the files back
"""

import logging

import pytest

from marketplace.utils.logger import AUDIT_LOGGER_NAME, setup_logging

PICKUP_ITEM = 1


@pytest.fixture
def log_files(tmp_path):
    """Configure logging into tmp_path and restore the previous handlers afterwards."""
    root = logging.getLogger()
    audit = logging.getLogger(AUDIT_LOGGER_NAME)
    saved_handlers, saved_level = list(root.handlers), root.level

    app_log, audit_log = tmp_path / "logs" / "app.log", tmp_path / "logs" / "audit.log"
    setup_logging(level="INFO", log_file=str(app_log), audit_file=str(audit_log))
    yield app_log, audit_log

    for logger in (root, audit):
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
    for handler in saved_handlers:
        root.addHandler(handler)
    root.setLevel(saved_level)


@pytest.mark.unit
class TestAuditTrail:

    def test_transitions_are_audited(self, log_files, services, buyer, seller):
        app_log, audit_log = log_files

        offer = services.offers.create_offer(PICKUP_ITEM, buyer, "50")
        txn = services.offers.respond_to_offer(offer.id, seller, "accept").transaction
        services.transactions.mark_paid(txn.id, buyer)

        audit_text = audit_log.read_text(encoding="utf-8")
        assert f"Offer {offer.id} created" in audit_text
        assert f"Offer {offer.id} accepted by seller {seller.id} -> transaction {txn.id}" in audit_text
        assert f"Transaction {txn.id}: pending -> paid" in audit_text
        assert "Logging initialized" not in audit_text

        app_text = app_log.read_text(encoding="utf-8")
        assert "Logging initialized" in app_text
        assert f"Transaction {txn.id}: pending -> paid" in app_text

    def test_setup_is_repeatable(self, log_files, tmp_path):
        _, audit_log = log_files
        second_audit = tmp_path / "again" / "audit.log"
        setup_logging(level="INFO", log_file=str(tmp_path / "again" / "app.log"), audit_file=str(second_audit))

        assert len(logging.getLogger(AUDIT_LOGGER_NAME).handlers) == 1
        logging.getLogger(AUDIT_LOGGER_NAME).info("after reconfigure")
        assert "after reconfigure" in second_audit.read_text(encoding="utf-8")
        assert "after reconfigure" not in audit_log.read_text(encoding="utf-8")
