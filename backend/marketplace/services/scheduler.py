"""
Background sweeps.

WHAT: Periodically expires stale offers and auto-completes delivered transactions
WHY: Both transitions are time-driven and have no user request to ride on
HOW: threading.Timer re-armed after every run, every SWEEP_INTERVAL_SECONDS
"""

import threading
from typing import Optional

from .offer_engine import OfferEngine
from .transaction_machine import TransactionStateMachine
from ..core.config import settings
from ..utils.exceptions import MarketplaceException
from ..utils.logger import get_logger

logger = get_logger(__name__)


class SweepScheduler:
    """Runs the offer-expiry and auto-complete sweeps on a timer thread."""

    def __init__(
        self,
        offers: OfferEngine,
        transactions: TransactionStateMachine,
        interval_seconds: Optional[float] = None,
    ):
        self._offers = offers
        self._transactions = transactions
        self.interval_seconds = interval_seconds or settings.SWEEP_INTERVAL_SECONDS
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._schedule()
        logger.info(f"Started sweep thread (interval: {self.interval_seconds}s)")

    def stop(self) -> None:
        with self._lock:
            self._running = False
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        logger.info("Stopped sweep thread")

    def run_once(self) -> dict:
        """Run both sweeps now; returns how many entities each one changed."""
        result = {"offers_expired": 0, "transactions_completed": 0}
        try:
            result["offers_expired"] = self._offers.sweep_expired()
        except MarketplaceException as e:
            logger.warning(f"Offer expiry sweep failed: {e.message}")
        try:
            result["transactions_completed"] = self._transactions.sweep_auto_complete()
        except MarketplaceException as e:
            logger.warning(f"Auto-complete sweep failed: {e.message}")
        return result

    def _schedule(self) -> None:
        self._timer = threading.Timer(self.interval_seconds, self._tick)
        self._timer.daemon = True
        self._timer.name = "marketplace-sweeps"
        self._timer.start()

    def _tick(self) -> None:
        try:
            self.run_once()
        except Exception as e:
            logger.error(f"Sweep run crashed: {e}", exc_info=True)
        with self._lock:
            if self._running:
                self._schedule()
