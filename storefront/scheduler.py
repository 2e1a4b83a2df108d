"""Background sweep that cancels orders whose payment deadline passed.

One sweep runs at startup to catch up on anything that expired while the
service was down, then every ``interval_seconds`` on a daemon thread.
"""
from __future__ import annotations

import datetime as dt
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from . import orders
from .clock import utcnow
from .config import CLEANUP_INTERVAL_SECONDS
from .messaging import EventPublisher
from .restorers import StockRestorer

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    found: int = 0
    cancelled: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    ran: bool = True


class PaymentDeadlineScheduler:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        restorer: StockRestorer,
        publisher: Optional[EventPublisher] = None,
        interval_seconds: int = CLEANUP_INTERVAL_SECONDS,
    ) -> None:
        self.session_factory = session_factory
        self.restorer = restorer
        self.publisher = publisher
        self.interval_seconds = interval_seconds
        self._sweep_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self, now: Optional[dt.datetime] = None) -> SweepResult:
        """Cancel every expired order once. Returns immediately if a sweep is already running."""
        if not self._sweep_lock.acquire(blocking=False):
            logger.info("Payment deadline sweep already running; skipping")
            return SweepResult(ran=False)
        try:
            return self._sweep(now or utcnow())
        finally:
            self._sweep_lock.release()

    def _sweep(self, now: dt.datetime) -> SweepResult:
        db = self.session_factory()
        try:
            order_ids = orders.find_expired_order_ids(db, now)
        finally:
            db.close()

        result = SweepResult(found=len(order_ids))
        if not order_ids:
            return result
        logger.info("Found %s order(s) past their payment deadline", len(order_ids))

        for order_id in order_ids:
            db = self.session_factory()
            try:
                outcome = orders.force_cancel_expired(
                    db, order_id, restorer=self.restorer, publisher=self.publisher, now=now
                )
                if outcome is None:
                    result.skipped.append(order_id)
                else:
                    result.cancelled.append(order_id)
            except Exception:
                db.rollback()
                logger.exception("Failed to auto-cancel order %s", order_id)
                result.failed.append(order_id)
            finally:
                db.close()

        logger.info(
            "Payment deadline sweep done: %s cancelled, %s skipped, %s failed",
            len(result.cancelled), len(result.skipped), len(result.failed),
        )
        return result

    def _loop(self) -> None:
        while True:
            try:
                self.run_once()
            except Exception:
                logger.exception("Payment deadline sweep crashed")
            if self._stop.wait(self.interval_seconds):
                return

    def start(self) -> threading.Thread:
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self._stop.clear()
        t = threading.Thread(target=self._loop, name="payment-deadline-scheduler", daemon=True)
        t.start()
        self._thread = t
        logger.info("Payment deadline scheduler started (every %ss)", self.interval_seconds)
        return t

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
