# src/application/sweep_service.py

from datetime import datetime
import logging
from typing import Callable, NamedTuple

from sqlalchemy.orm import Session

from src.application.booking_service import BookingService
from src.application.payment_service import DEFERRED, RELEASED, PaymentService
from src.application.request_service import RequestService
from src.domain.clock import utc_now


logger = logging.getLogger(__name__)


class SweepReport(NamedTuple):
    expired_requests: int
    expired_items: int
    released_payouts: int
    deferred_payouts: int


class SweepService:
    """
    Time-driven housekeeping. Every step is conditional on current status,
    so it can run concurrently with user traffic and be repeated safely.
    """

    def __init__(
        self,
        db: Session,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.clock = clock

    def run(self, now: datetime | None = None) -> SweepReport:
        now = now or self.clock()
        expired_requests = RequestService(self.db, clock=self.clock).expire_stale_requests(now)
        expired_items = BookingService(self.db, clock=self.clock).expire_inactive_items(now)
        releases = PaymentService(self.db, clock=self.clock).release_pending_payouts()

        report = SweepReport(
            expired_requests=len(expired_requests),
            expired_items=expired_items,
            released_payouts=sum(1 for release in releases if release.result == RELEASED),
            deferred_payouts=sum(1 for release in releases if release.result == DEFERRED),
        )
        logger.info(
            "Sweep finished. expired_requests=%s expired_items=%s released_payouts=%s deferred_payouts=%s",
            *report,
        )
        return report
