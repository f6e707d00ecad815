import logging
from typing import Any, Dict, Optional

from apscheduler.schedulers.base import BaseScheduler

from orderflow.config import settings
from orderflow.jobs.base import PollingJob
from orderflow.services.reservation_service import StockReservationService
from orderflow.utils.clock import utcnow

log = logging.getLogger(__name__)


class ReservationExpirationJob(PollingJob):
    """Returns stock held by expired ACTIVE reservations to the pool."""

    name = "reservation-expiration"
    default_interval_seconds = settings.RESERVATION_EXPIRY_INTERVAL_SECONDS

    def __init__(
        self,
        scheduler: BaseScheduler,
        reservations: StockReservationService,
        interval_seconds: Optional[float] = None,
    ):
        super().__init__(scheduler, interval_seconds)
        self.reservations = reservations

    def scan(self) -> Dict[str, Any]:
        now = utcnow()
        expired = self.reservations.find_expired(now)
        stats = {"found": len(expired), "released": 0, "failed": 0}
        if not expired:
            return stats

        log.info("Found %d orders with expired reservations", len(expired))
        for item in expired:
            if self.should_stop():
                log.info("Expiration scan interrupted")
                break
            try:
                result = self.reservations.release(item.order_id, "EXPIRED")
            except Exception:
                stats["failed"] += 1
                log.exception("Failed to release stock for order %s", item.order_id)
                continue
            if result.released_count:
                stats["released"] += 1
                minutes = int((now - item.expires_at).total_seconds() // 60)
                log.info(
                    "Released stock for order %s (expired %dmin ago)", item.order_id, minutes
                )
        return stats
