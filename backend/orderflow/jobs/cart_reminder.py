from dataclasses import asdict
from typing import Any, Dict, Optional

from apscheduler.schedulers.base import BaseScheduler

from orderflow.config import settings
from orderflow.jobs.base import PollingJob
from orderflow.services.cart_recovery_service import CartRecoveryService


class CartReminderJob(PollingJob):
    name = "cart-reminder"
    default_interval_seconds = settings.CART_REMINDER_INTERVAL_SECONDS

    def __init__(
        self,
        scheduler: BaseScheduler,
        recovery: CartRecoveryService,
        interval_seconds: Optional[float] = None,
    ):
        super().__init__(scheduler, interval_seconds)
        self.recovery = recovery

    def scan(self) -> Dict[str, Any]:
        return asdict(self.recovery.scan_abandoned_carts(should_stop=self.should_stop))
