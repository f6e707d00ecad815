import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.base import BaseScheduler
from sqlalchemy import select

from orderflow.config import settings
from orderflow.db.gateway import PersistenceGateway
from orderflow.jobs.base import PollingJob, ScanIncomplete
from orderflow.models.order import Order, OrderStatus
from orderflow.models.order_state_audit import SYSTEM_ACTOR
from orderflow.services.order_state_machine import OrderStateMachine
from orderflow.utils.clock import as_utc, utcnow

log = logging.getLogger(__name__)


class StateTimeoutJob(PollingJob):
    """
    Cancels CHECKOUT orders past the checkout timeout and raises operator
    alerts for orders stuck in PREPARING. PREPARING orders are never moved
    automatically.
    """

    name = "state-timeout"
    default_interval_seconds = settings.STATE_TIMEOUT_INTERVAL_SECONDS

    def __init__(
        self,
        scheduler: BaseScheduler,
        gateway: PersistenceGateway,
        state_machine: OrderStateMachine,
        interval_seconds: Optional[float] = None,
        checkout_timeout_seconds: Optional[float] = None,
        preparing_alert_seconds: Optional[float] = None,
    ):
        super().__init__(scheduler, interval_seconds)
        self.gateway = gateway
        self.state_machine = state_machine
        self.checkout_timeout = timedelta(
            seconds=settings.CHECKOUT_TIMEOUT_SECONDS
            if checkout_timeout_seconds is None
            else checkout_timeout_seconds
        )
        self.preparing_alert = timedelta(
            seconds=settings.PREPARING_ALERT_SECONDS
            if preparing_alert_seconds is None
            else preparing_alert_seconds
        )

    def scan(self) -> Dict[str, Any]:
        stats = {"cancelled": 0, "failed": 0, "alerts": [], "errors": []}
        try:
            self._cancel_expired_checkouts(stats)
        except Exception as exc:
            stats["errors"].append({"step": "checkout", "error": str(exc)})
            log.exception("Error processing expired checkouts")
        try:
            stats["alerts"] = self._alert_stale_preparing()
        except Exception as exc:
            stats["errors"].append({"step": "preparing", "error": str(exc)})
            log.exception("Error checking PREPARING orders")
        if stats["errors"]:
            steps = ", ".join(e["step"] for e in stats["errors"])
            raise ScanIncomplete(f"failed steps: {steps}", stats)
        return stats

    def _cancel_expired_checkouts(self, stats: Dict[str, Any]):
        threshold = utcnow() - self.checkout_timeout
        with self.gateway.session() as s:
            order_ids = list(
                s.scalars(
                    select(Order.id)
                    .where(
                        Order.status == OrderStatus.CHECKOUT.value,
                        Order.checkout_at <= threshold,
                    )
                    .order_by(Order.checkout_at)
                )
            )
        if not order_ids:
            return
        log.info("Found %d expired CHECKOUT orders", len(order_ids))

        for order_id in order_ids:
            if self.should_stop():
                log.info("Checkout timeout scan interrupted")
                break
            try:
                self.state_machine.transition(
                    order_id, OrderStatus.CANCELLED, "CHECKOUT_TIMEOUT", SYSTEM_ACTOR
                )
            except Exception:
                stats["failed"] += 1
                log.exception("Failed to cancel order %s", order_id)
                continue
            stats["cancelled"] += 1
            log.info("Order %s cancelled (checkout timeout)", order_id)

    def _alert_stale_preparing(self) -> List[int]:
        now = utcnow()
        with self.gateway.session() as s:
            rows = s.execute(
                select(Order.id, Order.user_id, Order.updated_at).where(
                    Order.status == OrderStatus.PREPARING.value,
                    Order.updated_at <= now - self.preparing_alert,
                )
            ).all()
        if not rows:
            return []

        log.warning(
            "ALERT: %d orders in PREPARING exceed %dh",
            len(rows),
            self.preparing_alert.total_seconds() // 3600,
        )
        for order_id, user_id, updated_at in rows:
            hours = int((now - as_utc(updated_at)).total_seconds() // 3600)
            log.warning(
                "ALERT: Order %s in PREPARING for %dh (user: %s)", order_id, hours, user_id
            )
        return [r[0] for r in rows]
