import logging

from orderflow.db.gateway import PersistenceGateway
from orderflow.models.order import Order, OrderStatus
from orderflow.models.user import User

log = logging.getLogger(__name__)

NOTIFIED_STATES = {
    OrderStatus.PAID.value: "order_paid",
    OrderStatus.SHIPPED.value: "order_shipped",
    OrderStatus.DELIVERED.value: "order_delivered",
    OrderStatus.CANCELLED.value: "order_cancelled",
}


class OrderNotifier:
    """Customer emails on user-visible status changes. Failures are logged only."""

    def __init__(self, gateway: PersistenceGateway, sender):
        self.gateway = gateway
        self.sender = sender

    def order_status_changed(self, order: Order, from_state: str, to_state: str) -> bool:
        template = NOTIFIED_STATES.get(to_state)
        if template is None:
            return False
        try:
            with self.gateway.session() as s:
                user = s.get(User, order.user_id)
                email = user.email if user else None
            if not email:
                log.warning("Order %s has no customer email; skipping %s", order.id, template)
                return False
            self.sender.send_email(
                email,
                template,
                {
                    "order_id": order.id,
                    "from_state": from_state,
                    "to_state": to_state,
                    "total": str(order.total_snapshot) if order.total_snapshot is not None else None,
                },
            )
            return True
        except Exception:
            log.exception("Failed to send %s email for order %s", template, order.id)
            return False
