import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, select

from orderflow.config import settings
from orderflow.db.gateway import PersistenceGateway
from orderflow.errors import ErrorKind, RecoveryException
from orderflow.models.cart_recovery_log import CartRecoveryLog
from orderflow.models.order import Order, OrderStatus
from orderflow.models.user import User
from orderflow.utils.clock import as_utc, utcnow

log = logging.getLogger(__name__)

RECOVERY_TEMPLATE = "cart_recovery"


def generate_recovery_token() -> str:
    """64 hex chars."""
    return secrets.token_hex(32)


@dataclass
class ScanStats:
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)


class CartRecoveryService:
    """
    Abandoned-cart reminders.

    A cart is flagged (recovery_email_sent) before the email goes out, so a
    customer is reminded at most once even when delivery fails.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        sender,
        app_url: Optional[str] = None,
        min_hours: Optional[float] = None,
        max_hours: Optional[float] = None,
        token_ttl_days: Optional[float] = None,
        batch_size: Optional[int] = None,
    ):
        self.gateway = gateway
        self.sender = sender
        self.app_url = (app_url or settings.APP_URL).rstrip("/")
        self.min_hours = settings.CART_ABANDONED_MIN_HOURS if min_hours is None else min_hours
        self.max_hours = settings.CART_ABANDONED_MAX_HOURS if max_hours is None else max_hours
        self.token_ttl = timedelta(
            days=settings.RECOVERY_TOKEN_TTL_DAYS if token_ttl_days is None else token_ttl_days
        )
        self.batch_size = settings.CART_SCAN_BATCH_SIZE if batch_size is None else batch_size

    def _window(self, now: datetime):
        return now - timedelta(hours=self.max_hours), now - timedelta(hours=self.min_hours)

    def recovery_url(self, token: str) -> str:
        return f"{self.app_url}/cart/recover/{token}"

    def find_abandoned_carts(self, batch_size: Optional[int] = None) -> List[Dict[str, Any]]:
        oldest, newest = self._window(utcnow())
        with self.gateway.session() as s:
            rows = s.execute(
                select(Order.id, Order.user_id, User.email, User.name)
                .join(User, User.id == Order.user_id)
                .where(
                    Order.status == OrderStatus.CART.value,
                    Order.created_at >= oldest,
                    Order.created_at <= newest,
                    Order.recovery_email_sent.is_(False),
                    User.marketing_consent.is_(True),
                )
                .order_by(Order.created_at)
                .limit(batch_size or self.batch_size)
            ).all()
        return [
            {"order_id": oid, "user_id": uid, "email": email, "name": name}
            for oid, uid, email, name in rows
        ]

    def scan_abandoned_carts(
        self,
        batch_size: Optional[int] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> ScanStats:
        stats = ScanStats()
        carts = self.find_abandoned_carts(batch_size)
        log.info("Found %d eligible abandoned carts", len(carts))

        for cart in carts:
            if should_stop is not None and should_stop():
                log.info("Abandoned cart scan interrupted after %d carts", stats.processed)
                break
            stats.processed += 1
            try:
                token = self._flag_cart(cart)
            except Exception as exc:
                stats.failed += 1
                stats.errors.append({"order_id": cart["order_id"], "error": str(exc)})
                log.exception("Failed to process cart %s", cart["order_id"])
                continue
            if token is None:
                stats.skipped += 1
                log.info("Cart %s already processed (race)", cart["order_id"])
                continue

            try:
                self.sender.send_email(
                    cart["email"],
                    RECOVERY_TEMPLATE,
                    {
                        "order_id": cart["order_id"],
                        "name": cart["name"],
                        "recovery_url": self.recovery_url(token),
                    },
                )
                stats.sent += 1
            except Exception as exc:
                # flag stays set; no second reminder
                stats.failed += 1
                stats.errors.append({"order_id": cart["order_id"], "error": str(exc)})
                log.error("Failed to send recovery email for cart %s: %s", cart["order_id"], exc)

        log.info(
            "Scan completed: %d processed, %d sent, %d failed",
            stats.processed,
            stats.sent,
            stats.failed,
        )
        return stats

    def _flag_cart(self, cart: Dict[str, Any]) -> Optional[str]:
        token = generate_recovery_token()
        expires_at = utcnow() + self.token_ttl
        with self.gateway.transaction() as s:
            flagged = self.gateway.conditional_update(
                s,
                Order,
                [Order.id == cart["order_id"], Order.recovery_email_sent.is_(False)],
                {
                    "recovery_email_sent": True,
                    "recovery_token": token,
                    "recovery_token_expires_at": expires_at,
                },
            )
            if not flagged:
                return None
            s.add(
                CartRecoveryLog(
                    order_id=cart["order_id"],
                    user_id=cart["user_id"],
                    token=token,
                    expires_at=expires_at,
                )
            )
        log.info("Created recovery token for cart %s (expires %s)", cart["order_id"], expires_at.isoformat())
        return token

    def recover_cart(self, token: str) -> Dict[str, Any]:
        with self.gateway.transaction() as s:
            row = s.execute(
                select(Order, User).join(User, User.id == Order.user_id).where(Order.recovery_token == token)
            ).first()
            if row is None:
                raise RecoveryException(ErrorKind.TOKEN_INVALID, "Token not found")
            order, user = row

            now = utcnow()
            if order.recovery_token_expires_at is not None and as_utc(order.recovery_token_expires_at) < now:
                raise RecoveryException(
                    ErrorKind.TOKEN_EXPIRED,
                    "Recovery link has expired",
                    {"expires_at": as_utc(order.recovery_token_expires_at).isoformat()},
                )
            if order.status != OrderStatus.CART.value:
                raise RecoveryException(
                    ErrorKind.CART_ALREADY_CONVERTED,
                    "Cart was already checked out",
                    {"current_status": order.status},
                )

            self.gateway.conditional_update(
                s,
                CartRecoveryLog,
                [CartRecoveryLog.token == token, CartRecoveryLog.clicked_at.is_(None)],
                {"clicked_at": now},
            )

        log.info("Cart %s recovered via token", order.id)
        return {"cart": order, "user": {"id": user.id, "email": user.email, "name": user.name}}

    def track_conversion(self, order_id: int) -> bool:
        with self.gateway.transaction() as s:
            tracked = self.gateway.conditional_update(
                s,
                CartRecoveryLog,
                [CartRecoveryLog.order_id == order_id, CartRecoveryLog.converted_at.is_(None)],
                {"converted_at": utcnow()},
            )
        if tracked:
            log.info("Conversion tracked for recovered order %s", order_id)
        return bool(tracked)

    def on_order_transition(self, order: Order, from_state: str, to_state: str):
        if to_state == OrderStatus.PAID.value:
            self.track_conversion(order.id)

    def get_recovery_stats(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> Dict[str, Any]:
        stmt = select(
            func.count(CartRecoveryLog.id),
            func.count(CartRecoveryLog.clicked_at),
            func.count(CartRecoveryLog.converted_at),
        )
        if start is not None:
            stmt = stmt.where(CartRecoveryLog.email_sent_at >= start)
        if end is not None:
            stmt = stmt.where(CartRecoveryLog.email_sent_at <= end)
        with self.gateway.session() as s:
            sent, clicked, converted = s.execute(stmt).one()

        def rate(n):
            return round(n / sent * 100, 2) if sent else 0.0

        return {
            "sent": sent,
            "clicked": clicked,
            "converted": converted,
            "click_rate": rate(clicked),
            "conversion_rate": rate(converted),
        }

    def is_eligible_for_recovery(self, cart_id: int) -> Dict[str, Any]:
        with self.gateway.session() as s:
            row = s.execute(
                select(Order, User).join(User, User.id == Order.user_id).where(Order.id == cart_id)
            ).first()
        if row is None:
            return {"eligible": False, "reason": "CART_NOT_FOUND"}
        cart, user = row
        if cart.status != OrderStatus.CART.value:
            return {"eligible": False, "reason": "NOT_CART_STATUS", "current_status": cart.status}
        if cart.recovery_email_sent:
            return {"eligible": False, "reason": "ALREADY_SENT"}
        if not user.marketing_consent:
            return {"eligible": False, "reason": "NO_MARKETING_CONSENT"}

        oldest, newest = self._window(utcnow())
        created = as_utc(cart.created_at)
        if created < oldest:
            return {"eligible": False, "reason": "TOO_OLD"}
        if created > newest:
            return {"eligible": False, "reason": "TOO_RECENT"}
        return {"eligible": True}
