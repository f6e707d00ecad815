import logging
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, List, Optional, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from orderflow.config import settings
from orderflow.db.gateway import PersistenceGateway
from orderflow.errors import ErrorKind, TransitionException
from orderflow.models.order import Order, OrderStatus
from orderflow.models.order_state_audit import SYSTEM_ACTOR, OrderStateAudit
from orderflow.models.stock_reservation import ReservationStatus, StockReservation
from orderflow.services.reservation_service import StockReservationService
from orderflow.utils.clock import utcnow

log = logging.getLogger(__name__)

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.CART: frozenset({OrderStatus.CHECKOUT, OrderStatus.CANCELLED}),
    OrderStatus.CHECKOUT: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

TERMINAL_STATES = frozenset(s for s, targets in TRANSITIONS.items() if not targets)

ACTIVE = ReservationStatus.ACTIVE.value
# reservations that still hold stock for the order
HELD = (ReservationStatus.ACTIVE.value, ReservationStatus.CONFIRMED.value)

TransitionListener = Callable[[Order, str, str], None]


@dataclass
class TransitionResult:
    order: Order
    idempotent: bool = False
    from_state: Optional[str] = None


def can_transition(from_state: Union[str, OrderStatus], to_state: Union[str, OrderStatus]) -> bool:
    try:
        return OrderStatus(to_state) in TRANSITIONS[OrderStatus(from_state)]
    except ValueError:
        return False


def allowed_transitions(state: Union[str, OrderStatus]) -> List[str]:
    return sorted(s.value for s in TRANSITIONS[OrderStatus(state)])


class OrderStateMachine:
    """
    Validates and executes order status changes.

    The order is read first, outside the write section, and the graph is
    checked against that snapshot. The serializable transaction then
    re-reads the row and refuses to go on if its version moved, runs
    preconditions and critical side effects (stock release / confirmation),
    writes the status guarded by the snapshot version and adds the audit row.
    Listeners run after commit and are best-effort.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        reservations: StockReservationService,
        listeners: Optional[List[TransitionListener]] = None,
        preparing_accepts_confirmed: Optional[bool] = None,
    ):
        self.gateway = gateway
        self.reservations = reservations
        self.listeners: List[TransitionListener] = list(listeners or [])
        # PAID confirms every ACTIVE reservation, so PAID -> PREPARING needs this on
        self.preparing_accepts_confirmed = (
            settings.PREPARING_ACCEPTS_CONFIRMED
            if preparing_accepts_confirmed is None
            else preparing_accepts_confirmed
        )

    def add_listener(self, fn: TransitionListener):
        self.listeners.append(fn)

    def transition(
        self,
        order_id: int,
        to_state: Union[str, OrderStatus],
        reason: Optional[str] = None,
        actor: str = SYSTEM_ACTOR,
    ) -> TransitionResult:
        try:
            target = OrderStatus(to_state)
        except ValueError:
            raise TransitionException(
                ErrorKind.INVALID_TRANSITION, f"Unknown state {to_state!r}"
            )

        snapshot = self._snapshot(order_id)
        from_state = snapshot.status

        if from_state == target.value:
            log.info("Order %s already in %s (idempotent)", order_id, target.value)
            return TransitionResult(order=snapshot, idempotent=True, from_state=from_state)

        if not can_transition(from_state, target):
            raise TransitionException(
                ErrorKind.INVALID_TRANSITION,
                f"Cannot transition from {from_state} to {target.value}",
                {"from": from_state, "to": target.value, "allowed": allowed_transitions(from_state)},
            )

        with self.gateway.transaction() as s:
            order = self._load(s, order_id)
            if order.version != snapshot.version or order.status != from_state:
                raise self._conflict(order_id, snapshot.version)
            self._check_preconditions(s, order, target)
            self._apply_critical_side_effects(s, order, target, reason)
            self._commit_status(s, order, from_state, target)
            s.add(
                OrderStateAudit(
                    order_id=order.id,
                    from_state=from_state,
                    to_state=target.value,
                    reason=reason,
                    actor=actor or SYSTEM_ACTOR,
                )
            )

        log.info(
            "Order %s: %s -> %s (reason=%s, actor=%s)",
            order_id,
            from_state,
            target.value,
            reason,
            actor,
        )
        self._notify(order, from_state, target.value)
        return TransitionResult(order=order, idempotent=False, from_state=from_state)

    def _snapshot(self, order_id: int) -> Order:
        with self.gateway.session() as s:
            return self._load(s, order_id)

    def _load(self, s: Session, order_id: int) -> Order:
        order = s.get(Order, order_id)
        if order is None:
            raise TransitionException(
                ErrorKind.ORDER_NOT_FOUND, f"Order {order_id} not found", {"order_id": order_id}
            )
        return order

    @staticmethod
    def _conflict(order_id: int, expected_version: int) -> TransitionException:
        return TransitionException(
            ErrorKind.CONCURRENT_MODIFICATION,
            f"Order {order_id} was modified concurrently",
            {"order_id": order_id, "expected_version": expected_version},
        )

    def _check_preconditions(self, s: Session, order: Order, target: OrderStatus):
        if target is OrderStatus.PAID and not order.payment_id:
            raise TransitionException(
                ErrorKind.PRECONDITION_FAILED,
                "Payment ID required for PAID status",
                {"order_id": order.id, "to": target.value},
            )
        if target is OrderStatus.PREPARING:
            statuses = HELD if self.preparing_accepts_confirmed else (ACTIVE,)
            held = s.scalar(
                select(StockReservation.id)
                .where(
                    StockReservation.order_id == order.id,
                    StockReservation.status.in_(statuses),
                )
                .limit(1)
            )
            if held is None:
                raise TransitionException(
                    ErrorKind.PRECONDITION_FAILED,
                    "Stock must be reserved before preparing",
                    {"order_id": order.id, "to": target.value},
                )

    def _apply_critical_side_effects(
        self, s: Session, order: Order, target: OrderStatus, reason: Optional[str]
    ):
        if target is OrderStatus.CANCELLED:
            n = self.reservations.release_in(s, order.id, reason or "ORDER_CANCELLED")
            if n:
                log.info("Released %d reservations for cancelled order %s", n, order.id)
        elif target is OrderStatus.PAID:
            self.reservations.confirm_in(s, order.id)

    def _commit_status(self, s: Session, order: Order, from_state: str, target: OrderStatus):
        now = utcnow()
        values = {
            "status": target.value,
            "version": order.version + 1,
            "updated_at": now,
        }
        if target is OrderStatus.CHECKOUT:
            values["checkout_at"] = now

        matched = self.gateway.conditional_update(
            s,
            Order,
            [
                Order.id == order.id,
                Order.status == from_state,
                Order.version == order.version,
            ],
            values,
        )
        if matched == 0:
            raise self._conflict(order.id, order.version)
        s.refresh(order)

    def _notify(self, order: Order, from_state: str, to_state: str):
        for fn in self.listeners:
            try:
                fn(order, from_state, to_state)
            except Exception:
                log.exception(
                    "Post-transition side effect failed for order %s (%s -> %s)",
                    order.id,
                    from_state,
                    to_state,
                )

    def get_audit_trail(self, order_id: int) -> List[OrderStateAudit]:
        with self.gateway.session() as s:
            return list(
                s.scalars(
                    select(OrderStateAudit)
                    .where(OrderStateAudit.order_id == order_id)
                    .order_by(OrderStateAudit.id)
                )
            )
