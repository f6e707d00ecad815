import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from orderflow.db.gateway import PersistenceGateway
from orderflow.errors import DomainError, ErrorKind, OrderServiceException
from orderflow.models.order import Order, OrderStatus
from orderflow.models.product import Product
from orderflow.models.stock_reservation import StockReservation
from orderflow.services.order_state_machine import OrderStateMachine
from orderflow.services.promotion_service import PromotionResult, PromotionService, to_money
from orderflow.services.reservation_service import (
    StockReservationService,
    ttl_for_payment_method,
)
from orderflow.utils.clock import utcnow

log = logging.getLogger(__name__)


@dataclass
class SnapshotResult:
    order: Order
    idempotent: bool = False
    promotions: Optional[PromotionResult] = None


@dataclass
class CheckoutResult:
    order: Order
    reservations: List[StockReservation] = field(default_factory=list)
    expires_at: Optional[datetime] = None
    idempotent: bool = False


def validate_cart(cart: Optional[Order]) -> List[Dict[str, Any]]:
    """Returns the list of problems; empty means the cart can be checked out."""
    if cart is None:
        return [{"field": "cart", "reason": "CART_NOT_FOUND"}]
    if cart.status != OrderStatus.CART.value:
        return [{"field": "status", "reason": "INVALID_STATUS", "current": cart.status}]
    items = cart.items_snapshot or []
    if not items:
        return [{"field": "items", "reason": "EMPTY_CART"}]

    errors = []
    for item in items:
        qty = item.get("quantity")
        if not item.get("product_id") or not isinstance(qty, int) or qty <= 0:
            errors.append(
                {
                    "field": "items",
                    "reason": "INVALID_ITEM",
                    "product_id": item.get("product_id"),
                    "quantity": qty,
                }
            )
    return errors


def create_price_snapshot(s: Session, items: List[Dict[str, Any]]) -> Tuple[Decimal, List[Dict[str, Any]]]:
    """Freeze current product prices into immutable order lines."""
    lines = []
    subtotal = Decimal("0.00")
    for item in items:
        product = s.get(Product, item["product_id"])
        if product is None:
            raise OrderServiceException(
                ErrorKind.PRODUCT_NOT_FOUND,
                f"Product {item['product_id']} not found",
                {"product_id": item["product_id"]},
            )
        unit_price = to_money(product.price)
        line_subtotal = to_money(unit_price * item["quantity"])
        lines.append(
            {
                "product_id": product.id,
                "name": product.name,
                "unit_price": str(unit_price),
                "quantity": item["quantity"],
                "line_subtotal": str(line_subtotal),
            }
        )
        subtotal += line_subtotal
    return subtotal, lines


class OrderService:
    """
    Cart and checkout orchestration. Owns no locking of its own: stock goes
    through the reservation engine and status changes through the state
    machine.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        reservations: StockReservationService,
        state_machine: OrderStateMachine,
        promotions: PromotionService,
    ):
        self.gateway = gateway
        self.reservations = reservations
        self.state_machine = state_machine
        self.promotions = promotions

    @staticmethod
    def _latest(s: Session, user_id: int, status: OrderStatus, order_by) -> Optional[Order]:
        return s.scalar(
            select(Order)
            .where(Order.user_id == user_id, Order.status == status.value)
            .order_by(order_by.desc(), Order.id.desc())
            .limit(1)
        )

    def get_order(self, order_id: int) -> Order:
        with self.gateway.session() as s:
            order = s.get(Order, order_id)
        if order is None:
            raise OrderServiceException(
                ErrorKind.ORDER_NOT_FOUND, f"Order {order_id} not found", {"order_id": order_id}
            )
        return order

    def get_active_cart(self, user_id: int) -> Optional[Order]:
        with self.gateway.session() as s:
            return self._latest(s, user_id, OrderStatus.CART, Order.created_at)

    def get_checkout_order(self, user_id: int) -> Optional[Dict[str, Any]]:
        with self.gateway.session() as s:
            order = self._latest(s, user_id, OrderStatus.CHECKOUT, Order.checkout_at)
        if order is None:
            return None
        return {
            "order": order,
            "reservations": self.reservations.get_active_reservations(order.id),
        }

    def add_item_to_cart(self, user_id: int, product_id: int, quantity: int) -> Order:
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise OrderServiceException(
                ErrorKind.INVALID_QUANTITY, "Quantity must be positive", {"quantity": quantity}
            )

        with self.gateway.transaction() as s:
            cart = self._latest(s, user_id, OrderStatus.CART, Order.created_at)
            if cart is None:
                cart = Order(user_id=user_id, status=OrderStatus.CART.value, items_snapshot=[])
                s.add(cart)
                s.flush()
                log.info("Created new cart %s for user %s", cart.id, user_id)

            product = s.get(Product, product_id)
            if product is None:
                raise OrderServiceException(
                    ErrorKind.PRODUCT_NOT_FOUND,
                    f"Product {product_id} not found",
                    {"product_id": product_id},
                )
            # soft check only; stock is held at checkout
            if product.stock_available < quantity:
                raise OrderServiceException(
                    ErrorKind.INSUFFICIENT_STOCK,
                    f"Only {product.stock_available} available",
                    {
                        "items": [
                            {
                                "product_id": product_id,
                                "reason": "INSUFFICIENT_STOCK",
                                "requested": quantity,
                                "available": product.stock_available,
                            }
                        ]
                    },
                )

            items = [
                {"product_id": it["product_id"], "quantity": it["quantity"]}
                for it in (cart.items_snapshot or [])
            ]
            for it in items:
                if it["product_id"] == product_id:
                    it["quantity"] += quantity
                    break
            else:
                items.append({"product_id": product_id, "quantity": quantity})

            matched = self.gateway.conditional_update(
                s,
                Order,
                [
                    Order.id == cart.id,
                    Order.status == OrderStatus.CART.value,
                    Order.version == cart.version,
                ],
                {"items_snapshot": items, "version": cart.version + 1, "updated_at": utcnow()},
            )
            if matched == 0:
                raise OrderServiceException(
                    ErrorKind.CONCURRENT_MODIFICATION,
                    "Cart was modified by another request",
                    {"order_id": cart.id},
                )
            s.refresh(cart)

        log.info("Added %dx %s to cart %s", quantity, product.name, cart.id)
        return cart

    def create_order_from_cart(self, user_id: int, promo_codes: Optional[List[str]] = None) -> SnapshotResult:
        """
        Freeze the user's cart: price snapshot, promotions, total.

        Returns the user's latest CHECKOUT order (idempotent) when the cart is
        already converted. The order stays in CART until complete_checkout.
        """
        with self.gateway.transaction() as s:
            cart = self._latest(s, user_id, OrderStatus.CART, Order.created_at)
            if cart is None:
                existing = self._latest(s, user_id, OrderStatus.CHECKOUT, Order.checkout_at)
                if existing is not None:
                    log.info("User %s already has a CHECKOUT order (idempotent)", user_id)
                    return SnapshotResult(order=existing, idempotent=True)
                raise OrderServiceException(
                    ErrorKind.CART_NOT_FOUND, f"No cart for user {user_id}", {"user_id": user_id}
                )

            errors = validate_cart(cart)
            if errors:
                raise OrderServiceException(
                    ErrorKind.INVALID_CART, "Cart cannot be checked out", {"errors": errors}
                )

            subtotal, lines = create_price_snapshot(s, cart.items_snapshot)
            promo = self.promotions.apply_in(s, user_id, subtotal, promo_codes)

            expected = cart.version
            matched = self.gateway.conditional_update(
                s,
                Order,
                [
                    Order.id == cart.id,
                    Order.status == OrderStatus.CART.value,
                    Order.version == expected,
                ],
                {
                    "items_snapshot": lines,
                    "total_snapshot": promo.final_amount,
                    "promo_snapshot": promo.to_dict(),
                    "version": expected + 1,
                    "updated_at": utcnow(),
                },
            )
            if matched == 0:
                raise OrderServiceException(
                    ErrorKind.CONCURRENT_MODIFICATION,
                    "Cart was modified by another request",
                    {"order_id": cart.id, "expected_version": expected},
                )
            self.promotions.increment_usage_in(
                s, user_id, [a.id for a in promo.applied_promotions]
            )
            s.refresh(cart)

        log.info(
            "Snapshotted cart %s (subtotal %s, total %s, version %s -> %s)",
            cart.id,
            subtotal,
            promo.final_amount,
            expected,
            cart.version,
        )
        return SnapshotResult(order=cart, promotions=promo)

    def complete_checkout(
        self,
        order_id: int,
        ttl_seconds: Optional[float] = None,
        payment_method: Optional[str] = None,
    ) -> CheckoutResult:
        order = self.get_order(order_id)
        lines = order.items_snapshot or []
        if not lines:
            raise OrderServiceException(
                ErrorKind.INVALID_CART, "Order has no items", {"order_id": order_id}
            )

        if ttl_seconds is None and payment_method:
            ttl_seconds = ttl_for_payment_method(payment_method)
        held = self.reservations.reserve(
            order_id,
            [{"product_id": it["product_id"], "quantity": it["quantity"]} for it in lines],
            ttl_seconds,
        )

        try:
            result = self.state_machine.transition(
                order_id, OrderStatus.CHECKOUT, "USER_CHECKOUT", str(order.user_id)
            )
        except DomainError:
            if not held.idempotent:
                self.reservations.release(order_id, "CHECKOUT_FAILED")
            raise

        return CheckoutResult(
            order=result.order,
            reservations=held.reservations,
            expires_at=held.expires_at,
            idempotent=result.idempotent and held.idempotent,
        )
