import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from orderflow.config import settings
from orderflow.db.gateway import PersistenceGateway
from orderflow.errors import ErrorKind, InventoryException
from orderflow.models.product import Product
from orderflow.models.stock_reservation import ReservationStatus, StockReservation
from orderflow.utils.clock import as_utc, utcnow

log = logging.getLogger(__name__)

# hold durations per payment method, in seconds
RESERVATION_TTL_BY_PAYMENT_METHOD = {
    "CREDIT_CARD": 15 * 60,
    "BANK_TRANSFER": 60 * 60,
    "WALLET": 5 * 60,
}

ACTIVE = ReservationStatus.ACTIVE.value


@dataclass
class ReservationResult:
    reservations: List[StockReservation]
    expires_at: datetime
    idempotent: bool = False


@dataclass
class ReleaseResult:
    released_count: int
    idempotent: bool = False


@dataclass
class ExtendResult:
    old_expires_at: datetime
    new_expires_at: datetime
    extended_count: int = 0


@dataclass
class ExpiredOrder:
    order_id: int
    expires_at: datetime


def ttl_for_payment_method(method: Optional[str]) -> int:
    return RESERVATION_TTL_BY_PAYMENT_METHOD.get(
        (method or "").upper(), settings.RESERVATION_TTL_SECONDS
    )


def normalize_items(items: Optional[Iterable[Mapping[str, Any]]]) -> List[Tuple[int, int]]:
    """
    Validate reserve input before any transaction is opened.

    items: list of {product_id: int, quantity: int}. Repeated products are
    merged so each (order, product) pair gets a single reservation row.
    """
    items = list(items or [])
    if not items:
        raise InventoryException(ErrorKind.INVALID_ITEMS, "Items list cannot be empty")

    merged: Dict[int, int] = {}
    for it in items:
        pid = it.get("product_id")
        qty = it.get("quantity")
        if pid is None:
            raise InventoryException(
                ErrorKind.INVALID_ITEMS, "Every item needs a product_id", {"item": dict(it)}
            )
        if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
            raise InventoryException(
                ErrorKind.INVALID_QUANTITY,
                f"Quantity must be a positive integer for product {pid}",
                {"product_id": pid, "quantity": qty},
            )
        merged[pid] = merged.get(pid, 0) + qty
    return list(merged.items())


class StockReservationService:
    """
    Reserve / release / confirm stock for an order.

    Every counter change pairs +q on one of stock_available / stock_reserved
    with -q on the other inside the transaction that flips the reservation
    row, so available + reserved == total holds between commits.
    """

    def __init__(self, gateway: PersistenceGateway, default_ttl_seconds: Optional[float] = None):
        self.gateway = gateway
        self.default_ttl_seconds = (
            settings.RESERVATION_TTL_SECONDS
            if default_ttl_seconds is None
            else default_ttl_seconds
        )

    def _now(self) -> datetime:
        return utcnow()

    @staticmethod
    def _active_rows(session: Session, order_id: int) -> List[StockReservation]:
        return list(
            session.scalars(
                select(StockReservation)
                .where(
                    StockReservation.order_id == order_id,
                    StockReservation.status == ACTIVE,
                )
                .order_by(StockReservation.id)
            )
        )

    def reserve(
        self,
        order_id: int,
        items: Iterable[Mapping[str, Any]],
        ttl_seconds: Optional[float] = None,
    ) -> ReservationResult:
        wanted = normalize_items(items)
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds

        with self.gateway.transaction() as s:
            existing = self._active_rows(s, order_id)
            if existing:
                log.info("Order %s already has active reservations (idempotent)", order_id)
                return ReservationResult(
                    reservations=existing,
                    expires_at=min(as_utc(r.expires_at) for r in existing),
                    idempotent=True,
                )

            shortages = []
            for pid, qty in wanted:
                product = s.get(Product, pid)
                if product is None:
                    shortages.append(
                        {"product_id": pid, "reason": "PRODUCT_NOT_FOUND", "requested": qty, "available": 0}
                    )
                elif product.stock_available < qty:
                    shortages.append(
                        {
                            "product_id": pid,
                            "reason": "INSUFFICIENT_STOCK",
                            "requested": qty,
                            "available": product.stock_available,
                        }
                    )
            if shortages:
                raise InventoryException(
                    ErrorKind.INSUFFICIENT_STOCK,
                    "Not enough stock for one or more items",
                    {"items": shortages},
                )

            expires_at = self._now() + timedelta(seconds=ttl)
            reservations = []
            for pid, qty in wanted:
                moved = self.gateway.conditional_update(
                    s,
                    Product,
                    [Product.id == pid, Product.stock_available >= qty],
                    {
                        "stock_available": Product.stock_available - qty,
                        "stock_reserved": Product.stock_reserved + qty,
                    },
                )
                if moved == 0:
                    # a concurrent reserve took the stock after our check
                    raise InventoryException(
                        ErrorKind.INSUFFICIENT_STOCK,
                        "Not enough stock (race)",
                        {"items": [{"product_id": pid, "reason": "INSUFFICIENT_STOCK", "requested": qty}]},
                    )
                r = StockReservation(
                    order_id=order_id,
                    product_id=pid,
                    quantity=qty,
                    status=ACTIVE,
                    expires_at=expires_at,
                )
                s.add(r)
                reservations.append(r)
            s.flush()

        log.info(
            "Reserved stock for order %s (%d items, expires %s)",
            order_id,
            len(reservations),
            expires_at.isoformat(),
        )
        return ReservationResult(reservations=reservations, expires_at=expires_at)

    def release_in(self, session: Session, order_id: int, reason: str) -> int:
        """
        Return every ACTIVE reservation of the order to the pool, inside the
        caller's transaction. Rows another writer already flipped are skipped.
        """
        now = self._now()
        released = 0
        for r in self._active_rows(session, order_id):
            flipped = self.gateway.conditional_update(
                session,
                StockReservation,
                [StockReservation.id == r.id, StockReservation.status == ACTIVE],
                {
                    "status": ReservationStatus.RELEASED.value,
                    "released_at": now,
                    "release_reason": reason,
                },
            )
            if not flipped:
                continue
            self.gateway.conditional_update(
                session,
                Product,
                [Product.id == r.product_id],
                {
                    "stock_available": Product.stock_available + r.quantity,
                    "stock_reserved": Product.stock_reserved - r.quantity,
                },
            )
            released += 1
        return released

    def confirm_in(self, session: Session, order_id: int) -> int:
        """
        Mark the order's ACTIVE reservations CONFIRMED (order paid).

        stock_reserved is left alone; the confirmed quantity is added to
        stock_committed, the paid-for share of the reserved units.
        """
        confirmed = 0
        for r in self._active_rows(session, order_id):
            flipped = self.gateway.conditional_update(
                session,
                StockReservation,
                [StockReservation.id == r.id, StockReservation.status == ACTIVE],
                {"status": ReservationStatus.CONFIRMED.value},
            )
            if not flipped:
                continue
            self.gateway.conditional_update(
                session,
                Product,
                [Product.id == r.product_id],
                {"stock_committed": Product.stock_committed + r.quantity},
            )
            confirmed += 1
        return confirmed

    def release(self, order_id: int, reason: str = "MANUAL") -> ReleaseResult:
        with self.gateway.transaction() as s:
            count = self.release_in(s, order_id, reason)

        if count == 0:
            log.info("No active reservations to release for order %s (idempotent)", order_id)
            return ReleaseResult(released_count=0, idempotent=True)
        log.info("Released stock for order %s (%d reservations, reason: %s)", order_id, count, reason)
        return ReleaseResult(released_count=count)

    def get_active_reservations(self, order_id: int) -> List[Dict[str, Any]]:
        with self.gateway.session() as s:
            rows = s.execute(
                select(StockReservation, Product)
                .join(Product, Product.id == StockReservation.product_id)
                .where(
                    StockReservation.order_id == order_id,
                    StockReservation.status == ACTIVE,
                )
                .order_by(StockReservation.id)
            ).all()
        return [
            {
                "id": r.id,
                "order_id": r.order_id,
                "product_id": r.product_id,
                "quantity": r.quantity,
                "status": r.status,
                "expires_at": as_utc(r.expires_at),
                "product": {
                    "id": p.id,
                    "sku": p.sku,
                    "name": p.name,
                    "stock_total": p.stock_total,
                    "stock_available": p.stock_available,
                    "stock_reserved": p.stock_reserved,
                },
            }
            for r, p in rows
        ]

    def is_expired(self, order_id: int) -> bool:
        """True iff an ACTIVE reservation of the order is past its expiry."""
        with self.gateway.session() as s:
            hit = s.scalar(
                select(StockReservation.id)
                .where(
                    StockReservation.order_id == order_id,
                    StockReservation.status == ACTIVE,
                    StockReservation.expires_at < self._now(),
                )
                .limit(1)
            )
        return hit is not None

    def extend(self, order_id: int, additional_seconds: float) -> ExtendResult:
        delta = timedelta(seconds=additional_seconds)
        with self.gateway.transaction() as s:
            rows = self._active_rows(s, order_id)
            if not rows:
                raise InventoryException(
                    ErrorKind.NO_ACTIVE_RESERVATION,
                    f"No active reservation for order {order_id}",
                    {"order_id": order_id},
                )
            old = min(as_utc(r.expires_at) for r in rows)
            for r in rows:
                r.expires_at = as_utc(r.expires_at) + delta
            s.flush()

        log.info(
            "Extended reservation for order %s from %s to %s",
            order_id,
            old.isoformat(),
            (old + delta).isoformat(),
        )
        return ExtendResult(old_expires_at=old, new_expires_at=old + delta, extended_count=len(rows))

    def find_expired(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[ExpiredOrder]:
        """ACTIVE reservations with expires_at <= now, one entry per order."""
        now = now or self._now()
        stmt = (
            select(StockReservation.order_id, func.min(StockReservation.expires_at))
            .where(
                StockReservation.status == ACTIVE,
                StockReservation.expires_at <= now,
            )
            .group_by(StockReservation.order_id)
            .order_by(func.min(StockReservation.expires_at))
        )
        if limit:
            stmt = stmt.limit(limit)
        with self.gateway.session() as s:
            rows = s.execute(stmt).all()
        return [ExpiredOrder(order_id=oid, expires_at=as_utc(exp)) for oid, exp in rows]

    def stock_levels(self, product_id: int) -> Dict[str, Any]:
        with self.gateway.session() as s:
            p = s.get(Product, product_id)
            if p is None:
                raise InventoryException(
                    ErrorKind.PRODUCT_NOT_FOUND, f"Product {product_id} not found"
                )
            return {
                "product_id": p.id,
                "sku": p.sku,
                "stock_total": p.stock_total,
                "stock_available": p.stock_available,
                "stock_reserved": p.stock_reserved,
                "stock_committed": p.stock_committed,
            }
