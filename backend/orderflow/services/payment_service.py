import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from orderflow.config import settings
from orderflow.db.gateway import PersistenceGateway
from orderflow.errors import DomainError, ErrorKind, PaymentException
from orderflow.models.order import Order, OrderStatus
from orderflow.models.payment_attempt import PaymentAttempt, PaymentAttemptStatus
from orderflow.services.order_state_machine import OrderStateMachine
from orderflow.services.reservation_service import StockReservationService
from orderflow.utils.clock import as_utc, utcnow

log = logging.getLogger(__name__)

DEFINITIVE = "DEFINITIVE"
TEMPORARY = "TEMPORARY"

ERROR_CLASSIFICATION = {
    # release stock and cancel the order
    "INSUFFICIENT_FUNDS": DEFINITIVE,
    "CARD_DECLINED": DEFINITIVE,
    "CARD_EXPIRED": DEFINITIVE,
    "FRAUD_SUSPECTED": DEFINITIVE,
    # keep the reservation, the customer may retry
    "GATEWAY_TIMEOUT": TEMPORARY,
    "NETWORK_ERROR": TEMPORARY,
    "THREE_DS_TIMEOUT": TEMPORARY,
    "TECHNICAL_ERROR": TEMPORARY,
}


def classify_error(error_type: Optional[str]) -> str:
    return ERROR_CLASSIFICATION.get(error_type or "", TEMPORARY)


@dataclass
class PaymentOutcome:
    success: bool
    order_id: int
    attempt_id: Optional[int] = None
    transaction_id: Optional[str] = None
    error_code: Optional[str] = None
    error_type: Optional[str] = None
    classification: Optional[str] = None
    idempotent: bool = False
    # money was captured but the order could not take it
    refund_required: bool = False


class PaymentService:
    """
    Charges a CHECKOUT order through the injected gateway adapter and drives
    the order to PAID or CANCELLED depending on the classified outcome.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        payment_gateway,
        reservations: StockReservationService,
        state_machine: OrderStateMachine,
        checkout_window_seconds: Optional[float] = None,
        retry_window_seconds: Optional[float] = None,
    ):
        self.gateway = gateway
        self.payment_gateway = payment_gateway
        self.reservations = reservations
        self.state_machine = state_machine
        self.checkout_window = timedelta(
            seconds=settings.CHECKOUT_WINDOW_SECONDS
            if checkout_window_seconds is None
            else checkout_window_seconds
        )
        self.retry_window = timedelta(
            seconds=settings.PAYMENT_RETRY_WINDOW_SECONDS
            if retry_window_seconds is None
            else retry_window_seconds
        )

    @staticmethod
    def _last_attempt(s: Session, order_id: int) -> Optional[PaymentAttempt]:
        return s.scalar(
            select(PaymentAttempt)
            .where(PaymentAttempt.order_id == order_id)
            .order_by(PaymentAttempt.id.desc())
            .limit(1)
        )

    def _validate_order(self, order: Optional[Order], order_id: int):
        if order is None:
            raise PaymentException(
                ErrorKind.ORDER_NOT_FOUND, f"Order {order_id} not found", {"order_id": order_id}
            )
        if order.status != OrderStatus.CHECKOUT.value:
            raise PaymentException(
                ErrorKind.PRECONDITION_FAILED,
                f"Order is {order.status}, expected CHECKOUT",
                {"reason": "INVALID_STATUS", "current": order.status},
            )
        if order.checkout_at is None:
            raise PaymentException(
                ErrorKind.PRECONDITION_FAILED,
                "Order has no checkout timestamp",
                {"reason": "MISSING_CHECKOUT_TIMESTAMP"},
            )
        elapsed = utcnow() - as_utc(order.checkout_at)
        if elapsed > self.checkout_window:
            raise PaymentException(
                ErrorKind.CHECKOUT_EXPIRED,
                "Checkout window has expired",
                {
                    "elapsed_seconds": int(elapsed.total_seconds()),
                    "max_seconds": int(self.checkout_window.total_seconds()),
                },
            )
        if order.total_snapshot is None:
            raise PaymentException(
                ErrorKind.PRECONDITION_FAILED, "Order has no total", {"reason": "MISSING_TOTAL"}
            )

    def is_retry_allowed(self, last: Optional[PaymentAttempt]) -> bool:
        if last is None:
            return True
        if last.status in (PaymentAttemptStatus.SUCCESS.value, PaymentAttemptStatus.PENDING.value):
            return False
        return utcnow() - as_utc(last.updated_at) <= self.retry_window

    def process_payment(self, order_id: int, payment_details: Optional[Dict] = None) -> PaymentOutcome:
        details = dict(payment_details or {})

        with self.gateway.transaction() as s:
            order = s.get(Order, order_id)
            last = self._last_attempt(s, order_id) if order is not None else None
            if last is not None and last.status == PaymentAttemptStatus.SUCCESS.value:
                log.info("Order %s already paid (idempotent)", order_id)
                return PaymentOutcome(
                    success=True,
                    order_id=order_id,
                    attempt_id=last.id,
                    transaction_id=order.payment_id or last.transaction_id,
                    idempotent=True,
                )

            self._validate_order(order, order_id)
            if not self.is_retry_allowed(last):
                pending = last.status == PaymentAttemptStatus.PENDING.value
                raise PaymentException(
                    ErrorKind.RETRY_NOT_ALLOWED,
                    "Payment in progress" if pending else "Retry window exceeded",
                    {
                        "reason": "PAYMENT_IN_PROGRESS" if pending else "RETRY_WINDOW_EXCEEDED",
                        "last_attempt_id": last.id,
                    },
                )

            attempt = PaymentAttempt(
                order_id=order_id,
                status=PaymentAttemptStatus.PENDING.value,
                payment_method=details.get("method") or "CREDIT_CARD",
            )
            s.add(attempt)
            s.flush()
            amount = order.total_snapshot

        log.info("Created payment attempt %s for order %s", attempt.id, order_id)

        try:
            result = self.payment_gateway.charge(order_id, amount, details)
        except Exception as exc:
            log.error("Gateway exception for order %s: %s", order_id, exc)
            return self._handle_failure(order_id, attempt.id, "GATEWAY_EXCEPTION", "TECHNICAL_ERROR")

        if result.get("success"):
            return self._handle_success(order_id, attempt.id, result["transaction_id"])
        return self._handle_failure(
            order_id, attempt.id, result.get("error_code"), result.get("error_type")
        )

    def _handle_success(self, order_id: int, attempt_id: int, transaction_id: str) -> PaymentOutcome:
        with self.gateway.transaction() as s:
            self.gateway.conditional_update(
                s,
                PaymentAttempt,
                [PaymentAttempt.id == attempt_id],
                {
                    "status": PaymentAttemptStatus.SUCCESS.value,
                    "transaction_id": transaction_id,
                    "updated_at": utcnow(),
                },
            )
            # cancelled (or otherwise moved) orders are never written to
            attached = self.gateway.conditional_update(
                s,
                Order,
                [Order.id == order_id, Order.status == OrderStatus.CHECKOUT.value],
                {"payment_id": transaction_id},
            )

        if not attached:
            log.error(
                "Order %s left CHECKOUT during the charge; transaction %s needs a refund",
                order_id,
                transaction_id,
            )
            return PaymentOutcome(
                success=True,
                order_id=order_id,
                attempt_id=attempt_id,
                transaction_id=transaction_id,
                refund_required=True,
            )
        log.info("Payment successful for order %s (transaction: %s)", order_id, transaction_id)

        try:
            self.state_machine.transition(order_id, OrderStatus.PAID, "PAYMENT_SUCCESS")
        except DomainError as exc:
            # money is captured but the order is stuck in CHECKOUT
            log.error("Failed to transition paid order %s to PAID: %s", order_id, exc)

        return PaymentOutcome(
            success=True, order_id=order_id, attempt_id=attempt_id, transaction_id=transaction_id
        )

    def _handle_failure(
        self, order_id: int, attempt_id: int, error_code: Optional[str], error_type: Optional[str]
    ) -> PaymentOutcome:
        classification = classify_error(error_type)
        log.info(
            "Payment failed for order %s (error: %s, classification: %s)",
            order_id,
            error_type,
            classification,
        )

        with self.gateway.transaction() as s:
            self.gateway.conditional_update(
                s,
                PaymentAttempt,
                [PaymentAttempt.id == attempt_id],
                {
                    "status": PaymentAttemptStatus.FAILED.value,
                    "error_code": error_code,
                    "error_type": error_type,
                    "updated_at": utcnow(),
                },
            )

        if classification == DEFINITIVE:
            try:
                self.reservations.release(order_id, "PAYMENT_FAILED_DEFINITIVE")
            except DomainError as exc:
                log.error("Failed to release stock for order %s: %s", order_id, exc)
            try:
                self.state_machine.transition(
                    order_id, OrderStatus.CANCELLED, "PAYMENT_FAILED_DEFINITIVE"
                )
            except DomainError as exc:
                log.error("Failed to cancel order %s after payment failure: %s", order_id, exc)
        else:
            log.info("Keeping reservation for order %s (temporary payment error)", order_id)

        return PaymentOutcome(
            success=False,
            order_id=order_id,
            attempt_id=attempt_id,
            error_code=error_code,
            error_type=error_type,
            classification=classification,
        )

    def get_payment_attempts(self, order_id: int) -> List[PaymentAttempt]:
        with self.gateway.session() as s:
            return list(
                s.scalars(
                    select(PaymentAttempt)
                    .where(PaymentAttempt.order_id == order_id)
                    .order_by(PaymentAttempt.id.desc())
                )
            )

    def is_payment_expired(self, order_id: int) -> bool:
        with self.gateway.session() as s:
            order = s.get(Order, order_id)
        if order is None or order.status != OrderStatus.CHECKOUT.value or order.checkout_at is None:
            return False
        return utcnow() - as_utc(order.checkout_at) > self.checkout_window
