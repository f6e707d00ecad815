from datetime import timedelta

import pytest

from orderflow.errors import ErrorKind, PaymentException
from orderflow.models.order import OrderStatus
from orderflow.models.payment_attempt import PaymentAttempt
from orderflow.models.stock_reservation import ReservationStatus
from orderflow.services.payment_service import DEFINITIVE, TEMPORARY, classify_error
from orderflow.utils.clock import utcnow


def ago(**kwargs):
    return utcnow() - timedelta(**kwargs)


@pytest.mark.parametrize(
    "error_type, expected",
    [
        ("INSUFFICIENT_FUNDS", DEFINITIVE),
        ("CARD_DECLINED", DEFINITIVE),
        ("CARD_EXPIRED", DEFINITIVE),
        ("FRAUD_SUSPECTED", DEFINITIVE),
        ("GATEWAY_TIMEOUT", TEMPORARY),
        ("NETWORK_ERROR", TEMPORARY),
        ("THREE_DS_TIMEOUT", TEMPORARY),
        ("TECHNICAL_ERROR", TEMPORARY),
        ("SOMETHING_NEW", TEMPORARY),
        (None, TEMPORARY),
    ],
)
def test_error_classification(error_type, expected):
    assert classify_error(error_type) == expected


def test_successful_payment_marks_order_paid(container, checked_out, load_order, stock, reservations_of, assert_invariant):
    order, product = checked_out(qty=2, stock=6)

    outcome = container.payments.process_payment(order.id, {"method": "CREDIT_CARD"})
    assert outcome.success
    assert outcome.transaction_id.startswith("txn_")

    paid = load_order(order.id)
    assert paid.status == "PAID"
    assert paid.payment_id == outcome.transaction_id
    assert reservations_of(order.id)[0].status == ReservationStatus.CONFIRMED.value
    assert stock(product.id)["stock_committed"] == 2
    [attempt] = container.payments.get_payment_attempts(order.id)
    assert attempt.status == "SUCCESS"
    assert_invariant()


def test_paying_twice_is_idempotent(container, checked_out):
    order, _ = checked_out()
    first = container.payments.process_payment(order.id)
    again = container.payments.process_payment(order.id)

    assert again.idempotent
    assert again.transaction_id == first.transaction_id
    assert container.payment_gateway.calls == 1
    assert len(container.payments.get_payment_attempts(order.id)) == 1


def test_definitive_failure_cancels_and_releases(container, checked_out, load_order, stock, reservations_of):
    order, product = checked_out(qty=3, stock=3)

    outcome = container.payments.process_payment(order.id, {"force_error": "CARD_DECLINED"})
    assert not outcome.success
    assert outcome.classification == DEFINITIVE
    assert outcome.error_code == "ERR_CARD_DECLINED"

    assert load_order(order.id).status == "CANCELLED"
    assert stock(product.id)["stock_available"] == 3
    row = reservations_of(order.id)[0]
    assert row.release_reason == "PAYMENT_FAILED_DEFINITIVE"
    audit = container.state_machine.get_audit_trail(order.id)[-1]
    assert audit.reason == "PAYMENT_FAILED_DEFINITIVE"


def test_temporary_failure_keeps_reservation_and_allows_retry(container, checked_out, load_order, stock):
    order, product = checked_out(qty=1, stock=2)

    failed = container.payments.process_payment(order.id, {"force_error": "GATEWAY_TIMEOUT"})
    assert failed.classification == TEMPORARY
    assert load_order(order.id).status == "CHECKOUT"
    assert stock(product.id)["stock_reserved"] == 1

    retried = container.payments.process_payment(order.id)
    assert retried.success
    assert load_order(order.id).status == "PAID"
    attempts = container.payments.get_payment_attempts(order.id)
    assert [a.status for a in attempts] == ["SUCCESS", "FAILED"]


def test_gateway_exception_is_a_temporary_technical_error(container, checked_out, load_order):
    order, _ = checked_out()
    outcome = container.payments.process_payment(order.id, {"force_exception": True})
    assert outcome.error_code == "GATEWAY_EXCEPTION"
    assert outcome.error_type == "TECHNICAL_ERROR"
    assert outcome.classification == TEMPORARY
    assert load_order(order.id).status == "CHECKOUT"


def test_order_cancelled_during_charge_is_flagged_for_refund(container, checked_out, load_order, reservations_of, assert_invariant):
    order, _ = checked_out(qty=2)

    class CancellingGateway:
        def charge(self, order_id, amount, details=None):
            container.state_machine.transition(order_id, OrderStatus.CANCELLED, "CHECKOUT_TIMEOUT")
            return {"success": True, "transaction_id": "txn_late"}

    container.payments.payment_gateway = CancellingGateway()
    outcome = container.payments.process_payment(order.id)

    assert outcome.success
    assert outcome.refund_required
    assert outcome.transaction_id == "txn_late"
    cancelled = load_order(order.id)
    assert cancelled.status == "CANCELLED"
    assert cancelled.payment_id is None
    assert reservations_of(order.id)[0].status == ReservationStatus.RELEASED.value
    [attempt] = container.payments.get_payment_attempts(order.id)
    assert attempt.status == "SUCCESS"
    assert attempt.transaction_id == "txn_late"
    assert_invariant()


def test_payment_requires_checkout_status(container, make_order):
    order = make_order(OrderStatus.CART)
    with pytest.raises(PaymentException) as exc:
        container.payments.process_payment(order.id)
    assert exc.value.kind is ErrorKind.PRECONDITION_FAILED
    assert exc.value.details["reason"] == "INVALID_STATUS"


def test_payment_unknown_order(container):
    with pytest.raises(PaymentException) as exc:
        container.payments.process_payment(999)
    assert exc.value.kind is ErrorKind.ORDER_NOT_FOUND


def test_expired_checkout_window(container, checked_out, set_order_fields):
    order, _ = checked_out()
    set_order_fields(order.id, checkout_at=ago(minutes=11))

    assert container.payments.is_payment_expired(order.id)
    with pytest.raises(PaymentException) as exc:
        container.payments.process_payment(order.id)
    assert exc.value.kind is ErrorKind.CHECKOUT_EXPIRED
    assert container.payment_gateway.calls == 0


def test_retry_window_exceeded(container, checked_out):
    order, _ = checked_out()
    container.payments.process_payment(order.id, {"force_error": "NETWORK_ERROR"})
    with container.gateway.transaction() as s:
        container.gateway.conditional_update(
            s, PaymentAttempt, [PaymentAttempt.order_id == order.id], {"updated_at": ago(minutes=6)}
        )

    with pytest.raises(PaymentException) as exc:
        container.payments.process_payment(order.id)
    assert exc.value.kind is ErrorKind.RETRY_NOT_ALLOWED
    assert exc.value.details["reason"] == "RETRY_WINDOW_EXCEEDED"


def test_pending_attempt_blocks_retry(container, checked_out):
    order, _ = checked_out()
    with container.gateway.transaction() as s:
        s.add(PaymentAttempt(order_id=order.id, status="PENDING"))

    with pytest.raises(PaymentException) as exc:
        container.payments.process_payment(order.id)
    assert exc.value.details["reason"] == "PAYMENT_IN_PROGRESS"


def test_paid_email_goes_to_customer(container, make_user, checked_out):
    user = make_user(email="payer@example.com")
    order, _ = checked_out(user=user)
    container.payments.process_payment(order.id)

    [mail] = container.email_sender.sent_to("payer@example.com")
    assert mail["template"] == "order_paid"
    assert mail["data"]["order_id"] == order.id
