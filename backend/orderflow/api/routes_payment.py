from dataclasses import asdict

from fastapi import APIRouter, Depends

from orderflow.api.deps import get_container, http_error
from orderflow.container import Container
from orderflow.errors import DomainError
from orderflow.schemas.order_schema import PaymentAttemptOut, PaymentIn

router = APIRouter(prefix="/api/orders", tags=["payments"])


@router.post("/{order_id}/payment", summary="Pay a CHECKOUT order")
def pay(order_id: int, payload: PaymentIn, c: Container = Depends(get_container)):
    details = dict(payload.details)
    details["method"] = payload.method
    try:
        outcome = c.payments.process_payment(order_id, details)
    except DomainError as e:
        raise http_error(e)
    return asdict(outcome)


@router.get("/{order_id}/payment-attempts", summary="List payment attempts, newest first")
def payment_attempts(order_id: int, c: Container = Depends(get_container)):
    return [PaymentAttemptOut.model_validate(a) for a in c.payments.get_payment_attempts(order_id)]
