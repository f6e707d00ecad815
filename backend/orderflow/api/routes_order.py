from fastapi import APIRouter, Depends

from orderflow.api.deps import get_container, http_error
from orderflow.container import Container
from orderflow.errors import DomainError
from orderflow.models.order_state_audit import SYSTEM_ACTOR
from orderflow.schemas.inventory_schema import ReservationOut
from orderflow.schemas.order_schema import (
    AuditOut,
    CheckoutIn,
    CompleteCheckoutIn,
    OrderOut,
    TransitionIn,
)
from orderflow.services.order_state_machine import allowed_transitions

router = APIRouter(prefix="/api/orders", tags=["orders"])


@router.post("/checkout", summary="Snapshot the cart into an order")
def checkout(payload: CheckoutIn, c: Container = Depends(get_container)):
    try:
        res = c.orders.create_order_from_cart(payload.user_id, payload.promo_codes)
    except DomainError as e:
        raise http_error(e)
    return {
        "order": OrderOut.model_validate(res.order),
        "idempotent": res.idempotent,
        "promotions": res.promotions.to_dict() if res.promotions else None,
    }


@router.post("/{order_id}/complete-checkout", summary="Reserve stock and enter CHECKOUT")
def complete_checkout(
    order_id: int,
    payload: CompleteCheckoutIn = CompleteCheckoutIn(),
    c: Container = Depends(get_container),
):
    try:
        res = c.orders.complete_checkout(order_id, payload.ttl_seconds, payload.payment_method)
    except DomainError as e:
        raise http_error(e)
    return {
        "order": OrderOut.model_validate(res.order),
        "reservations": [ReservationOut.model_validate(r) for r in res.reservations],
        "expires_at": res.expires_at,
        "idempotent": res.idempotent,
    }


@router.get("/{order_id}", summary="Get order")
def get_order(order_id: int, c: Container = Depends(get_container)):
    try:
        order = c.orders.get_order(order_id)
    except DomainError as e:
        raise http_error(e)
    return {
        "order": OrderOut.model_validate(order),
        "allowed_transitions": allowed_transitions(order.status),
    }


@router.post("/{order_id}/transition", summary="Move the order to another state")
def transition(order_id: int, payload: TransitionIn, c: Container = Depends(get_container)):
    try:
        res = c.state_machine.transition(
            order_id, payload.to_state, payload.reason, payload.actor or SYSTEM_ACTOR
        )
    except DomainError as e:
        raise http_error(e)
    return {
        "order": OrderOut.model_validate(res.order),
        "from_state": res.from_state,
        "idempotent": res.idempotent,
    }


@router.get("/{order_id}/audit", summary="State change history")
def audit(order_id: int, c: Container = Depends(get_container)):
    return [AuditOut.model_validate(a) for a in c.state_machine.get_audit_trail(order_id)]
