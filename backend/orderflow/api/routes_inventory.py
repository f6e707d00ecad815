from dataclasses import asdict

from fastapi import APIRouter, Depends

from orderflow.api.deps import get_container, http_error
from orderflow.container import Container
from orderflow.errors import DomainError
from orderflow.schemas.inventory_schema import ExtendIn, ReleaseIn, ReservationOut, ReserveIn

router = APIRouter(prefix="/api/inventory", tags=["inventory"])


@router.post("/reserve")
def reserve(payload: ReserveIn, c: Container = Depends(get_container)):
    """
    payload: { "order_id": 1, "items": [{"product_id": 3, "quantity": 2}], "ttl_seconds": 600 }
    """
    try:
        res = c.reservations.reserve(
            payload.order_id, [it.model_dump() for it in payload.items], payload.ttl_seconds
        )
    except DomainError as e:
        raise http_error(e)
    return {
        "reservations": [ReservationOut.model_validate(r) for r in res.reservations],
        "expires_at": res.expires_at,
        "idempotent": res.idempotent,
    }


@router.post("/release")
def release(payload: ReleaseIn, c: Container = Depends(get_container)):
    try:
        res = c.reservations.release(payload.order_id, payload.reason)
    except DomainError as e:
        raise http_error(e)
    return asdict(res)


@router.get("/orders/{order_id}/reservations")
def active_reservations(order_id: int, c: Container = Depends(get_container)):
    return {
        "order_id": order_id,
        "expired": c.reservations.is_expired(order_id),
        "reservations": c.reservations.get_active_reservations(order_id),
    }


@router.post("/orders/{order_id}/extend")
def extend(order_id: int, payload: ExtendIn, c: Container = Depends(get_container)):
    try:
        return asdict(c.reservations.extend(order_id, payload.additional_seconds))
    except DomainError as e:
        raise http_error(e)


@router.get("/products/{product_id}")
def stock_levels(product_id: int, c: Container = Depends(get_container)):
    try:
        return c.reservations.stock_levels(product_id)
    except DomainError as e:
        raise http_error(e)
