from fastapi import APIRouter, Depends, HTTPException, Query

from orderflow.api.deps import get_container, http_error
from orderflow.container import Container
from orderflow.errors import DomainError
from orderflow.schemas.order_schema import AddItemIn, OrderOut

router = APIRouter(prefix="/api/cart", tags=["cart"])


@router.get("", summary="Get the user's active cart")
def get_cart(user_id: int = Query(...), c: Container = Depends(get_container)):
    cart = c.orders.get_active_cart(user_id)
    if cart is None:
        raise HTTPException(status_code=404, detail={"error": "CART_NOT_FOUND", "user_id": user_id})
    return OrderOut.model_validate(cart)


@router.post("/items", summary="Add item to cart")
def add_item(payload: AddItemIn, c: Container = Depends(get_container)):
    try:
        cart = c.orders.add_item_to_cart(payload.user_id, payload.product_id, payload.quantity)
    except DomainError as e:
        raise http_error(e)
    return OrderOut.model_validate(cart)


@router.post("/recover/{token}", summary="Restore a cart from a recovery link")
def recover_cart(token: str, c: Container = Depends(get_container)):
    try:
        res = c.recovery.recover_cart(token)
    except DomainError as e:
        raise http_error(e)
    return {"cart": OrderOut.model_validate(res["cart"]), "user": res["user"]}
