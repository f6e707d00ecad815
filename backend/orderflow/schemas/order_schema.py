from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    user_id: int
    status: str
    version: int
    items_snapshot: List[Dict[str, Any]] = []
    total_snapshot: Optional[Decimal] = None
    promo_snapshot: Optional[Dict[str, Any]] = None
    checkout_at: Optional[datetime] = None
    payment_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AuditOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    order_id: int
    from_state: str
    to_state: str
    reason: Optional[str] = None
    actor: str
    created_at: Optional[datetime] = None


class PaymentAttemptOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    order_id: int
    status: str
    payment_method: str
    transaction_id: Optional[str] = None
    error_code: Optional[str] = None
    error_type: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AddItemIn(BaseModel):
    user_id: int
    product_id: int
    quantity: int = Field(..., gt=0)


class CheckoutIn(BaseModel):
    user_id: int
    promo_codes: List[str] = []


class CompleteCheckoutIn(BaseModel):
    ttl_seconds: Optional[float] = Field(None, gt=0)
    payment_method: Optional[str] = None


class TransitionIn(BaseModel):
    to_state: str
    reason: Optional[str] = None
    actor: Optional[str] = None


class PaymentIn(BaseModel):
    method: str = "CREDIT_CARD"
    # free-form details handed to the gateway adapter (mock: force_error, ...)
    details: Dict[str, Any] = {}
