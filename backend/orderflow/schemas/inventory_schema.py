from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ReserveItemIn(BaseModel):
    product_id: int
    # range checked by the reservation engine so bad input gets INVALID_QUANTITY
    quantity: int


class ReserveIn(BaseModel):
    order_id: int
    items: List[ReserveItemIn]
    ttl_seconds: Optional[float] = Field(None, gt=0)


class ReleaseIn(BaseModel):
    order_id: int
    reason: str = "MANUAL"


class ExtendIn(BaseModel):
    additional_seconds: float = Field(..., gt=0)


class ReservationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    order_id: int
    product_id: int
    quantity: int
    status: str
    expires_at: datetime
