import enum
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
)

from orderflow.db import Base


class OrderStatus(str, enum.Enum):
    CART = "CART"
    CHECKOUT = "CHECKOUT"
    PAID = "PAID"
    PREPARING = "PREPARING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(
        String(32), nullable=False, default=OrderStatus.CART.value, index=True
    )
    # optimistic lock; bumped by every committed status or snapshot change
    version = Column(Integer, nullable=False, default=1)

    # CART: [{product_id, quantity}]; from checkout on, the frozen price lines
    # [{product_id, name, unit_price, quantity, line_subtotal}]
    items_snapshot = Column(JSON, nullable=False, default=list)
    total_snapshot = Column(Numeric(12, 2), nullable=True)
    promo_snapshot = Column(JSON, nullable=True)

    checkout_at = Column(DateTime(timezone=True), nullable=True, index=True)
    payment_id = Column(String(128), nullable=True)

    recovery_email_sent = Column(Boolean, nullable=False, default=False)
    recovery_token = Column(String(64), nullable=True, unique=True, index=True)
    recovery_token_expires_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    def __repr__(self):
        return f"<Order id={self.id} status={self.status} version={self.version}>"
