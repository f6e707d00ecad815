from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String

from orderflow.db import Base

SYSTEM_ACTOR = "SYSTEM"


class OrderStateAudit(Base):
    """Append-only: one row per committed, non-idempotent transition."""

    __tablename__ = "order_state_audit"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    from_state = Column(String(32), nullable=False)
    to_state = Column(String(32), nullable=False)
    reason = Column(String(128), nullable=True)
    actor = Column(String(128), nullable=False, default=SYSTEM_ACTOR)
    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
