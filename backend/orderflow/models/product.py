from sqlalchemy import Boolean, CheckConstraint, Column, Integer, Numeric, String, Text

from orderflow.db import Base


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("stock_available >= 0", name="ck_product_available_non_negative"),
        CheckConstraint("stock_reserved >= 0", name="ck_product_reserved_non_negative"),
        CheckConstraint(
            "stock_committed >= 0 AND stock_committed <= stock_reserved",
            name="ck_product_committed_within_reserved",
        ),
        CheckConstraint(
            "stock_available + stock_reserved = stock_total",
            name="ck_product_stock_invariant",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    sku = Column(String(64), unique=True, index=True, nullable=False)
    name = Column(String(256), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    active = Column(Boolean, default=True, nullable=False)

    # counters are only ever moved by relative UPDATEs, never overwritten
    stock_total = Column(Integer, nullable=False, default=0)
    stock_available = Column(Integer, nullable=False, default=0)
    stock_reserved = Column(Integer, nullable=False, default=0)
    # paid-for part of stock_reserved, waiting for fulfilment
    stock_committed = Column(Integer, nullable=False, default=0)

    def __repr__(self):
        return (
            f"<Product sku={self.sku} total={self.stock_total} "
            f"available={self.stock_available} reserved={self.stock_reserved}>"
        )
