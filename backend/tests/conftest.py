from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from orderflow.config import Settings
from orderflow.container import Container
from orderflow.models.order import Order, OrderStatus
from orderflow.models.product import Product
from orderflow.models.stock_reservation import StockReservation
from orderflow.models.user import User


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'orderflow_test.db'}",
        LOCK_DIR=str(tmp_path),
        JOBS_ENABLED=False,
        EMAIL_MOCK_DELAY_MS=0,
        PAYMENT_MOCK_DELAY_MS=0,
    )


@pytest.fixture
def container(test_settings):
    c = Container(config=test_settings)
    c.init_db(reset=True)
    yield c
    c.dispose()


@pytest.fixture
def make_user(container):
    def _make(marketing_consent=True, email=None):
        with container.gateway.transaction() as s:
            u = User(
                email=email or f"user-{uuid4().hex[:8]}@example.com",
                name="Test User",
                marketing_consent=marketing_consent,
            )
            s.add(u)
            s.flush()
        return u

    return _make


@pytest.fixture
def make_product(container):
    def _make(stock=10, price="10.00", sku=None):
        with container.gateway.transaction() as s:
            p = Product(
                sku=sku or f"SKU-{uuid4().hex[:8]}",
                name="Test Product",
                price=Decimal(price),
                stock_total=stock,
                stock_available=stock,
                stock_reserved=0,
                stock_committed=0,
            )
            s.add(p)
            s.flush()
        return p

    return _make


@pytest.fixture
def make_order(container, make_user):
    """Insert an order directly in any status, bypassing the state machine."""

    def _make(status=OrderStatus.CART, user=None, items=None, **fields):
        user = user or make_user()
        with container.gateway.transaction() as s:
            o = Order(
                user_id=user.id,
                status=OrderStatus(status).value,
                version=1,
                items_snapshot=items or [],
                **fields,
            )
            s.add(o)
            s.flush()
        return o

    return _make


@pytest.fixture
def checked_out(container, make_product, make_order):
    """An order in CHECKOUT holding ``qty`` units of a fresh product."""

    def _make(qty=2, stock=10, price="10.00", ttl_seconds=None, user=None):
        product = make_product(stock=stock, price=price)
        total = Decimal(price) * qty
        order = make_order(
            OrderStatus.CART,
            user=user,
            items=[
                {
                    "product_id": product.id,
                    "name": product.name,
                    "unit_price": price,
                    "quantity": qty,
                    "line_subtotal": str(total),
                }
            ],
            total_snapshot=total,
        )
        res = container.orders.complete_checkout(order.id, ttl_seconds)
        return res.order, product

    return _make


@pytest.fixture
def stock(container):
    def _stock(product_id):
        return container.reservations.stock_levels(product_id)

    return _stock


@pytest.fixture
def assert_invariant(container):
    def _check():
        with container.gateway.session() as s:
            for p in s.scalars(select(Product)):
                assert p.stock_available + p.stock_reserved == p.stock_total, p
                assert 0 <= p.stock_committed <= p.stock_reserved, p

    return _check


@pytest.fixture
def load_order(container):
    def _load(order_id):
        with container.gateway.session() as s:
            return s.get(Order, order_id)

    return _load


@pytest.fixture
def reservations_of(container):
    def _rows(order_id):
        with container.gateway.session() as s:
            return list(
                s.scalars(
                    select(StockReservation)
                    .where(StockReservation.order_id == order_id)
                    .order_by(StockReservation.id)
                )
            )

    return _rows


@pytest.fixture
def set_order_fields(container):
    def _set(order_id, **values):
        with container.gateway.transaction() as s:
            container.gateway.conditional_update(s, Order, [Order.id == order_id], values)

    return _set


