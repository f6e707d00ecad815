import importlib
import logging
import os

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from orderflow.config import settings

log = logging.getLogger(__name__)

Base = declarative_base()

# every model module must be imported before create_all so metadata is complete
MODEL_MODULES = [
    "orderflow.models.user",
    "orderflow.models.product",
    "orderflow.models.order",
    "orderflow.models.stock_reservation",
    "orderflow.models.order_state_audit",
    "orderflow.models.payment_attempt",
    "orderflow.models.promotion",
    "orderflow.models.cart_recovery_log",
]


def make_engine(url: str, echo: bool = False) -> Engine:
    connect_args = {}
    if url.startswith("sqlite"):
        # scheduler threads and request threads share the pool
        connect_args["check_same_thread"] = False
    return create_engine(url, future=True, echo=echo, connect_args=connect_args)


def make_session_factory(bind: Engine) -> sessionmaker:
    # objects handed back by the engines outlive their session
    return sessionmaker(
        bind=bind, autocommit=False, autoflush=False, expire_on_commit=False
    )


engine = make_engine(settings.DATABASE_URL)
SessionLocal = make_session_factory(engine)


def import_models():
    for mod in MODEL_MODULES:
        importlib.import_module(mod)


def init_db(bind: Engine = None, reset: bool = None):
    """
    Create the schema on ``bind`` (the module engine by default).

    When ``reset`` is None it follows the RESET_DB env var (1/true/yes), which
    drops every table first.
    """
    bind = bind or engine
    if reset is None:
        reset = os.environ.get("RESET_DB", "false").lower() in ("1", "true", "yes")

    import_models()
    if reset:
        log.info("Resetting database (RESET_DB set)...")
        Base.metadata.drop_all(bind=bind)
    Base.metadata.create_all(bind=bind)
    log.info("Database initialized at %s", bind.url)
