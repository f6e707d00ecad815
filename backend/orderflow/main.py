import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from orderflow.api.health import router as health_router
from orderflow.api.routes_admin import router as admin_router
from orderflow.api.routes_cart import router as cart_router
from orderflow.api.routes_inventory import router as inventory_router
from orderflow.api.routes_order import router as order_router
from orderflow.api.routes_payment import router as payment_router
from orderflow.config import settings
from orderflow.container import Container

log = logging.getLogger(__name__)


def configure_logging(level: int = logging.INFO):
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app(container: Optional[Container] = None) -> FastAPI:
    """
    Build the API around ``container`` (a fresh one from settings when None).

    The lifespan creates the schema and, when the container's config has
    JOBS_ENABLED, runs the enforcement jobs for the lifetime of the app.
    """
    container = container or Container()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # startup
        container.init_db()
        if container.config.JOBS_ENABLED:
            container.start_jobs()
        else:
            log.info("JOBS_ENABLED is off; enforcement jobs not started")
        try:
            yield
        finally:
            container.stop_jobs()

    app = FastAPI(title="Orderflow - Order & Stock Core", version="0.1.0", lifespan=lifespan)
    app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=container.config.FRONTEND_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router, prefix="/api", tags=["health"])
    app.include_router(cart_router)
    app.include_router(order_router)
    app.include_router(payment_router)
    app.include_router(inventory_router)
    app.include_router(admin_router)
    return app


def run():
    configure_logging()
    uvicorn.run(create_app(), host=settings.APP_HOST, port=settings.APP_PORT)


if __name__ == "__main__":
    run()
