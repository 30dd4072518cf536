from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from shared import RequestIDMiddleware, register_exception_handlers

from .routes import register_routes
from .startup import init_service_startup, setup_instrumentation, setup_logging, shutdown_instrumentation


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_service_startup(app)
    yield
    orders = getattr(app.state, "order_workflow", None)
    if orders is not None:
        # Let timed-out checkouts finish their debit before the pool goes away
        await orders.drain()
    await shutdown_instrumentation(app)
    logger.info("balance-service stopped.")


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title="Balance Service", version="0.1.0", lifespan=lifespan)
    app.add_middleware(RequestIDMiddleware)
    register_exception_handlers(app)
    register_routes(app)
    setup_instrumentation(app)
    return app
