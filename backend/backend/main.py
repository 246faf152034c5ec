from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.config import LOG_LEVEL, RUN_EVENT_DISPATCHER, SEED_CATALOG_ON_STARTUP
from app.core.errors import RoutingError
from app.core.tenant import TenantMiddleware
from app.db.base import Base
from app.db.session import engine

# Register models
from app.db import models  # noqa: F401

from services.admin.events_api import router as events_admin_router
from services.auth.api import router as auth_router
from services.cards.api import router as cards_router
from services.directory.api import router as directory_router
from services.orders.api import router as orders_router
from services.tracking.api import router as tracking_router
from services.transfers.api import router as transfers_router

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Dev-friendly schema creation (alembic migrations are available for real upgrades)
    Base.metadata.create_all(bind=engine)

    if SEED_CATALOG_ON_STARTUP:
        from app.db.session import SessionLocal
        from services.auth.api import ensure_seed
        from services.tracking.catalog import seed_catalog

        with SessionLocal() as db:
            ensure_seed(db)
            seed_catalog(db)

    dispatcher = None
    if RUN_EVENT_DISPATCHER:
        from app.events.dispatcher import run_dispatcher_forever

        dispatcher = asyncio.create_task(run_dispatcher_forever(poll_interval_seconds=1.0))
    app.state.dispatcher = dispatcher
    try:
        yield
    finally:
        if dispatcher is not None:
            dispatcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await dispatcher
            logger.info("event dispatcher stopped")


app = FastAPI(title="Textile Order Routing", lifespan=lifespan)
app.add_middleware(TenantMiddleware)


@app.exception_handler(RoutingError)
async def _routing_error(request: Request, exc: RoutingError):
    logger.info("%s %s rejected (%s): %s", request.method, request.url.path, exc.kind, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.include_router(auth_router)
app.include_router(orders_router)
app.include_router(tracking_router)
app.include_router(transfers_router)
app.include_router(cards_router)
app.include_router(directory_router)
app.include_router(events_admin_router)


@app.get("/health")
def health():
    return {"ok": True}
