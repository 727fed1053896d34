from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from app.core.config import LOG_LEVEL
from app.core.errors import FulfillmentError
from app.core.logging_conf import configure_logging
from app.db.base import Base
from app.db.session import engine

# Register models
from app.db import models  # noqa: F401

from services.inventory.api import router as inventory_router
from services.planning.api import router as planning_router
from services.mes.api import router as mes_router
from services.qms.api import router as qms_router
from services.purchasing.api import router as purchasing_router
from services.sales.api import router as sales_router

logger = logging.getLogger(__name__)

app = FastAPI(title="Garment Production Fulfillment Engine")


@app.exception_handler(FulfillmentError)
async def _fulfillment_error(request: Request, exc: FulfillmentError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": type(exc).__name__, "context": jsonable_encoder(exc.context)},
    )


@app.on_event("startup")
async def _startup():
    configure_logging(LOG_LEVEL)
    # Dev-friendly schema creation (migrations are available for real upgrades)
    Base.metadata.create_all(bind=engine)


app.include_router(inventory_router)
app.include_router(planning_router)
app.include_router(mes_router)
app.include_router(qms_router)
app.include_router(purchasing_router)
app.include_router(sales_router)


@app.get("/health")
def health():
    return {"ok": True}
