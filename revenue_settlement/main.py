"""FastAPI application entry point for the Energy Revenue Settlement Service."""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from revenue_settlement.api.routes import router
from revenue_settlement.core.config import settings
from revenue_settlement.core.errors import register_error_handlers
from revenue_settlement.core.middleware import RequestLoggingMiddleware

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)

app = FastAPI(
    title="Revenue Settlement",
    description=(
        "Distributes a grid operator's monthly or annual revenue payment for a "
        "wind park across the recipient entities of its turbines, and drives "
        "each settlement from DRAFT through CALCULATED and INVOICED to CLOSED."
    ),
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

register_error_handlers(app)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api/v1", tags=["settlement"])


@app.get("/health", tags=["ops"])
async def health_check() -> dict:
    return {"status": "ok", "service": "revenue-settlement"}
