"""Error envelope and the mapping from domain errors to HTTP statuses.

Every error response has the same shape:

    {
      "error": {
        "code": "ILLEGAL_STATE",
        "message": "Cannot close settlement ... in status CALCULATED",
        "request_id": "3f9a0c1b2d4e",
        ...extra fields, e.g. the failed items of an invoice run
      }
    }

Routes turn domain errors into HTTPExceptions with ``to_http_exception``;
the handlers registered here wrap them (and validation errors, and anything
unexpected) in the envelope.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from revenue_settlement.core.locking import ConcurrentModificationError
from revenue_settlement.services import settlement_lifecycle as lifecycle
from revenue_settlement.services.distribution_engine import (
    DistributionError,
    EmptyInputError,
    NegativeShareError,
    ZeroProductionError,
)
from revenue_settlement.services.invoice_bridge import InvoiceBridgeError
from revenue_settlement.services.production_client import ProductionAggregatorError

logger = logging.getLogger(__name__)

# Errors a route is expected to translate; anything else is a 500.
DOMAIN_ERRORS = (
    lifecycle.SettlementError,
    ConcurrentModificationError,
    DistributionError,
    ProductionAggregatorError,
    InvoiceBridgeError,
)

_DEFAULT_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    502: "UPSTREAM_ERROR",
}


def to_http_exception(exc: Exception) -> HTTPException:
    """Translate a lifecycle, engine or collaborator error into an HTTPException."""
    status, code, extra = _classify(exc)
    return HTTPException(status, detail={"code": code, "message": str(exc), **extra})


def _classify(exc: Exception) -> tuple[int, str, dict[str, Any]]:
    if isinstance(exc, (lifecycle.SettlementNotFoundError, lifecycle.ParkNotFoundError)):
        return 404, "NOT_FOUND", {}
    if isinstance(exc, lifecycle.DuplicateSettlementError):
        return 409, "DUPLICATE_SETTLEMENT", {}
    if isinstance(exc, lifecycle.IllegalStateError):
        return 409, "ILLEGAL_STATE", {"status": exc.status.value, "action": exc.action.value}
    if isinstance(exc, ConcurrentModificationError):
        return 409, "CONCURRENT_MODIFICATION", {"settlement_id": exc.settlement_id}
    if isinstance(exc, lifecycle.InvoiceCreationPartialFailureError):
        return 502, "INVOICE_CREATION_FAILED", {
            "succeeded": {str(item_id): r.invoice_ref for item_id, r in exc.succeeded.items()},
            "failed": {str(item_id): reason for item_id, reason in exc.failed.items()},
        }
    if isinstance(exc, EmptyInputError):
        return 422, "EMPTY_INPUT", {}
    if isinstance(exc, ZeroProductionError):
        return 422, "ZERO_PRODUCTION", {}
    if isinstance(exc, NegativeShareError):
        return 422, "NEGATIVE_SHARE", {}
    if isinstance(exc, DistributionError):
        return 422, "INVALID_PARAMETER", {}
    if isinstance(exc, (ProductionAggregatorError, InvoiceBridgeError)):
        return 502, "UPSTREAM_ERROR", {"upstream_status": exc.status}
    return 400, "SETTLEMENT_ERROR", {}


def _envelope(request: Request, status_code: int, error: dict[str, Any], headers=None) -> JSONResponse:
    body = {"error": {**error, "request_id": getattr(request.state, "request_id", None)}}
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body), headers=headers)


def register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if isinstance(exc.detail, dict):
            error = exc.detail
        else:
            error = {
                "code": _DEFAULT_CODES.get(exc.status_code, "ERROR"),
                "message": str(exc.detail),
            }
        return _envelope(request, exc.status_code, error, getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = [
            {
                "field": " -> ".join(str(part) for part in err["loc"]),
                "message": err["msg"],
                "type": err["type"],
            }
            for err in exc.errors()
        ]
        return _envelope(request, 422, {
            "code": "VALIDATION_ERROR",
            "message": f"{len(fields)} validation error(s) in your request.",
            "details": fields,
        })

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(
            "Unhandled error on %s %s (request_id=%s)",
            request.method, request.url.path, getattr(request.state, "request_id", None),
        )
        return _envelope(request, 500, {
            "code": "INTERNAL_ERROR",
            "message": "An unexpected error occurred. Quote the request_id when reporting it.",
        })
