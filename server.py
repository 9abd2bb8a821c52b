"""
HTTP Server
===========
FastAPI surface over the sale handlers.

NO BUSINESS LOGIC - request parsing and error mapping only.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field
import uvicorn

from config import get_config, validate_configuration
from db import create_store
from errors import (
    CaptureAborted,
    Conflict,
    InvalidAmount,
    NotFound,
    PreconditionFailed,
    SaleError,
    StoreError,
    UniqueViolation,
    ValidationError,
)
from handlers import SaleHandlers, describe_checkout
from reconciler import StaticDecision


logger = logging.getLogger(__name__)


# Most specific first
STATUS_BY_ERROR = (
    (NotFound, 404),
    (UniqueViolation, 409),
    (Conflict, 409),
    (CaptureAborted, 409),
    (ValidationError, 422),
    (InvalidAmount, 422),
    (PreconditionFailed, 412),
    (StoreError, 503),
)


def status_for(error: SaleError) -> int:
    for error_cls, status in STATUS_BY_ERROR:
        if isinstance(error, error_cls):
            return status
    # DuplicateCode and any other engine error
    return 409


# ============================================================================
# REQUEST BODIES
# ============================================================================

class OpenSessionRequest(BaseModel):
    session_type: str
    name: Optional[str] = None


class CaptureLineRequest(BaseModel):
    identity: str
    description: str
    unit_price: Any = None
    quantity: Any = 1
    code: Optional[str] = None
    on_match: Optional[str] = Field(default=None, description="merge | duplicate")


class ArticleRequest(BaseModel):
    description: Optional[str] = None
    unit_price: Any = None
    quantity: Any = 1
    code: Optional[str] = None


class RegularSaleRequest(BaseModel):
    real_name: str
    phone: Optional[str] = None
    articles: List[ArticleRequest]


class PaidRequest(BaseModel):
    paid: bool


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class ContactValueRequest(BaseModel):
    value: str


# ============================================================================
# FASTAPI APPLICATION
# ============================================================================

def create_app(handlers: Optional[SaleHandlers] = None) -> FastAPI:
    config = handlers.config if handlers else get_config()
    handlers = handlers or SaleHandlers(create_store(config), config)

    app = FastAPI(title="Live Sale Order Server", debug=config.features.debug_mode)
    app.state.handlers = handlers

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"]
    )

    @app.exception_handler(SaleError)
    async def sale_error_handler(request: Request, exc: SaleError):
        status = status_for(exc)
        log = logger.error if status >= 500 else logger.info
        log(f"{request.method} {request.url.path} -> {status} {exc.kind}: {exc.message}")
        return JSONResponse(status_code=status, content=exc.to_dict())

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy" if handlers.is_healthy() else "degraded",
            "store": handlers.get_stats(),
            "timestamp": datetime.utcnow().isoformat()
        }

    if config.features.enable_metrics_endpoint:
        @app.get("/metrics")
        async def metrics():
            return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # ------------------------------------------------------------------
    # Sessions and capture
    # ------------------------------------------------------------------

    @app.post("/sessions", status_code=201)
    async def open_session(body: OpenSessionRequest):
        try:
            session = await handlers.open_session(body.session_type, body.name)
        except ValueError:
            raise ValidationError(["session_type"])
        return session.to_dict()

    @app.post("/sessions/{session_id}/close")
    async def close_session(session_id: str):
        session = await handlers.close_session(session_id)
        return session.to_dict()

    @app.get("/sessions")
    async def list_sessions(limit: Optional[int] = None):
        return {"sessions": [s.to_dict() for s in await handlers.list_sessions(limit)]}

    @app.get("/sessions/current")
    async def current_session():
        session = await handlers.current_session()
        return {"session": session.to_dict() if session else None}

    @app.get("/sessions/{session_id}/codes")

    async def session_codes(session_id: str):
        return {"codes": await handlers.session_codes(session_id)}

    @app.get("/sessions/{session_id}/pending")
    async def pending_orders(session_id: str, query: Optional[str] = None):
        return {"customers": await handlers.pending_orders(session_id, query)}

    @app.post("/sessions/{session_id}/lines", status_code=201)
    async def capture_line(session_id: str, body: CaptureLineRequest):
        if body.on_match not in (None, "merge", "duplicate"):
            raise ValidationError(["on_match"])

        result = await handlers.capture_line(
            session_id,
            body.identity,
            body.code,
            body.description,
            body.unit_price,
            body.quantity,
            confirmation=StaticDecision(body.on_match)
        )
        return result.to_dict()

    @app.post("/sessions/{session_id}/regular-sales", status_code=201)
    async def capture_regular_sale(session_id: str, body: RegularSaleRequest):
        result = await handlers.capture_regular_sale(
            session_id,
            body.real_name,
            body.phone,
            [article.model_dump() for article in body.articles]
        )
        return result.to_dict()

    # ------------------------------------------------------------------
    # Checkout and lifecycle
    # ------------------------------------------------------------------

    @app.get("/orders/confirmed")
    async def confirmed_orders():
        return {"orders": await handlers.confirmed_orders()}

    @app.get("/orders/{order_id}/checkout")
    async def load_checkout(order_id: str):
        return describe_checkout(await handlers.load_checkout_context(order_id))

    @app.patch("/orders/{order_id}/checkout")
    async def update_checkout(order_id: str, patch: Dict[str, Any]):
        return describe_checkout(await handlers.update_checkout_fields(order_id, patch))

    @app.post("/orders/{order_id}/paid")
    async def set_paid(order_id: str, body: PaidRequest):
        return describe_checkout(await handlers.set_fully_paid(order_id, body.paid))

    @app.post("/orders/{order_id}/finalize")
    async def finalize(order_id: str):
        order = await handlers.finalize_checkout(order_id)
        return order.to_dict()

    @app.post("/orders/{order_id}/cancel")
    async def cancel(order_id: str, body: Optional[CancelRequest] = None):
        order = await handlers.cancel_order(order_id, body.reason if body else None)
        return order.to_dict()

    @app.post("/orders/{order_id}/preparation")
    async def start_preparation(order_id: str):
        order = await handlers.start_preparation(order_id)
        return order.to_dict()

    @app.post("/orders/{order_id}/delivered")
    async def mark_delivered(order_id: str):
        order = await handlers.mark_delivered(order_id)
        return order.to_dict()

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    @app.get("/customers")
    async def search_customers(query: str = "", limit: int = 20):
        return {"customers": await handlers.search_customers(query, limit)}

    @app.delete("/customers/{customer_id}", status_code=204)
    async def delete_customer(customer_id: str):
        await handlers.delete_customer(customer_id)
        return Response(status_code=204)

    @app.put("/customers/{customer_id}/{kind}/{entry_id}/primary")
    async def set_primary_contact(customer_id: str, kind: str, entry_id: str):
        return await handlers.set_primary_contact(customer_id, kind, entry_id)

    @app.patch("/customers/{customer_id}/{kind}/{entry_id}")
    async def update_contact(customer_id: str, kind: str, entry_id: str, body: ContactValueRequest):
        return await handlers.update_contact(customer_id, kind, entry_id, body.value)


    logger.info("Sale server application created")
    return app


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def main():
    """Run the HTTP server."""
    config = get_config()

    logging.basicConfig(
        level=getattr(logging, config.server.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    validate_configuration()

    logger.info(f"Starting server on {config.server.host}:{config.server.port}")

    uvicorn.run(
        create_app(),
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level.lower(),
        access_log=True
    )


if __name__ == "__main__":
    main()
