from __future__ import annotations

import logging
import os
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import schemas
from .audit import AuditLog
from .auth import StaffPrincipal, require_role
from .database import get_connection, init_db
from .idempotency import IdempotencyGate, IdempotencyRepository
from .intake import OrderIntakeService
from .repository import MenuRepository, OrderNotFoundError, OrderRepository
from .validation import OrderIntakeValidator

logger = logging.getLogger(__name__)

ERROR_RESPONSES = {
    400: {"model": schemas.ErrorResponse},
    401: {"model": schemas.ErrorResponse},
    403: {"model": schemas.ErrorResponse},
    404: {"model": schemas.ErrorResponse},
    409: {"model": schemas.ErrorResponse},
    500: {"model": schemas.ErrorResponse},
}


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    return f"{location}: {message}" if location else message


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def create_app(connection_factory=None) -> FastAPI:
    connection_factory = connection_factory or get_connection
    init_db(connection_factory)

    app = FastAPI(
        title="POS Order Service",
        version="0.1.0",
        description="Takes table QR and staff orders with price and idempotency checks.",
    )
    allowed_origins = [
        origin.strip() for origin in os.environ.get("ALLOWED_ORIGINS", "*").split(",")
    ]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": _validation_message(exc)})

    @app.exception_handler(Exception)
    async def unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    def get_menu_repository() -> MenuRepository:
        return MenuRepository(connection_factory)

    def get_order_repository() -> OrderRepository:
        return OrderRepository(connection_factory)

    def get_audit_log() -> AuditLog:
        return AuditLog(connection_factory)

    def get_intake(
        menu: MenuRepository = Depends(get_menu_repository),
        orders: OrderRepository = Depends(get_order_repository),
        audit: AuditLog = Depends(get_audit_log),
    ) -> OrderIntakeService:
        return OrderIntakeService(
            OrderIntakeValidator(menu),
            IdempotencyGate(IdempotencyRepository(connection_factory)),
            orders,
            audit,
        )

    @app.get("/healthz", response_model=schemas.HealthResponse, tags=["system"])
    async def healthz() -> schemas.HealthResponse:
        return schemas.HealthResponse(status="ok")

    @app.get("/metrics", tags=["system"])
    async def metrics_endpoint() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/menu", response_model=List[schemas.MenuItem], tags=["menu"])
    async def list_menu(
        menu: MenuRepository = Depends(get_menu_repository),
    ) -> List[schemas.MenuItem]:
        return [
            schemas.MenuItem(
                id=f"m-{item.id}",
                name=item.name,
                priceTHB=float(item.price_thb),
                imageUrl=item.image_url,
            )
            for item in menu.list_items()
        ]

    @app.post(
        "/orders/guest",
        response_model=schemas.OrderSummary,
        status_code=status.HTTP_201_CREATED,
        responses=ERROR_RESPONSES,
        tags=["orders"],
    )
    async def create_guest_order(
        payload: schemas.CreateGuestOrderRequest,
        request: Request,
        idempotency_key: Optional[str] = Header(default=None),
        intake: OrderIntakeService = Depends(get_intake),
    ) -> JSONResponse:
        try:
            outcome = intake.submit_guest_order(payload, idempotency_key, ip=_client_ip(request))
        except Exception:
            logger.exception("Guest order creation failed table=%s", payload.tableCode)
            raise HTTPException(status_code=500, detail="Internal server error")
        return JSONResponse(status_code=outcome.status, content=outcome.body)

    @app.post(
        "/orders",
        response_model=schemas.OrderSummary,
        status_code=status.HTTP_201_CREATED,
        responses=ERROR_RESPONSES,
        tags=["orders"],
    )
    async def create_order(
        payload: schemas.CreateOrderRequest,
        request: Request,
        principal: StaffPrincipal = Depends(require_role("staff", "cashier")),
        intake: OrderIntakeService = Depends(get_intake),
    ) -> JSONResponse:
        try:
            outcome = intake.submit_staff_order(payload, principal.user_id, ip=_client_ip(request))
        except Exception:
            logger.exception("Staff order creation failed user=%s", principal.user_id)
            raise HTTPException(status_code=500, detail="Internal server error")
        return JSONResponse(status_code=outcome.status, content=outcome.body)

    @app.get("/orders", response_model=schemas.OrderList, responses=ERROR_RESPONSES, tags=["orders"])
    async def list_orders(
        limit: int = 100,
        _: StaffPrincipal = Depends(require_role("owner", "staff")),
        repo: OrderRepository = Depends(get_order_repository),
    ) -> schemas.OrderList:
        records = repo.list_orders(limit=max(1, min(limit, 100)))
        return schemas.OrderList(
            orders=[schemas.OrderSummary(**record.as_response_body()) for record in records]
        )

    @app.get("/orders/{order_id}", response_model=schemas.OrderSummary, responses=ERROR_RESPONSES, tags=["orders"])
    async def get_order(
        order_id: str,
        _: StaffPrincipal = Depends(require_role("owner", "staff", "cashier")),
        repo: OrderRepository = Depends(get_order_repository),
    ) -> schemas.OrderSummary:
        record = repo.get_order(order_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Order not found")
        return schemas.OrderSummary(**record.as_response_body())

    @app.patch(
        "/orders/{order_id}/status",
        response_model=schemas.OrderSummary,
        responses=ERROR_RESPONSES,
        tags=["orders"],
    )
    async def update_order_status(
        order_id: str,
        payload: schemas.UpdateOrderStatusRequest,
        request: Request,
        principal: StaffPrincipal = Depends(require_role("owner", "staff")),
        repo: OrderRepository = Depends(get_order_repository),
        audit: AuditLog = Depends(get_audit_log),
    ) -> schemas.OrderSummary:
        try:
            record = repo.update_status(order_id, payload.status)
        except OrderNotFoundError:
            raise HTTPException(status_code=404, detail="Order not found")
        logger.info("Order %s moved to %s by user=%s", order_id, payload.status, principal.user_id)
        audit.record(
            "order.status_update",
            "order",
            entity_id=order_id,
            actor_id=principal.user_id,
            metadata={"status": payload.status},
            ip=_client_ip(request),
        )
        return schemas.OrderSummary(**record.as_response_body())

    return app
