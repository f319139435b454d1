from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field

MAX_UNIT_PRICE = 1_000_000
MAX_QUANTITY = 1_000
# orders.total is NUMERIC(12, 2)
MAX_ORDER_TOTAL = 9_999_999_999.99

OrderStatus = Literal["PENDING", "CONFIRMED", "COMPLETED", "CANCELLED"]


class HealthResponse(BaseModel):
    status: Literal["ok"]


class OrderLineItem(BaseModel):
    id: str
    name: str
    priceTHB: float = Field(..., ge=0, le=MAX_UNIT_PRICE, allow_inf_nan=False)
    quantity: int = Field(..., ge=1, le=MAX_QUANTITY)


class CreateOrderRequest(BaseModel):
    items: List[OrderLineItem] = Field(..., min_length=1, max_length=50)
    total: float = Field(..., gt=0, le=MAX_ORDER_TOTAL, allow_inf_nan=False)


class CreateGuestOrderRequest(CreateOrderRequest):
    tableCode: Optional[str] = None


class OrderSummary(BaseModel):
    id: str
    items: list
    subtotal: float
    total: float
    status: OrderStatus
    createdAt: str
    createdBy: int
    tableCode: Optional[str] = None


class OrderList(BaseModel):
    orders: List[OrderSummary]


class UpdateOrderStatusRequest(BaseModel):
    status: OrderStatus


class MenuItem(BaseModel):
    id: str
    name: str
    priceTHB: float
    imageUrl: Optional[str] = None


class ErrorResponse(BaseModel):
    error: str
