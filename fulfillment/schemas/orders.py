"""Schemas for order endpoints."""
from __future__ import annotations

import enum
import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from fulfillment.db.models import OrderStatus, PaymentStatus


class PaymentMethod(str, enum.Enum):
    """Payment methods accepted at checkout."""
    PIX = "pix"
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    CASH = "cash"


class OrderItem(BaseModel):
    """A single line of an order."""
    product_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    price: float = Field(gt=0)

    @property
    def total(self) -> float:
        return round(self.quantity * self.price, 2)


class OrderCreate(BaseModel):
    """Input schema for checkout."""
    customer_email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    items: list[OrderItem] = Field(min_length=1)
    payment_method: PaymentMethod

    @property
    def total_price(self) -> float:
        return round(sum(item.total for item in self.items), 2)


class OrderRead(BaseModel):
    """Output schema for returning an order."""
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    customer_email: str
    items: list[OrderItem]
    total_price: float
    payment_method: PaymentMethod
    status: OrderStatus
    payment_status: PaymentStatus
    created_at: datetime


class OrderStatusRead(BaseModel):
    """Read model exposed by `GET /orders/{id}/status`."""
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    status: OrderStatus
    payment_status: PaymentStatus
    updated_at: datetime
