"""Schemas for payment-provider notifications."""
from __future__ import annotations

import enum
import uuid

from pydantic import BaseModel, Field


class ProviderPaymentStatus(str, enum.Enum):
    """Payment outcome reported by the provider."""
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class PaymentNotification(BaseModel):
    """Input schema for `POST /payments/notifications`."""
    order_id: uuid.UUID
    payment_id: str = Field(min_length=1, max_length=128)
    status: ProviderPaymentStatus

    @property
    def event_name(self) -> str:
        return f"payment_{self.status.value}"


class PaymentNotificationAccepted(BaseModel):
    """Returned once the payment event was accepted by the broker."""
    event: str
    message_id: str | None
