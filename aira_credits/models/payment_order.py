from datetime import datetime
from typing import Literal

from beanie import Document, Indexed
from pydantic import Field


class PaymentOrder(Document):
    """Razorpay order_id -> user and package. Doubles as the fulfillment idempotency record."""
    order_id: Indexed(str, unique=True)
    user_id: str
    package_id: str
    amount_minor: int
    currency: str = "INR"
    status: Literal["created", "fulfilled"] = "created"
    payment_id: str | None = None
    fulfilled_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "payment_orders"
