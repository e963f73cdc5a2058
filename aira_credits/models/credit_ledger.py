from datetime import datetime
from typing import Literal

from beanie import Document
from pydantic import Field

LedgerReason = Literal["signup_bonus", "purchase", "usage", "admin_grant", "refund"]


class CreditLedgerEntry(Document):
    """Append-only history of balance mutations. The balance itself lives on CreditAccount."""
    user_id: str
    amount: float  # positive = credit, negative = debit
    balance_after: float
    reason: LedgerReason
    reference_type: str | None = None  # payment_order, admin, chat_turn
    reference_id: str | None = None
    idempotency_key: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "credit_ledger"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            [("idempotency_key", 1)],
        ]
