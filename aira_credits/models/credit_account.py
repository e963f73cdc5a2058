from datetime import datetime
from decimal import Decimal

from beanie import Document, Indexed
from pydantic import Field

# Balances are stored as integer hundredths of a credit so that fractional
# costs (0.2 for a planning turn) stay exact under $inc.
UNITS_PER_CREDIT = 100


def to_units(amount) -> int:
    """Convert a positive credit amount to storage units; ValueError if not representable."""
    if isinstance(amount, bool) or not isinstance(amount, (int, float, Decimal)):
        raise ValueError("amount must be a number")
    value = Decimal(str(amount))
    if not value.is_finite() or value <= 0:
        raise ValueError("amount must be a positive number")
    units = value * UNITS_PER_CREDIT
    if units != units.to_integral_value():
        raise ValueError("amount supports at most two decimal places")
    return int(units)


def from_units(units: int) -> float:
    return float(Decimal(units) / UNITS_PER_CREDIT)


class CreditAccount(Document):
    """One per user. Only the ledger service mutates the numeric fields."""
    user_id: Indexed(str, unique=True)
    credit_units: int = Field(default=0, ge=0)
    is_unlimited: bool = False
    unlimited_until: datetime | None = None
    # Keys of purchases/grants already applied, written in the same update as the change itself.
    applied_keys: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "credit_accounts"

    @property
    def credits(self) -> float:
        return from_units(self.credit_units)

    def has_unlimited(self, now: datetime | None = None) -> bool:
        """Unlimited applies only while unlimited_until is strictly in the future."""
        if not self.is_unlimited or self.unlimited_until is None:
            return False
        return self.unlimited_until > (now or datetime.utcnow())
