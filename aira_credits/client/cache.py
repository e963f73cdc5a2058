from datetime import datetime

from aira_credits.client.outcomes import CachedBalance


class BalanceCache:
    """
    Last balance the server reported, for display only.

    No decrement method: the only writer is `overwrite`, fed from check/use
    responses (including 402 rejections).
    """

    def __init__(self) -> None:
        self._balance: CachedBalance | None = None
        self._synced_at: datetime | None = None

    @property
    def balance(self) -> CachedBalance | None:
        return self._balance

    @property
    def synced_at(self) -> datetime | None:
        return self._synced_at

    def overwrite(self, balance: CachedBalance) -> None:
        self._balance = balance
        self._synced_at = datetime.utcnow()

    def clear(self) -> None:
        self._balance = None
        self._synced_at = None

    def can_afford(self, amount: float) -> bool | None:
        """Display hint for enabling the send button; None when nothing is cached. Never a spend decision."""
        if self._balance is None:
            return None
        return self._balance.is_unlimited or self._balance.credits >= amount
