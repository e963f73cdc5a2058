"""Admin adjustments: manual grants/refunds and subscription toggles."""

from datetime import datetime

from aira_credits.core.audit import log_event
from aira_credits.services import credits as credits_service


async def grant_credits(
    actor_id: str,
    user_id: str,
    amount: float,
    reason: str,
    idempotency_key: str,
    note: str | None = None,
) -> dict:
    """Credit a user once per idempotency key. A repeated key returns the current balance unchanged."""
    balance = await credits_service.credit(
        user_id,
        amount,
        reason,
        reference_type="admin",
        reference_id=actor_id,
        idempotency_key=f"admin_{idempotency_key}",
    )
    if not balance.applied:
        return {"applied": False, "credits": balance.credits}
    await log_event(
        user_id,
        "credits_granted",
        "credit_account",
        user_id,
        {"amount": amount, "reason": reason, "note": note},
        actor_id=actor_id,
    )
    return {"applied": True, "credits": balance.credits}


async def set_unlimited(actor_id: str, user_id: str, until: datetime | None = None, days: int | None = None) -> dict:
    """Set an explicit expiry, extend by `days`, or clear the override when both are None."""
    if days is not None:
        balance = await credits_service.extend_unlimited(user_id, days)
    else:
        balance = await credits_service.set_unlimited(user_id, until)
    await log_event(
        user_id,
        "unlimited_updated",
        "credit_account",
        user_id,
        {
            "days": days,
            "unlimited_until": balance.unlimited_until.isoformat() if balance.unlimited_until else None,
        },
        actor_id=actor_id,
    )
    return {
        "credits": balance.credits,
        "has_unlimited": balance.has_unlimited,
        "unlimited_until": balance.unlimited_until.isoformat() if balance.unlimited_until else None,
    }
