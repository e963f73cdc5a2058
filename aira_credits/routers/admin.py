from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field, model_validator

from aira_credits.core.security import require_idempotency_key
from aira_credits.deps import require_admin
from aira_credits.models.user import User
from aira_credits.services import admin as admin_service

router = APIRouter()


class GrantCreditsRequest(BaseModel):
    amount: float = Field(gt=0, allow_inf_nan=False)
    reason: Literal["admin_grant", "refund"] = "admin_grant"
    note: str | None = Field(default=None, max_length=500)


class UnlimitedRequest(BaseModel):
    """Give `until` or `days`; neither clears the subscription."""
    until: datetime | None = None
    days: int | None = Field(default=None, gt=0, le=3660)

    @model_validator(mode="after")
    def _one_of(self):
        if self.until is not None and self.days is not None:
            raise ValueError("Provide either until or days, not both")
        return self


@router.post("/users/{user_id}/credits")
async def admin_grant_credits(
    user_id: str,
    body: GrantCreditsRequest,
    admin: User = Depends(require_admin),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    """Admin: grant or refund credits. Requires Idempotency-Key."""
    key = require_idempotency_key(idempotency_key)
    return await admin_service.grant_credits(str(admin.id), user_id, body.amount, body.reason, key, body.note)


@router.post("/users/{user_id}/unlimited")
async def admin_set_unlimited(
    user_id: str,
    body: UnlimitedRequest,
    admin: User = Depends(require_admin),
):
    """Admin: set, extend or clear the unlimited subscription."""
    return await admin_service.set_unlimited(str(admin.id), user_id, until=body.until, days=body.days)
