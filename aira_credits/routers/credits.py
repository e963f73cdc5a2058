from datetime import datetime, timezone
from typing import Annotated, Literal, Union

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from aira_credits.core.exceptions import BadRequestError
from aira_credits.deps import get_current_user
from aira_credits.models.user import User
from aira_credits.services import credits as credits_service
from aira_credits.services import payments as payments_service

router = APIRouter()


class CheckRequest(BaseModel):
    action: Literal["check"]


class UseRequest(BaseModel):
    action: Literal["use"]
    amount: float = Field(strict=True, gt=0, allow_inf_nan=False)
    reference_id: str | None = Field(default=None, max_length=200)


CreditsRequest = Annotated[Union[CheckRequest, UseRequest], Field(discriminator="action")]
_credits_request = TypeAdapter(CreditsRequest)


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).isoformat()


async def _parse_body(request: Request) -> CheckRequest | UseRequest:
    body = await request.body()
    try:
        return _credits_request.validate_json(body)
    except ValidationError as e:
        raise BadRequestError(
            "Invalid request parameters",
            details={"errors": e.errors(include_url=False, include_context=False, include_input=False)},
        ) from e


@router.post("")
async def credits_action(request: Request, user: User = Depends(get_current_user)):
    """
    Check the balance or use credits. The body is read only after the bearer
    token resolved to a user.
    """
    body = await _parse_body(request)
    user_id = str(user.id)

    if isinstance(body, CheckRequest):
        balance = await credits_service.check(user_id)
        return {
            "credits": balance.credits,
            "hasUnlimited": balance.has_unlimited,
            "unlimitedUntil": _iso(balance.unlimited_until),
        }

    result = await credits_service.deduct(
        user_id,
        body.amount,
        reference_type="chat_turn" if body.reference_id else None,
        reference_id=body.reference_id,
    )
    if isinstance(result, credits_service.InsufficientCredits):
        return ORJSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            content={"error": "Insufficient credits", "credits": result.credits},
        )
    out = {"success": True, "credits": result.balance.credits}
    if not result.charged:
        out["hasUnlimited"] = True
    return out


@router.get("/ledger")
async def credits_ledger(
    user: User = Depends(get_current_user),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Return ledger entries for current user (newest first)."""
    entries = await credits_service.history(str(user.id), limit=limit, offset=offset)
    out = [
        {
            "id": str(e.id),
            "amount": e.amount,
            "balance_after": e.balance_after,
            "reason": e.reason,
            "reference_type": e.reference_type,
            "reference_id": e.reference_id,
            "created_at": _iso(e.created_at),
        }
        for e in entries
    ]
    return {"entries": out, "limit": limit, "offset": offset}


@router.get("/pricing")
async def credits_pricing():
    """Credit cost per AI action and purchasable packages."""
    return {"costs": credits_service.get_pricing(), "packages": payments_service.list_packages()}
