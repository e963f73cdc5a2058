from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel

from aira_credits.deps import get_current_user
from aira_credits.models.user import User
from aira_credits.services import payments as payments_service

router = APIRouter()


class CreateOrderRequest(BaseModel):
    package_id: str  # credits_10 | credits_30 | unlimited


class ConfirmCheckoutRequest(BaseModel):
    order_id: str
    payment_id: str
    signature: str


@router.get("/packages")
async def list_packages():
    return {"packages": payments_service.list_packages()}


@router.post("/orders")
async def create_order(
    body: CreateOrderRequest,
    user: User = Depends(get_current_user),
):
    """Create Razorpay order for a package; frontend uses order_id for checkout."""
    return await payments_service.create_order(str(user.id), body.package_id)


@router.post("/confirm")
async def confirm_checkout(
    body: ConfirmCheckoutRequest,
    user: User = Depends(get_current_user),
):
    """Checkout success callback; applies the package at most once (shared with the webhook)."""
    outcome = await payments_service.confirm_checkout(str(user.id), body.order_id, body.payment_id, body.signature)
    return {"status": outcome}


@router.post("/webhook")
async def razorpay_webhook(request: Request, x_razorpay_signature: str = Header(..., alias="X-Razorpay-Signature")):
    """Razorpay webhook: payment.captured -> apply package (idempotent)."""
    body = await request.body()
    outcome = await payments_service.handle_webhook(body, x_razorpay_signature)
    return {"status": outcome}
