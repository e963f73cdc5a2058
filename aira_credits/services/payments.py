"""Razorpay orders and fulfillment: packages, idempotent credit apply."""

import json
from datetime import datetime

from beanie import UpdateResponse
from beanie.odm.operators.update.general import Set

from aira_credits.core.audit import log_event
from aira_credits.core.config import get_settings
from aira_credits.core.exceptions import BadRequestError, ForbiddenError, NotFoundError
from aira_credits.core.logging import get_logger
from aira_credits.core.security import verify_razorpay_webhook
from aira_credits.models.payment_order import PaymentOrder
from aira_credits.services import credits as credits_service

log = get_logger(__name__)

# package_id -> credits granted (0 for the subscription) and price in minor units
PACKAGES = {
    "credits_10": {"credits": 10, "unlimited": False, "amount_minor": 990},
    "credits_30": {"credits": 30, "unlimited": False, "amount_minor": 1990},
    "unlimited": {"credits": 0, "unlimited": True, "amount_minor": 2990},
}


def get_package(package_id: str) -> dict:
    package = PACKAGES.get(package_id)
    if not package:
        raise BadRequestError(f"Invalid package: {package_id}")
    return package


def list_packages() -> list[dict]:
    settings = get_settings()
    return [
        {
            "id": package_id,
            "credits": p["credits"],
            "unlimited": p["unlimited"],
            "unlimited_days": settings.unlimited_days if p["unlimited"] else None,
            "amount_minor": p["amount_minor"],
            "currency": settings.payment_currency,
        }
        for package_id, p in PACKAGES.items()
    ]


def _razorpay_client():
    import razorpay
    settings = get_settings()
    if not settings.razorpay_key_id or not settings.razorpay_key_secret:
        raise BadRequestError("Payments not configured")
    return razorpay.Client(auth=(settings.razorpay_key_id, settings.razorpay_key_secret))


async def create_order(user_id: str, package_id: str) -> dict:
    """Create Razorpay order and its PaymentOrder record; return what checkout needs."""
    package = get_package(package_id)
    settings = get_settings()
    client = _razorpay_client()
    order = client.order.create({
        "amount": package["amount_minor"],
        "currency": settings.payment_currency,
        "notes": {"package_id": package_id, "user_id": user_id},
    })
    await PaymentOrder(
        order_id=order["id"],
        user_id=user_id,
        package_id=package_id,
        amount_minor=package["amount_minor"],
        currency=settings.payment_currency,
    ).insert()
    log.info("payment_order_created", user_id=user_id, order_id=order["id"], package_id=package_id)
    return {
        "order_id": order["id"],
        "amount": order["amount"],
        "currency": order["currency"],
        "package_id": package_id,
        "key_id": settings.razorpay_key_id,
    }


async def fulfill_order(order_id: str, payment_id: str, amount_minor: int | None = None) -> str:
    """
    Apply a confirmed payment exactly once.
    The PaymentOrder is claimed (created -> fulfilled) with a conditional update before
    the ledger is touched; a replay finds nothing to claim. If the ledger call fails the
    claim is released, and the order key on the account keeps a retry from applying a
    change that had already landed. Returns the outcome name.
    """
    po = await PaymentOrder.find_one(PaymentOrder.order_id == order_id)
    if not po:
        log.warning("payment_unknown_order", order_id=order_id, payment_id=payment_id)
        return "unknown_order"
    if amount_minor is not None and amount_minor != po.amount_minor:
        log.warning("payment_amount_mismatch", order_id=order_id, expected=po.amount_minor, got=amount_minor)
        return "amount_mismatch"

    claimed = await PaymentOrder.find_one(
        PaymentOrder.order_id == order_id,
        PaymentOrder.status == "created",
    ).update(
        Set({
            PaymentOrder.status: "fulfilled",
            PaymentOrder.payment_id: payment_id,
            PaymentOrder.fulfilled_at: datetime.utcnow(),
        }),
        response_type=UpdateResponse.NEW_DOCUMENT,
    )
    if claimed is None:
        log.info("payment_already_fulfilled", order_id=order_id, payment_id=payment_id)
        return "already_fulfilled"

    package = get_package(claimed.package_id)
    key = f"razorpay_{order_id}"
    try:
        if package["unlimited"]:
            balance = await credits_service.extend_unlimited(
                claimed.user_id, get_settings().unlimited_days, idempotency_key=key
            )
        else:
            balance = await credits_service.credit(
                claimed.user_id,
                package["credits"],
                "purchase",
                reference_type="payment_order",
                reference_id=order_id,
                idempotency_key=key,
            )
    except Exception:
        # Release the claim so the provider's retry can finish the order.
        await PaymentOrder.find_one(
            PaymentOrder.order_id == order_id,
            PaymentOrder.status == "fulfilled",
        ).update(Set({
            PaymentOrder.status: "created",
            PaymentOrder.payment_id: None,
            PaymentOrder.fulfilled_at: None,
        }))
        log.exception("payment_fulfillment_failed", order_id=order_id, payment_id=payment_id)
        raise

    await log_event(
        claimed.user_id,
        "payment_captured",
        "payment",
        payment_id,
        {
            "order_id": order_id,
            "package_id": claimed.package_id,
            "amount_minor": claimed.amount_minor,
            "credits": balance.credits,
            "unlimited_until": balance.unlimited_until.isoformat() if balance.unlimited_until else None,
        },
    )
    return "fulfilled"


async def handle_webhook(payload: bytes, signature: str) -> str:
    """Verify HMAC and fulfill the order on payment.captured."""
    settings = get_settings()
    if not settings.razorpay_webhook_secret:
        raise BadRequestError("Webhook secret not configured")
    if not verify_razorpay_webhook(payload, signature, settings.razorpay_webhook_secret):
        raise BadRequestError("Invalid webhook signature")
    try:
        data = json.loads(payload.decode())
    except (UnicodeDecodeError, ValueError) as e:
        raise BadRequestError("Malformed webhook payload") from e
    event = data.get("event")
    if event != "payment.captured":
        log.info("payment_webhook_ignored", webhook_event=event)
        return "ignored"
    payment = data.get("payload", {}).get("payment", {}).get("entity", {})
    order_id = payment.get("order_id")
    payment_id = payment.get("id")
    if not order_id or not payment_id:
        raise BadRequestError("Webhook payment missing order_id or id")
    return await fulfill_order(order_id, payment_id, payment.get("amount"))


async def confirm_checkout(user_id: str, order_id: str, payment_id: str, signature: str) -> str:
    """
    Client-side confirmation after checkout returns. Same idempotent path as the
    webhook, so whichever arrives second is a no-op.
    """
    po = await PaymentOrder.find_one(PaymentOrder.order_id == order_id)
    if not po:
        raise NotFoundError("Order not found")
    if po.user_id != user_id:
        log.warning("payment_owner_mismatch", order_id=order_id, user_id=user_id)
        raise ForbiddenError("Payment does not belong to this user")
    from razorpay.errors import SignatureVerificationError
    client = _razorpay_client()
    try:
        client.utility.verify_payment_signature({
            "razorpay_order_id": order_id,
            "razorpay_payment_id": payment_id,
            "razorpay_signature": signature,
        })
    except SignatureVerificationError as e:
        raise BadRequestError("Invalid payment signature") from e
    return await fulfill_order(order_id, payment_id)
