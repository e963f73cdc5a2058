"""Credit ledger: authoritative balances, atomic deductions, unlimited override.

Every mutation of `CreditAccount.credit_units` goes through a single
`find_one_and_update`. Deductions carry the sufficiency check in the filter
(`credit_units >= amount`), so two concurrent deductions cannot both succeed
against the same balance.
"""

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from beanie import UpdateResponse
from beanie.odm.operators.update.array import AddToSet
from beanie.odm.operators.update.general import Inc, Set
from pydantic import BaseModel
from pymongo.errors import DuplicateKeyError, PyMongoError

from aira_credits.core.config import get_settings
from aira_credits.core.exceptions import BadRequestError, NotFoundError, StorageFailureError
from aira_credits.core.logging import get_logger
from aira_credits.models.credit_account import UNITS_PER_CREDIT, CreditAccount, from_units, to_units
from aira_credits.models.credit_ledger import CreditLedgerEntry

log = get_logger(__name__)

UNLIMITED_UPDATE_ATTEMPTS = 3


class Balance(BaseModel):
    credits: float
    has_unlimited: bool
    unlimited_until: datetime | None = None


class Credited(Balance):
    """`applied` is False when the idempotency key had already been applied."""
    applied: bool = True


class Deducted(BaseModel):
    """Successful deduction. `charged` is False when the unlimited override applied."""
    balance: Balance
    charged: bool


class InsufficientCredits(BaseModel):
    """Business rejection; the balance was left untouched."""
    credits: float
    requested: float


DeductResult = Deducted | InsufficientCredits


@contextmanager
def _storage(operation: str, user_id: str):
    try:
        yield
    except DuplicateKeyError:
        raise
    except PyMongoError as e:
        log.error("ledger_storage_failure", operation=operation, user_id=user_id, error=str(e))
        raise StorageFailureError(f"Could not {operation} credits", details={"operation": operation}) from e


def naive_utc(value: datetime) -> datetime:
    """Mongo hands back naive UTC datetimes; normalise aware inputs to match."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_amount(amount) -> int:
    """Validate a credit amount and return it in storage units."""
    try:
        return to_units(amount)
    except ValueError as e:
        raise BadRequestError(f"Invalid amount: {e}") from e


def balance_of(account: CreditAccount, now: datetime | None = None) -> Balance:
    return Balance(
        credits=account.credits,
        has_unlimited=account.has_unlimited(now),
        unlimited_until=account.unlimited_until,
    )


async def _get_account(user_id: str) -> CreditAccount:
    with _storage("read", user_id):
        account = await CreditAccount.find_one(CreditAccount.user_id == user_id)
    if not account:
        raise NotFoundError("Credit account not found")
    return account


async def _record(
    user_id: str,
    units: int,
    balance_after_units: int,
    reason: str,
    reference_type: str | None = None,
    reference_id: str | None = None,
    idempotency_key: str | None = None,
) -> None:
    """Append a history entry. The balance is already committed, so a failure here is logged, not raised."""
    try:
        await CreditLedgerEntry(
            user_id=user_id,
            amount=from_units(units),
            balance_after=from_units(balance_after_units),
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
            idempotency_key=idempotency_key,
        ).insert()
    except PyMongoError:
        log.exception("ledger_history_write_failed", user_id=user_id, reason=reason, units=units)


async def provision_account(user_id: str) -> CreditAccount:
    """Create the account with the starting balance; return the existing one if already provisioned."""
    with _storage("provision", user_id):
        existing = await CreditAccount.find_one(CreditAccount.user_id == user_id)
        if existing:
            return existing
        starting_units = int(round(get_settings().starting_credits * UNITS_PER_CREDIT))
        account = CreditAccount(user_id=user_id, credit_units=starting_units)
        try:
            await account.insert()
        except DuplicateKeyError:
            return await CreditAccount.find_one(CreditAccount.user_id == user_id)
    log.info("credit_account_provisioned", user_id=user_id, credits=account.credits)
    if starting_units > 0:
        await _record(user_id, starting_units, starting_units, "signup_bonus")
    return account


async def check(user_id: str) -> Balance:
    """Current balance and unlimited status. No side effects."""
    account = await _get_account(user_id)
    return balance_of(account)


async def deduct(
    user_id: str,
    amount,
    reference_type: str | None = None,
    reference_id: str | None = None,
) -> DeductResult:
    """
    Atomically subtract `amount` from the balance.
    Returns Deducted, or InsufficientCredits with the untouched balance.
    Unlimited subscribers succeed without being charged.
    """
    units = parse_amount(amount)
    now = datetime.utcnow()
    account = await _get_account(user_id)
    if account.has_unlimited(now):
        log.info("credits_unlimited_bypass", user_id=user_id, amount=from_units(units))
        return Deducted(balance=balance_of(account, now), charged=False)

    with _storage("deduct", user_id):
        updated = await CreditAccount.find_one(
            CreditAccount.user_id == user_id,
            CreditAccount.credit_units >= units,
        ).update(
            Inc({CreditAccount.credit_units: -units}),
            Set({CreditAccount.updated_at: now}),
            response_type=UpdateResponse.NEW_DOCUMENT,
        )

    if updated is None:
        current = await _get_account(user_id)
        log.info(
            "credits_insufficient",
            user_id=user_id,
            credits=current.credits,
            requested=from_units(units),
        )
        return InsufficientCredits(credits=current.credits, requested=from_units(units))

    log.info("credits_deducted", user_id=user_id, amount=from_units(units), credits=updated.credits)
    await _record(user_id, -units, updated.credit_units, "usage", reference_type, reference_id)
    return Deducted(balance=balance_of(updated, now), charged=True)


async def credit(
    user_id: str,
    amount,
    reason: str = "purchase",
    reference_type: str | None = None,
    reference_id: str | None = None,
    idempotency_key: str | None = None,
) -> Credited:
    """
    Add `amount`. With an `idempotency_key`, the key is pushed onto the account in
    the same update as the $inc and the filter excludes accounts that already
    carry it, so a replay (even after a lost reply) credits nothing.
    """
    units = parse_amount(amount)
    filters = [CreditAccount.user_id == user_id]
    updates = [
        Inc({CreditAccount.credit_units: units}),
        Set({CreditAccount.updated_at: datetime.utcnow()}),
    ]
    if idempotency_key:
        filters.append(CreditAccount.applied_keys != idempotency_key)
        updates.append(AddToSet({CreditAccount.applied_keys: idempotency_key}))
    with _storage("credit", user_id):
        updated = await CreditAccount.find_one(*filters).update(
            *updates,
            response_type=UpdateResponse.NEW_DOCUMENT,
        )
    if updated is None:
        # Either no account (NotFoundError) or the key is already applied.
        account = await _get_account(user_id)
        log.info("credits_already_applied", user_id=user_id, idempotency_key=idempotency_key)
        return Credited(**balance_of(account).model_dump(), applied=False)
    log.info("credits_added", user_id=user_id, amount=from_units(units), credits=updated.credits, reason=reason)
    await _record(user_id, units, updated.credit_units, reason, reference_type, reference_id, idempotency_key)
    return Credited(**balance_of(updated).model_dump())


async def set_unlimited(user_id: str, until: datetime | None) -> Balance:
    """Admin toggle: enable the override until `until`, or clear it with None."""
    until = naive_utc(until) if until else None
    with _storage("update", user_id):
        updated = await CreditAccount.find_one(CreditAccount.user_id == user_id).update(
            Set({
                CreditAccount.is_unlimited: until is not None,
                CreditAccount.unlimited_until: until,
                CreditAccount.updated_at: datetime.utcnow(),
            }),
            response_type=UpdateResponse.NEW_DOCUMENT,
        )
    if updated is None:
        raise NotFoundError("Credit account not found")
    log.info("unlimited_set", user_id=user_id, unlimited_until=until.isoformat() if until else None)
    return balance_of(updated)


async def extend_unlimited(user_id: str, days: int, idempotency_key: str | None = None) -> Balance:
    """
    Push unlimited_until forward by `days` from max(now, current expiry).
    Guarded on the previously read expiry so concurrent extensions both land.
    An `idempotency_key` already on the account makes this a no-op.
    """
    if days <= 0:
        raise BadRequestError("days must be positive")
    for _ in range(UNLIMITED_UPDATE_ATTEMPTS):
        account = await _get_account(user_id)
        now = datetime.utcnow()
        if idempotency_key and idempotency_key in account.applied_keys:
            log.info("unlimited_already_applied", user_id=user_id, idempotency_key=idempotency_key)
            return balance_of(account, now)
        start = account.unlimited_until if account.has_unlimited(now) else now
        until = start + timedelta(days=days)
        filters = [
            CreditAccount.user_id == user_id,
            CreditAccount.unlimited_until == account.unlimited_until,
        ]
        updates = [
            Set({
                CreditAccount.is_unlimited: True,
                CreditAccount.unlimited_until: until,
                CreditAccount.updated_at: now,
            }),
        ]
        if idempotency_key:
            filters.append(CreditAccount.applied_keys != idempotency_key)
            updates.append(AddToSet({CreditAccount.applied_keys: idempotency_key}))
        with _storage("update", user_id):
            updated = await CreditAccount.find_one(*filters).update(
                *updates,
                response_type=UpdateResponse.NEW_DOCUMENT,
            )
        if updated is not None:
            log.info("unlimited_extended", user_id=user_id, days=days, unlimited_until=until.isoformat())
            return balance_of(updated, now)
        log.warning("unlimited_extend_conflict", user_id=user_id)
    raise StorageFailureError("Could not extend unlimited subscription: concurrent update")


async def history(user_id: str, limit: int = 50, offset: int = 0) -> list[CreditLedgerEntry]:
    """Ledger entries for user, newest first."""
    with _storage("read", user_id):
        return (
            await CreditLedgerEntry.find(CreditLedgerEntry.user_id == user_id)
            .sort(-CreditLedgerEntry.created_at, "-_id")
            .skip(offset)
            .limit(limit)
            .to_list()
        )


def get_pricing() -> dict:
    s = get_settings()
    return {
        "chat": s.chat_credit_cost,
        "planning": s.planning_credit_cost,
        "starting_credits": s.starting_credits,
    }
