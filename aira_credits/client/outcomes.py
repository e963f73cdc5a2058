"""Typed results of credit calls, as seen by the UI layer."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel


class ErrorKind(str, Enum):
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    INVALID_ARGUMENT = "invalid_argument"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    STORAGE_FAILURE = "storage_failure"
    # Network error or timeout: the server may or may not have applied the call.
    UNKNOWN_OUTCOME = "unknown_outcome"


class Prompt(str, Enum):
    PURCHASE = "purchase"
    REAUTHENTICATE = "reauthenticate"
    RETRY = "retry"


class CachedBalance(BaseModel):
    credits: float
    is_unlimited: bool = False
    unlimited_until: datetime | None = None


class Ok(BaseModel):
    balance: CachedBalance


class Err(BaseModel):
    kind: ErrorKind
    message: str = ""
    credits: float | None = None  # set for INSUFFICIENT_CREDITS


CreditsOutcome = Ok | Err


def prompt_for(kind: ErrorKind) -> Prompt:
    if kind is ErrorKind.INSUFFICIENT_CREDITS:
        return Prompt.PURCHASE
    if kind is ErrorKind.UNAUTHORIZED:
        return Prompt.REAUTHENTICATE
    return Prompt.RETRY
