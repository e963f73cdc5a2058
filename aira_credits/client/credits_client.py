"""HTTP client for the credits endpoint. Every call returns Ok | Err; nothing is raised to the UI."""

from datetime import datetime
from typing import Any

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from aira_credits.client.cache import BalanceCache
from aira_credits.client.outcomes import CachedBalance, CreditsOutcome, Err, ErrorKind, Ok
from aira_credits.core.logging import get_logger

log = get_logger(__name__)

_STATUS_KINDS = {
    400: ErrorKind.INVALID_ARGUMENT,
    401: ErrorKind.UNAUTHORIZED,
    402: ErrorKind.INSUFFICIENT_CREDITS,
    404: ErrorKind.NOT_FOUND,
    422: ErrorKind.INVALID_ARGUMENT,
}

# Check has no side effects, so these are safe to retry there (never for use).
_TRANSIENT_KINDS = (ErrorKind.STORAGE_FAILURE, ErrorKind.UNKNOWN_OUTCOME)


class _TransientCheckError(Exception):
    def __init__(self, outcome: Err):
        super().__init__(outcome.message)
        self.outcome = outcome


def _parse_until(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _error_message(data: Any) -> str:
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            return str(err.get("message", ""))
        if err:
            return str(err)
    return ""


class CreditsClient:
    """Client for POST /v1/credits. Keeps `cache` in step with every authoritative response."""

    def __init__(
        self,
        base_url: str,
        access_token: str,
        cache: BalanceCache | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        check_attempts: int = 3,
        retry_backoff: float = 0.5,
    ):
        self.base_url = base_url.rstrip("/")
        self.cache = cache or BalanceCache()
        self.check_attempts = check_attempts
        self.retry_backoff = retry_backoff
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Authorization": f"Bearer {access_token}"},
        )

    async def close(self):
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _post(self, payload: dict) -> httpx.Response | Err:
        try:
            return await self.client.post("/v1/credits", json=payload)
        except httpx.TimeoutException as e:
            log.warning("credits_call_timeout", action=payload.get("action"), error=str(e))
            return Err(kind=ErrorKind.UNKNOWN_OUTCOME, message="Request timed out")
        except httpx.TransportError as e:
            log.warning("credits_call_failed", action=payload.get("action"), error=str(e))
            return Err(kind=ErrorKind.UNKNOWN_OUTCOME, message="Network error")

    def _error_from(self, response: httpx.Response) -> Err:
        try:
            data = response.json()
        except ValueError:
            data = None
        kind = _STATUS_KINDS.get(response.status_code, ErrorKind.STORAGE_FAILURE)
        credits = None
        if kind is ErrorKind.INSUFFICIENT_CREDITS and isinstance(data, dict):
            credits = data.get("credits")
            if credits is not None:
                previous = self.cache.balance
                self.cache.overwrite(CachedBalance(
                    credits=credits,
                    is_unlimited=False,
                    unlimited_until=previous.unlimited_until if previous else None,
                ))
        log.info("credits_call_rejected", status_code=response.status_code, kind=kind.value)
        return Err(kind=kind, message=_error_message(data), credits=credits)

    def _malformed(self, action: str, error: Exception) -> Err:
        log.warning("credits_response_malformed", action=action, error=str(error))
        return Err(kind=ErrorKind.STORAGE_FAILURE, message="Malformed response from server")

    async def _check_once(self) -> CreditsOutcome:
        response = await self._post({"action": "check"})
        if isinstance(response, Err):
            return response
        if response.status_code != 200:
            return self._error_from(response)
        try:
            data = response.json()
            balance = CachedBalance(
                credits=data["credits"],
                is_unlimited=bool(data.get("hasUnlimited")),
                unlimited_until=_parse_until(data.get("unlimitedUntil")),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            return self._malformed("check", e)
        self.cache.overwrite(balance)
        return Ok(balance=balance)

    async def check(self) -> CreditsOutcome:
        """Read the balance, retrying storage and network failures with exponential backoff."""

        @retry(
            stop=stop_after_attempt(self.check_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff, max=10),
            retry=retry_if_exception_type(_TransientCheckError),
            reraise=True,
        )
        async def _attempt() -> CreditsOutcome:
            outcome = await self._check_once()
            if isinstance(outcome, Err) and outcome.kind in _TRANSIENT_KINDS:
                raise _TransientCheckError(outcome)
            return outcome

        try:
            return await _attempt()
        except _TransientCheckError as e:
            log.warning("credits_check_failed_after_retries", attempts=self.check_attempts, kind=e.outcome.kind.value)
            return e.outcome

    async def use(self, amount: float, reference_id: str | None = None) -> CreditsOutcome:
        """Single deduction attempt. Never retried here: a lost response may still have charged."""
        payload: dict[str, Any] = {"action": "use", "amount": amount}
        if reference_id:
            payload["reference_id"] = reference_id
        response = await self._post(payload)
        if isinstance(response, Err):
            return response
        if response.status_code != 200:
            return self._error_from(response)
        previous = self.cache.balance
        try:
            data = response.json()
            balance = CachedBalance(
                credits=data["credits"],
                is_unlimited=bool(data.get("hasUnlimited")),
                unlimited_until=previous.unlimited_until if previous else None,
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            return self._malformed("use", e)
        self.cache.overwrite(balance)
        return Ok(balance=balance)

    async def pricing(self) -> dict | None:
        try:
            response = await self.client.get("/v1/credits/pricing")
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            log.warning("credits_pricing_failed", error=str(e))
            return None
