"""Credits client, balance cache and the AI action gate."""

import json

import httpx
import pytest
from httpx import ASGITransport

from aira_credits.client.cache import BalanceCache
from aira_credits.client.credits_client import CreditsClient
from aira_credits.client.gate import CreditGate
from aira_credits.client.outcomes import CachedBalance, Err, ErrorKind, Ok, Prompt, prompt_for
from aira_credits.core.security import create_access_token
from aira_credits.services import credits as credits_service

pytestmark = pytest.mark.asyncio


def _token(user) -> str:
    return create_access_token({"user_id": str(user.id), "session_version": user.session_version})


def _app_client(user, token: str | None = None) -> CreditsClient:
    from aira_credits.main import app
    return CreditsClient("http://test", token or _token(user), transport=ASGITransport(app=app), retry_backoff=0)


def _mock_client(handler) -> CreditsClient:
    return CreditsClient("http://test", "any-token", transport=httpx.MockTransport(handler), retry_backoff=0)


async def test_check_seeds_cache(user):
    async with _app_client(user) as credits:
        outcome = await credits.check()
        assert isinstance(outcome, Ok)
        assert outcome.balance.credits == 5
        assert credits.cache.balance == outcome.balance
        assert credits.cache.synced_at is not None


async def test_gate_runs_action_after_charge(user):
    calls = []

    async def reply():
        calls.append("ran")
        return "assistant reply"

    async with _app_client(user) as credits:
        gate = CreditGate(credits)
        result = await gate.run(reply, mode="planning")
        assert result.executed is True
        assert result.result == "assistant reply"
        assert result.credits == 4.8
        assert credits.cache.balance.credits == 4.8
    assert calls == ["ran"]
    assert (await credits_service.check(str(user.id))).credits == 4.8


async def test_gate_blocks_on_insufficient_credits_and_resyncs(user):
    await credits_service.deduct(str(user.id), 4.5)
    calls = []

    async def reply():
        calls.append("ran")

    async with _app_client(user) as credits:
        # Stale display value from an earlier session.
        credits.cache.overwrite(CachedBalance(credits=5))
        result = await CreditGate(credits).run(reply, mode="chat")
        assert result.executed is False
        assert result.error.kind is ErrorKind.INSUFFICIENT_CREDITS
        assert result.prompt is Prompt.PURCHASE
        assert result.credits == 0.5
        assert credits.cache.balance.credits == 0.5
    assert calls == []


async def test_gate_unlimited_user(user):
    await credits_service.extend_unlimited(str(user.id), 30)
    async with _app_client(user) as credits:
        result = await CreditGate(credits).run(lambda: _async_value("ok"), amount=10)
        assert result.executed is True
        assert credits.cache.balance.is_unlimited is True
        assert credits.cache.balance.credits == 5


async def _async_value(value):
    return value


async def test_unauthorized_maps_to_reauthenticate(user):
    async with _app_client(user, token="forged") as credits:
        outcome = await credits.check()
        assert isinstance(outcome, Err)
        assert outcome.kind is ErrorKind.UNAUTHORIZED
        assert prompt_for(outcome.kind) is Prompt.REAUTHENTICATE
        assert credits.cache.balance is None


async def test_timeout_is_unknown_outcome_and_reconciles_with_check():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        seen.append(body["action"])
        if body["action"] == "use":
            # Server charged, but the response never arrived.
            raise httpx.ReadTimeout("timed out", request=request)
        return httpx.Response(200, json={"credits": 4, "hasUnlimited": False, "unlimitedUntil": None})

    calls = []

    async def reply():
        calls.append("ran")

    async with _mock_client(handler) as credits:
        credits.cache.overwrite(CachedBalance(credits=5))
        result = await CreditGate(credits).run(reply)
        assert result.executed is False
        assert result.error.kind is ErrorKind.UNKNOWN_OUTCOME
        assert result.prompt is Prompt.RETRY
        assert credits.cache.balance.credits == 4
    assert calls == []
    assert seen == ["use", "check"]


async def test_network_failure_never_decrements_cache():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with _mock_client(handler) as credits:
        credits.cache.overwrite(CachedBalance(credits=3))
        result = await CreditGate(credits).run(lambda: _async_value("never"))
        assert result.executed is False
        assert result.error.kind is ErrorKind.UNKNOWN_OUTCOME
        assert credits.cache.balance.credits == 3


async def test_server_error_maps_to_retry():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": {"message": "Could not deduct credits", "code": "STORAGE_FAILURE"}})

    async with _mock_client(handler) as credits:
        outcome = await credits.use(1)
        assert outcome.kind is ErrorKind.STORAGE_FAILURE
        assert outcome.message == "Could not deduct credits"
        assert prompt_for(outcome.kind) is Prompt.RETRY
        assert credits.cache.balance is None


async def test_load_pricing_overrides_costs():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"costs": {"chat": 2, "planning": 0.5}, "packages": []})

    async with _mock_client(handler) as credits:
        gate = CreditGate(credits)
        await gate.load_pricing()
        assert gate.cost_for("chat") == 2
        assert gate.cost_for("planning") == 0.5


async def test_cache_can_afford_hint():
    cache = BalanceCache()
    assert cache.can_afford(1) is None
    cache.overwrite(CachedBalance(credits=0.2))
    assert cache.can_afford(0.2) is True
    assert cache.can_afford(1) is False
    cache.overwrite(CachedBalance(credits=0, is_unlimited=True))
    assert cache.can_afford(1) is True
    cache.clear()
    assert cache.balance is None


async def test_check_retries_transient_server_error():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(json.loads(request.content)["action"])
        if len(requests) == 1:
            return httpx.Response(500, json={"error": {"message": "Could not read credits", "code": "STORAGE_FAILURE"}})
        return httpx.Response(200, json={"credits": 7, "hasUnlimited": False, "unlimitedUntil": None})

    async with _mock_client(handler) as credits:
        outcome = await credits.check()
        assert isinstance(outcome, Ok)
        assert outcome.balance.credits == 7
        assert credits.cache.balance.credits == 7
    assert requests == ["check", "check"]


async def test_check_gives_up_after_attempts():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    async with _mock_client(handler) as credits:
        outcome = await credits.check()
        assert isinstance(outcome, Err)
        assert outcome.kind is ErrorKind.UNKNOWN_OUTCOME
    assert len(requests) == 3


async def test_check_does_not_retry_client_errors():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(404, json={"error": {"message": "Credit account not found", "code": "NOT_FOUND"}})

    async with _mock_client(handler) as credits:
        outcome = await credits.check()
        assert outcome.kind is ErrorKind.NOT_FOUND
    assert len(requests) == 1


async def test_use_is_sent_once_on_server_error():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(500, json={"error": {"message": "Could not deduct credits", "code": "STORAGE_FAILURE"}})

    async with _mock_client(handler) as credits:
        outcome = await credits.use(1)
        assert outcome.kind is ErrorKind.STORAGE_FAILURE
    assert len(requests) == 1


@pytest.mark.parametrize("body", [b"<html>bad gateway</html>", b"{}", b"[]", b'{"credits": "lots"}'])
async def test_malformed_success_body_is_an_error_outcome(body):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body)

    async with _mock_client(handler) as credits:
        credits.cache.overwrite(CachedBalance(credits=3))
        checked = await credits.check()
        used = await credits.use(1)
        assert checked.kind is ErrorKind.STORAGE_FAILURE
        assert used.kind is ErrorKind.STORAGE_FAILURE
        assert credits.cache.balance.credits == 3


async def test_pricing_with_unparseable_body_is_none():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html>bad gateway</html>")

    async with _mock_client(handler) as credits:
        assert await credits.pricing() is None
