"""Run AI actions only after the server has accepted the charge."""

from typing import Any, Awaitable, Callable

from pydantic import BaseModel

from aira_credits.client.credits_client import CreditsClient
from aira_credits.client.outcomes import Err, ErrorKind, Prompt, prompt_for
from aira_credits.core.logging import get_logger

log = get_logger(__name__)

DEFAULT_COSTS = {"chat": 1.0, "planning": 0.2}


class GateOutcome(BaseModel):
    executed: bool
    result: Any = None
    error: Err | None = None
    prompt: Prompt | None = None
    credits: float | None = None  # balance after the call, from the server


class CreditGate:
    """
    Charges one AI turn and then runs it. The action is skipped on any
    failure, including an ambiguous network error, and the deduction is never
    re-sent.
    """

    def __init__(self, client: CreditsClient, costs: dict[str, float] | None = None):
        self.client = client
        self.costs = dict(costs or DEFAULT_COSTS)

    async def load_pricing(self) -> None:
        pricing = await self.client.pricing()
        if pricing and isinstance(pricing.get("costs"), dict):
            for mode in ("chat", "planning"):
                if mode in pricing["costs"]:
                    self.costs[mode] = float(pricing["costs"][mode])

    def cost_for(self, mode: str) -> float:
        return self.costs.get(mode, self.costs["chat"])

    async def run(
        self,
        action: Callable[[], Awaitable[Any]],
        mode: str = "chat",
        amount: float | None = None,
        reference_id: str | None = None,
    ) -> GateOutcome:
        cost = amount if amount is not None else self.cost_for(mode)
        outcome = await self.client.use(cost, reference_id=reference_id)

        if isinstance(outcome, Err):
            if outcome.kind is ErrorKind.UNKNOWN_OUTCOME:
                # The charge may have landed; refresh the display from the server instead of guessing.
                await self.client.check()
            log.info("credit_gate_blocked", mode=mode, amount=cost, kind=outcome.kind.value)
            cached = self.client.cache.balance
            return GateOutcome(
                executed=False,
                error=outcome,
                prompt=prompt_for(outcome.kind),
                credits=cached.credits if cached else None,
            )

        result = await action()
        return GateOutcome(executed=True, result=result, credits=outcome.balance.credits)
