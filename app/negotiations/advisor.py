"""Strategy advisor: drafts offer emails with Claude.

The model is treated as an opaque completion service. It gets the offer
history and the driver's target, and must answer with a JSON object:

    {"message": "<email body>", "amount": 2150.0, "action": "counter"}

Anything else (transport error, timeout, unparseable or invalid JSON) is an
AdvisorUnavailable. The SDK's own retries are switched off: retrying is the
caller's job, so the engine's latency stays predictable.
"""

import json
import logging
from typing import Optional, Protocol

import httpx
from anthropic import APIError, AsyncAnthropic
from pydantic import ValidationError as PydanticValidationError

from app.config import settings
from app.negotiations.errors import AdvisorUnavailable
from app.negotiations.models import AdvisorContext, AdvisorDraft, Strategy

logger = logging.getLogger(__name__)


class StrategyAdvisor(Protocol):
    async def draft(self, context: AdvisorContext) -> AdvisorDraft: ...


STRATEGY_INSTRUCTIONS = {
    Strategy.AGGRESSIVE: (
        "Be assertive and aim for rates at or above the target. Make a strong offer "
        "and make clear the driver is willing to walk away."
    ),
    Strategy.MODERATE: (
        "Be professional and balanced. Show some flexibility while holding close to the target."
    ),
    Strategy.CONSERVATIVE: (
        "Be polite and accommodating. Show willingness to find common ground and build "
        "a long-term relationship with the broker."
    ),
}

SYSTEM_PROMPT = (
    "You are a negotiation assistant for a truck driver, writing rate negotiation emails "
    "to a freight broker. Reply with a single JSON object and nothing else, with keys: "
    '"message" (the email body, under 200 words, no subject line or signature), '
    '"amount" (the rate you propose, a number) and '
    '"action" (one of "accept", "counter", "reject": what you recommend).'
)


def build_prompt(context: AdvisorContext) -> str:
    """Render the negotiation so far into the user turn for the model."""
    if context.offer_history:
        history = "\n".join(
            f"- Round {event.round}: {event.actor.value} "
            + (f"offered ${event.amount:,.2f}" if event.amount is not None else "replied")
            + (f': "{event.message}"' if event.message else "")
            for event in context.offer_history
        )
    else:
        history = "- (no offers yet)"

    if context.broker_counter is None:
        task = "Write the opening offer email for this load."
    else:
        task = (
            f"The broker has countered at ${context.broker_counter:,.2f}. "
            "Write a counter-offer email that acknowledges their offer and makes a clear counter."
        )

    return (
        f"LOAD: {context.load_id}\n"
        f"NEGOTIATION: {context.negotiation_id}\n"
        f"DRIVER TARGET RATE: ${context.target_rate:,.2f}\n"
        f"ROUND: {context.round} of {context.max_rounds}\n\n"
        f"OFFER HISTORY:\n{history}\n\n"
        f"STRATEGY: {context.strategy.value}. {STRATEGY_INSTRUCTIONS[context.strategy]}\n\n"
        f"{task}"
    )


def parse_completion(text: str) -> AdvisorDraft:
    """Extract the JSON draft from a completion, tolerating code fences and preamble."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end < start:
        raise AdvisorUnavailable("Advisor completion contained no JSON object")
    try:
        payload = json.loads(text[start : end + 1])
    except json.JSONDecodeError as exc:
        raise AdvisorUnavailable(f"Advisor completion is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise AdvisorUnavailable("Advisor completion is not a JSON object")

    if isinstance(payload.get("action"), str):
        payload["action"] = payload["action"].strip().lower()
    try:
        return AdvisorDraft(**payload)
    except PydanticValidationError as exc:
        raise AdvisorUnavailable(f"Advisor draft failed validation: {exc.error_count()} error(s)") from exc


class ClaudeStrategyAdvisor:
    """StrategyAdvisor backed by the Anthropic messages API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        client: Optional[AsyncAnthropic] = None,
    ):
        self.model = model or settings.ADVISOR_MODEL
        self.max_tokens = max_tokens or settings.ADVISOR_MAX_TOKENS
        api_key = api_key if api_key is not None else settings.ANTHROPIC_API_KEY
        timeout = timeout_seconds or settings.ADVISOR_TIMEOUT_SECONDS
        self._client = client
        if self._client is None and api_key:
            self._client = AsyncAnthropic(
                api_key=api_key,
                timeout=httpx.Timeout(timeout, connect=10.0),
                max_retries=0,
            )

    async def draft(self, context: AdvisorContext) -> AdvisorDraft:
        if self._client is None:
            raise AdvisorUnavailable("Strategy advisor is not configured (ANTHROPIC_API_KEY missing)")

        try:
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=SYSTEM_PROMPT,
                messages=[{"role": "user", "content": build_prompt(context)}],
            )
        except APIError as exc:
            logger.warning(
                "advisor.draft.failed",
                extra={
                    "event": "advisor.draft.failed",
                    "negotiation_id": context.negotiation_id,
                    "model": self.model,
                    "error": str(exc),
                },
            )
            raise AdvisorUnavailable(f"Advisor request failed: {exc}") from exc

        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        ).strip()
        if not text:
            raise AdvisorUnavailable("Empty completion from advisor")

        draft = parse_completion(text)
        logger.info(
            "advisor.draft.ok",
            extra={
                "event": "advisor.draft.ok",
                "negotiation_id": context.negotiation_id,
                "amount": draft.amount,
                "action_hint": draft.action.value,
            },
        )
        return draft
