import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Optional, Sequence

from pydantic import ValidationError

from expense_bot.logging_config import get_logger
from expense_bot.schemas.intent import Action, Intent
from expense_bot.services.llm.base import ExtractionProviderError, LLMProvider

logger = get_logger("intent_service")

INTENT_PROMPT = """You are the intent parser of a personal expense tracker. Amounts are in {currency}; "dirham", "dhs" and "AED" all mean {currency}.
Today is {today}.

Classify the user's message into exactly one action:
{actions}

Action hints:
- add_expense: "spent 50 on food", "coffee 15", "dinner was 200 yesterday"
- view_expenses / view_summary / view_analytics: listing spending, totals, breakdowns, trends
- delete_expense: "delete last expense", "undo"
- create_category: "create category Food with 500 budget"
- create_payment_method: "add credit card Chase 5000 limit due on 15"
- add_funds_to_category, add_funds_to_payment_method, pay_credit_card, reset_category, set_budget,
  update_*/delete_*: recognise them, the bot will route them to its menus
- confirm_action: "yes", "confirm", "go ahead"; cancel_action: "no", "cancel", "never mind"
- greeting, help, menu; anything else is unknown

Slots (omit what is not stated, never invent values):
amount, category, description, date (YYYY-MM-DD), paymentMethod,
budgetAmount, allocatedFunds, categoryName, categoryColor, categoryIcon,
paymentMethodName, paymentMethodType (cash|credit_card|debit_card|bank_transfer|digital_wallet), creditLimit, dueDate (day of month),
fromPaymentMethod, toPaymentMethod, startDate, endDate, period.
{known}
Return a single JSON object with at least the "action" key."""

YES_CONFIRMATION_PHRASES = {
    "yes",
    "y",
    "yeah",
    "yep",
    "yup",
    "ok",
    "okay",
    "sure",
    "confirm",
    "confirmed",
    "proceed",
    "go ahead",
    "do it",
    "correct",
    "save",
}

NO_CONFIRMATION_PHRASES = {
    "no",
    "n",
    "nope",
    "nah",
    "cancel",
    "stop",
    "abort",
    "nevermind",
    "never mind",
    "don't",
    "dont",
    "not",
}

CANCEL_COMMANDS = {"cancel", "/cancel", "stop", "abort", "exit", "quit", "nevermind", "never mind"}


def normalize_for_matching(text: str) -> str:
    """Normalize text for matching short phrases (casefold + trim punctuation)."""
    if not text:
        return ""

    normalized = text.strip().casefold()
    normalized = re.sub(r"\s+", " ", normalized)
    normalized = re.sub(r"^[^\w/]+|[^\w]+$", "", normalized)
    return normalized


def classify_confirmation(text: str) -> str:
    """Classify short confirmation replies as yes/no/unknown."""
    normalized = normalize_for_matching(text)
    if not normalized:
        return "unknown"

    if normalized in YES_CONFIRMATION_PHRASES:
        return "yes"
    if normalized in NO_CONFIRMATION_PHRASES:
        return "no"

    tokens = re.findall(r"[\w']+", normalized)
    if any(token in NO_CONFIRMATION_PHRASES for token in tokens) or "never mind" in normalized:
        return "no"
    if any(token in YES_CONFIRMATION_PHRASES for token in tokens):
        return "yes"

    return "unknown"


def is_cancel_command(text: str) -> bool:
    return normalize_for_matching(text) in CANCEL_COMMANDS


def parse_intent_payload(content: str) -> Intent:
    """Parse model output into an Intent. Raises ValueError when it is not a JSON object."""
    cleaned = (content or "").strip()
    fenced = re.match(r"^```(?:json)?\s*(.*?)\s*```$", cleaned, re.DOTALL)
    if fenced:
        cleaned = fenced.group(1)
    if not cleaned:
        raise ValueError("empty model output")

    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError:
        match = re.search(r"\{.*\}", cleaned, re.DOTALL)
        if not match:
            raise ValueError("model output is not JSON")
        payload = json.loads(match.group(0))

    if not isinstance(payload, dict):
        raise ValueError("model output is not a JSON object")
    try:
        return Intent.model_validate(payload)
    except ValidationError as e:
        raise ValueError(f"model output does not fit the intent schema: {e}") from e


@dataclass
class IntentContext:
    """Names of existing entities, offered to the model as disambiguation hints."""

    categories: Sequence[str] = field(default_factory=list)
    payment_methods: Sequence[str] = field(default_factory=list)
    today: Optional[date] = None


class IntentExtractor:
    """Fallback chain over LLM providers, tried in priority order."""

    def __init__(
        self,
        providers: Sequence[LLMProvider],
        timeout_seconds: float = 12.0,
        currency: str = "AED",
    ):
        self.providers = list(providers)
        self.timeout_seconds = timeout_seconds
        self.currency = currency

    @property
    def available(self) -> bool:
        return bool(self.providers)

    def build_messages(self, text: str, context: Optional[IntentContext] = None) -> list[dict]:
        context = context or IntentContext()
        known = ""
        if context.categories:
            known += f"Existing categories: {', '.join(context.categories)}.\n"
        if context.payment_methods:
            known += f"Existing payment methods: {', '.join(context.payment_methods)}.\n"
        if known:
            known = "Prefer these exact names when the user refers to them:\n" + known
        system_prompt = INTENT_PROMPT.format(
            currency=self.currency,
            today=(context.today or date.today()).isoformat(),
            actions=", ".join(action.value for action in Action),
            known=known,
        )
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": text},
        ]

    def extract(self, text: str, context: Optional[IntentContext] = None) -> Intent:
        """Return the first intent a provider produces, or ``unknown`` when every provider fails."""
        if not self.providers:
            logger.warning("Intent extraction unavailable: no provider configured")
            return Intent.unknown()

        messages = self.build_messages(text, context)
        for provider in self.providers:
            llm_start = time.monotonic()
            try:
                response = provider.generate(
                    messages,
                    temperature=0.1,
                    max_tokens=500,
                    timeout_seconds=self.timeout_seconds,
                    json_mode=True,
                )
                intent = parse_intent_payload(response.content)
            except (ExtractionProviderError, ValueError) as exc:
                logger.warning(
                    "Intent provider failed",
                    extra={"context": {"provider": provider.name, "error": str(exc)}},
                )
                continue
            except Exception as exc:
                logger.error(
                    "Intent provider crashed",
                    extra={"context": {"provider": provider.name, "error": str(exc)}},
                    exc_info=True,
                )
                continue

            logger.info(
                "Timing",
                extra={
                    "context": {
                        "stage": "intent_llm_ms",
                        "provider": provider.name,
                        "elapsed_ms": round((time.monotonic() - llm_start) * 1000, 2),
                        "action": intent.action.value,
                    }
                },
            )
            return intent

        logger.warning("All intent providers failed", extra={"context": {"providers": len(self.providers)}})
        return Intent.unknown()

    async def extract_async(self, text: str, context: Optional[IntentContext] = None) -> Intent:
        """Run ``extract`` off the event loop under an overall deadline."""
        deadline = self.timeout_seconds * max(len(self.providers), 1) + 1.0
        try:
            return await asyncio.wait_for(asyncio.to_thread(self.extract, text, context), timeout=deadline)
        except asyncio.TimeoutError:
            logger.warning(f"Intent extraction timed out after {deadline}s")
            return Intent.unknown()
