"""Output validation for drafted replies.

Runs on every provider reply before it leaves the engine:

1. Every numeric token in the draft (prices, quantities, years, mileage)
   must also appear in the input context -- the conversation's messages or
   the caller-supplied facts. Tokens are compared after normalisation, so
   ``$32,000``, ``32000`` and ``32k`` are the same token.
2. If the latest customer message asks about price or inventory and the
   supplied facts carry nothing of that kind, the draft needs clarification.

A draft that fails either rule is marked ``needs_clarification``. When it
asserts an untraceable number, or needs clarification but asks nothing, it
is replaced by a clarifying question that contains no numbers.
"""

from __future__ import annotations

import json
import re
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import BaseModel, Field

from src.dealsmart.assistance.schemas import SuggestionContext, SuggestionFlag

# ── Numeric tokens ─────────────────────────────────────────────────────────

_NUMBER_RE = re.compile(
    r"(?<![\w.])\$?(?P<int>\d{1,3}(?:,\d{3})+|\d+)(?:\.(?P<frac>\d+))?(?P<k>[kK])?(?!\w)"
)


def _normalise(int_part: str, frac: str | None, thousands: bool) -> str | None:
    raw = int_part.replace(",", "")
    if frac:
        raw = f"{raw}.{frac}"
    try:
        value = Decimal(raw)
    except InvalidOperation:
        return None
    if thousands:
        value *= 1000
    return format(value.normalize(), "f")


def extract_numeric_tokens(text: str) -> set[str]:
    """Normalised numeric tokens in ``text``."""
    tokens: set[str] = set()
    for match in _NUMBER_RE.finditer(text):
        token = _normalise(match.group("int"), match.group("frac"), bool(match.group("k")))
        if token is not None:
            tokens.add(token)
    return tokens


def context_numeric_tokens(context: SuggestionContext) -> set[str]:
    """Every numeric token the engine was given."""
    tokens: set[str] = set()
    for message in context.messages:
        tokens |= extract_numeric_tokens(message.body)
    if context.facts:
        tokens |= extract_numeric_tokens(json.dumps(context.facts, default=str))
    return tokens


# ── Requested facts ────────────────────────────────────────────────────────

PRICE = "price"
INVENTORY = "inventory"

_REQUEST_PATTERNS: dict[str, re.Pattern] = {
    PRICE: re.compile(
        r"\b(price[sd]?|pricing|cost[s]?|how much|msrp|payments?|monthly|apr|"
        r"financ\w*|lease|quote|out[- ]the[- ]door|otd)\b",
        re.IGNORECASE,
    ),
    INVENTORY: re.compile(
        r"\b(in stock|stock|available|availability|inventory|how many|"
        r"on the lot|mileage|miles)\b",
        re.IGNORECASE,
    ),
}

_FACT_KEYS: dict[str, tuple[str, ...]] = {
    PRICE: ("price", "msrp", "cost", "payment", "apr", "lease", "amount"),
    INVENTORY: ("inventory", "stock", "available", "availability", "vehicles", "quantity", "mileage", "vin"),
}

_MISSING_FLAG = {
    PRICE: SuggestionFlag.MISSING_PRICE_FACTS,
    INVENTORY: SuggestionFlag.MISSING_INVENTORY_FACTS,
}


def requested_fact_categories(text: str | None) -> list[str]:
    if not text:
        return []
    return [name for name, pattern in _REQUEST_PATTERNS.items() if pattern.search(text)]


def _fact_keys(facts: Any) -> set[str]:
    keys: set[str] = set()
    if isinstance(facts, dict):
        for key, value in facts.items():
            keys.add(str(key).lower())
            keys |= _fact_keys(value)
    elif isinstance(facts, list):
        for item in facts:
            keys |= _fact_keys(item)
    return keys


def missing_fact_categories(context: SuggestionContext) -> list[str]:
    """Categories the customer asked about that the supplied facts do not cover."""
    requested = requested_fact_categories(context.latest_customer_message)
    if not requested:
        return []
    keys = _fact_keys(context.facts)
    return [
        category
        for category in requested
        if not any(marker in key for key in keys for marker in _FACT_KEYS[category])
    ]


# ── Clarifying questions ───────────────────────────────────────────────────

_QUESTIONS = {
    PRICE: (
        "I want to make sure I give you accurate pricing. Which vehicle are you "
        "asking about (make, model and trim), so I can confirm the current price "
        "with our team?"
    ),
    INVENTORY: (
        "Which vehicle and options are you looking for? I'll check exactly what "
        "we have available and get right back to you."
    ),
}

_GENERIC_QUESTION = (
    "Thanks for reaching out! Could you share a few more details about what "
    "you're looking for, so I can get you accurate information?"
)


def clarifying_question(categories: list[str]) -> str:
    """A number-free question asking for the missing details."""
    parts = [_QUESTIONS[c] for c in categories if c in _QUESTIONS]
    return " ".join(parts) if parts else _GENERIC_QUESTION


# ── Validation ─────────────────────────────────────────────────────────────


class ValidationOutcome(BaseModel):
    text: str
    needs_clarification: bool
    flags: list[SuggestionFlag] = Field(default_factory=list)
    untraceable_tokens: list[str] = Field(default_factory=list)

    @property
    def rewritten(self) -> bool:
        return SuggestionFlag.REWRITTEN in self.flags


def validate_reply(text: str, context: SuggestionContext) -> ValidationOutcome:
    """Apply the traceability and missing-fact rules to a draft."""
    untraceable = sorted(extract_numeric_tokens(text) - context_numeric_tokens(context))
    missing = missing_fact_categories(context)

    flags: list[SuggestionFlag] = []
    if untraceable:
        flags.append(SuggestionFlag.UNTRACEABLE_NUMBER)
    flags.extend(_MISSING_FLAG[c] for c in missing)

    needs_clarification = bool(flags)
    final_text = text.strip()
    if needs_clarification:
        flags.insert(0, SuggestionFlag.NEEDS_CLARIFICATION)
        if untraceable or "?" not in final_text:
            final_text = clarifying_question(missing)
            flags.append(SuggestionFlag.REWRITTEN)

    return ValidationOutcome(
        text=final_text,
        needs_clarification=needs_clarification,
        flags=flags,
        untraceable_tokens=untraceable,
    )
