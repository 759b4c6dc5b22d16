"""Prompt construction and reply parsing for drafted replies."""

from __future__ import annotations

import json
import re

from src.dealsmart.assistance.sanitize import scrub_customer_text
from src.dealsmart.assistance.schemas import ProviderReply, SuggestionContext
from src.dealsmart.conversations.schemas import SenderType

SYSTEM_PROMPT = """\
You draft replies for staff at a car dealership. The staff member reviews \
every draft before it is sent.

Rules:
- Use ONLY the conversation transcript and the FACTS block below. You have \
no other knowledge of this dealership's inventory, prices, promotions or \
policies.
- Never state a price, payment, quantity, mileage or availability that is \
not written in the FACTS block or the transcript.
- If the customer asks for something the FACTS do not contain, ask a short \
clarifying question instead of answering.
- Be friendly and concise (at most four sentences). No signatures.

Respond with a JSON object only:
{"reply": "<draft text>", "confidence": <number between 0 and 1>}
"""

_SPEAKER = {
    SenderType.CUSTOMER: "Customer",
    SenderType.STAFF: "Staff",
    SenderType.AI: "Staff (AI draft)",
}


def _line_body(sender: SenderType, body: str) -> str:
    if sender is SenderType.CUSTOMER:
        return scrub_customer_text(body)
    return body


def build_messages(context: SuggestionContext) -> list[dict]:
    """Chat messages for the provider: system rules, then facts + transcript.

    Customer lines are scrubbed (see ``sanitize``); staff lines and facts
    are dealership-authored and passed through.
    """
    facts = json.dumps(context.facts, indent=2, sort_keys=True, default=str) if context.facts else "(none supplied)"
    transcript = "\n".join(
        f"{_SPEAKER[m.sender]}: {_line_body(m.sender, m.body)}" for m in context.messages
    )
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {
            "role": "user",
            "content": (
                f"FACTS:\n{facts}\n\n"
                f"TRANSCRIPT:\n{transcript or '(no messages yet)'}\n\n"
                "Draft the next staff reply."
            ),
        },
    ]


_JSON_BLOCK = re.compile(r"\{.*\}", re.DOTALL)


def parse_reply(content: str | None, model: str | None = None) -> ProviderReply:
    """Parse the provider's JSON reply.

    Raises:
        ValueError: Content is empty, not JSON, or lacks a reply.
    """
    if not content or not content.strip():
        raise ValueError("Provider returned an empty reply")
    match = _JSON_BLOCK.search(content)
    if match is None:
        raise ValueError("Provider reply is not JSON")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise ValueError("Provider reply is not valid JSON") from exc

    reply = data.get("reply") if isinstance(data, dict) else None
    if not isinstance(reply, str) or not reply.strip():
        raise ValueError("Provider reply has no draft text")

    confidence = data.get("confidence")
    if isinstance(confidence, (int, float)) and not isinstance(confidence, bool):
        confidence = min(max(float(confidence), 0.0), 1.0)
    else:
        confidence = None
    return ProviderReply(text=reply.strip(), confidence=confidence, model=model)
