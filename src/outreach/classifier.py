"""Reply intent classification using Claude."""

import json
import re
from typing import Optional

import anthropic
import structlog

from src.core.config import ClassifierConfig
from src.core.errors import ConversationFlowError, ErrorKind
from src.flow.models import Intent, IntentEvent

log = structlog.get_logger()

UNSUBSCRIBE_REGEX = re.compile(
    r"\b(unsubscribe|stop emailing|stop contacting|opt[\s-]?out|remove me|take me off)\b|^\s*stop\s*[.!]?\s*$",
    re.IGNORECASE | re.MULTILINE,
)

SYSTEM_PROMPT = """You classify replies to B2B outreach emails.

Pick exactly one intent:
- "interest": wants to talk, book a call, or see more
- "question": asks something before deciding (pricing, details, who you are)
- "objection": pushes back (no budget, wrong timing, already have a vendor, not the right person)
- "unsubscribe": asks not to be contacted again
- "other": anything else (out of office, auto-replies, unclear)

Return a JSON object with exactly two fields:
- "intent": one of the values above
- "confidence": a number between 0 and 1

Example output:
{"intent": "question", "confidence": 0.82}
"""


def detect_unsubscribe(text: str) -> bool:
    """Explicit opt-out phrasing, checked before any model call."""
    return bool(UNSUBSCRIBE_REGEX.search(text or ""))


def parse_classification(response_text: str) -> IntentEvent:
    """Parse the model's JSON answer into an intent event."""
    response_text = response_text.strip()

    # Handle potential markdown code blocks
    if response_text.startswith("```"):
        response_text = response_text.split("```")[1]
        if response_text.startswith("json"):
            response_text = response_text[4:]
        response_text = response_text.strip()

    result = json.loads(response_text)
    if not isinstance(result, dict):
        raise ValueError("classification is not a JSON object")

    raw_intent = str(result.get("intent", "")).strip().lower()
    try:
        intent = Intent(raw_intent)
    except ValueError:
        intent = Intent.OTHER
    if intent == Intent.NONE:
        intent = Intent.OTHER

    try:
        confidence = float(result.get("confidence", 0))
    except (TypeError, ValueError):
        confidence = 0.0
    if confidence != confidence:  # NaN
        confidence = 0.0

    return IntentEvent(intent=intent, confidence=max(0.0, min(1.0, confidence)))


async def classify_reply(
    subject: str,
    body: str,
    config: Optional[ClassifierConfig] = None,
    client: Optional[anthropic.AsyncAnthropic] = None,
) -> IntentEvent:
    """Classify an inbound reply.

    Raises CLASSIFIER_FAILURE when the model call or its output fails.
    """
    if detect_unsubscribe(f"{subject}\n{body}"):
        log.info("reply_unsubscribe_detected")
        return IntentEvent(intent=Intent.UNSUBSCRIBE, confidence=1.0)

    config = config or ClassifierConfig()
    user_message = f"""Classify this reply.

Subject: {subject or "(none)"}

{body or "(empty)"}"""

    response_text = ""
    try:
        client = client or anthropic.AsyncAnthropic()
        response = await client.messages.create(
            model=config.model,
            max_tokens=config.max_tokens,
            system=SYSTEM_PROMPT,
            messages=[{"role": "user", "content": user_message}],
        )
        response_text = response.content[0].text
        event = parse_classification(response_text)

    except anthropic.APIError as e:
        log.error("claude_error", error=str(e))
        raise ConversationFlowError(
            "Reply classification request failed.",
            kind=ErrorKind.CLASSIFIER_FAILURE,
            hint="Check ANTHROPIC_API_KEY and retry the reply later.",
            debug={"error": str(e)},
        ) from e
    except (ValueError, IndexError, AttributeError) as e:
        log.error("classification_parse_error", error=str(e), response=response_text[:200])
        raise ConversationFlowError(
            "Reply classification returned an unreadable answer.",
            kind=ErrorKind.CLASSIFIER_FAILURE,
            debug={"error": str(e), "response": response_text[:200]},
        ) from e

    log.info("reply_classified", intent=event.intent.value, confidence=event.confidence)
    return event
