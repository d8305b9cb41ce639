"""
Message classifier using OpenAI.

Classifies end-user support messages for an EV bike company into:
- language: en, hi, hi-en, ta, te, kn, ml, bn, mr, gu, pa (or unknown)
- category: kyc, bike_not_moving, battery_problem, price_inquiry,
            offer_inquiry, app_related, hub_inquiry, payment, bike_inquiry, others
- tag: cs / bot / escalated, always derived from category here
- confidence: 0.0 - 1.0

One call classifies an ordered batch of messages from a single conversation
so the model sees the conversational flow.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from openai import AsyncOpenAI
from pydantic import ValidationError

from src.config import DEFAULT_MODEL
from src.db.models import (
    CATEGORIES,
    DEFAULT_CATEGORY,
    LANGUAGES,
    Message,
    derive_tag,
)
from src.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = """You are an expert customer support message classifier for an EV bike company. Analyze customer messages and extract:

1. **Language**: Detect the primary language
   - "en" for English
   - "hi" for Hindi
   - "hi-en" for Hinglish (mixed Hindi-English)
   - "ta" for Tamil (words can be in English script)
   - "te" for Telugu (words can be in English script)
   - "kn" for Kannada (words can be in English script)
   - "ml" for Malayalam (words can be in English script)
   - "bn" for Bengali (words can be in English script)
   - "mr" for Marathi (words can be in English script)
   - "gu" for Gujarati (words can be in English script)
   - "pa" for Punjabi (words can be in English script)

2. **Category**: Choose ONE most relevant category:
   - "kyc": KYC verification, document submission, identity verification
   - "bike_not_moving": Bike won't start, not moving, stuck, immobile
   - "battery_problem": Battery issues, charging problems, battery not working, range issues
   - "price_inquiry": Questions about bike price, cost, EMI, financing
   - "offer_inquiry": Discount questions, offers, promotions, deals
   - "app_related": Mobile app issues, login problems, app not working
   - "hub_inquiry": Hub location questions, service center queries, showroom location
   - "payment": Payment issues, transaction problems, payment method questions
   - "bike_inquiry": Bike features, specifications, comparison, how to rent or upgrade a bike
   - "others": General queries, greetings, or anything not fitting above categories

3. **Tag**: Assign EXACTLY ONE tag based on category:
   - "cs" for categories: kyc, app_related, payment, others
   - "bot" for categories: price_inquiry, hub_inquiry, offer_inquiry, bike_inquiry
   - "escalated" for categories: bike_not_moving, battery_problem

4. **Confidence**: Your confidence in the classification (0.0 to 1.0)

**Important Classification Rules**:
- KYC: Documents, Aadhaar, PAN, verification, identity proof
- Bike not moving: Vehicle stuck, won't start, not working, immobile, breakdown
- Battery problem: Charging, battery dead, range reduced, battery not working
- Price inquiry: Cost questions, price, how much, kitna, EMI
- Offer inquiry: Discount, offer, deal, promotion, sale
- App related: App crash, login issue, app not working, mobile application
- Hub inquiry: Service center, showroom, location, address, hub
- Payment: Payment failed, transaction, payment method, UPI, card
- Bike inquiry: Bike features, how to rent a bike, how to upgrade a bike
- Others: Greetings, thanks, general questions not matching above

**Language Detection**:
- Look for Hindi/Indic script characters for language detection
- Hinglish (hi-en) is very common - mixed English and Hindi words
- Even if English script is used, check for Hindi words transliterated

Output ONLY valid JSON in this exact format, one entry per input message, in order:
{
  "messages": [
    {
      "language": "en",
      "category": "category_name",
      "tag": "cs",
      "confidence": 0.95
    }
  ]
}"""

# Retry policy for the completion call
MAX_ATTEMPTS = 3
RATE_LIMIT_DELAY_BASE = 2  # 2s, 4s between attempts
SERVER_ERROR_DELAY_BASE = 1  # 1s, 2s between attempts

DEFAULT_CONFIDENCE = 0.5


class ClassificationParseError(ValueError):
    """Classifier output was not the expected JSON shape."""


@dataclass
class ClassificationResult:
    """Normalized classification of one message."""

    language: str
    category: str
    tag: str
    confidence: float


def _status_code(exc: BaseException) -> Optional[int]:
    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(exc, "status", None)
    return status if isinstance(status, int) else None


def classify_error(exc: BaseException) -> str:
    """Coarse error type stored in the retry ledger."""
    if isinstance(exc, (ClassificationParseError, json.JSONDecodeError, ValidationError)):
        return "parse_error"
    status = _status_code(exc)
    if status == 429:
        return "rate_limit"
    if status is not None and status >= 500:
        return "server_error"
    return "unknown"


def build_user_prompt(messages: Sequence[Message]) -> str:
    formatted = "\n".join(
        f"{i}. [{m.actor_type}]: {m.content}" for i, m in enumerate(messages, start=1)
    )
    return (
        "Analyze these messages from a customer support conversation:\n\n"
        f"{formatted}\n\n"
        'Provide analysis for each message as a JSON object with a "messages" array.'
    )


def _normalize_confidence(value) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if confidence != confidence:  # NaN
        return DEFAULT_CONFIDENCE
    return min(1.0, max(0.0, confidence))


def normalize_result(raw) -> ClassificationResult:
    """Coerce one model entry into the fixed label sets.

    The model's own tag is ignored; tag always follows category.
    """
    if not isinstance(raw, dict):
        raise ClassificationParseError(f"Expected an object per message, got {type(raw).__name__}")

    language = str(raw.get("language") or "").strip().lower()
    if language not in LANGUAGES:
        language = "unknown"

    category = str(raw.get("category") or "").strip().lower()
    if category not in CATEGORIES:
        if category:
            logger.debug("Unknown category %r, defaulting to %s", category, DEFAULT_CATEGORY)
        category = DEFAULT_CATEGORY

    return ClassificationResult(
        language=language,
        category=category,
        tag=derive_tag(category),
        confidence=_normalize_confidence(raw.get("confidence")),
    )


def parse_response(content: Optional[str], expected: int) -> List[ClassificationResult]:
    """Parse the completion body into exactly `expected` results.

    Raises:
        ClassificationParseError: Empty body, missing `messages` array, or
            a count that does not match the input
    """
    if not content:
        raise ClassificationParseError("No content in classifier response")
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise ClassificationParseError(f"Classifier returned invalid JSON: {e}") from e

    entries = data.get("messages") if isinstance(data, dict) else None
    if not isinstance(entries, list):
        raise ClassificationParseError("Classifier response has no 'messages' array")
    if len(entries) != expected:
        raise ClassificationParseError(
            f"Classifier returned {len(entries)} results for {expected} messages"
        )
    return [normalize_result(entry) for entry in entries]


class MessageClassifier:
    """Batch classifier over the OpenAI chat completions API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.rate_limiter = rate_limiter
        self._async_client: Optional[AsyncOpenAI] = None

    @property
    def async_client(self) -> AsyncOpenAI:
        """Lazy-initialize async OpenAI client."""
        if self._async_client is None:
            self._async_client = AsyncOpenAI(api_key=self.api_key)
        return self._async_client

    async def _complete(self, user_prompt: str) -> Optional[str]:
        response = await self.async_client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": user_prompt},
            ],
            temperature=0.3,
            response_format={"type": "json_object"},
            max_tokens=500,
        )
        return response.choices[0].message.content

    async def classify_batch(self, messages: Sequence[Message]) -> List[ClassificationResult]:
        """Classify messages (in order) and return one result per message.

        Retries the completion call on 429 (2s, 4s backoff) and 5xx
        (1s, 2s backoff), up to MAX_ATTEMPTS. Other errors, including
        unparseable output, are raised immediately.
        """
        if not messages:
            return []

        user_prompt = build_user_prompt(messages)

        for attempt in range(MAX_ATTEMPTS):
            if self.rate_limiter is not None:
                await self.rate_limiter.acquire()
            try:
                content = await self._complete(user_prompt)
            except Exception as e:
                status = _status_code(e)
                if status == 429:
                    delay = RATE_LIMIT_DELAY_BASE * (2 ** attempt)
                    reason = "Rate limited"
                elif status is not None and status >= 500:
                    delay = SERVER_ERROR_DELAY_BASE * (2 ** attempt)
                    reason = f"Server error {status}"
                else:
                    raise
                if attempt == MAX_ATTEMPTS - 1:
                    raise
                logger.warning(
                    "%s from classifier, retrying in %ss (attempt %d/%d)",
                    reason, delay, attempt + 1, MAX_ATTEMPTS,
                )
                await asyncio.sleep(delay)
                continue

            return parse_response(content, len(messages))

        raise RuntimeError("Unexpected retry loop exit")
