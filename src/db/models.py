"""Pydantic models for database entities."""

from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Freshchat actor_type values (lower-cased on ingest)
ActorType = Literal["user", "bot", "agent", "system"]

USER_ACTOR = "user"
BOT_ACTOR = "bot"
SYSTEM_ACTOR = "system"

RESOLVED_STATUS = "resolved"

Language = Literal[
    "en", "hi", "hi-en", "ta", "te", "kn", "ml", "bn", "mr", "gu", "pa", "unknown"
]
LANGUAGES: frozenset = frozenset(Language.__args__)

Category = Literal[
    "kyc", "app_related", "payment", "others",
    "price_inquiry", "hub_inquiry", "offer_inquiry", "bike_inquiry",
    "bike_not_moving", "battery_problem",
]

Tag = Literal["cs", "bot", "escalated"]

# Tag is a pure function of category. Classifier output never overrides this.
CATEGORY_TAGS: Dict[str, str] = {
    "kyc": "cs",
    "app_related": "cs",
    "payment": "cs",
    "others": "cs",
    "price_inquiry": "bot",
    "hub_inquiry": "bot",
    "offer_inquiry": "bot",
    "bike_inquiry": "bot",
    "bike_not_moving": "escalated",
    "battery_problem": "escalated",
}
CATEGORIES: frozenset = frozenset(CATEGORY_TAGS)
DEFAULT_CATEGORY = "others"

ErrorType = Literal["rate_limit", "server_error", "parse_error", "unknown"]

# Poison-pill cutoff: ledger rows at this many attempts are never retried
MAX_ANALYSIS_ATTEMPTS = 3

# Messages at or below either threshold are acknowledgements ("Ok", "Thanks")
SHORT_MESSAGE_MAX_WORDS = 2
SHORT_MESSAGE_MAX_CHARS = 10


def derive_tag(category: str) -> str:
    """Tag for a category; unknown categories are treated as 'others'."""
    return CATEGORY_TAGS.get(category, CATEGORY_TAGS[DEFAULT_CATEGORY])


def is_short_message(text: Optional[str]) -> bool:
    """True if text has <= 2 words or <= 10 characters after trimming."""
    text = (text or "").strip()
    return (
        len(text.split()) <= SHORT_MESSAGE_MAX_WORDS
        or len(text) <= SHORT_MESSAGE_MAX_CHARS
    )


class Account(BaseModel):
    """A Freshchat end-user."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    phone_no: str = ""
    created_time: datetime = Field(default_factory=utcnow)


class Conversation(BaseModel):
    """A support thread owned by one account."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    account_id: str
    status: str = ""
    channel_id: str = ""
    assigned_to: str = ""
    # Only used for the bot-involvement rule during sync; not persisted
    assigned_to_type: str = Field(default="", exclude=True)
    created_time: datetime = Field(default_factory=utcnow)
    updated_time: datetime = Field(default_factory=utcnow)
    custom_properties: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_resolved(self) -> bool:
        return self.status == RESOLVED_STATUS

    @property
    def assigned_to_bot(self) -> bool:
        return self.assigned_to_type.lower() == BOT_ACTOR


class Message(BaseModel):
    """One chat turn. Content is always normalized plain text."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    conversation_id: str
    actor_type: str = ""
    content: str = ""
    created_time: datetime = Field(default_factory=utcnow)
    rating: Optional[int] = None

    @property
    def is_system(self) -> bool:
        return self.actor_type == SYSTEM_ACTOR

    @property
    def is_bot(self) -> bool:
        return self.actor_type == BOT_ACTOR


class MessageAnalysis(BaseModel):
    """Classification result, at most one per message."""

    model_config = ConfigDict(from_attributes=True)

    message_id: str
    language: Language = "unknown"
    category: Category = DEFAULT_CATEGORY
    tag: Tag = "cs"
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    model_version: str
    analyzed_at: datetime = Field(default_factory=utcnow)

    @field_validator("tag")
    @classmethod
    def tag_matches_category(cls, v: str, info) -> str:
        """Reject a tag that disagrees with the category table."""
        category = info.data.get("category")
        if category is not None and v != derive_tag(category):
            raise ValueError(f"tag {v!r} does not match category {category!r}")
        return v


class AnalysisFailure(BaseModel):
    """Retry ledger row for a message whose classification failed."""

    model_config = ConfigDict(from_attributes=True)

    message_id: str
    conversation_id: str
    error_message: str = ""
    error_type: ErrorType = "unknown"
    attempts: int = Field(default=1, ge=1)
    last_attempt: datetime = Field(default_factory=utcnow)
    next_retry: Optional[datetime] = None

    @property
    def exhausted(self) -> bool:
        return self.attempts >= MAX_ANALYSIS_ATTEMPTS
