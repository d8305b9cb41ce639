"""
Classification engine.

Each run:
1. Retry pass: ledger rows due for retry (next_retry <= now, attempts < 3),
   grouped by conversation.
2. New pass: unanalyzed end-user messages, grouped by conversation, oldest
   first within a conversation, at most MAX_MESSAGES_PER_BATCH per call and
   max_conversations conversations per run.

A failed call marks every message of that conversation group in the retry
ledger (attempts + 1, next retry in one hour). Messages at 3 attempts drop
out of both views for good.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from src.classifier import ClassificationResult, MessageClassifier, classify_error
from src.db.models import Message, MessageAnalysis, is_short_message, utcnow
from src.logging_utils import log_summary

logger = logging.getLogger(__name__)

MAX_MESSAGES_PER_BATCH = 20
DEFAULT_MAX_CONVERSATIONS = 100
RETRY_PULL_SIZE = 50
FETCH_LIMIT = 1000
RETRY_BACKOFF = timedelta(hours=1)
CONVERSATION_DELAY = 0.1


@dataclass
class ClassificationSummary:
    retried_messages: int = 0
    conversations_processed: int = 0
    messages_analyzed: int = 0
    messages_failed: int = 0
    skipped_short: int = 0
    duration_seconds: float = 0.0


def group_by_conversation(messages: Sequence[Message]) -> "OrderedDict[str, List[Message]]":
    """Group messages by conversation (first-seen order), each group oldest first."""
    groups: "OrderedDict[str, List[Message]]" = OrderedDict()
    for message in messages:
        groups.setdefault(message.conversation_id, []).append(message)
    for group in groups.values():
        group.sort(key=lambda m: m.created_time)
    return groups


class ClassificationEngine:
    """Select, classify, persist, and record failures."""

    def __init__(
        self,
        classifier: MessageClassifier,
        store,
        max_conversations: int = DEFAULT_MAX_CONVERSATIONS,
        model_version: Optional[str] = None,
    ):
        """
        Args:
            classifier: MessageClassifier (or anything with classify_batch)
            store: AnalysisStore
            max_conversations: Cap on conversations in the new-message pass
            model_version: Stored on each analysis row; defaults to classifier.model
        """
        self.classifier = classifier
        self.store = store
        self.max_conversations = max_conversations
        self.model_version = model_version or getattr(classifier, "model", "unknown")

    async def run(self) -> ClassificationSummary:
        started = time.monotonic()
        summary = ClassificationSummary()

        await self.retry_failed(summary)
        await self.analyze_new(summary)

        summary.duration_seconds = round(time.monotonic() - started, 2)
        log_summary(logger, "Analysis complete", asdict(summary))
        return summary

    async def retry_failed(self, summary: ClassificationSummary) -> None:
        failures = self.store.fetch_failed_for_retry(limit=RETRY_PULL_SIZE)
        if not failures:
            return
        logger.info("Found %d failed messages to retry", len(failures))

        ids_by_conversation: Dict[str, List[str]] = OrderedDict()
        for failure in failures:
            ids_by_conversation.setdefault(failure["conversation_id"], []).append(
                failure["message_id"]
            )

        for conversation_id, message_ids in ids_by_conversation.items():
            messages = [
                m for m in self.store.get_messages(message_ids) if not is_short_message(m.content)
            ]
            if not messages:
                continue
            messages.sort(key=lambda m: m.created_time)
            summary.retried_messages += len(messages)
            await self.analyze_conversation(conversation_id, messages, summary)

    async def analyze_new(self, summary: ClassificationSummary) -> None:
        candidates = self.store.fetch_messages_for_analysis(limit=FETCH_LIMIT)

        eligible = []
        for message in candidates:
            if is_short_message(message.content):
                summary.skipped_short += 1
                logger.debug("Skipping short message %s: %r", message.id, message.content[:30])
                continue
            eligible.append(message)

        groups = group_by_conversation(eligible)
        logger.info(
            "Found %d messages across %d conversations (skipped %d short)",
            len(eligible), len(groups), summary.skipped_short,
        )
        if not groups:
            return

        limit = min(len(groups), self.max_conversations)
        for index, (conversation_id, messages) in enumerate(groups.items()):
            if index >= self.max_conversations:
                logger.info(
                    "Reached limit of %d conversations, stopping", self.max_conversations
                )
                break
            await self.analyze_conversation(conversation_id, messages, summary)
            summary.conversations_processed += 1
            if summary.conversations_processed < limit:
                await asyncio.sleep(CONVERSATION_DELAY)

    async def analyze_conversation(
        self,
        conversation_id: str,
        messages: List[Message],
        summary: ClassificationSummary,
        now: Optional[datetime] = None,
    ) -> bool:
        """Classify one conversation group. Returns True on success.

        Only the first MAX_MESSAGES_PER_BATCH messages are sent; the rest stay
        eligible for the next run. On failure every message in the group goes
        to the retry ledger.
        """
        batch = messages[:MAX_MESSAGES_PER_BATCH]
        logger.debug("Classifying conversation %s (%d messages)", conversation_id, len(batch))
        try:
            results = await self.classifier.classify_batch(batch)
            analyses = self._build_analyses(batch, results)
            self.store.upsert_analyses(analyses)
        except Exception as e:
            error_type = classify_error(e)
            logger.error(
                "Classification failed for conversation %s (%s): %s",
                conversation_id, error_type, e,
            )
            self._record_failures(conversation_id, messages, e, error_type, now)
            summary.messages_failed += len(messages)
            return False

        summary.messages_analyzed += len(analyses)
        logger.debug("Stored %d analyses for conversation %s", len(analyses), conversation_id)
        return True

    def _build_analyses(
        self, batch: Sequence[Message], results: Sequence[ClassificationResult]
    ) -> List[MessageAnalysis]:
        analyzed_at = utcnow()
        return [
            MessageAnalysis(
                message_id=message.id,
                language=result.language,
                category=result.category,
                tag=result.tag,
                confidence=result.confidence,
                model_version=self.model_version,
                analyzed_at=analyzed_at,
            )
            for message, result in zip(batch, results)
        ]

    def _record_failures(
        self,
        conversation_id: str,
        messages: Sequence[Message],
        error: Exception,
        error_type: str,
        now: Optional[datetime] = None,
    ) -> None:
        now = now or utcnow()
        next_retry = now + RETRY_BACKOFF
        error_message = str(error) or error.__class__.__name__
        for message in messages:
            try:
                failure = self.store.record_failure(
                    message_id=message.id,
                    conversation_id=conversation_id,
                    error_message=error_message,
                    error_type=error_type,
                    attempted_at=now,
                    next_retry=next_retry,
                )
            except Exception as e:
                logger.error("Could not record failure for message %s: %s", message.id, e)
                continue
            if failure.exhausted:
                logger.warning(
                    "Message %s reached %d attempts, no further retries",
                    message.id, failure.attempts,
                )
