"""
Historical message backfill.

Walks every stored conversation (oldest first) and pulls its full message
history, not limited to any window. Messages already in the store are
skipped before writing; the upsert would converge anyway, this just saves
the writes. Conversations are processed in chunks with a pause between
chunks to stay under Freshchat's rate limits.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import List

from src.db.models import Conversation
from src.freshchat_client import FreshchatClient
from src.logging_utils import log_summary

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50
DEFAULT_RATE_LIMIT_DELAY_MS = 1000
DEFAULT_BATCH_DELAY_MS = 5000


@dataclass
class BackfillSummary:
    total_conversations: int = 0
    conversations_processed: int = 0
    conversations_failed: int = 0
    messages_inserted: int = 0
    messages_skipped: int = 0
    messages_failed: int = 0


class HistoricalBackfill:
    """Chunked full-history message fetch for stored conversations."""

    def __init__(
        self,
        client: FreshchatClient,
        store,
        batch_size: int = DEFAULT_BATCH_SIZE,
        rate_limit_delay_ms: int = DEFAULT_RATE_LIMIT_DELAY_MS,
        batch_delay_ms: int = DEFAULT_BATCH_DELAY_MS,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.client = client
        self.store = store
        self.batch_size = batch_size
        self.rate_limit_delay = rate_limit_delay_ms / 1000
        self.batch_delay = batch_delay_ms / 1000

    async def run(self) -> BackfillSummary:
        conversations = self.store.list_conversations_for_backfill()
        summary = BackfillSummary(total_conversations=len(conversations))
        logger.info(
            "Backfilling %d conversations in batches of %d", len(conversations), self.batch_size
        )

        batches = [
            conversations[i:i + self.batch_size]
            for i in range(0, len(conversations), self.batch_size)
        ]
        for number, batch in enumerate(batches, start=1):
            logger.info("Batch %d/%d (%d conversations)", number, len(batches), len(batch))
            await self._run_batch(batch, summary)
            if number < len(batches):
                await asyncio.sleep(self.batch_delay)

        log_summary(logger, "Backfill complete", asdict(summary))
        return summary

    async def _run_batch(self, batch: List[Conversation], summary: BackfillSummary) -> None:
        for conversation in batch:
            try:
                await self._backfill_conversation(conversation, summary)
                summary.conversations_processed += 1
            except Exception as e:
                summary.conversations_failed += 1
                logger.error("Failed to backfill conversation %s: %s", conversation.id, e)
            await asyncio.sleep(self.rate_limit_delay)

    async def _backfill_conversation(
        self, conversation: Conversation, summary: BackfillSummary
    ) -> None:
        existing = self.store.get_existing_message_ids(conversation.id)
        raw_messages = await self.client.list_conversation_messages(conversation.id)

        new_messages = []
        skipped = 0
        for raw in raw_messages:
            message = self.client.parse_message(raw, conversation.id)
            if message.id in existing:
                skipped += 1
                continue
            if message.is_system:
                continue
            new_messages.append(message)
        new_messages.sort(key=lambda m: m.created_time)
        summary.messages_skipped += skipped

        if new_messages:
            try:
                written = self.store.upsert_messages(new_messages)
            except Exception:
                summary.messages_failed += len(new_messages)
                raise
            summary.messages_inserted += written

        logger.info(
            "Conversation %s: %d new, %d skipped, %d total",
            conversation.id, len(new_messages), skipped, len(raw_messages),
        )
