"""
Incremental sync: pull recent Freshchat activity into the store.

One run covers the window [now - lookback_hours, now]:

    users updated in window
      -> each user's conversations (API has no window filter here)
        -> conversation detail; skip unless created OR updated in window
          -> messages from window start; drop system messages
            -> skip conversations with no bot involvement
              -> upsert messages

Account and conversation failures are logged and counted; the run goes on.
Every write is committed as it happens, so a crash leaves earlier work in
place and the next run converges over it.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Tuple

from src.db.models import utcnow
from src.freshchat_client import FreshchatClient, item_id
from src.logging_utils import log_summary

logger = logging.getLogger(__name__)

# Self-throttling between calls (seconds)
ACCOUNT_DELAY = 0.3
CONVERSATION_DELAY = 0.3
OUT_OF_WINDOW_DELAY = 1.0
NO_BOT_DELAY = 0.3
MISSING_ID_DELAY = 0.2


def compute_window(now: datetime, lookback_hours: int) -> Tuple[datetime, datetime]:
    return now - timedelta(hours=lookback_hours), now


def is_within_window(value: Optional[datetime], start: datetime, end: datetime) -> bool:
    """Inclusive on both ends. Unknown timestamps are never in the window."""
    return value is not None and start <= value <= end


@dataclass
class SyncSummary:
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    accounts_seen: int = 0
    accounts_upserted: int = 0
    conversations_upserted: int = 0
    messages_upserted: int = 0
    skipped_out_of_window: int = 0
    skipped_no_bot: int = 0
    account_errors: int = 0
    conversation_errors: int = 0
    failed_accounts: list = field(default_factory=list)

    def counts(self) -> dict:
        data = asdict(self)
        for key in ("window_start", "window_end", "failed_accounts"):
            data.pop(key)
        return data


class IncrementalSync:
    """One windowed sync pass."""

    def __init__(self, client: FreshchatClient, store, lookback_hours: int = 2):
        """
        Args:
            client: Entered FreshchatClient
            store: ChatStore (or anything with the same upsert methods)
            lookback_hours: Window size
        """
        self.client = client
        self.store = store
        self.lookback_hours = lookback_hours

    async def run(self, now: Optional[datetime] = None) -> SyncSummary:
        now = now or utcnow()
        start, end = compute_window(now, self.lookback_hours)
        summary = SyncSummary(window_start=start, window_end=end)

        logger.info("Sync window %s -> %s", start.isoformat(), end.isoformat())
        users = await self.client.list_users_updated(start, end)
        summary.accounts_seen = len(users)
        logger.info("Users updated in last %dh: %d", self.lookback_hours, len(users))

        for index, raw_user in enumerate(users, start=1):
            user_id = item_id(raw_user)
            try:
                logger.debug("User %d/%d: %s", index, len(users), user_id)
                await self._sync_account(raw_user, start, end, summary)
            except Exception as e:
                summary.account_errors += 1
                summary.failed_accounts.append(user_id)
                logger.error("Account processing failed for %s: %s", user_id, e)
            await asyncio.sleep(ACCOUNT_DELAY)

        log_summary(logger, "Sync complete", summary.counts())
        return summary

    async def _sync_account(self, raw_user: dict, start, end, summary: SyncSummary) -> None:
        account = self.client.parse_account(raw_user)
        if not account.id:
            raise ValueError("user record has no id")
        self.store.upsert_account(account)
        summary.accounts_upserted += 1

        listings = await self.client.list_user_conversations(account.id)
        logger.debug("User %s conversations: %d", account.id, len(listings))

        for listing in listings:
            try:
                await self._sync_conversation(listing, account.id, start, end, summary)
            except Exception as e:
                summary.conversation_errors += 1
                logger.error(
                    "Conversation %s failed for account %s: %s", item_id(listing), account.id, e
                )
            await asyncio.sleep(CONVERSATION_DELAY)

    async def _sync_conversation(
        self, listing: dict, account_id: str, start, end, summary: SyncSummary
    ) -> None:
        listing_id = item_id(listing)
        if not listing_id:
            logger.warning("Skipping conversation without id for account %s", account_id)
            await asyncio.sleep(MISSING_ID_DELAY)
            return

        detail = await self.client.get_conversation(listing_id)
        created, updated = self.client.conversation_times(detail, listing)
        if not (is_within_window(created, start, end) or is_within_window(updated, start, end)):
            summary.skipped_out_of_window += 1
            logger.debug("Conversation %s outside window, skipped", listing_id)
            await asyncio.sleep(OUT_OF_WINDOW_DELAY)
            return

        conversation = self.client.parse_conversation(detail, account_id, listing)
        self.store.upsert_conversation(conversation)
        summary.conversations_upserted += 1

        raw_messages = await self.client.list_conversation_messages(
            conversation.id, from_time=start
        )
        messages = [self.client.parse_message(m, conversation.id) for m in raw_messages]
        messages = [m for m in messages if not m.is_system]
        messages.sort(key=lambda m: m.created_time)

        if not any(m.is_bot for m in messages) and not conversation.assigned_to_bot:
            summary.skipped_no_bot += 1
            logger.debug("Conversation %s has no bot involvement, messages skipped", conversation.id)
            await asyncio.sleep(NO_BOT_DELAY)
            return

        written = self.store.upsert_messages(messages)
        summary.messages_upserted += written
        logger.debug("Conversation %s: %d messages upserted", conversation.id, written)
