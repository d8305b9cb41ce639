"""
Refresh stored open conversations from Freshchat.

Incremental sync only sees conversations whose user was updated in the
window, so a conversation resolved later can stay "open" in the store.
This pass re-reads every stored unresolved conversation created in the last
MAX_AGE_DAYS and upserts it when its status or updated time changed.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Optional

from src.db.models import Conversation, utcnow
from src.freshchat_client import FreshchatClient, parse_timestamp
from src.logging_utils import log_summary

logger = logging.getLogger(__name__)

MAX_AGE_DAYS = 30
PROGRESS_EVERY = 50
CHECK_DELAY = 0.3
ERROR_DELAY = 0.5


@dataclass
class ReconciliationSummary:
    total: int = 0
    checked: int = 0
    updated: int = 0
    resolved: int = 0
    errors: int = 0
    still_unresolved: int = 0


class UnresolvedReconciler:
    """Re-fetch open conversations and persist their latest state."""

    def __init__(self, client: FreshchatClient, store, max_age_days: int = MAX_AGE_DAYS):
        self.client = client
        self.store = store
        self.max_age_days = max_age_days

    async def run(self, now: Optional[datetime] = None) -> ReconciliationSummary:
        now = now or utcnow()
        cutoff = now - timedelta(days=self.max_age_days)
        stored = self.store.list_unresolved_conversations(cutoff)

        summary = ReconciliationSummary(total=len(stored))
        if not stored:
            logger.info("No unresolved conversations to check")
            return summary
        logger.info("Found %d unresolved conversations to check", len(stored))

        for conversation in stored:
            try:
                await self._reconcile(conversation, summary)
            except Exception as e:
                summary.errors += 1
                logger.error("Failed to refetch conversation %s: %s", conversation.id, e)
                await asyncio.sleep(ERROR_DELAY)
                continue

            if summary.checked % PROGRESS_EVERY == 0:
                logger.info(
                    "Progress: %d/%d checked, %d resolved, %d updated",
                    summary.checked, summary.total, summary.resolved, summary.updated,
                )
            await asyncio.sleep(CHECK_DELAY)

        summary.still_unresolved = summary.total - summary.resolved
        log_summary(logger, "Reconciliation complete", asdict(summary))
        return summary

    async def _reconcile(self, stored: Conversation, summary: ReconciliationSummary) -> None:
        detail = await self.client.get_conversation(stored.id)
        summary.checked += 1

        fresh_status = str(detail.get("status") or "")
        fresh_updated = parse_timestamp(detail.get("updated_time") or detail.get("updated_at"))

        status_changed = fresh_status != stored.status
        time_changed = fresh_updated is not None and fresh_updated != stored.updated_time
        if not (status_changed or time_changed):
            return

        # Stored values fill in anything the detail omits
        fallback = {
            "id": stored.id,
            "created_time": stored.created_time,
            "updated_time": stored.updated_time,
        }
        refreshed = self.client.parse_conversation(detail, stored.account_id, fallback)
        refreshed = refreshed.model_copy(update={"id": stored.id})
        self.store.upsert_conversation(refreshed)
        summary.updated += 1

        if refreshed.is_resolved:
            summary.resolved += 1
            logger.debug("Conversation %s resolved at %s", stored.id, refreshed.updated_time)
