"""
Freshchat v2 API client.

Async (aiohttp) client used by every ingestion run and by the lookup API.
One ClientSession per `async with FreshchatClient(...)` block.

Freshchat has no global conversation listing, so ingestion walks
users -> their conversations -> conversation detail -> messages.
Pagination is page-number based with no total count; see paginate().
"""

import asyncio
import hashlib
import logging
from contextlib import AsyncExitStack
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

import aiohttp

from src.db.models import Account, Conversation, Message, utcnow
from src.rate_limiter import RateLimiter
from src.utils.normalize import normalize_content

logger = logging.getLogger(__name__)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with milliseconds and a Z suffix (2024-01-22T10:00:00.000Z)."""
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string or epoch seconds into an aware UTC datetime.

    Returns None for missing or unparseable values.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def item_id(item: Any) -> Optional[str]:
    """Identifier of a raw API record: `id`, falling back to `uuid`."""
    if not isinstance(item, dict):
        return None
    value = item.get("id") or item.get("uuid")
    return str(value) if value else None


class FreshchatClient:
    """Client for the Freshchat v2 REST API."""

    # Total request timeout in seconds
    DEFAULT_TIMEOUT = 30

    # Only throttling (429) is retried: 4 attempts, backoff 1s, 2s, 4s
    MAX_ATTEMPTS = 4
    RETRY_DELAY_BASE = 1

    # Pagination guards
    MAX_PAGES = 200
    PAGE_DELAY = 0.5  # seconds between pages

    USERS_PAGE_SIZE = 100
    CONVERSATIONS_PAGE_SIZE = 20
    MESSAGES_PAGE_SIZE = 50

    def __init__(
        self,
        token: str,
        base_url: str,
        rate_limiter: Optional[RateLimiter] = None,
        timeout: Optional[int] = None,
    ):
        if not token:
            raise ValueError("Freshchat token not set")
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.rate_limiter = rate_limiter
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self._session = None
        self._stack: Optional[AsyncExitStack] = None

    @classmethod
    def from_settings(cls, settings) -> "FreshchatClient":
        limiter = RateLimiter(settings.freshchat_rpm) if settings.freshchat_rpm > 0 else None
        return cls(
            token=settings.freshchat_token,
            base_url=settings.freshchat_base_url,
            rate_limiter=limiter,
        )

    def _get_aiohttp_session(self) -> aiohttp.ClientSession:
        """Create an aiohttp session with auth headers and timeout."""
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/json",
        }
        return aiohttp.ClientSession(timeout=timeout, headers=headers)

    async def __aenter__(self) -> "FreshchatClient":
        self._stack = AsyncExitStack()
        self._session = await self._stack.enter_async_context(self._get_aiohttp_session())
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        stack, self._stack, self._session = self._stack, None, None
        if stack is not None:
            await stack.aclose()

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def fetch(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        page: Optional[int] = None,
    ) -> Any:
        """GET one endpoint and return the decoded JSON body.

        Retries on 429 with exponential backoff. Any other HTTP or network
        error propagates immediately.

        Raises:
            aiohttp.ClientResponseError: On non-2xx after retries
        """
        if self._session is None:
            raise RuntimeError("FreshchatClient must be used as an async context manager")

        url = f"{self.base_url}{endpoint}"
        query = dict(params or {})
        if page is not None:
            query["page"] = page

        for attempt in range(self.MAX_ATTEMPTS):
            if self.rate_limiter is not None:
                await self.rate_limiter.acquire()

            async with self._session.get(url, params=query) as response:
                if response.status == 429 and attempt < self.MAX_ATTEMPTS - 1:
                    delay = self.RETRY_DELAY_BASE * (2 ** attempt)
                    logger.warning(
                        "Rate limited (429) on %s, backing off %ss (attempt %d/%d)",
                        endpoint, delay, attempt + 1, self.MAX_ATTEMPTS,
                    )
                    await asyncio.sleep(delay)
                    continue
                if response.status >= 400:
                    logger.error("GET %s failed with HTTP %d", endpoint, response.status)
                response.raise_for_status()
                return await response.json()

        raise RuntimeError("Unexpected retry loop exit")

    async def paginate(
        self,
        endpoint: str,
        params: Optional[dict],
        items_field: str,
        page_size: int,
    ) -> List[dict]:
        """Fetch every page of a listing and concatenate the items.

        Stops on the first of:
        - an empty page
        - a page shorter than page_size (treated as the last page; the API
          returns no total, so a short page from server-side filtering ends
          the walk early)
        - a page whose first item was already seen as a first item (server
          ignoring the page parameter)
        - MAX_PAGES pages
        """
        items: List[dict] = []
        seen_first_ids = set()
        base_params = dict(params or {})
        base_params["items_per_page"] = page_size

        for page in range(1, self.MAX_PAGES + 1):
            data = await self.fetch(endpoint, base_params, page=page)
            page_items = self._page_items(data, items_field)
            if not page_items:
                break

            first_id = item_id(page_items[0])
            if first_id is not None:
                if first_id in seen_first_ids:
                    logger.warning(
                        "Repeating first item %s on %s page=%d, stopping", first_id, endpoint, page
                    )
                    break
                seen_first_ids.add(first_id)

            items.extend(page_items)
            logger.debug("%s page=%d: %d items", endpoint, page, len(page_items))

            if len(page_items) < page_size:
                break
            if page == self.MAX_PAGES:
                logger.warning("Safety stop after %d pages on %s", self.MAX_PAGES, endpoint)
                break
            await asyncio.sleep(self.PAGE_DELAY)

        return items

    @staticmethod
    def _page_items(data: Any, items_field: str) -> List[dict]:
        if isinstance(data, dict) and isinstance(data.get(items_field), list):
            return data[items_field]
        if isinstance(data, list):
            return data
        return []

    # -------------------------------------------------------------------------
    # Endpoints
    # -------------------------------------------------------------------------

    async def list_users_updated(self, start: datetime, end: datetime) -> List[dict]:
        """Users updated within [start, end]."""
        return await self.paginate(
            "/users",
            {"updated_from": format_timestamp(start), "updated_to": format_timestamp(end)},
            "users",
            self.USERS_PAGE_SIZE,
        )

    async def list_user_conversations(self, user_id: str) -> List[dict]:
        return await self.paginate(
            f"/users/{user_id}/conversations", {}, "conversations", self.CONVERSATIONS_PAGE_SIZE
        )

    async def get_conversation(self, conversation_id: str) -> dict:
        return await self.fetch(f"/conversations/{conversation_id}")

    async def list_conversation_messages(
        self,
        conversation_id: str,
        from_time: Optional[datetime] = None,
    ) -> List[dict]:
        """Messages of a conversation, optionally server-filtered from from_time."""
        params = {}
        if from_time is not None:
            params["from_time"] = format_timestamp(from_time)
        return await self.paginate(
            f"/conversations/{conversation_id}/messages",
            params,
            "messages",
            self.MESSAGES_PAGE_SIZE,
        )

    async def find_user_by_phone(self, phone: str) -> Optional[dict]:
        """First user whose phone number matches, or None."""
        data = await self.fetch("/users", {"phone_no": phone})
        users = self._page_items(data, "users")
        return users[0] if users else None

    # -------------------------------------------------------------------------
    # Record parsing
    # -------------------------------------------------------------------------

    @staticmethod
    def parse_account(raw: dict) -> Account:
        return Account(
            id=item_id(raw) or "",
            phone_no=str(raw.get("phone") or raw.get("phone_number") or ""),
            created_time=(
                parse_timestamp(raw.get("created_time") or raw.get("created_at")) or utcnow()
            ),
        )

    @staticmethod
    def conversation_times(
        detail: dict, listing: Optional[dict] = None
    ) -> Tuple[Optional[datetime], Optional[datetime]]:
        """(created, updated) from detail, falling back to the listing item.

        Updated falls back to created. Either may be None when absent.
        """
        listing = listing or {}
        created = parse_timestamp(
            detail.get("created_time") or detail.get("created_at")
            or listing.get("created_time") or listing.get("created_at")
        )
        updated = parse_timestamp(
            detail.get("updated_time") or detail.get("updated_at")
            or listing.get("updated_time") or listing.get("updated_at")
        ) or created
        return created, updated

    @classmethod
    def parse_conversation(
        cls,
        detail: dict,
        account_id: str,
        listing: Optional[dict] = None,
    ) -> Conversation:
        created, updated = cls.conversation_times(detail, listing)
        created = created or utcnow()
        updated = max(updated or created, created)

        assigned = detail.get("assigned_to")
        if isinstance(assigned, dict):
            assigned_to = str(assigned.get("id") or "")
            assigned_to_type = str(assigned.get("type") or "")
        else:
            assigned_to = str(assigned or "")
            assigned_to_type = ""

        custom_properties = detail.get("custom_properties")
        return Conversation(
            id=item_id(detail) or item_id(listing) or "",
            account_id=account_id,
            status=str(detail.get("status") or ""),
            channel_id=str(detail.get("channel_id") or ""),
            assigned_to=assigned_to,
            assigned_to_type=assigned_to_type,
            created_time=created,
            updated_time=updated,
            custom_properties=custom_properties if isinstance(custom_properties, dict) else {},
        )

    @staticmethod
    def parse_message(raw: dict, conversation_id: str) -> Message:
        stamp = parse_timestamp(raw.get("created_time") or raw.get("created_at"))

        rating = raw.get("rating")
        try:
            rating = int(rating) if rating is not None else None
        except (TypeError, ValueError):
            rating = None

        parts = raw.get("message_parts")
        if parts is None:
            parts = raw.get("parts")
        actor_type = str(raw.get("actor_type") or "").lower()
        content = normalize_content(parts)

        message_id = item_id(raw)
        if not message_id and stamp is not None:
            message_id = f"{conversation_id}-{format_timestamp(stamp)}"
        elif not message_id:
            # Must be stable across runs or every sync stores a new copy
            key = f"{conversation_id}|{actor_type}|{content}".encode("utf-8")
            message_id = f"{conversation_id}-{hashlib.sha1(key).hexdigest()[:16]}"
            logger.warning("Message in %s has no id or timestamp, keyed as %s", conversation_id, message_id)

        return Message(
            id=message_id,
            conversation_id=conversation_id,
            actor_type=actor_type,
            content=content,
            created_time=stamp or utcnow(),
            rating=rating,
        )
