"""
Chat History Lookup Endpoints

Backend for the support lookup screen: find a customer's conversations by
phone number, then read a conversation's messages. Both read live from
Freshchat; upstream HTTP errors are relayed with their status code.
"""

import logging
import re
from typing import Any, List, Optional

import aiohttp
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from src.api.deps import get_freshchat_client
from src.freshchat_client import FreshchatClient
from src.utils.normalize import extract_text_parts

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["lookup"])

PHONE_PATTERN = re.compile(r"^[0-9]{6,15}$")
CONVERSATION_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{6,}$")


class ConversationSummary(BaseModel):
    id: Optional[str] = None
    created_time: Optional[Any] = None
    status: Optional[str] = None
    channel_id: Optional[str] = None


class ConversationListResponse(BaseModel):
    conversations: List[ConversationSummary]


class MessageView(BaseModel):
    id: Optional[str] = None
    actor_type: Optional[str] = None
    message_parts: List[str]
    created_time: Optional[Any] = None


class MessageListResponse(BaseModel):
    messages: List[MessageView]


def _upstream_error(e: Exception) -> HTTPException:
    if isinstance(e, aiohttp.ClientResponseError):
        return HTTPException(status_code=e.status, detail=e.message or "API error")
    logger.exception("Lookup request failed")
    return HTTPException(status_code=500, detail="Internal server error.")


@router.get("/conversations", response_model=ConversationListResponse)
async def list_conversations(
    phone: Optional[str] = Query(default=None, description="Customer phone, 6-15 digits"),
    client: FreshchatClient = Depends(get_freshchat_client),
):
    """
    Conversations of the first Freshchat user matching the phone number.

    400 on a missing/invalid phone, 404 when no user matches.
    """
    if not phone or not PHONE_PATTERN.match(phone):
        raise HTTPException(status_code=400, detail="Invalid or missing phone number.")

    try:
        user = await client.find_user_by_phone(phone)
        if user is None:
            raise HTTPException(status_code=404, detail="User not found.")
        conversations = await client.list_user_conversations(str(user.get("id")))
    except HTTPException:
        raise
    except Exception as e:
        raise _upstream_error(e)

    return ConversationListResponse(
        conversations=[
            ConversationSummary(
                id=c.get("id"),
                created_time=c.get("created_time"),
                status=c.get("status"),
                channel_id=c.get("channel_id"),
            )
            for c in conversations
        ]
    )


@router.get("/messages", response_model=MessageListResponse)
async def list_messages(
    conversation_id: Optional[str] = Query(default=None),
    client: FreshchatClient = Depends(get_freshchat_client),
):
    """All messages of a conversation, each with its non-empty text parts."""
    if not conversation_id or not CONVERSATION_ID_PATTERN.match(conversation_id):
        raise HTTPException(status_code=400, detail="Invalid or missing conversation id.")

    try:
        raw_messages = await client.list_conversation_messages(conversation_id)
    except Exception as e:
        raise _upstream_error(e)

    return MessageListResponse(
        messages=[
            MessageView(
                id=m.get("id"),
                actor_type=m.get("actor_type"),
                message_parts=extract_text_parts(m.get("message_parts")),
                created_time=m.get("created_time"),
            )
            for m in raw_messages
        ]
    )
