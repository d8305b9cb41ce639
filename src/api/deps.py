"""
FastAPI Dependency Injection

Provides the database connection and the Freshchat client for API endpoints
using FastAPI's dependency injection system.
"""

import logging
from typing import AsyncGenerator, Generator

import psycopg2
from fastapi import HTTPException
from psycopg2.extras import RealDictCursor

from src.config import LOOKUP_FIELDS, ConfigError, Settings
from src.db.connection import get_connection_string
from src.freshchat_client import FreshchatClient

logger = logging.getLogger(__name__)


def get_db() -> Generator:
    """
    FastAPI dependency for database connections.

    Yields a database connection with RealDictCursor for dict-style row access.
    Automatically commits on success, rolls back on error, and closes connection.
    """
    conn = psycopg2.connect(
        get_connection_string(),
        cursor_factory=RealDictCursor
    )
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


async def get_freshchat_client() -> AsyncGenerator[FreshchatClient, None]:
    """
    FastAPI dependency yielding an open FreshchatClient.

    Responds 500 when the chat API credentials are not configured.
    """
    settings = Settings.from_env()
    try:
        settings.require(*LOOKUP_FIELDS)
    except ConfigError as e:
        logger.error("Lookup API misconfigured: %s", e)
        raise HTTPException(status_code=500, detail="Server misconfiguration.")

    async with FreshchatClient.from_settings(settings) as client:
        yield client
