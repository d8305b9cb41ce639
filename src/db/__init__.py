"""Database module for supportsync."""

from .models import (
    Account,
    AnalysisFailure,
    Conversation,
    Message,
    MessageAnalysis,
)
from .connection import get_connection, init_db
from .chat_storage import ChatStore
from .analysis_storage import AnalysisStore

__all__ = [
    "Account",
    "AnalysisFailure",
    "Conversation",
    "Message",
    "MessageAnalysis",
    "get_connection",
    "init_db",
    "ChatStore",
    "AnalysisStore",
]
