"""
Storage for synced chat data: accounts, conversations, messages.

Every write is an upsert keyed by the Freshchat ID and is committed on its
own. A crashed run leaves everything it already wrote in place; the next run
converges by rewriting the same keys.
"""
from contextlib import contextmanager
from datetime import datetime
from typing import List, Optional, Set

from psycopg2.extras import Json, execute_values

from .models import Account, Conversation, Message, RESOLVED_STATUS

ACCOUNT_UPSERT_SQL = """
INSERT INTO accounts (id, phone_no, created_time)
VALUES (%s, %s, %s)
ON CONFLICT (id) DO UPDATE SET
    phone_no = EXCLUDED.phone_no,
    created_time = EXCLUDED.created_time
"""

CONVERSATION_UPSERT_SQL = """
INSERT INTO conversations (
    id, account_id, status, channel_id, assigned_to,
    created_time, updated_time, custom_properties
) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
ON CONFLICT (id) DO UPDATE SET
    account_id = EXCLUDED.account_id,
    status = EXCLUDED.status,
    channel_id = EXCLUDED.channel_id,
    assigned_to = EXCLUDED.assigned_to,
    created_time = EXCLUDED.created_time,
    updated_time = EXCLUDED.updated_time,
    custom_properties = EXCLUDED.custom_properties
"""

MESSAGE_UPSERT_SQL = """
INSERT INTO messages (
    id, conversation_id, actor_type, content, created_time, rating
) VALUES %s
ON CONFLICT (id) DO UPDATE SET
    conversation_id = EXCLUDED.conversation_id,
    actor_type = EXCLUDED.actor_type,
    content = EXCLUDED.content,
    created_time = EXCLUDED.created_time,
    rating = EXCLUDED.rating
"""

CONVERSATION_COLUMNS = """
    id, account_id, status, channel_id, assigned_to,
    created_time, updated_time, custom_properties
"""


class ChatStore:
    """Upserts and lookups for the synced chat tables."""

    def __init__(self, db_connection):
        """
        Args:
            db_connection: psycopg2 connection (see db.connection.get_connection)
        """
        self.db = db_connection

    @contextmanager
    def _write(self):
        """Cursor for one committed write; rolls back so the connection stays usable."""
        try:
            with self.db.cursor() as cur:
                yield cur
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def upsert_account(self, account: Account) -> None:
        with self._write() as cur:
            cur.execute(ACCOUNT_UPSERT_SQL, (
                account.id, account.phone_no, account.created_time,
            ))

    def upsert_conversation(self, conversation: Conversation) -> None:
        with self._write() as cur:
            cur.execute(CONVERSATION_UPSERT_SQL, (
                conversation.id,
                conversation.account_id,
                conversation.status,
                conversation.channel_id,
                conversation.assigned_to,
                conversation.created_time,
                conversation.updated_time,
                Json(conversation.custom_properties),
            ))

    def upsert_messages(self, messages: List[Message]) -> int:
        """Upsert messages in one statement. Returns count written."""
        if not messages:
            return 0

        # ON CONFLICT cannot touch the same row twice in one statement
        unique = {m.id: m for m in messages}
        values = [
            (m.id, m.conversation_id, m.actor_type, m.content, m.created_time, m.rating)
            for m in unique.values()
        ]
        with self._write() as cur:
            execute_values(cur, MESSAGE_UPSERT_SQL, values)
        return len(values)

    def upsert_message(self, message: Message) -> None:
        self.upsert_messages([message])

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self.db.cursor() as cur:
            cur.execute(
                f"SELECT {CONVERSATION_COLUMNS} FROM conversations WHERE id = %s",
                (conversation_id,),
            )
            row = cur.fetchone()
        return self._row_to_conversation(row) if row else None

    def get_existing_message_ids(self, conversation_id: str) -> Set[str]:
        with self.db.cursor() as cur:
            cur.execute(
                "SELECT id FROM messages WHERE conversation_id = %s",
                (conversation_id,),
            )
            return {row[0] for row in cur.fetchall()}

    def list_unresolved_conversations(self, created_after: datetime) -> List[Conversation]:
        """Open conversations created after the cutoff, least recently updated first."""
        with self.db.cursor() as cur:
            cur.execute(
                f"""
                SELECT {CONVERSATION_COLUMNS}
                FROM conversations
                WHERE status != %s AND created_time > %s
                ORDER BY updated_time ASC
                """,
                (RESOLVED_STATUS, created_after),
            )
            rows = cur.fetchall()
        return [self._row_to_conversation(row) for row in rows]

    def list_conversations_for_backfill(self) -> List[Conversation]:
        """Every stored conversation, oldest first."""
        with self.db.cursor() as cur:
            cur.execute(
                f"""
                SELECT {CONVERSATION_COLUMNS}
                FROM conversations
                ORDER BY created_time ASC
                """
            )
            rows = cur.fetchall()
        return [self._row_to_conversation(row) for row in rows]

    @staticmethod
    def _row_to_conversation(row) -> Conversation:
        return Conversation(
            id=row[0],
            account_id=row[1],
            status=row[2] or "",
            channel_id=row[3] or "",
            assigned_to=row[4] or "",
            created_time=row[5],
            updated_time=row[6],
            custom_properties=row[7] or {},
        )
