#!/usr/bin/env python3
"""
Database storage for message classification.

Two tables:
- message_analysis: one row per classified message (upsert on message_id)
- analysis_failures: the retry ledger, one row per failing message

And two views that decide what the classification engine picks up
(see schema.sql): messages_needing_analysis, failed_messages_for_retry.
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, List, Sequence

from psycopg2.extras import execute_values

from .models import AnalysisFailure, Message, MessageAnalysis

logger = logging.getLogger(__name__)

ANALYSIS_UPSERT_SQL = """
INSERT INTO message_analysis (
    message_id, language, category, tag, confidence, model_version, analyzed_at
) VALUES %s
ON CONFLICT (message_id) DO UPDATE SET
    language = EXCLUDED.language,
    category = EXCLUDED.category,
    tag = EXCLUDED.tag,
    confidence = EXCLUDED.confidence,
    model_version = EXCLUDED.model_version,
    analyzed_at = EXCLUDED.analyzed_at
"""

# attempts only ever grows; the increment happens in the database so two
# overlapping runs cannot lose a failure
FAILURE_UPSERT_SQL = """
INSERT INTO analysis_failures (
    message_id, conversation_id, error_message, error_type,
    attempts, last_attempt, next_retry
) VALUES (%s, %s, %s, %s, 1, %s, %s)
ON CONFLICT (message_id) DO UPDATE SET
    attempts = analysis_failures.attempts + 1,
    last_attempt = EXCLUDED.last_attempt,
    next_retry = EXCLUDED.next_retry,
    error_message = EXCLUDED.error_message,
    error_type = EXCLUDED.error_type
RETURNING message_id, conversation_id, error_message, error_type,
          attempts, last_attempt, next_retry
"""

SHORT_MESSAGE_PREDICATE = """
    (array_length(regexp_split_to_array(TRIM(m.content), E'\\\\s+'), 1) <= 2
     OR LENGTH(TRIM(m.content)) <= 10)
"""


class AnalysisStore:
    """Reads classification work and persists its outcome."""

    def __init__(self, db_connection):
        self.db = db_connection

    @contextmanager
    def _write(self):
        try:
            with self.db.cursor() as cur:
                yield cur
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def fetch_messages_for_analysis(self, limit: int = 1000) -> List[Message]:
        """Newest unanalyzed classifiable user messages (up to limit)."""
        with self.db.cursor() as cur:
            cur.execute(
                """
                SELECT id, conversation_id, actor_type, content, created_time
                FROM messages_needing_analysis
                LIMIT %s
                """,
                (limit,),
            )
            rows = cur.fetchall()
        return [self._row_to_message(row) for row in rows]

    def fetch_failed_for_retry(self, limit: int = 50) -> List[Dict[str, str]]:
        """Ledger rows due for retry: [{message_id, conversation_id, attempts}]."""
        with self.db.cursor() as cur:
            cur.execute(
                """
                SELECT message_id, conversation_id, attempts
                FROM failed_messages_for_retry
                LIMIT %s
                """,
                (limit,),
            )
            rows = cur.fetchall()
        return [
            {"message_id": row[0], "conversation_id": row[1], "attempts": row[2]}
            for row in rows
        ]

    def get_messages(self, message_ids: Sequence[str]) -> List[Message]:
        if not message_ids:
            return []
        with self.db.cursor() as cur:
            cur.execute(
                """
                SELECT id, conversation_id, actor_type, content, created_time
                FROM messages
                WHERE id = ANY(%s)
                ORDER BY created_time ASC
                """,
                (list(message_ids),),
            )
            rows = cur.fetchall()
        return [self._row_to_message(row) for row in rows]

    def upsert_analyses(self, analyses: List[MessageAnalysis]) -> int:
        """Store classification results. Returns count written."""
        if not analyses:
            return 0

        unique = {a.message_id: a for a in analyses}
        values = [
            (a.message_id, a.language, a.category, a.tag, a.confidence,
             a.model_version, a.analyzed_at)
            for a in unique.values()
        ]
        with self._write() as cur:
            execute_values(cur, ANALYSIS_UPSERT_SQL, values)
        return len(values)

    def record_failure(
        self,
        message_id: str,
        conversation_id: str,
        error_message: str,
        error_type: str,
        attempted_at: datetime,
        next_retry: datetime,
    ) -> AnalysisFailure:
        """Insert a ledger row (attempts=1) or bump attempts on an existing one."""
        with self._write() as cur:
            cur.execute(FAILURE_UPSERT_SQL, (
                message_id, conversation_id, error_message, error_type,
                attempted_at, next_retry,
            ))
            row = cur.fetchone()
        return AnalysisFailure(
            message_id=row[0],
            conversation_id=row[1],
            error_message=row[2] or "",
            error_type=row[3] or "unknown",
            attempts=row[4],
            last_attempt=row[5],
            next_retry=row[6],
        )

    def purge_short_failures(self) -> Dict[str, int]:
        """Delete ledger rows for short messages.

        Returns:
            {"before": rows before, "deleted": rows removed, "after": rows left}
        """
        with self._write() as cur:
            cur.execute("SELECT COUNT(*) FROM analysis_failures")
            before = cur.fetchone()[0]
            cur.execute(f"""
                DELETE FROM analysis_failures af
                USING messages m
                WHERE af.message_id = m.id
                  AND {SHORT_MESSAGE_PREDICATE}
            """)
            deleted = cur.rowcount
            cur.execute("SELECT COUNT(*) FROM analysis_failures")
            after = cur.fetchone()[0]
        logger.info(
            "Purged %d short-message ledger rows (%d -> %d)", deleted, before, after
        )
        return {"before": before, "deleted": deleted, "after": after}

    @staticmethod
    def _row_to_message(row) -> Message:
        return Message(
            id=row[0],
            conversation_id=row[1],
            actor_type=row[2] or "",
            content=row[3] or "",
            created_time=row[4],
        )
