"""PostgreSQL database connection and schema bootstrap."""

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

import psycopg2

SCHEMA_PATH = Path(__file__).parent / "schema.sql"


def get_connection_string() -> str:
    """Get database connection string from environment."""
    return os.getenv(
        "DATABASE_URL",
        "postgresql://localhost:5432/supportsync"
    )


@contextmanager
def get_connection(dsn: Optional[str] = None) -> Generator:
    """Get a database connection context manager.

    Commits on clean exit, rolls back on error, always closes.
    """
    conn = psycopg2.connect(dsn or get_connection_string())
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db(dsn: Optional[str] = None) -> None:
    """Initialize database schema."""
    with open(SCHEMA_PATH) as f:
        schema_sql = f.read()

    with get_connection(dsn) as conn:
        with conn.cursor() as cur:
            cur.execute(schema_sql)
