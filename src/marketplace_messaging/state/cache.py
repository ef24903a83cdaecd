"""SQLite cache for conversation history and summaries."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from pathlib import Path

from ..api.models import ConversationSummary, DeliveryState, Message
from ..utils.config import CONFIG_DIR

logger = logging.getLogger(__name__)

DB_PATH = CONFIG_DIR / "cache.db"
SCHEMA_VERSION = 1


class Cache:
    """SQLite-based cache of the last successfully fetched messaging state."""

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path or DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
        return self._conn

    def _init_db(self) -> None:
        """Initialize database schema."""
        conn = self._get_conn()

        cursor = conn.execute("PRAGMA user_version")
        version = cursor.fetchone()[0]

        if version < SCHEMA_VERSION:
            self._create_schema(conn)
            conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
            conn.commit()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database tables."""
        conn.executescript("""
            -- Canonical messages only; optimistic entries never reach the cache
            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                listing_id INTEGER NOT NULL,
                sender_id TEXT NOT NULL,
                receiver_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                full_json TEXT NOT NULL,
                updated_at INTEGER DEFAULT (strftime('%s', 'now'))
            );

            CREATE INDEX IF NOT EXISTS idx_messages_conversation
                ON messages(listing_id, sender_id, receiver_id, created_at);

            -- Conversation summaries per owner
            CREATE TABLE IF NOT EXISTS summaries (
                owner_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                listing_id INTEGER,
                counterparty_id TEXT NOT NULL,
                full_json TEXT NOT NULL,
                updated_at INTEGER DEFAULT (strftime('%s', 'now')),
                PRIMARY KEY (owner_id, position)
            );

            -- Sync state table
            CREATE TABLE IF NOT EXISTS sync_state (
                key TEXT PRIMARY KEY,
                value TEXT,
                updated_at INTEGER DEFAULT (strftime('%s', 'now'))
            );
        """)

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    # Message operations

    def get_conversation_messages(
        self, listing_id: int, user_a: str, user_b: str, limit: int = 200
    ) -> list[Message]:
        """Get cached messages of one conversation, oldest first."""
        conn = self._get_conn()
        cursor = conn.execute("""
            SELECT full_json FROM (
                SELECT full_json, created_at FROM messages
                WHERE listing_id = ?
                  AND ((sender_id = ? AND receiver_id = ?)
                    OR (sender_id = ? AND receiver_id = ?))
                ORDER BY created_at DESC
                LIMIT ?
            ) ORDER BY created_at ASC
        """, (listing_id, user_a, user_b, user_b, user_a, limit))

        messages = []
        for row in cursor:
            try:
                messages.append(Message.model_validate_json(row["full_json"]))
            except ValueError as e:
                logger.warning("Error parsing cached message: %s", e)
        return messages

    def save_messages(self, messages: list[Message]) -> None:
        """Save or update canonical messages. Optimistic entries are skipped."""
        conn = self._get_conn()
        now = int(datetime.now().timestamp())

        for msg in messages:
            if msg.is_optimistic or msg.delivery is not DeliveryState.SENT:
                continue
            conn.execute("""
                INSERT OR REPLACE INTO messages
                (id, listing_id, sender_id, receiver_id, created_at, full_json, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                msg.id,
                msg.listing_id,
                msg.sender_id,
                msg.receiver_id,
                msg.created_at.isoformat(),
                msg.model_dump_json(by_alias=True),
                now,
            ))

        conn.commit()

    def get_message_count(self) -> int:
        """Get number of cached messages."""
        conn = self._get_conn()
        cursor = conn.execute("SELECT COUNT(*) as count FROM messages")
        return cursor.fetchone()["count"]

    # Summary operations

    def get_summaries(self, owner_id: str) -> list[ConversationSummary]:
        """Get the cached summaries of a user in their original order."""
        conn = self._get_conn()
        cursor = conn.execute("""
            SELECT full_json FROM summaries
            WHERE owner_id = ?
            ORDER BY position ASC
        """, (owner_id,))

        summaries = []
        for row in cursor:
            try:
                summaries.append(ConversationSummary.model_validate_json(row["full_json"]))
            except ValueError as e:
                logger.warning("Error parsing cached summary: %s", e)
        return summaries

    def save_summaries(self, owner_id: str, summaries: list[ConversationSummary]) -> None:
        """Replace the cached summaries of a user."""
        conn = self._get_conn()
        now = int(datetime.now().timestamp())

        conn.execute("DELETE FROM summaries WHERE owner_id = ?", (owner_id,))
        for position, summary in enumerate(summaries):
            conn.execute("""
                INSERT INTO summaries
                (owner_id, position, listing_id, counterparty_id, full_json, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                owner_id,
                position,
                summary.listing_id,
                summary.counterparty_id,
                summary.model_dump_json(),
                now,
            ))

        conn.commit()

    # Sync state

    def get_sync_state(self, key: str) -> str | None:
        """Get a sync state value."""
        conn = self._get_conn()
        cursor = conn.execute(
            "SELECT value FROM sync_state WHERE key = ?", (key,)
        )
        row = cursor.fetchone()
        return row["value"] if row else None

    def set_sync_state(self, key: str, value: str) -> None:
        """Set a sync state value."""
        conn = self._get_conn()
        now = int(datetime.now().timestamp())
        conn.execute("""
            INSERT OR REPLACE INTO sync_state (key, value, updated_at)
            VALUES (?, ?, ?)
        """, (key, value, now))
        conn.commit()

    def clear_all(self) -> None:
        """Clear all cached data (on logout)."""
        conn = self._get_conn()
        conn.executescript("""
            DELETE FROM messages;
            DELETE FROM summaries;
            DELETE FROM sync_state;
        """)
        conn.commit()
