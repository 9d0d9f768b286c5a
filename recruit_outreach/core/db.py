"""SQLite database setup."""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = Path("data/outreach.db")


def get_connection(db_path: Path = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Get a database connection with row factory."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Path = DEFAULT_DB_PATH) -> None:
    """Initialize database with schema."""
    conn = get_connection(db_path)

    conn.executescript("""
        CREATE TABLE IF NOT EXISTS recipients (
            id INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            email TEXT UNIQUE NOT NULL,
            organization TEXT,
            tags TEXT,
            last_contacted_at TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS messages (
            id INTEGER PRIMARY KEY,
            caller_id INTEGER NOT NULL,
            direction TEXT NOT NULL DEFAULT 'outbound',
            status TEXT NOT NULL DEFAULT 'draft',

            sender_address TEXT,
            recipient_address TEXT,
            recipient_id INTEGER REFERENCES recipients(id),

            subject TEXT NOT NULL,
            body TEXT NOT NULL,
            template_id INTEGER,

            -- Timing
            created_at TIMESTAMP NOT NULL,
            sent_at TIMESTAMP,
            received_at TIMESTAMP,
            scheduled_for TIMESTAMP,

            -- Follow-up linkage
            is_follow_up INTEGER NOT NULL DEFAULT 0,
            parent_message_id INTEGER REFERENCES messages(id),
            follow_up_days INTEGER,

            -- Provider threading
            external_thread_id TEXT,
            provider_message_id TEXT,

            -- Delivery attempts
            attempts INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            last_attempt_at TIMESTAMP,
            claimed_at TIMESTAMP,

            has_responded INTEGER NOT NULL DEFAULT 0,
            dedupe_key TEXT,
            metadata TEXT,

            CHECK (status != 'scheduled' OR scheduled_for IS NOT NULL),
            CHECK (is_follow_up = 0 OR parent_message_id IS NOT NULL)
        );

        CREATE INDEX IF NOT EXISTS idx_messages_status ON messages(status);
        CREATE INDEX IF NOT EXISTS idx_messages_scheduled_for ON messages(scheduled_for);
        CREATE INDEX IF NOT EXISTS idx_messages_recipient ON messages(recipient_id);
        CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages(external_thread_id);

        -- At most one live follow-up per parent; failed (cancelled or exhausted) ones don't count
        CREATE UNIQUE INDEX IF NOT EXISTS idx_messages_one_follow_up
            ON messages(parent_message_id)
            WHERE is_follow_up = 1 AND status != 'failed';

        CREATE UNIQUE INDEX IF NOT EXISTS idx_messages_dedupe
            ON messages(caller_id, dedupe_key)
            WHERE dedupe_key IS NOT NULL;

        CREATE TABLE IF NOT EXISTS tasks (
            id INTEGER PRIMARY KEY,
            caller_id INTEGER NOT NULL,
            recipient_id INTEGER REFERENCES recipients(id),
            message_id INTEGER REFERENCES messages(id),
            title TEXT NOT NULL,
            due_date TIMESTAMP NOT NULL,
            completed INTEGER NOT NULL DEFAULT 0,
            type TEXT NOT NULL,
            metadata TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_tasks_caller ON tasks(caller_id, completed);

        CREATE TABLE IF NOT EXISTS activities (
            id INTEGER PRIMARY KEY,
            caller_id INTEGER NOT NULL,
            recipient_id INTEGER,
            type TEXT NOT NULL,
            description TEXT NOT NULL,
            timestamp TIMESTAMP NOT NULL,
            metadata TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_activities_caller ON activities(caller_id, timestamp);
    """)

    conn.commit()
    conn.close()
