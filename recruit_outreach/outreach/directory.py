"""Recipient directory: coaches and programs that can be contacted."""

import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol

import structlog

from recruit_outreach.core.clock import to_db
from recruit_outreach.core.db import DEFAULT_DB_PATH, get_connection
from recruit_outreach.core.errors import NotFound
from recruit_outreach.core.models import Recipient

log = structlog.get_logger()


class Directory(Protocol):
    def get_recipient(self, recipient_id: int) -> Recipient:
        ...

    def find_recipient_by_email(self, email: str) -> Optional[Recipient]:
        ...

    def touch_last_contacted(self, recipient_id: int, when: datetime) -> None:
        ...


class SqliteDirectory:
    """Directory backed by the ``recipients`` table."""

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = db_path

    def add_recipient(
        self,
        name: str,
        email: str,
        organization: Optional[str] = None,
        tags: Optional[list[str]] = None,
    ) -> Optional[Recipient]:
        """Insert a recipient. Returns None if the email is already listed."""
        email = email.strip().lower()
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "INSERT INTO recipients (name, email, organization, tags) VALUES (?, ?, ?, ?)",
                (name, email, organization, json.dumps(tags or [])),
            )
            conn.commit()
            recipient_id = cursor.lastrowid
        except sqlite3.IntegrityError:
            log.info("recipient_duplicate_skipped", email=email)
            return None
        finally:
            conn.close()

        log.info("recipient_added", email=email, recipient_id=recipient_id)
        return self.get_recipient(recipient_id)

    def get_recipient(self, recipient_id: int) -> Recipient:
        conn = get_connection(self.db_path)
        row = conn.execute("SELECT * FROM recipients WHERE id = ?", (recipient_id,)).fetchone()
        conn.close()
        if row is None:
            raise NotFound("recipient", recipient_id)
        return Recipient.from_row(row)

    def find_recipient_by_email(self, email: str) -> Optional[Recipient]:
        """Exact, case-insensitive address match."""
        conn = get_connection(self.db_path)
        row = conn.execute(
            "SELECT * FROM recipients WHERE email = ?", (email.strip().lower(),)
        ).fetchone()
        conn.close()
        return Recipient.from_row(row) if row else None

    def touch_last_contacted(self, recipient_id: int, when: datetime) -> None:
        conn = get_connection(self.db_path)
        conn.execute(
            "UPDATE recipients SET last_contacted_at = ? WHERE id = ?",
            (to_db(when), recipient_id),
        )
        conn.commit()
        conn.close()

    def list_recipients(self, tag: Optional[str] = None) -> list[Recipient]:
        conn = get_connection(self.db_path)
        rows = conn.execute("SELECT * FROM recipients ORDER BY name").fetchall()
        conn.close()
        recipients = [Recipient.from_row(row) for row in rows]
        if tag:
            recipients = [r for r in recipients if tag in r.tags]
        return recipients
