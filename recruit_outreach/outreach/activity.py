"""Activity log shown on the athlete's timeline."""

import json
from datetime import datetime
from pathlib import Path
from typing import Optional

from recruit_outreach.core.clock import to_db
from recruit_outreach.core.db import get_connection
from recruit_outreach.core.models import Activity

EMAIL_SENT = "email_sent"
EMAIL_RECEIVED = "email_received"
FOLLOW_UP_SCHEDULED = "follow_up_scheduled"
FOLLOW_UP_SENT = "follow_up_sent"
FOLLOW_UP_FAILED = "follow_up_failed"
FOLLOW_UP_CANCELLED = "follow_up_cancelled"
TASK_COMPLETED = "task_completed"
TASK_SKIPPED = "task_skipped"


def record_activity(
    db_path: Path,
    caller_id: int,
    activity_type: str,
    description: str,
    timestamp: datetime,
    recipient_id: Optional[int] = None,
    metadata: Optional[dict] = None,
) -> int:
    conn = get_connection(db_path)
    cursor = conn.execute(
        """
        INSERT INTO activities (caller_id, recipient_id, type, description, timestamp, metadata)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (caller_id, recipient_id, activity_type, description, to_db(timestamp),
         json.dumps(metadata) if metadata else None),
    )
    conn.commit()
    conn.close()
    return cursor.lastrowid


def list_activities(db_path: Path, caller_id: int, limit: int = 50) -> list[Activity]:
    """Newest first."""
    conn = get_connection(db_path)
    rows = conn.execute(
        "SELECT * FROM activities WHERE caller_id = ? ORDER BY timestamp DESC, id DESC LIMIT ?",
        (caller_id, limit),
    ).fetchall()
    conn.close()
    return [Activity.from_row(row) for row in rows]
