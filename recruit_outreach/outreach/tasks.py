"""Follow-up reminder tasks."""

import json
from datetime import datetime
from pathlib import Path
from typing import Optional

import structlog

from recruit_outreach.core.clock import to_db
from recruit_outreach.core.db import get_connection
from recruit_outreach.core.errors import NotFound
from recruit_outreach.core.models import Task

log = structlog.get_logger()

FOLLOW_UP_TASK = "email-follow-up"


def create_task(
    db_path: Path,
    caller_id: int,
    title: str,
    due_date: datetime,
    task_type: str = FOLLOW_UP_TASK,
    message_id: Optional[int] = None,
    recipient_id: Optional[int] = None,
    metadata: Optional[dict] = None,
) -> Task:
    conn = get_connection(db_path)
    cursor = conn.execute(
        """
        INSERT INTO tasks (caller_id, recipient_id, message_id, title, due_date, type, metadata)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (caller_id, recipient_id, message_id, title, to_db(due_date), task_type,
         json.dumps(metadata) if metadata else None),
    )
    conn.commit()
    task_id = cursor.lastrowid
    conn.close()

    log.info("task_created", task_id=task_id, caller_id=caller_id, due_date=to_db(due_date))
    return get_task(db_path, task_id)


def get_task(db_path: Path, task_id: int) -> Task:
    conn = get_connection(db_path)
    row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    conn.close()
    if row is None:
        raise NotFound("task", task_id)
    return Task.from_row(row)


def complete_task(db_path: Path, task_id: int, **metadata) -> Task:
    """Mark a task done, merging ``metadata`` (e.g. ``skipped=True``) into it."""
    task = get_task(db_path, task_id)
    merged = dict(task.metadata, **metadata)

    conn = get_connection(db_path)
    conn.execute(
        "UPDATE tasks SET completed = 1, metadata = ? WHERE id = ?",
        (json.dumps(merged) if merged else None, task_id),
    )
    conn.commit()
    conn.close()

    log.info("task_completed", task_id=task_id, **metadata)
    return get_task(db_path, task_id)


def list_tasks(
    db_path: Path,
    caller_id: int,
    completed: Optional[bool] = None,
    due_before: Optional[datetime] = None,
) -> list[Task]:
    query = "SELECT * FROM tasks WHERE caller_id = ?"
    params: list = [caller_id]
    if completed is not None:
        query += " AND completed = ?"
        params.append(1 if completed else 0)
    if due_before is not None:
        query += " AND due_date <= ?"
        params.append(to_db(due_before))
    query += " ORDER BY due_date ASC, id ASC"

    conn = get_connection(db_path)
    rows = conn.execute(query, params).fetchall()
    conn.close()
    return [Task.from_row(row) for row in rows]
