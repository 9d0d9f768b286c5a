"""Tests for follow-up reminder tasks."""

from datetime import datetime, timedelta

import pytest

from recruit_outreach.core.errors import NotFound
from recruit_outreach.outreach.tasks import FOLLOW_UP_TASK, complete_task, create_task, get_task, list_tasks

NOW = datetime(2025, 3, 3, 9, 0, 0)


def test_create_and_get_task(db_path, coach):
    task = create_task(
        db_path, caller_id=1, title="Follow up with Jane Doe",
        due_date=NOW + timedelta(days=3), recipient_id=coach.id,
        metadata={"suggestedSubject": "Follow-up: Hi"},
    )

    loaded = get_task(db_path, task.id)
    assert loaded.type == FOLLOW_UP_TASK
    assert loaded.due_date == NOW + timedelta(days=3)
    assert loaded.completed is False
    assert loaded.metadata == {"suggestedSubject": "Follow-up: Hi"}


def test_get_task_not_found(db_path):
    with pytest.raises(NotFound):
        get_task(db_path, 42)


def test_complete_task_merges_metadata(db_path):
    task = create_task(db_path, 1, "Follow up", NOW, metadata={"emailId": 7})

    done = complete_task(db_path, task.id, skipped=True)

    assert done.completed is True
    assert done.metadata == {"emailId": 7, "skipped": True}


def test_list_tasks_filters(db_path):
    early = create_task(db_path, 1, "Early", NOW)
    late = create_task(db_path, 1, "Late", NOW + timedelta(days=10))
    create_task(db_path, 2, "Someone else's", NOW)
    complete_task(db_path, early.id)

    assert [t.id for t in list_tasks(db_path, 1)] == [early.id, late.id]
    assert [t.id for t in list_tasks(db_path, 1, completed=False)] == [late.id]
    assert [t.id for t in list_tasks(db_path, 1, due_before=NOW + timedelta(days=1))] == [early.id]
