"""Shared test fixtures."""

import asyncio
from datetime import datetime, timedelta

import pytest

from recruit_outreach.core.config import Settings
from recruit_outreach.core.db import init_db
from recruit_outreach.core.models import CallerContext, DeliveryResult
from recruit_outreach.outreach.directory import SqliteDirectory
from recruit_outreach.outreach.lifecycle import OutreachLifecycle


class FixedClock:
    def __init__(self, start: datetime):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class FakeAdapter:
    """In-memory delivery adapter that records every call."""

    def __init__(self):
        self.delivered = []
        self.failures = {}  # message id -> errors to return before succeeding
        self.fail_all = None
        self.delay = 0.0
        self.inbox = []
        self._sequence = 0

    async def deliver(self, message):
        self.delivered.append(message.id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_all:
            return DeliveryResult(success=False, error=self.fail_all)
        pending = self.failures.get(message.id)
        if pending:
            return DeliveryResult(success=False, error=pending.pop(0))

        self._sequence += 1
        return DeliveryResult(
            success=True,
            provider_message_id=f"provider-{self._sequence}",
            thread_id=message.external_thread_id or f"thread-{message.id}",
        )

    async def poll_inbox(self, since):
        return list(self.inbox)

    def calls_for(self, message_id: int) -> int:
        return self.delivered.count(message_id)


@pytest.fixture
def db_path(tmp_path):
    """Temporary SQLite database with schema initialized."""
    path = tmp_path / "test.db"
    init_db(path)
    return path


@pytest.fixture
def clock():
    return FixedClock(datetime(2025, 3, 3, 9, 0, 0))


@pytest.fixture
def directory(db_path):
    return SqliteDirectory(db_path)


@pytest.fixture
def coach(directory):
    """A coach in the directory, stored with a mixed-case address."""
    return directory.add_recipient("Jane Doe", "Coach.Doe@State.edu", "State University", ["d1"])


@pytest.fixture
def caller():
    return CallerContext(caller_id=1, email="alex@example.com", name="Alex Rivera")


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def lifecycle(db_path, directory, adapter, clock, tmp_path):
    return OutreachLifecycle(
        directory=directory,
        adapter=adapter,
        db_path=db_path,
        settings=Settings(),
        clock=clock,
        config_path=tmp_path / "config",
    )
