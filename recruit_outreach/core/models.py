"""Records shared by the store, scheduler, importer and adapters."""

import hashlib
import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Optional, Union

from recruit_outreach.core.clock import from_db, normalize


class Direction(str, Enum):
    OUTBOUND = "outbound"
    INBOUND = "inbound"


class MessageStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    RECEIVED = "received"
    FAILED = "failed"


TERMINAL_STATUSES = {MessageStatus.OPENED, MessageStatus.RECEIVED, MessageStatus.FAILED}


def _load_json(value: Optional[str]) -> dict:
    return json.loads(value) if value else {}


@dataclass
class CallerContext:
    """The athlete on whose behalf an operation runs."""
    caller_id: int
    email: str
    name: Optional[str] = None

    @property
    def from_address(self) -> str:
        if self.name:
            return f"{self.name} <{self.email}>"
        return self.email


@dataclass
class Recipient:
    """Directory entry for a coach or program."""
    id: int
    name: str
    email: str
    organization: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    last_contacted_at: Optional[datetime] = None

    @property
    def first_name(self) -> str:
        return self.name.split()[0] if self.name else ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Recipient":
        return cls(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            organization=row["organization"],
            tags=json.loads(row["tags"]) if row["tags"] else [],
            last_contacted_at=from_db(row["last_contacted_at"]),
        )


@dataclass
class Message:
    """A single outbound or inbound email."""
    id: int
    caller_id: int
    direction: Direction
    status: MessageStatus
    subject: str
    body: str
    sender_address: Optional[str] = None
    recipient_address: Optional[str] = None
    recipient_id: Optional[int] = None
    template_id: Optional[int] = None
    created_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    received_at: Optional[datetime] = None
    scheduled_for: Optional[datetime] = None
    is_follow_up: bool = False
    parent_message_id: Optional[int] = None
    follow_up_days: Optional[int] = None
    external_thread_id: Optional[str] = None
    provider_message_id: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    has_responded: bool = False
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Message":
        return cls(
            id=row["id"],
            caller_id=row["caller_id"],
            direction=Direction(row["direction"]),
            status=MessageStatus(row["status"]),
            subject=row["subject"],
            body=row["body"],
            sender_address=row["sender_address"],
            recipient_address=row["recipient_address"],
            recipient_id=row["recipient_id"],
            template_id=row["template_id"],
            created_at=from_db(row["created_at"]),
            sent_at=from_db(row["sent_at"]),
            received_at=from_db(row["received_at"]),
            scheduled_for=from_db(row["scheduled_for"]),
            is_follow_up=bool(row["is_follow_up"]),
            parent_message_id=row["parent_message_id"],
            follow_up_days=row["follow_up_days"],
            external_thread_id=row["external_thread_id"],
            provider_message_id=row["provider_message_id"],
            attempts=row["attempts"],
            last_error=row["last_error"],
            last_attempt_at=from_db(row["last_attempt_at"]),
            claimed_at=from_db(row["claimed_at"]),
            has_responded=bool(row["has_responded"]),
            metadata=_load_json(row["metadata"]),
        )


@dataclass
class Task:
    """Follow-up reminder for the athlete."""
    id: int
    caller_id: int
    title: str
    due_date: datetime
    type: str = "email-follow-up"
    completed: bool = False
    message_id: Optional[int] = None
    recipient_id: Optional[int] = None
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Task":
        return cls(
            id=row["id"],
            caller_id=row["caller_id"],
            title=row["title"],
            due_date=from_db(row["due_date"]),
            type=row["type"],
            completed=bool(row["completed"]),
            message_id=row["message_id"],
            recipient_id=row["recipient_id"],
            metadata=_load_json(row["metadata"]),
        )


@dataclass
class Activity:
    id: int
    caller_id: int
    type: str
    description: str
    timestamp: datetime
    recipient_id: Optional[int] = None
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Activity":
        return cls(
            id=row["id"],
            caller_id=row["caller_id"],
            type=row["type"],
            description=row["description"],
            timestamp=from_db(row["timestamp"]),
            recipient_id=row["recipient_id"],
            metadata=_load_json(row["metadata"]),
        )


@dataclass
class FollowUpConfig:
    """How a follow-up should be arranged when a message is sent.

    ``auto_send`` schedules a follow-up message that the scheduler delivers;
    otherwise a reminder task is created for the athlete instead.
    """
    days: int
    auto_send: bool = True
    subject: Optional[str] = None


@dataclass
class DeliveryResult:
    success: bool
    provider_message_id: Optional[str] = None
    thread_id: Optional[str] = None
    error: Optional[str] = None


def parse_date(value: Union[str, datetime, int, float, None]) -> Optional[datetime]:
    """Parse ISO-8601, RFC 2822 or epoch-millisecond dates.

    Gmail reports ``internalDate`` in milliseconds; webhooks use RFC 2822.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return normalize(value)
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        return normalize(datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc))
    try:
        return normalize(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return normalize(parsedate_to_datetime(value))


@dataclass
class InboundDescriptor:
    """An inbound email as handed over by inbox polling or a webhook."""
    from_: str
    to: str
    subject: str = ""
    body: str = ""
    date: Optional[datetime] = None
    external_thread_id: Optional[str] = None
    provider_message_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InboundDescriptor":
        """Build from a loosely-shaped payload (``from``/``to`` keys, text or html body)."""
        return cls(
            from_=data.get("from") or data.get("from_") or "",
            to=data.get("to") or "",
            subject=data.get("subject") or "",
            body=data.get("body") or data.get("text") or data.get("html") or "",
            date=parse_date(data.get("date")),
            external_thread_id=data.get("external_thread_id") or data.get("threadId"),
            provider_message_id=data.get("provider_message_id") or data.get("id"),
        )

    def dedupe_key(self) -> str:
        """Identity of a reply: thread id, subject and received timestamp."""
        if self.date:
            stamp = self.date.isoformat()
        else:
            stamp = self.provider_message_id or hashlib.sha256(self.body.encode("utf-8")).hexdigest()
        raw = "\x1f".join([self.external_thread_id or "", self.subject or "", stamp])
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()
