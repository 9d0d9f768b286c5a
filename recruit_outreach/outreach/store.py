"""Message store: durable messages and their status transitions.

Every status change is a compare-and-set (``UPDATE ... WHERE status = ?``) so
two requests racing on the same message cannot both win; the loser sees
``InvalidTransition`` (or, for claims, ``None``).
"""

import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Optional

import structlog

from recruit_outreach.core.clock import to_db
from recruit_outreach.core.db import get_connection
from recruit_outreach.core.errors import AlreadyScheduled, ImmutableRecord, InvalidTransition, NotFound
from recruit_outreach.core.models import TERMINAL_STATUSES, Direction, Message, MessageStatus

log = structlog.get_logger()

# Position in the outbound lattice; transitions may only move right
_RANK = {
    MessageStatus.DRAFT: 0,
    MessageStatus.SCHEDULED: 1,
    MessageStatus.SENDING: 2,
    MessageStatus.SENT: 3,
    MessageStatus.DELIVERED: 4,
    MessageStatus.OPENED: 5,
}

_FAILABLE = {MessageStatus.SCHEDULED, MessageStatus.SENDING, MessageStatus.SENT}
_SENDABLE = {MessageStatus.DRAFT, MessageStatus.SCHEDULED, MessageStatus.SENDING}
_SENT_LIKE = {MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.OPENED}


def can_transition(direction: Direction, current: MessageStatus, new: MessageStatus) -> bool:
    """Whether ``mark_status`` may move a message from ``current`` to ``new``."""
    if direction == Direction.INBOUND:
        # Inbound messages are created as 'received' and never move
        return False
    if current in TERMINAL_STATUSES:
        return False
    if new == MessageStatus.FAILED:
        return current in _FAILABLE
    if new in (MessageStatus.RECEIVED, MessageStatus.SENDING):
        return False
    return _RANK[new] > _RANK[current]


def _dump(metadata: Optional[dict]) -> Optional[str]:
    return json.dumps(metadata) if metadata else None


def _fetch(conn: sqlite3.Connection, message_id: int) -> Optional[Message]:
    row = conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
    return Message.from_row(row) if row else None


def _insert(conn: sqlite3.Connection, fields: dict) -> int:
    columns = ", ".join(fields)
    placeholders = ", ".join("?" for _ in fields)
    cursor = conn.execute(
        f"INSERT INTO messages ({columns}) VALUES ({placeholders})",
        tuple(fields.values()),
    )
    return cursor.lastrowid


def _compare_and_set(
    conn: sqlite3.Connection,
    message_id: int,
    expected: MessageStatus,
    new: MessageStatus,
    **changes,
) -> bool:
    assignments = ["status = ?"] + [f"{column} = ?" for column in changes]
    cursor = conn.execute(
        f"UPDATE messages SET {', '.join(assignments)} WHERE id = ? AND status = ?",
        (new.value, *changes.values(), message_id, expected.value),
    )
    return cursor.rowcount == 1


def get_message(db_path: Path, message_id: int) -> Message:
    """Get a message by ID. Raises NotFound."""
    conn = get_connection(db_path)
    message = _fetch(conn, message_id)
    conn.close()
    if message is None:
        raise NotFound("message", message_id)
    return message


def get_message_by_provider_id(db_path: Path, provider_message_id: str) -> Optional[Message]:
    conn = get_connection(db_path)
    row = conn.execute(
        "SELECT * FROM messages WHERE provider_message_id = ? ORDER BY id DESC LIMIT 1",
        (provider_message_id,),
    ).fetchone()
    conn.close()
    return Message.from_row(row) if row else None


def create_draft(
    db_path: Path,
    caller_id: int,
    recipient_id: Optional[int],
    subject: str,
    body: str,
    now: datetime,
    sender_address: Optional[str] = None,
    recipient_address: Optional[str] = None,
    template_id: Optional[int] = None,
) -> Message:
    """Store a new outbound message with status 'draft'."""
    conn = get_connection(db_path)
    try:
        message_id = _insert(conn, {
            "caller_id": caller_id,
            "direction": Direction.OUTBOUND.value,
            "status": MessageStatus.DRAFT.value,
            "sender_address": sender_address,
            "recipient_address": recipient_address,
            "recipient_id": recipient_id,
            "subject": subject,
            "body": body,
            "template_id": template_id,
            "created_at": to_db(now),
        })
        conn.commit()
        message = _fetch(conn, message_id)
    finally:
        conn.close()

    log.info("draft_created", message_id=message_id, recipient_id=recipient_id)
    return message


def get_live_follow_up(db_path: Path, parent_message_id: int) -> Optional[Message]:
    """The follow-up of a parent that is neither cancelled nor failed, if any."""
    conn = get_connection(db_path)
    row = conn.execute(
        """
        SELECT * FROM messages
        WHERE parent_message_id = ? AND is_follow_up = 1 AND status != 'failed'
        """,
        (parent_message_id,),
    ).fetchone()
    conn.close()
    return Message.from_row(row) if row else None


def create_follow_up(
    db_path: Path,
    parent: Message,
    subject: str,
    body: str,
    scheduled_for: datetime,
    delay_days: int,
    now: datetime,
) -> Message:
    """Store a scheduled follow-up for ``parent``. Raises AlreadyScheduled."""
    conn = get_connection(db_path)
    try:
        message_id = _insert(conn, {
            "caller_id": parent.caller_id,
            "direction": Direction.OUTBOUND.value,
            "status": MessageStatus.SCHEDULED.value,
            "sender_address": parent.sender_address,
            "recipient_address": parent.recipient_address,
            "recipient_id": parent.recipient_id,
            "subject": subject,
            "body": body,
            "created_at": to_db(now),
            "scheduled_for": to_db(scheduled_for),
            "is_follow_up": 1,
            "parent_message_id": parent.id,
            "follow_up_days": delay_days,
            "external_thread_id": parent.external_thread_id,
        })
        conn.commit()
    except sqlite3.IntegrityError:
        existing = conn.execute(
            """
            SELECT id FROM messages
            WHERE parent_message_id = ? AND is_follow_up = 1 AND status != 'failed'
            """,
            (parent.id,),
        ).fetchone()
        raise AlreadyScheduled(parent.id, existing["id"] if existing else None)
    else:
        return _fetch(conn, message_id)
    finally:
        conn.close()


def create_inbound(
    db_path: Path,
    caller_id: int,
    recipient_id: Optional[int],
    sender_address: str,
    recipient_address: str,
    subject: str,
    body: str,
    sent_at: datetime,
    now: datetime,
    dedupe_key: str,
    external_thread_id: Optional[str] = None,
    provider_message_id: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> Optional[Message]:
    """Store a received message. Returns None if it was already imported."""
    conn = get_connection(db_path)
    try:
        message_id = _insert(conn, {
            "caller_id": caller_id,
            "direction": Direction.INBOUND.value,
            "status": MessageStatus.RECEIVED.value,
            "sender_address": sender_address,
            "recipient_address": recipient_address,
            "recipient_id": recipient_id,
            "subject": subject,
            "body": body,
            "created_at": to_db(now),
            "sent_at": to_db(sent_at),
            "received_at": to_db(now),
            "external_thread_id": external_thread_id,
            "provider_message_id": provider_message_id,
            "dedupe_key": dedupe_key,
            "metadata": _dump(metadata),
        })
        conn.commit()
    except sqlite3.IntegrityError:
        return None
    else:
        return _fetch(conn, message_id)
    finally:
        conn.close()


def mark_status(
    db_path: Path,
    message_id: int,
    new_status: MessageStatus,
    now: Optional[datetime] = None,
    scheduled_for: Optional[datetime] = None,
) -> Message:
    """Move a message forward in the status lattice.

    Moving into sent/delivered/opened stamps ``sent_at`` if it is not set yet.
    Raises InvalidTransition (status unchanged) or NotFound.
    """
    new_status = MessageStatus(new_status)
    conn = get_connection(db_path)
    try:
        message = _fetch(conn, message_id)
        if message is None:
            raise NotFound("message", message_id)
        if not can_transition(message.direction, message.status, new_status):
            raise InvalidTransition(message_id, message.status.value, new_status.value)

        changes = {}
        if new_status == MessageStatus.SCHEDULED:
            if scheduled_for is None:
                raise ValueError("scheduled_for is required to schedule a message")
            changes["scheduled_for"] = to_db(scheduled_for)
        if new_status in _SENT_LIKE and message.sent_at is None:
            if now is None:
                raise ValueError("now is required to record sent_at")
            changes["sent_at"] = to_db(now)

        if not _compare_and_set(conn, message_id, message.status, new_status, **changes):
            current = _fetch(conn, message_id)
            raise InvalidTransition(message_id, current.status.value, new_status.value)
        conn.commit()
        updated = _fetch(conn, message_id)
    finally:
        conn.close()

    log.info("message_status_changed", message_id=message_id,
             old=message.status.value, new=new_status.value)
    return updated


def mark_sent(
    db_path: Path,
    message_id: int,
    sent_at: datetime,
    provider_message_id: Optional[str] = None,
    thread_id: Optional[str] = None,
) -> Message:
    """Record a successful send. Only drafts and scheduled (or claimed) messages can be sent."""
    conn = get_connection(db_path)
    try:
        message = _fetch(conn, message_id)
        if message is None:
            raise NotFound("message", message_id)
        if message.direction != Direction.OUTBOUND or message.status not in _SENDABLE:
            raise InvalidTransition(message_id, message.status.value, MessageStatus.SENT.value)

        ok = _compare_and_set(
            conn, message_id, message.status, MessageStatus.SENT,
            sent_at=to_db(sent_at),
            claimed_at=None,
            provider_message_id=provider_message_id or message.provider_message_id,
            external_thread_id=thread_id or message.external_thread_id,
        )
        if not ok:
            current = _fetch(conn, message_id)
            raise InvalidTransition(message_id, current.status.value, MessageStatus.SENT.value)
        conn.commit()
        return _fetch(conn, message_id)
    finally:
        conn.close()


def claim_message(
    db_path: Path,
    message_id: int,
    now: datetime,
    expected: MessageStatus = MessageStatus.SCHEDULED,
) -> Optional[Message]:
    """Atomically flip ``expected -> sending``. Returns None if someone else got there first."""
    conn = get_connection(db_path)
    try:
        if not _compare_and_set(conn, message_id, expected, MessageStatus.SENDING, claimed_at=to_db(now)):
            return None
        conn.commit()
        return _fetch(conn, message_id)
    finally:
        conn.close()


def record_delivery_failure(
    db_path: Path,
    message_id: int,
    error: str,
    now: datetime,
    max_attempts: int,
) -> Message:
    """Count a failed attempt on a claimed message.

    The message goes back to 'scheduled' for another try, or to 'failed' once
    ``max_attempts`` is reached.
    """
    conn = get_connection(db_path)
    try:
        cursor = conn.execute(
            """
            UPDATE messages
            SET attempts = attempts + 1,
                last_error = ?,
                last_attempt_at = ?,
                claimed_at = NULL,
                status = CASE
                    WHEN attempts + 1 >= ? OR scheduled_for IS NULL THEN 'failed'
                    ELSE 'scheduled'
                END
            WHERE id = ? AND status = 'sending'
            """,
            (error, to_db(now), max_attempts, message_id),
        )
        if cursor.rowcount != 1:
            current = _fetch(conn, message_id)
            if current is None:
                raise NotFound("message", message_id)
            raise InvalidTransition(message_id, current.status.value, MessageStatus.FAILED.value)
        conn.commit()
        return _fetch(conn, message_id)
    finally:
        conn.close()


def release_stale_claims(db_path: Path, older_than: datetime) -> int:
    """Recover messages left in 'sending' by a worker that died mid-delivery.

    Scheduled messages become eligible again; one-off sends are marked failed.
    """
    conn = get_connection(db_path)
    try:
        retried = conn.execute(
            """
            UPDATE messages SET status = 'scheduled', claimed_at = NULL
            WHERE status = 'sending' AND claimed_at < ? AND scheduled_for IS NOT NULL
            """,
            (to_db(older_than),),
        ).rowcount
        failed = conn.execute(
            """
            UPDATE messages SET status = 'failed', claimed_at = NULL, last_error = 'Delivery interrupted'
            WHERE status = 'sending' AND claimed_at < ? AND scheduled_for IS NULL
            """,
            (to_db(older_than),),
        ).rowcount
        conn.commit()
    finally:
        conn.close()

    if retried or failed:
        log.warning("stale_claims_released", retried=retried, failed=failed)
    return retried + failed


def cancel_scheduled(db_path: Path, message_id: int, reason: Optional[str] = None) -> Message:
    """Move a scheduled message to 'failed' with a ``cancelled`` marker."""
    conn = get_connection(db_path)
    try:
        message = _fetch(conn, message_id)
        if message is None:
            raise NotFound("message", message_id)
        if message.status != MessageStatus.SCHEDULED:
            raise InvalidTransition(message_id, message.status.value, MessageStatus.FAILED.value)

        metadata = dict(message.metadata, cancelled=True)
        if reason:
            metadata["cancelReason"] = reason
        if not _compare_and_set(conn, message_id, MessageStatus.SCHEDULED, MessageStatus.FAILED,
                                metadata=_dump(metadata)):
            current = _fetch(conn, message_id)
            raise InvalidTransition(message_id, current.status.value, MessageStatus.FAILED.value)
        conn.commit()
        return _fetch(conn, message_id)
    finally:
        conn.close()


def delete_message(db_path: Path, message_id: int) -> None:
    """Delete a draft. Anything else is an ImmutableRecord."""
    conn = get_connection(db_path)
    try:
        message = _fetch(conn, message_id)
        if message is None:
            raise NotFound("message", message_id)
        if message.status != MessageStatus.DRAFT:
            raise ImmutableRecord(message_id, message.status.value)

        cursor = conn.execute(
            "DELETE FROM messages WHERE id = ? AND status = 'draft'", (message_id,)
        )
        if cursor.rowcount != 1:
            current = _fetch(conn, message_id)
            raise ImmutableRecord(message_id, current.status.value if current else "deleted")
        conn.commit()
    finally:
        conn.close()

    log.info("draft_deleted", message_id=message_id)


def list_by_recipient(db_path: Path, recipient_id: int, caller_id: Optional[int] = None) -> list[Message]:
    """Messages exchanged with a recipient, newest first."""
    query = "SELECT * FROM messages WHERE recipient_id = ?"
    params: list = [recipient_id]
    if caller_id is not None:
        query += " AND caller_id = ?"
        params.append(caller_id)
    query += " ORDER BY COALESCE(sent_at, received_at, created_at) DESC, id DESC"

    conn = get_connection(db_path)
    rows = conn.execute(query, params).fetchall()
    conn.close()
    return [Message.from_row(row) for row in rows]


def get_due_messages(db_path: Path, now: datetime) -> list[Message]:
    """Scheduled messages whose time has come, oldest first."""
    conn = get_connection(db_path)
    rows = conn.execute(
        """
        SELECT * FROM messages
        WHERE status = 'scheduled' AND scheduled_for <= ?
        ORDER BY scheduled_for ASC, id ASC
        """,
        (to_db(now),),
    ).fetchall()
    conn.close()
    return [Message.from_row(row) for row in rows]


def get_pending_follow_ups(
    db_path: Path,
    caller_id: int,
    thread_id: Optional[str] = None,
    recipient_id: Optional[int] = None,
) -> list[Message]:
    """Scheduled follow-ups of a caller in one thread or to one recipient."""
    query = """
        SELECT * FROM messages
        WHERE caller_id = ? AND is_follow_up = 1 AND status = 'scheduled'
    """
    params: list = [caller_id]
    if thread_id is not None:
        query += " AND external_thread_id = ?"
        params.append(thread_id)
    if recipient_id is not None:
        query += " AND recipient_id = ?"
        params.append(recipient_id)
    query += " ORDER BY scheduled_for ASC, id ASC"

    conn = get_connection(db_path)
    rows = conn.execute(query, params).fetchall()
    conn.close()
    return [Message.from_row(row) for row in rows]


def get_latest_outbound(db_path: Path, caller_id: int, thread_id: Optional[str] = None) -> Optional[Message]:
    """Most recent sent outbound message of a caller, optionally within one thread."""
    query = """
        SELECT * FROM messages
        WHERE caller_id = ? AND direction = 'outbound'
        AND status IN ('sent', 'delivered', 'opened')
        AND recipient_id IS NOT NULL
    """
    params: list = [caller_id]
    if thread_id is not None:
        query += " AND external_thread_id = ?"
        params.append(thread_id)
    query += " ORDER BY sent_at DESC, id DESC LIMIT 1"

    conn = get_connection(db_path)
    row = conn.execute(query, params).fetchone()
    conn.close()
    return Message.from_row(row) if row else None


def mark_thread_responded(db_path: Path, caller_id: int, thread_id: str) -> int:
    """Flag outbound messages in a thread as answered."""
    conn = get_connection(db_path)
    cursor = conn.execute(
        """
        UPDATE messages SET has_responded = 1
        WHERE caller_id = ? AND external_thread_id = ? AND direction = 'outbound'
        AND status IN ('sent', 'delivered', 'opened')
        """,
        (caller_id, thread_id),
    )
    conn.commit()
    conn.close()
    return cursor.rowcount


def update_metadata(db_path: Path, message_id: int, **updates) -> Message:
    """Merge keys into a message's metadata. Status is untouched."""
    conn = get_connection(db_path)
    try:
        message = _fetch(conn, message_id)
        if message is None:
            raise NotFound("message", message_id)
        conn.execute(
            "UPDATE messages SET metadata = ? WHERE id = ?",
            (_dump(dict(message.metadata, **updates)), message_id),
        )
        conn.commit()
        return _fetch(conn, message_id)
    finally:
        conn.close()


def get_pipeline_stats(db_path: Path, now: datetime, caller_id: Optional[int] = None) -> dict:
    """Get pipeline statistics."""
    where = "WHERE caller_id = ?" if caller_id is not None else ""
    params = (caller_id,) if caller_id is not None else ()

    conn = get_connection(db_path)
    stats = {}

    cursor = conn.execute(
        f"SELECT status, COUNT(*) as count FROM messages {where} GROUP BY status", params
    )
    for row in cursor.fetchall():
        stats[row["status"]] = row["count"]

    due_where = "AND caller_id = ?" if caller_id is not None else ""
    cursor = conn.execute(
        f"SELECT COUNT(*) FROM messages WHERE status = 'scheduled' AND scheduled_for <= ? {due_where}",
        (to_db(now), *params),
    )
    stats["due_for_follow_up"] = cursor.fetchone()[0]

    cursor = conn.execute(
        f"""
        SELECT COUNT(*) FROM messages
        WHERE direction = 'outbound' AND has_responded = 1 {due_where}
        """,
        params,
    )
    stats["responded"] = cursor.fetchone()[0]

    conn.close()
    return stats
