"""Follow-up scheduling and firing."""

import inspect
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import structlog

from recruit_outreach.clients.delivery import DeliveryAdapter, deliver_with_timeout
from recruit_outreach.core.errors import AlreadyScheduled, InvalidTransition
from recruit_outreach.core.models import Direction, Message, MessageStatus
from recruit_outreach.outreach import activity
from recruit_outreach.outreach.composer import BodyTemplateFn, follow_up_subject
from recruit_outreach.outreach.directory import Directory
from recruit_outreach.outreach.store import (
    cancel_scheduled,
    claim_message,
    create_follow_up,
    get_due_messages,
    get_message,
    get_live_follow_up,
    mark_sent,
    record_delivery_failure,
    release_stale_claims,
)

log = structlog.get_logger()

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_STALE_AFTER = timedelta(minutes=30)


async def schedule_follow_up(
    db_path: Path,
    parent: Message,
    delay_days: int,
    body_template_fn: BodyTemplateFn,
    directory: Directory,
    now: datetime,
    subject_prefix: str = "Follow-up: ",
) -> Message:
    """Schedule the single follow-up for a sent message.

    ``scheduled_for`` is ``now`` plus ``delay_days`` calendar days. The body
    comes from ``body_template_fn(parent, recipient)``, which may be a plain
    function or a coroutine function.

    Raises AlreadyScheduled if the parent already has a live follow-up.
    """
    if delay_days < 0:
        raise ValueError(f"delay_days must not be negative, got {delay_days}")
    if parent.direction != Direction.OUTBOUND or parent.status not in (
        MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.OPENED
    ):
        raise ValueError(f"Message {parent.id} has not been sent; nothing to follow up on")

    existing = get_live_follow_up(db_path, parent.id)
    if existing is not None:
        raise AlreadyScheduled(parent.id, existing.id)

    recipient = directory.get_recipient(parent.recipient_id)
    body = body_template_fn(parent, recipient)
    if inspect.isawaitable(body):
        body = await body

    scheduled_for = now + timedelta(days=delay_days)
    follow_up = create_follow_up(
        db_path,
        parent=parent,
        subject=follow_up_subject(parent.subject, subject_prefix),
        body=body,
        scheduled_for=scheduled_for,
        delay_days=delay_days,
        now=now,
    )

    activity.record_activity(
        db_path, parent.caller_id, activity.FOLLOW_UP_SCHEDULED,
        f"Follow-up to {recipient.name} scheduled for {scheduled_for.date().isoformat()}",
        timestamp=now,
        recipient_id=recipient.id,
        metadata={"emailId": follow_up.id, "parentEmailId": parent.id},
    )
    log.info("follow_up_scheduled", message_id=follow_up.id, parent_id=parent.id,
             scheduled_for=scheduled_for.isoformat())
    return follow_up


def due_follow_ups(db_path: Path, now: datetime) -> list[Message]:
    """Scheduled messages due at ``now``, oldest first. Reading consumes nothing."""
    return get_due_messages(db_path, now)


async def _fire_one(
    db_path: Path,
    message: Message,
    adapter: DeliveryAdapter,
    directory: Directory,
    now: datetime,
    max_attempts: int,
    timeout_seconds: float,
) -> str:
    claimed = claim_message(db_path, message.id, now)
    if claimed is None:
        log.info("follow_up_skipped", message_id=message.id, reason="already_claimed")
        return "skipped"

    result = await deliver_with_timeout(adapter, claimed, timeout_seconds)

    if result.success:
        sent = mark_sent(db_path, claimed.id, now,
                         provider_message_id=result.provider_message_id,
                         thread_id=result.thread_id)
        if sent.recipient_id is not None:
            directory.touch_last_contacted(sent.recipient_id, now)
        activity.record_activity(
            db_path, sent.caller_id, activity.FOLLOW_UP_SENT,
            f"Follow-up email sent to {sent.recipient_address}",
            timestamp=now,
            recipient_id=sent.recipient_id,
            metadata={"emailId": sent.id, "parentEmailId": sent.parent_message_id},
        )
        log.info("follow_up_sent", message_id=sent.id, attempts=sent.attempts + 1)
        return "sent"

    updated = record_delivery_failure(db_path, claimed.id, result.error or "Unknown error",
                                      now, max_attempts)
    if updated.status == MessageStatus.FAILED:
        activity.record_activity(
            db_path, updated.caller_id, activity.FOLLOW_UP_FAILED,
            f"Follow-up email to {updated.recipient_address} failed after {updated.attempts} attempts",
            timestamp=now,
            recipient_id=updated.recipient_id,
            metadata={"emailId": updated.id, "error": updated.last_error},
        )
        log.error("follow_up_failed", message_id=updated.id, attempts=updated.attempts,
                  error=updated.last_error)
        return "failed"

    log.warning("follow_up_retry", message_id=updated.id, attempts=updated.attempts,
                error=updated.last_error)
    return "retrying"


async def fire_due_follow_ups(
    db_path: Path,
    adapter: DeliveryAdapter,
    directory: Directory,
    now: datetime,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    stale_after: Optional[timedelta] = DEFAULT_STALE_AFTER,
) -> dict:
    """Deliver every due follow-up once.

    Safe to run concurrently and repeatedly: each message is claimed before
    delivery and anything no longer 'scheduled' is skipped. One message's
    failure never stops the rest.

    Returns summary dict.
    """
    if stale_after is not None:
        release_stale_claims(db_path, now - stale_after)

    results = {
        "sent": 0,
        "retrying": 0,
        "failed": 0,
        "skipped": 0,
        "errors": 0,
        "exhausted": [],
    }

    due = due_follow_ups(db_path, now)
    log.info("follow_ups_due", count=len(due))

    for message in due:
        try:
            outcome = await _fire_one(db_path, message, adapter, directory, now,
                                      max_attempts, timeout_seconds)
        except Exception as e:
            log.error("follow_up_fire_error", message_id=message.id, error=str(e))
            results["errors"] += 1
            continue

        results[outcome] += 1
        if outcome == "failed":
            results["exhausted"].append(message.id)

    return results


def cancel_follow_up(db_path: Path, message_id: int, now: datetime) -> Message:
    """Cancel a scheduled follow-up, keeping it on record as failed + cancelled."""
    message = get_message(db_path, message_id)
    if not message.is_follow_up:
        raise InvalidTransition(message_id, message.status.value, MessageStatus.FAILED.value)

    cancelled = cancel_scheduled(db_path, message_id)
    activity.record_activity(
        db_path, cancelled.caller_id, activity.FOLLOW_UP_CANCELLED,
        f"Follow-up to {cancelled.recipient_address} cancelled",
        timestamp=now,
        recipient_id=cancelled.recipient_id,
        metadata={"emailId": cancelled.id},
    )
    log.info("follow_up_cancelled", message_id=message_id)
    return cancelled
