"""Reply importer: turns inbound emails into messages threaded to a coach."""

import re
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional, Union

import structlog

from recruit_outreach.core.errors import InvalidTransition, ReplyImportError
from recruit_outreach.core.models import CallerContext, InboundDescriptor, Message
from recruit_outreach.outreach import activity
from recruit_outreach.outreach.directory import Directory
from recruit_outreach.outreach.store import (
    cancel_scheduled,
    create_inbound,
    get_latest_outbound,
    get_pending_follow_ups,
    mark_thread_responded,
)

log = structlog.get_logger()

_ANGLE_ADDRESS = re.compile(r"<([^>]+)>")
_PLAIN_ADDRESS = re.compile(r"([a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,})")
_ATTRIBUTION = re.compile(r"^On .+ wrote:$", re.IGNORECASE)


def extract_email_address(value: Optional[str]) -> Optional[str]:
    """Pull the bare address out of strings like ``"Coach Doe <doe@school.edu>"``.

    Returns the lower-cased address, or None when nothing valid is found.
    """
    if not value:
        return None

    angle = _ANGLE_ADDRESS.search(value)
    candidate = angle.group(1) if angle else value
    match = _PLAIN_ADDRESS.search(candidate)
    if match:
        return match.group(1).strip().lower()
    return None


def strip_email_history(text: str) -> str:
    """Drop quoted lines and everything after the ``On ... wrote:`` attribution."""
    out = []
    for raw_line in text.splitlines():
        line = raw_line.rstrip()
        if _ATTRIBUTION.match(line):
            break
        if line.lstrip().startswith(">"):
            continue
        out.append(raw_line)

    while out and not out[0].strip():
        out.pop(0)
    while out and not out[-1].strip():
        out.pop()
    return "\n".join(out)


def _cancel_answered_follow_up(db_path: Path, follow_up: Message, reply_id: int, now: datetime) -> None:
    """The coach wrote back, so the pending follow-up must not go out."""
    try:
        cancelled = cancel_scheduled(db_path, follow_up.id, reason="replied")
    except InvalidTransition:
        # Claimed by a firing run in the meantime
        log.warning("follow_up_cancel_missed", message_id=follow_up.id, reply_id=reply_id)
        return

    activity.record_activity(
        db_path, cancelled.caller_id, activity.FOLLOW_UP_CANCELLED,
        f"Follow-up to {cancelled.recipient_address} cancelled, reply received",
        timestamp=now,
        recipient_id=cancelled.recipient_id,
        metadata={"emailId": cancelled.id, "replyId": reply_id},
    )
    log.info("follow_up_cancelled", message_id=cancelled.id, reason="replied", reply_id=reply_id)


def _import_one(
    db_path: Path,
    caller: CallerContext,
    descriptor: InboundDescriptor,
    directory: Directory,
    now: datetime,
) -> bool:
    """Store one reply. Returns False when it was already imported."""
    from_address = extract_email_address(descriptor.from_)
    to_address = extract_email_address(descriptor.to)
    if not from_address or not to_address:
        raise ReplyImportError(
            f"Invalid email addresses - to: {descriptor.to!r}, from: {descriptor.from_!r}"
        )

    metadata = {}
    thread_parent = None
    if descriptor.external_thread_id:
        thread_parent = get_latest_outbound(db_path, caller.caller_id, descriptor.external_thread_id)
        if thread_parent is not None:
            metadata["repliesToMessageId"] = thread_parent.id

    recipient = directory.find_recipient_by_email(from_address)
    if recipient is not None:
        recipient_id = recipient.id
    elif thread_parent is not None:
        # Coach answered from another address, but on our thread
        recipient_id = thread_parent.recipient_id
        metadata["resolvedByThread"] = True
    else:
        previous = get_latest_outbound(db_path, caller.caller_id)
        if previous is None:
            raise ReplyImportError(f"No recipient found for {from_address}")
        recipient_id = previous.recipient_id
        metadata["resolvedByFallback"] = True
        log.warning("reply_resolved_by_fallback", sender=from_address, recipient_id=recipient_id)

    body = descriptor.body or ""
    cleaned = strip_email_history(body)

    message = create_inbound(
        db_path,
        caller_id=caller.caller_id,
        recipient_id=recipient_id,
        sender_address=from_address,
        recipient_address=to_address,
        subject=descriptor.subject or "(No subject)",
        body=cleaned or body,
        sent_at=descriptor.date or now,
        now=now,
        dedupe_key=descriptor.dedupe_key(),
        external_thread_id=descriptor.external_thread_id,
        provider_message_id=descriptor.provider_message_id,
        metadata=metadata,
    )
    if message is None:
        log.info("reply_duplicate_skipped", sender=from_address, subject=descriptor.subject)
        return False

    if descriptor.external_thread_id:
        mark_thread_responded(db_path, caller.caller_id, descriptor.external_thread_id)
        pending = get_pending_follow_ups(db_path, caller.caller_id, thread_id=descriptor.external_thread_id)
    elif recipient is not None:
        pending = get_pending_follow_ups(db_path, caller.caller_id, recipient_id=recipient.id)
    else:
        pending = []
    for follow_up in pending:
        _cancel_answered_follow_up(db_path, follow_up, message.id, now)

    activity.record_activity(
        db_path, caller.caller_id, activity.EMAIL_RECEIVED,
        f"Email received from {from_address}",
        timestamp=now,
        recipient_id=recipient_id,
        metadata={"emailId": message.id, "subject": message.subject},
    )
    log.info("reply_imported", message_id=message.id, recipient_id=recipient_id, **metadata)
    return True


def import_batch(
    db_path: Path,
    caller: CallerContext,
    descriptors: Iterable[Union[InboundDescriptor, dict]],
    directory: Directory,
    now: datetime,
) -> dict:
    """Import inbound emails for a caller.

    Bad records are counted and skipped, never raised.

    Returns dict with imported, skipped (already imported) and errors counts.
    """
    imported = 0
    skipped = 0
    errors = 0

    for raw in descriptors:
        try:
            descriptor = raw if isinstance(raw, InboundDescriptor) else InboundDescriptor.from_dict(raw)
            if _import_one(db_path, caller, descriptor, directory, now):
                imported += 1
            else:
                skipped += 1
        except ReplyImportError as e:
            log.warning("reply_import_rejected", error=str(e))
            errors += 1
        except Exception as e:
            log.error("reply_import_failed", error=str(e))
            errors += 1

    return {"imported": imported, "skipped": skipped, "errors": errors}
