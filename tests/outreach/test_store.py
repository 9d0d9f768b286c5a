"""Tests for the message store and its status lattice."""

from datetime import datetime, timedelta

import pytest

from recruit_outreach.core.errors import AlreadyScheduled, ImmutableRecord, InvalidTransition, NotFound
from recruit_outreach.core.models import Direction, MessageStatus
from recruit_outreach.outreach import store

NOW = datetime(2025, 3, 3, 9, 0, 0)


def _draft(db_path, recipient_id, subject="Prospective student"):
    return store.create_draft(
        db_path, 1, recipient_id, subject, "Hello Coach", NOW,
        sender_address="alex@example.com", recipient_address="coach.doe@state.edu",
    )


def _sent(db_path, recipient_id, thread_id="thread-1", when=NOW):
    draft = _draft(db_path, recipient_id)
    return store.mark_sent(db_path, draft.id, when, provider_message_id=f"p-{draft.id}", thread_id=thread_id)


def test_create_draft(db_path, coach):
    message = _draft(db_path, coach.id)

    assert message.status == MessageStatus.DRAFT
    assert message.direction == Direction.OUTBOUND
    assert message.sent_at is None
    assert message.created_at == NOW
    assert message.attempts == 0


def test_get_message_not_found(db_path):
    with pytest.raises(NotFound):
        store.get_message(db_path, 999)


def test_lattice_moves_forward_and_stamps_sent_at(db_path, coach):
    message = _draft(db_path, coach.id)

    sent = store.mark_status(db_path, message.id, MessageStatus.SENT, now=NOW)
    assert sent.sent_at == NOW

    later = NOW + timedelta(hours=1)
    delivered = store.mark_status(db_path, message.id, MessageStatus.DELIVERED, now=later)
    opened = store.mark_status(db_path, message.id, MessageStatus.OPENED, now=later)

    assert delivered.status == MessageStatus.DELIVERED
    assert opened.status == MessageStatus.OPENED
    assert opened.sent_at == NOW


def test_backwards_transition_rejected_and_status_unchanged(db_path, coach):
    message = _sent(db_path, coach.id)
    store.mark_status(db_path, message.id, MessageStatus.OPENED, now=NOW)

    with pytest.raises(InvalidTransition) as exc:
        store.mark_status(db_path, message.id, MessageStatus.DELIVERED, now=NOW)

    assert exc.value.current == "opened"
    assert store.get_message(db_path, message.id).status == MessageStatus.OPENED


def test_failed_is_terminal(db_path, coach):
    message = _draft(db_path, coach.id)
    store.mark_status(db_path, message.id, MessageStatus.SCHEDULED, scheduled_for=NOW)
    store.mark_status(db_path, message.id, MessageStatus.FAILED)

    with pytest.raises(InvalidTransition):
        store.mark_status(db_path, message.id, MessageStatus.SENT, now=NOW)
    with pytest.raises(InvalidTransition):
        store.mark_sent(db_path, message.id, NOW)


def test_scheduling_requires_a_time(db_path, coach):
    message = _draft(db_path, coach.id)

    with pytest.raises(ValueError):
        store.mark_status(db_path, message.id, MessageStatus.SCHEDULED)

    assert store.get_message(db_path, message.id).status == MessageStatus.DRAFT


def test_mark_sent_only_from_draft_or_scheduled(db_path, coach):
    message = _sent(db_path, coach.id)
    store.mark_status(db_path, message.id, MessageStatus.DELIVERED, now=NOW)

    with pytest.raises(InvalidTransition):
        store.mark_sent(db_path, message.id, NOW)


def test_mark_sent_records_provider_ids(db_path, coach):
    message = _sent(db_path, coach.id, thread_id="thread-42")

    assert message.status == MessageStatus.SENT
    assert message.sent_at == NOW
    assert message.external_thread_id == "thread-42"
    assert message.provider_message_id == f"p-{message.id}"


def test_inbound_messages_never_change_status(db_path, coach):
    inbound = store.create_inbound(
        db_path, 1, coach.id, "coach.doe@state.edu", "alex@example.com",
        "Re: Prospective student", "Thanks!", NOW, NOW, dedupe_key="k1",
    )

    assert inbound.status == MessageStatus.RECEIVED
    assert inbound.received_at == NOW
    with pytest.raises(InvalidTransition):
        store.mark_status(db_path, inbound.id, MessageStatus.OPENED, now=NOW)


def test_duplicate_inbound_returns_none(db_path, coach):
    args = (db_path, 1, coach.id, "coach.doe@state.edu", "alex@example.com", "Re: Hi", "Thanks", NOW, NOW)

    assert store.create_inbound(*args, dedupe_key="same") is not None
    assert store.create_inbound(*args, dedupe_key="same") is None


def test_delete_only_drafts(db_path, coach):
    draft = _draft(db_path, coach.id)
    sent = _sent(db_path, coach.id)

    store.delete_message(db_path, draft.id)

    with pytest.raises(NotFound):
        store.get_message(db_path, draft.id)
    with pytest.raises(ImmutableRecord):
        store.delete_message(db_path, sent.id)


def test_claim_is_exclusive(db_path, coach):
    draft = _draft(db_path, coach.id)

    first = store.claim_message(db_path, draft.id, NOW, expected=MessageStatus.DRAFT)
    second = store.claim_message(db_path, draft.id, NOW, expected=MessageStatus.DRAFT)

    assert first.status == MessageStatus.SENDING
    assert first.claimed_at == NOW
    assert second is None


def test_follow_up_copies_thread_and_is_unique(db_path, coach):
    parent = _sent(db_path, coach.id, thread_id="thread-7")

    follow_up = store.create_follow_up(
        db_path, parent, "Follow-up: Prospective student", "Just checking in",
        scheduled_for=NOW + timedelta(days=3), delay_days=3, now=NOW,
    )

    assert follow_up.is_follow_up
    assert follow_up.parent_message_id == parent.id
    assert follow_up.external_thread_id == "thread-7"
    assert follow_up.status == MessageStatus.SCHEDULED

    with pytest.raises(AlreadyScheduled) as exc:
        store.create_follow_up(
            db_path, parent, "Follow-up again", "Body",
            scheduled_for=NOW + timedelta(days=4), delay_days=4, now=NOW,
        )
    assert exc.value.existing_id == follow_up.id


def test_cancel_marks_failed_and_allows_rescheduling(db_path, coach):
    parent = _sent(db_path, coach.id)
    follow_up = store.create_follow_up(
        db_path, parent, "Follow-up", "Body", NOW + timedelta(days=3), 3, NOW,
    )

    cancelled = store.cancel_scheduled(db_path, follow_up.id)

    assert cancelled.status == MessageStatus.FAILED
    assert cancelled.metadata["cancelled"] is True
    assert store.get_live_follow_up(db_path, parent.id) is None

    again = store.create_follow_up(
        db_path, parent, "Follow-up", "Body", NOW + timedelta(days=5), 5, NOW,
    )
    assert again.status == MessageStatus.SCHEDULED

    with pytest.raises(InvalidTransition):
        store.cancel_scheduled(db_path, cancelled.id)


def test_delivery_failure_retries_until_max_attempts(db_path, coach):
    parent = _sent(db_path, coach.id)
    follow_up = store.create_follow_up(db_path, parent, "Follow-up", "Body", NOW, 0, NOW)

    for attempt in (1, 2):
        store.claim_message(db_path, follow_up.id, NOW)
        updated = store.record_delivery_failure(db_path, follow_up.id, "SMTP timeout", NOW, max_attempts=3)
        assert updated.status == MessageStatus.SCHEDULED
        assert updated.attempts == attempt
        assert updated.claimed_at is None

    store.claim_message(db_path, follow_up.id, NOW)
    final = store.record_delivery_failure(db_path, follow_up.id, "SMTP timeout", NOW, max_attempts=3)

    assert final.status == MessageStatus.FAILED
    assert final.attempts == 3
    assert final.last_error == "SMTP timeout"
    assert final.last_attempt_at == NOW


def test_delivery_failure_of_one_off_send_is_final(db_path, coach):
    draft = _draft(db_path, coach.id)
    store.claim_message(db_path, draft.id, NOW, expected=MessageStatus.DRAFT)

    failed = store.record_delivery_failure(db_path, draft.id, "Mailbox full", NOW, max_attempts=3)

    assert failed.status == MessageStatus.FAILED
    assert failed.attempts == 1


def test_release_stale_claims(db_path, coach):
    parent = _sent(db_path, coach.id)
    follow_up = store.create_follow_up(db_path, parent, "Follow-up", "Body", NOW, 0, NOW)
    one_off = _draft(db_path, coach.id)

    store.claim_message(db_path, follow_up.id, NOW)
    store.claim_message(db_path, one_off.id, NOW, expected=MessageStatus.DRAFT)

    assert store.release_stale_claims(db_path, NOW - timedelta(minutes=1)) == 0
    assert store.release_stale_claims(db_path, NOW + timedelta(minutes=31)) == 2

    assert store.get_message(db_path, follow_up.id).status == MessageStatus.SCHEDULED
    assert store.get_message(db_path, one_off.id).status == MessageStatus.FAILED


def test_list_by_recipient_newest_first(db_path, coach, directory):
    other = directory.add_recipient("Sam Lee", "sam@tech.edu", "Tech")
    older = _sent(db_path, coach.id, thread_id="t-old", when=NOW)
    newer = _sent(db_path, coach.id, thread_id="t-new", when=NOW + timedelta(days=1))
    _sent(db_path, other.id, thread_id="t-other")

    history = store.list_by_recipient(db_path, coach.id, caller_id=1)

    assert [m.id for m in history] == [newer.id, older.id]
    assert store.list_by_recipient(db_path, coach.id, caller_id=2) == []


def test_get_latest_outbound_by_thread(db_path, coach):
    first = _sent(db_path, coach.id, thread_id="t-1", when=NOW)
    _sent(db_path, coach.id, thread_id="t-2", when=NOW + timedelta(hours=1))

    assert store.get_latest_outbound(db_path, 1, "t-1").id == first.id
    assert store.get_latest_outbound(db_path, 1).external_thread_id == "t-2"
    assert store.get_latest_outbound(db_path, 1, "t-missing") is None


def test_pipeline_stats(db_path, coach):
    _draft(db_path, coach.id)
    parent = _sent(db_path, coach.id)
    store.create_follow_up(db_path, parent, "Follow-up", "Body", NOW, 0, NOW)
    store.mark_thread_responded(db_path, 1, parent.external_thread_id)

    stats = store.get_pipeline_stats(db_path, NOW)

    assert stats["draft"] == 1
    assert stats["sent"] == 1
    assert stats["scheduled"] == 1
    assert stats["due_for_follow_up"] == 1
    assert stats["responded"] == 2
