"""Outreach lifecycle: the entry point for sending, drafts, follow-ups and replies.

Every operation takes the caller explicitly; nothing is read from ambient
session state. Messages belonging to another caller are reported as missing.
"""

import asyncio
import inspect
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, Optional, Union

import structlog

from recruit_outreach.clients.delivery import DeliveryAdapter, deliver_with_timeout
from recruit_outreach.core.clock import Clock, SystemClock
from recruit_outreach.core.config import DEFAULT_CONFIG_PATH, Settings
from recruit_outreach.core.db import DEFAULT_DB_PATH
from recruit_outreach.core.errors import DeliveryFailed, InvalidTransition, NotFound
from recruit_outreach.core.models import (
    CallerContext,
    FollowUpConfig,
    InboundDescriptor,
    Message,
    MessageStatus,
    Recipient,
    Task,
)
from recruit_outreach.outreach import activity, scheduler, store, tasks
from recruit_outreach.outreach.composer import body_fn_for, follow_up_subject
from recruit_outreach.outreach.directory import Directory
from recruit_outreach.outreach.importer import extract_email_address, import_batch
from recruit_outreach.services.notifier import SlackNotifier

log = structlog.get_logger()

# Provider webhook event -> message status
PROVIDER_EVENTS = {
    "delivered": MessageStatus.DELIVERED,
    "open": MessageStatus.OPENED,
    "opened": MessageStatus.OPENED,
    "bounce": MessageStatus.FAILED,
    "bounced": MessageStatus.FAILED,
    "dropped": MessageStatus.FAILED,
}


class OutreachLifecycle:
    """Composes the message store, scheduler, importer, directory and delivery adapter."""

    def __init__(
        self,
        directory: Directory,
        adapter: DeliveryAdapter,
        db_path: Path = DEFAULT_DB_PATH,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        notifier: Optional[SlackNotifier] = None,
        config_path: Path = DEFAULT_CONFIG_PATH,
    ):
        self.directory = directory
        self.adapter = adapter
        self.db_path = db_path
        self.settings = settings or Settings()
        self.clock = clock or SystemClock()
        self.notifier = notifier
        self.config_path = config_path

    # -- helpers ---------------------------------------------------------

    def _owned_message(self, caller: CallerContext, message_id: int) -> Message:
        message = store.get_message(self.db_path, message_id)
        if message.caller_id != caller.caller_id:
            raise NotFound("message", message_id)
        return message

    def _owned_task(self, caller: CallerContext, task_id: int) -> Task:
        task = tasks.get_task(self.db_path, task_id)
        if task.caller_id != caller.caller_id:
            raise NotFound("task", task_id)
        return task

    def _sender_name(self, caller: CallerContext) -> str:
        return caller.name or self.settings.gmail.from_name

    async def _deliver(
        self,
        message: Message,
        recipient: Recipient,
        expected: MessageStatus = MessageStatus.DRAFT,
        activity_type: str = activity.EMAIL_SENT,
    ) -> Message:
        """Claim, deliver and record one message. Raises DeliveryFailed."""
        now = self.clock.now()

        claimed = store.claim_message(self.db_path, message.id, now, expected=expected)
        if claimed is None:
            current = store.get_message(self.db_path, message.id)
            raise InvalidTransition(message.id, current.status.value, MessageStatus.SENDING.value)

        result = await deliver_with_timeout(self.adapter, claimed, self.settings.delivery.timeout_seconds)

        if not result.success:
            error = result.error or "Unknown error"
            store.record_delivery_failure(self.db_path, message.id, error, now, max_attempts=1)
            log.error("send_failed", message_id=message.id, to=recipient.email, error=error)
            raise DeliveryFailed(error, message_id=message.id)

        sent = store.mark_sent(self.db_path, message.id, now,
                               provider_message_id=result.provider_message_id,
                               thread_id=result.thread_id)
        self.directory.touch_last_contacted(recipient.id, now)

        activity.record_activity(
            self.db_path, sent.caller_id, activity_type,
            f"Email sent to {recipient.name}",
            timestamp=now,
            recipient_id=recipient.id,
            metadata={"emailId": sent.id, "subject": sent.subject},
        )
        log.info("email_sent", message_id=sent.id, to=recipient.email, thread_id=sent.external_thread_id)
        return sent

    async def _arrange_follow_up(
        self,
        caller: CallerContext,
        sent: Message,
        recipient: Recipient,
        follow_up: FollowUpConfig,
    ) -> Union[Message, Task]:
        now = self.clock.now()
        subject = follow_up.subject or follow_up_subject(sent.subject, self.settings.follow_up.subject_prefix)

        if not follow_up.auto_send:
            task = tasks.create_task(
                self.db_path,
                caller_id=caller.caller_id,
                title=f"Follow up with {recipient.name}",
                due_date=now + timedelta(days=follow_up.days),
                message_id=sent.id,
                recipient_id=recipient.id,
                metadata={"emailId": sent.id, "suggestedSubject": subject},
            )
            return task

        body_fn = body_fn_for(self.settings.follow_up.use_ai, self._sender_name(caller), self.config_path)
        return await scheduler.schedule_follow_up(
            self.db_path, sent, follow_up.days, body_fn, self.directory, now,
            subject_prefix=self.settings.follow_up.subject_prefix,
        )

    async def _follow_up_after_send(
        self,
        caller: CallerContext,
        sent: Message,
        recipient: Recipient,
        follow_up: FollowUpConfig,
    ) -> Message:
        """Arrange the follow-up and note the outcome in the sent message's metadata."""
        try:
            arranged = await self._arrange_follow_up(caller, sent, recipient, follow_up)
        except Exception as e:
            # The email is already out; report the follow-up problem without failing the send
            log.error("follow_up_arrangement_failed", message_id=sent.id, error=str(e))
            return store.update_metadata(self.db_path, sent.id, followUpError=str(e))

        if isinstance(arranged, Task):
            return store.update_metadata(self.db_path, sent.id, followUpTaskId=arranged.id)
        return store.update_metadata(self.db_path, sent.id, followUpId=arranged.id)

    # -- sending ---------------------------------------------------------

    async def send(
        self,
        caller: CallerContext,
        recipient_id: int,
        subject: str,
        body: str,
        follow_up: Optional[FollowUpConfig] = None,
        template_id: Optional[int] = None,
    ) -> Message:
        """Send a new email to a recipient.

        On success the message is 'sent' and the optional follow-up is arranged.
        On adapter failure the message is stored as 'failed' and DeliveryFailed
        carries the adapter's error text.
        """
        recipient = self.directory.get_recipient(recipient_id)

        draft = store.create_draft(
            self.db_path, caller.caller_id, recipient.id, subject, body, self.clock.now(),
            sender_address=caller.from_address,
            recipient_address=recipient.email,
            template_id=template_id,
        )
        sent = await self._deliver(draft, recipient)

        if follow_up is not None:
            sent = await self._follow_up_after_send(caller, sent, recipient, follow_up)

        return sent

    def save_draft(
        self,
        caller: CallerContext,
        recipient_id: int,
        subject: str,
        body: str,
        template_id: Optional[int] = None,
    ) -> Message:
        recipient = self.directory.get_recipient(recipient_id)
        return store.create_draft(
            self.db_path, caller.caller_id, recipient.id, subject, body, self.clock.now(),
            sender_address=caller.from_address,
            recipient_address=recipient.email,
            template_id=template_id,
        )

    async def send_existing_draft(
        self,
        caller: CallerContext,
        message_id: int,
        follow_up: Optional[FollowUpConfig] = None,
    ) -> Message:
        """Send a stored draft. Raises NotFound if the message is not a draft."""
        message = self._owned_message(caller, message_id)
        if message.status != MessageStatus.DRAFT:
            raise NotFound("draft", message_id)

        recipient = self.directory.get_recipient(message.recipient_id)
        sent = await self._deliver(message, recipient)

        if follow_up is not None:
            sent = await self._follow_up_after_send(caller, sent, recipient, follow_up)

        return sent

    def delete_message(self, caller: CallerContext, message_id: int) -> None:
        self._owned_message(caller, message_id)
        store.delete_message(self.db_path, message_id)

    def history(self, caller: CallerContext, recipient_id: int) -> list[Message]:
        return store.list_by_recipient(self.db_path, recipient_id, caller.caller_id)

    def stats(self, caller: Optional[CallerContext] = None) -> dict:
        return store.get_pipeline_stats(
            self.db_path, self.clock.now(), caller.caller_id if caller else None
        )

    # -- follow-ups ------------------------------------------------------

    def cancel_follow_up(self, caller: CallerContext, message_id: int) -> Message:
        self._owned_message(caller, message_id)
        return scheduler.cancel_follow_up(self.db_path, message_id, self.clock.now())

    def due_follow_ups(self, now: Optional[datetime] = None) -> list[Message]:
        return scheduler.due_follow_ups(self.db_path, now or self.clock.now())

    async def fire_due_follow_ups(self, now: Optional[datetime] = None) -> dict:
        """Periodic job: deliver due follow-ups and alert on exhausted ones."""
        follow_up_settings = self.settings.follow_up
        results = await scheduler.fire_due_follow_ups(
            self.db_path,
            self.adapter,
            self.directory,
            now or self.clock.now(),
            max_attempts=follow_up_settings.max_attempts,
            timeout_seconds=self.settings.delivery.timeout_seconds,
            stale_after=timedelta(minutes=follow_up_settings.stale_claim_minutes),
        )

        if results["exhausted"] and self.notifier and self.settings.notifications.notify_on_exhausted:
            failed = [store.get_message(self.db_path, mid) for mid in results["exhausted"]]
            await self.notifier.send_failures(failed)

        return results

    def follow_up_tasks(self, caller: CallerContext, include_completed: bool = False) -> list[Task]:
        return tasks.list_tasks(self.db_path, caller.caller_id,
                                completed=None if include_completed else False)

    def complete_follow_up_task(self, caller: CallerContext, task_id: int) -> Task:
        task = self._owned_task(caller, task_id)
        done = tasks.complete_task(self.db_path, task.id)
        activity.record_activity(
            self.db_path, caller.caller_id, activity.TASK_COMPLETED,
            f"Completed task: {task.title}",
            timestamp=self.clock.now(),
            recipient_id=task.recipient_id,
            metadata={"taskId": task.id},
        )
        return done

    def skip_follow_up_task(self, caller: CallerContext, task_id: int) -> Task:
        task = self._owned_task(caller, task_id)
        done = tasks.complete_task(self.db_path, task.id, skipped=True)
        activity.record_activity(
            self.db_path, caller.caller_id, activity.TASK_SKIPPED,
            f"Skipped task: {task.title}",
            timestamp=self.clock.now(),
            recipient_id=task.recipient_id,
            metadata={"taskId": task.id},
        )
        return done

    async def send_follow_up_from_task(
        self,
        caller: CallerContext,
        task_id: int,
        subject: Optional[str] = None,
        body: Optional[str] = None,
    ) -> Message:
        """Send the follow-up a reminder task stands for, then close the task."""
        task = self._owned_task(caller, task_id)
        if task.completed:
            raise NotFound("open task", task_id)
        if task.message_id is None:
            raise ValueError(f"Task {task_id} is not linked to an email")

        parent = self._owned_message(caller, task.message_id)
        recipient = self.directory.get_recipient(parent.recipient_id)
        now = self.clock.now()

        if body is None:
            body_fn = body_fn_for(self.settings.follow_up.use_ai, self._sender_name(caller), self.config_path)
            body = body_fn(parent, recipient)
            if inspect.isawaitable(body):
                body = await body

        follow_up = store.create_follow_up(
            self.db_path,
            parent=parent,
            subject=subject or task.metadata.get("suggestedSubject")
            or follow_up_subject(parent.subject, self.settings.follow_up.subject_prefix),
            body=body,
            scheduled_for=now,
            delay_days=0,
            now=now,
        )
        sent = await self._deliver(follow_up, recipient, expected=MessageStatus.SCHEDULED,
                                   activity_type=activity.FOLLOW_UP_SENT)
        tasks.complete_task(self.db_path, task.id, sentMessageId=sent.id)
        return sent

    # -- replies and provider events -------------------------------------

    def import_replies(
        self,
        caller: CallerContext,
        descriptors: Iterable[Union[InboundDescriptor, dict]],
    ) -> dict:
        return import_batch(self.db_path, caller, descriptors, self.directory, self.clock.now())

    async def poll_and_import(self, caller: CallerContext, since: Optional[datetime] = None) -> dict:
        """Pull the inbox and import replies.

        Only mail from a directory address or on a thread the caller started is
        considered, so newsletters never reach the fallback resolution.
        """
        polled = await asyncio.wait_for(
            self.adapter.poll_inbox(since), timeout=self.settings.delivery.timeout_seconds
        )

        relevant = []
        for descriptor in polled:
            sender = extract_email_address(descriptor.from_)
            if sender and self.directory.find_recipient_by_email(sender):
                relevant.append(descriptor)
            elif descriptor.external_thread_id and store.get_latest_outbound(
                self.db_path, caller.caller_id, descriptor.external_thread_id
            ):
                relevant.append(descriptor)

        results = self.import_replies(caller, relevant)
        results["polled"] = len(polled)
        log.info("inbox_polled", caller_id=caller.caller_id, **results)
        return results

    def record_provider_event(self, provider_message_id: str, event: str) -> Optional[Message]:
        """Apply a delivery/open/bounce event reported by the mail provider.

        Unknown messages and out-of-order events are ignored and return None.
        """
        new_status = PROVIDER_EVENTS.get(event.lower())
        if new_status is None:
            log.info("provider_event_unmapped", provider_event=event)
            return None

        message = store.get_message_by_provider_id(self.db_path, provider_message_id)
        if message is None:
            log.warning("provider_event_unknown_message", provider_message_id=provider_message_id)
            return None

        try:
            return store.mark_status(self.db_path, message.id, new_status, now=self.clock.now())
        except InvalidTransition as e:
            log.info("provider_event_ignored", message_id=message.id, provider_event=event, reason=str(e))
            return None
