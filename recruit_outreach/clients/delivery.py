"""Delivery adapter contract and transport selection."""

import asyncio
from datetime import datetime
from typing import Optional, Protocol

import structlog

from recruit_outreach.clients.gmail import GmailAdapter
from recruit_outreach.clients.sendgrid import SendGridAdapter
from recruit_outreach.core.config import Settings
from recruit_outreach.core.models import DeliveryResult, InboundDescriptor, Message

log = structlog.get_logger()

NO_PROVIDER_ERROR = "No email provider configured"


class DeliveryAdapter(Protocol):
    async def deliver(self, message: Message) -> DeliveryResult:
        ...

    async def poll_inbox(self, since: Optional[datetime]) -> list[InboundDescriptor]:
        ...


async def deliver_with_timeout(
    adapter: DeliveryAdapter,
    message: Message,
    timeout_seconds: float,
) -> DeliveryResult:
    """Call ``adapter.deliver`` with a hard timeout.

    Timeouts and unexpected adapter exceptions come back as failed results so
    callers have a single failure path.
    """
    try:
        return await asyncio.wait_for(adapter.deliver(message), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        log.error("delivery_timeout", message_id=message.id, timeout=timeout_seconds)
        return DeliveryResult(success=False, error=f"Delivery timed out after {timeout_seconds:g}s")
    except Exception as e:
        log.error("delivery_error", message_id=message.id, error=str(e))
        return DeliveryResult(success=False, error=str(e))


class FallbackDeliveryAdapter:
    """Gmail first, SendGrid when Gmail is not configured or its send fails.

    Inbox polling only exists on the Gmail side.
    """

    def __init__(self, gmail, sendgrid):
        self.gmail = gmail
        self.sendgrid = sendgrid

    async def deliver(self, message: Message) -> DeliveryResult:
        result = None

        if self.gmail.is_configured:
            result = await self.gmail.deliver(message)
            if result.success:
                return result
            log.warning("gmail_send_failed", message_id=message.id, error=result.error,
                        fallback=self.sendgrid.is_configured)

        if self.sendgrid.is_configured:
            return await self.sendgrid.deliver(message)

        return result or DeliveryResult(success=False, error=NO_PROVIDER_ERROR)

    async def poll_inbox(self, since: Optional[datetime]) -> list[InboundDescriptor]:
        if not self.gmail.is_configured:
            log.warning("inbox_polling_unavailable", reason="gmail_not_configured")
            return []
        return await self.gmail.poll_inbox(since)


def build_delivery_adapter(settings: Settings) -> FallbackDeliveryAdapter:
    """Wire the configured transports together."""
    return FallbackDeliveryAdapter(
        gmail=GmailAdapter(
            connected_account_id=settings.gmail.connected_account_id or None,
        ),
        sendgrid=SendGridAdapter(
            api_key=settings.sendgrid.api_key,
            base_url=settings.sendgrid.base_url,
            timeout=settings.delivery.timeout_seconds,
        ),
    )
