"""Gmail sending and inbox polling via Composio."""

import asyncio
import re
from datetime import datetime, timezone
from typing import Optional

import structlog
from composio.sdk import Composio

from recruit_outreach.core.models import DeliveryResult, InboundDescriptor, Message, parse_date

log = structlog.get_logger()

# Cache for user_id lookups
_user_id_cache: dict[str, str] = {}

_HTML_TAG = re.compile(r"</?[a-z][^>]*>", re.IGNORECASE)


def _get_client() -> Composio:
    """Get Composio client (uses COMPOSIO_API_KEY env var)."""
    return Composio()


def _get_user_id_for_account(client: Composio, connected_account_id: str) -> Optional[str]:
    """Look up user_id for a connected account."""
    if connected_account_id in _user_id_cache:
        return _user_id_cache[connected_account_id]

    try:
        accounts = client.connected_accounts.list()
        for item in accounts.items:
            if item.id == connected_account_id:
                _user_id_cache[connected_account_id] = item.user_id
                return item.user_id
    except Exception as e:
        log.warning("failed_to_get_user_id", error=str(e))

    return None


def _unpack(result) -> tuple[bool, dict, Optional[str]]:
    # Handle both object and dict responses
    successful = result.successful if hasattr(result, "successful") else result.get("successful", False)
    data = result.data if hasattr(result, "data") else result.get("data", {})
    error = result.error if hasattr(result, "error") else result.get("error")
    return successful, data or {}, error


def _to_descriptor(item: dict) -> InboundDescriptor:
    return InboundDescriptor(
        from_=item.get("sender") or item.get("from") or "",
        to=item.get("to") or "",
        subject=item.get("subject") or "",
        body=item.get("messageText") or item.get("body") or "",
        date=parse_date(item.get("messageTimestamp") or item.get("internalDate")),
        external_thread_id=item.get("threadId"),
        provider_message_id=item.get("messageId") or item.get("id"),
    )


class GmailAdapter:
    """Delivery adapter for the athlete's connected Gmail account."""

    def __init__(self, connected_account_id: Optional[str] = None):
        self.connected_account_id = connected_account_id

    @property
    def is_configured(self) -> bool:
        return bool(self.connected_account_id)

    async def _execute(self, slug: str, arguments: dict) -> dict:
        client = _get_client()

        execute_kwargs = {
            "slug": slug,
            "arguments": arguments,
            "dangerously_skip_version_check": True,
        }
        if self.connected_account_id:
            execute_kwargs["connected_account_id"] = self.connected_account_id
            user_id = _get_user_id_for_account(client, self.connected_account_id)
            if user_id:
                execute_kwargs["user_id"] = user_id

        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(
            None,
            lambda: client.tools.execute(**execute_kwargs)
        )

        successful, data, error = _unpack(result)
        if not successful:
            error_msg = error or "Unknown error"
            log.error("gmail_tool_failed", slug=slug, error=error_msg)
            raise Exception(error_msg)
        return data

    async def deliver(self, message: Message) -> DeliveryResult:
        """Send a message; follow-ups on a known thread go out as replies."""
        is_html = bool(_HTML_TAG.search(message.body))

        if message.is_follow_up and message.external_thread_id:
            log.info("sending_reply_email", to=message.recipient_address,
                     thread_id=message.external_thread_id)
            slug = "GMAIL_REPLY_TO_THREAD"
            arguments = {
                "thread_id": message.external_thread_id,
                "recipient_email": message.recipient_address,
                "message_body": message.body,
                "is_html": is_html,
            }
        else:
            log.info("sending_new_email", to=message.recipient_address, subject=message.subject)
            slug = "GMAIL_SEND_EMAIL"
            arguments = {
                "recipient_email": message.recipient_address,
                "subject": message.subject,
                "body": message.body,
                "is_html": is_html,
            }

        try:
            data = await self._execute(slug, arguments)
        except Exception as e:
            return DeliveryResult(success=False, error=str(e))

        data = data.get("response_data", data)
        return DeliveryResult(
            success=True,
            provider_message_id=data.get("id"),
            thread_id=data.get("threadId") or message.external_thread_id,
        )

    async def poll_inbox(self, since: Optional[datetime]) -> list[InboundDescriptor]:
        """Fetch inbox messages received after ``since``."""
        query = "in:inbox"
        if since is not None:
            query += f" after:{int(since.replace(tzinfo=timezone.utc).timestamp())}"

        log.info("polling_inbox", query=query)
        data = await self._execute("GMAIL_FETCH_EMAILS", {"query": query, "max_results": 100})

        # Handle different response formats
        items = data if isinstance(data, list) else data.get("messages", data.get("items", []))
        return [_to_descriptor(item) for item in items]
