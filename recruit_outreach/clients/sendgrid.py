"""SendGrid v3 mail send."""

import re
from datetime import datetime
from email.utils import parseaddr
from typing import Optional

import httpx
import structlog

from recruit_outreach.core.models import DeliveryResult, InboundDescriptor, Message

log = structlog.get_logger()

SENDGRID_BASE_URL = "https://api.sendgrid.com/v3"


def strip_tags(html: str) -> str:
    return re.sub(r"<[^>]*>", "", html)


def _address(value: Optional[str]) -> dict:
    name, email = parseaddr(value or "")
    address = {"email": email}
    if name:
        address["name"] = name
    return address


def _error_message(response: httpx.Response) -> str:
    try:
        errors = response.json().get("errors") or []
    except ValueError:
        errors = []
    if errors:
        return "; ".join(e.get("message", "") for e in errors)
    return f"SendGrid returned HTTP {response.status_code}"


class SendGridAdapter:
    """Send-only adapter; SendGrid replies arrive through the inbound parse webhook."""

    def __init__(self, api_key: str = "", base_url: str = SENDGRID_BASE_URL, timeout: float = 30.0):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def build_payload(self, message: Message) -> dict:
        return {
            "personalizations": [{"to": [_address(message.recipient_address)]}],
            "from": _address(message.sender_address),
            "subject": message.subject,
            "content": [
                {"type": "text/plain", "value": strip_tags(message.body)},
                {"type": "text/html", "value": message.body},
            ],
        }

    async def deliver(self, message: Message) -> DeliveryResult:
        log.info("sending_via_sendgrid", to=message.recipient_address, subject=message.subject)

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/mail/send",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json=self.build_payload(message),
                )
        except httpx.HTTPError as e:
            log.error("sendgrid_request_error", error=str(e))
            return DeliveryResult(success=False, error=str(e) or type(e).__name__)

        if response.status_code >= 400:
            error = _error_message(response)
            log.error("sendgrid_send_failed", status=response.status_code, error=error)
            return DeliveryResult(success=False, error=error)

        return DeliveryResult(
            success=True,
            provider_message_id=response.headers.get("X-Message-Id"),
            thread_id=message.external_thread_id,
        )

    async def poll_inbox(self, since: Optional[datetime]) -> list[InboundDescriptor]:
        return []
