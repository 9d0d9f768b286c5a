"""Slack notifications for follow-up runs."""

import os
from typing import Optional

import httpx
import structlog

from recruit_outreach.core.models import Message

log = structlog.get_logger()


class SlackNotifier:
    """Posts follow-up run summaries to a Slack incoming webhook."""

    def __init__(self, webhook_url: Optional[str] = None):
        """Initialize with webhook URL."""
        self.webhook_url = webhook_url or os.getenv("SLACK_WEBHOOK_URL")

    async def _post(self, blocks: list[dict]) -> bool:
        if not self.webhook_url:
            log.warning("slack_webhook_not_configured")
            return False

        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(
                    self.webhook_url,
                    json={"blocks": blocks},
                )
                response.raise_for_status()
                return True

        except Exception as e:
            log.error("slack_send_error", error=str(e))
            return False

    async def send_summary(self, results: dict) -> bool:
        """Send end-of-run summary to Slack.

        Args:
            results: Summary dict returned by ``fire_due_follow_ups``

        Returns:
            True if sent successfully
        """
        failed = results.get("failed", 0) + results.get("errors", 0)
        status_emoji = "✅" if not failed else "⚠️"

        blocks = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": f"{status_emoji} Follow-up Run Complete",
                }
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Sent:*\n{results.get('sent', 0)}"},
                    {"type": "mrkdwn", "text": f"*Retrying:*\n{results.get('retrying', 0)}"},
                    {"type": "mrkdwn", "text": f"*Failed:*\n{failed}"},
                ]
            }
        ]

        sent = await self._post(blocks)
        if sent:
            log.info("slack_summary_sent", **{k: v for k, v in results.items() if k != "exhausted"})
        return sent

    async def send_failures(self, messages: list[Message]) -> bool:
        """Alert about follow-ups that will not be retried again."""
        if not messages:
            return False

        lines = "\n".join(
            f"• #{m.id} to {m.recipient_address}: {m.last_error or 'unknown error'}"
            for m in messages[:10]
        )
        blocks = [
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": f"*{len(messages)} follow-up(s) failed permanently:*\n{lines}",
                }
            }
        ]

        sent = await self._post(blocks)
        if sent:
            log.info("slack_failures_sent", count=len(messages))
        return sent
