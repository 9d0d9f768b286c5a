"""Delivery transports: Gmail (Composio) and SendGrid."""

from recruit_outreach.clients.delivery import (
    DeliveryAdapter,
    FallbackDeliveryAdapter,
    build_delivery_adapter,
    deliver_with_timeout,
)
from recruit_outreach.clients.gmail import GmailAdapter
from recruit_outreach.clients.sendgrid import SendGridAdapter
