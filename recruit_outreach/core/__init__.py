"""Core infrastructure: CLI, config, database, records."""

from recruit_outreach.core.config import (
    Settings,
    FollowUpSettings,
    DeliverySettings,
    GmailConfig,
    SendGridConfig,
    NotificationConfig,
    load_settings,
    load_template,
    render_template,
)
from recruit_outreach.core.db import init_db, get_connection
from recruit_outreach.core.errors import (
    OutreachError,
    NotFound,
    InvalidTransition,
    ImmutableRecord,
    AlreadyScheduled,
    DeliveryFailed,
    ReplyImportError,
)
from recruit_outreach.core.models import (
    CallerContext,
    Direction,
    MessageStatus,
    Message,
    Recipient,
    Task,
    FollowUpConfig,
    DeliveryResult,
    InboundDescriptor,
)
