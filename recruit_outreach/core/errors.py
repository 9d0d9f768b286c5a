"""Outreach error types."""

from typing import Optional


class OutreachError(Exception):
    """Base class for outreach lifecycle errors."""


class NotFound(OutreachError):
    """A referenced message, task or recipient does not exist."""

    def __init__(self, kind: str, key):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")


class InvalidTransition(OutreachError):
    """A status change that the message lattice does not allow."""

    def __init__(self, message_id: int, current: str, requested: str):
        self.message_id = message_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Message {message_id} cannot move from '{current}' to '{requested}'"
        )


class ImmutableRecord(OutreachError):
    """Mutation of a message that is no longer a draft."""

    def __init__(self, message_id: int, status: str):
        self.message_id = message_id
        self.status = status
        super().__init__(f"Message {message_id} is '{status}' and can no longer be changed")


class AlreadyScheduled(OutreachError):
    """A follow-up is already pending for the parent message."""

    def __init__(self, parent_message_id: int, existing_id: Optional[int] = None):
        self.parent_message_id = parent_message_id
        self.existing_id = existing_id
        super().__init__(f"A follow-up is already scheduled for message {parent_message_id}")


class DeliveryFailed(OutreachError):
    """The delivery adapter rejected the message or timed out.

    ``str(exc)`` is the adapter's error message, unmodified.
    """

    def __init__(self, error: str, message_id: Optional[int] = None):
        self.error = error
        self.message_id = message_id
        super().__init__(error)


class ReplyImportError(OutreachError):
    """A single inbound descriptor could not be imported."""
