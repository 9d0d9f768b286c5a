"""Notifications."""

from recruit_outreach.services.notifier import SlackNotifier
