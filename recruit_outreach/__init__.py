"""Recruiting outreach: send, follow up on and thread emails to college coaches."""

__version__ = "0.1.0"
