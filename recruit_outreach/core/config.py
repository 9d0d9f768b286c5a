"""Configuration loading and models."""

import os
from pathlib import Path

import yaml
from pydantic import BaseModel


class FollowUpSettings(BaseModel):
    default_delay_days: int = 3
    max_attempts: int = 3
    stale_claim_minutes: int = 30
    subject_prefix: str = "Follow-up: "
    use_ai: bool = False


class DeliverySettings(BaseModel):
    timeout_seconds: float = 30.0


class GmailConfig(BaseModel):
    from_name: str = ""
    connected_account_id: str = ""  # Composio connected account ID


class SendGridConfig(BaseModel):
    api_key: str = ""
    base_url: str = "https://api.sendgrid.com/v3"


class NotificationConfig(BaseModel):
    slack_webhook_url: str = ""
    notify_on_exhausted: bool = True


class Settings(BaseModel):
    follow_up: FollowUpSettings = FollowUpSettings()
    delivery: DeliverySettings = DeliverySettings()
    gmail: GmailConfig = GmailConfig()
    sendgrid: SendGridConfig = SendGridConfig()
    notifications: NotificationConfig = NotificationConfig()


DEFAULT_CONFIG_PATH = Path("config")
FOLLOW_UP_TEMPLATE = "follow_up.md"


def load_settings(config_path: Path = DEFAULT_CONFIG_PATH) -> Settings:
    """Load settings from YAML file."""
    settings_file = config_path / "settings.yaml"

    if settings_file.exists():
        with open(settings_file) as f:
            data = yaml.safe_load(f) or {}
        settings = Settings(**data)
    else:
        settings = Settings()

    # Secrets left blank in YAML fall back to the environment
    if not settings.gmail.connected_account_id:
        settings.gmail.connected_account_id = os.environ.get("COMPOSIO_CONNECTED_ACCOUNT_ID", "")
    if not settings.sendgrid.api_key:
        settings.sendgrid.api_key = os.environ.get("SENDGRID_API_KEY", "")
    if not settings.notifications.slack_webhook_url:
        settings.notifications.slack_webhook_url = os.environ.get("SLACK_WEBHOOK_URL", "")

    return settings


def load_template(config_path: Path, template_name: str) -> str:
    """Load a template file."""
    template_file = config_path / template_name
    return template_file.read_text()


def render_template(template: str, variables: dict) -> str:
    """Render a template with variable substitution."""
    result = template
    for key, value in variables.items():
        result = result.replace(f"{{{{{key}}}}}", str(value) if value else "")
    return result
