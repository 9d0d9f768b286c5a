"""Tests for config module."""

import tempfile
from pathlib import Path

from recruit_outreach.core.config import (
    load_settings,
    load_template,
    render_template,
    Settings,
)


def test_load_settings():
    with tempfile.TemporaryDirectory() as tmpdir:
        config_path = Path(tmpdir)
        settings_file = config_path / "settings.yaml"
        settings_file.write_text("""
follow_up:
  default_delay_days: 5
  max_attempts: 2

delivery:
  timeout_seconds: 10

gmail:
  from_name: "Alex Rivera"
  connected_account_id: "ca_123"

sendgrid:
  api_key: "sg-key"
""")

        settings = load_settings(config_path)

        assert settings.follow_up.default_delay_days == 5
        assert settings.follow_up.max_attempts == 2
        assert settings.follow_up.subject_prefix == "Follow-up: "
        assert settings.delivery.timeout_seconds == 10
        assert settings.gmail.from_name == "Alex Rivera"
        assert settings.gmail.connected_account_id == "ca_123"
        assert settings.sendgrid.api_key == "sg-key"


def test_load_settings_missing_file_uses_defaults(monkeypatch):
    monkeypatch.delenv("COMPOSIO_CONNECTED_ACCOUNT_ID", raising=False)
    monkeypatch.delenv("SENDGRID_API_KEY", raising=False)
    monkeypatch.delenv("SLACK_WEBHOOK_URL", raising=False)

    with tempfile.TemporaryDirectory() as tmpdir:
        settings = load_settings(Path(tmpdir))

        assert settings == Settings()
        assert settings.follow_up.max_attempts == 3
        assert settings.delivery.timeout_seconds == 30.0


def test_load_settings_reads_secrets_from_environment(monkeypatch):
    monkeypatch.setenv("COMPOSIO_CONNECTED_ACCOUNT_ID", "ca_env")
    monkeypatch.setenv("SENDGRID_API_KEY", "sg-env")
    monkeypatch.setenv("SLACK_WEBHOOK_URL", "https://hooks.slack.com/env")

    with tempfile.TemporaryDirectory() as tmpdir:
        settings = load_settings(Path(tmpdir))

        assert settings.gmail.connected_account_id == "ca_env"
        assert settings.sendgrid.api_key == "sg-env"
        assert settings.notifications.slack_webhook_url == "https://hooks.slack.com/env"


def test_yaml_value_wins_over_environment(monkeypatch):
    monkeypatch.setenv("SENDGRID_API_KEY", "sg-env")

    with tempfile.TemporaryDirectory() as tmpdir:
        config_path = Path(tmpdir)
        (config_path / "settings.yaml").write_text("sendgrid:\n  api_key: sg-yaml\n")

        settings = load_settings(config_path)

        assert settings.sendgrid.api_key == "sg-yaml"


def test_load_template():
    with tempfile.TemporaryDirectory() as tmpdir:
        config_path = Path(tmpdir)
        template_file = config_path / "follow_up.md"
        template_file.write_text("Hi {{first_name}}!")

        content = load_template(config_path, "follow_up.md")

        assert content == "Hi {{first_name}}!"


def test_render_template():
    template = "Hi {{first_name}}, about {{organization}}. {{missing}}"

    result = render_template(template, {"first_name": "Jane", "organization": "State", "missing": None})

    assert result == "Hi Jane, about State. "
