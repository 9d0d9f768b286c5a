"""Command-line interface for recruiting outreach."""

import asyncio
import json
from datetime import timedelta
from pathlib import Path
from typing import Optional

import click
import structlog

from recruit_outreach.clients.delivery import build_delivery_adapter
from recruit_outreach.core.clock import SystemClock
from recruit_outreach.core.config import DEFAULT_CONFIG_PATH, load_settings
from recruit_outreach.core.db import DEFAULT_DB_PATH, init_db
from recruit_outreach.core.errors import OutreachError
from recruit_outreach.core.models import CallerContext, FollowUpConfig, parse_date
from recruit_outreach.outreach.directory import SqliteDirectory
from recruit_outreach.outreach.lifecycle import OutreachLifecycle
from recruit_outreach.services.notifier import SlackNotifier

# Configure structlog for CLI output
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer()
    ]
)

log = structlog.get_logger()


def db_option(f):
    return click.option("--db", "db_path", type=click.Path(), default=str(DEFAULT_DB_PATH),
                        help="Database path")(f)


def config_option(f):
    return click.option("--config", "config_path", type=click.Path(), default=str(DEFAULT_CONFIG_PATH),
                        help="Config directory path")(f)


def caller_options(f):
    f = click.option("--caller-id", type=int, default=1, envvar="OUTREACH_CALLER_ID",
                     help="Athlete the command acts for")(f)
    f = click.option("--from-email", default="", envvar="OUTREACH_FROM_EMAIL",
                     help="Athlete's sending address")(f)
    f = click.option("--from-name", default=None, envvar="OUTREACH_FROM_NAME",
                     help="Athlete's display name")(f)
    return f


def build_lifecycle(db: Path, config: Path) -> OutreachLifecycle:
    """Wire the store, directory and configured transports together."""
    init_db(db)
    settings = load_settings(config)

    notifier = None
    if settings.notifications.slack_webhook_url:
        notifier = SlackNotifier(settings.notifications.slack_webhook_url)

    return OutreachLifecycle(
        directory=SqliteDirectory(db),
        adapter=build_delivery_adapter(settings),
        db_path=db,
        settings=settings,
        clock=SystemClock(),
        notifier=notifier,
        config_path=config,
    )


def _caller(lifecycle: OutreachLifecycle, caller_id: int, from_email: str,
            from_name: Optional[str]) -> CallerContext:
    return CallerContext(
        caller_id=caller_id,
        email=from_email,
        name=from_name or lifecycle.settings.gmail.from_name or None,
    )


def _follow_up(lifecycle: OutreachLifecycle, enabled: bool, days: Optional[int],
               remind: bool) -> Optional[FollowUpConfig]:
    if days is None:
        if not (enabled or remind):
            return None
        days = lifecycle.settings.follow_up.default_delay_days
    return FollowUpConfig(days=days, auto_send=not remind)


def _echo_follow_up(message) -> None:
    if "followUpId" in message.metadata:
        click.echo(f"  Follow-up #{message.metadata['followUpId']} scheduled")
    elif "followUpTaskId" in message.metadata:
        click.echo(f"  Reminder task #{message.metadata['followUpTaskId']} created")
    elif "followUpError" in message.metadata:
        click.echo(f"  Follow-up not scheduled: {message.metadata['followUpError']}")


def _read_body(body: Optional[str], body_file: Optional[str]) -> str:
    if body_file:
        return Path(body_file).read_text()
    if body:
        return body
    raise click.UsageError("Provide --body or --body-file")


@click.group()
def cli():
    """Recruiting Outreach - emails to college coaches, with follow-ups and replies."""


@cli.command()
@db_option
def init(db_path: str):
    """Create the database."""
    init_db(Path(db_path))
    click.echo(f"Database ready at {db_path}")


@cli.command("add-recipient")
@click.argument("name")
@click.argument("email")
@click.option("--organization", "-o", default=None, help="School or program")
@click.option("--tag", "tags", multiple=True, help="Tag (repeatable)")
@db_option
def add_recipient(name: str, email: str, organization: Optional[str], tags: tuple, db_path: str):
    """Add a coach to the directory."""
    db = Path(db_path)
    init_db(db)

    recipient = SqliteDirectory(db).add_recipient(name, email, organization, list(tags))
    if recipient is None:
        click.echo(f"Recipient already exists: {email}")
        return
    click.echo(f"Added recipient #{recipient.id}: {recipient.name} <{recipient.email}>")


@cli.command()
@click.argument("recipient_id", type=int)
@click.option("--subject", "-s", required=True)
@click.option("--body", "-b", default=None)
@click.option("--body-file", type=click.Path(exists=True), default=None)
@click.option("--follow-up", "with_follow_up", is_flag=True, help="Follow up after the configured default delay")
@click.option("--follow-up-days", type=int, default=None, help="Follow up after N days")
@click.option("--remind", is_flag=True, help="Create a reminder task instead of auto-sending the follow-up")
@caller_options
@db_option
@config_option
def send(recipient_id: int, subject: str, body: Optional[str], body_file: Optional[str],
         with_follow_up: bool, follow_up_days: Optional[int], remind: bool, caller_id: int, from_email: str,
         from_name: Optional[str], db_path: str, config_path: str):
    """Send an email to a recipient."""
    lifecycle = build_lifecycle(Path(db_path), Path(config_path))
    caller = _caller(lifecycle, caller_id, from_email, from_name)

    try:
        message = asyncio.run(lifecycle.send(
            caller, recipient_id, subject, _read_body(body, body_file),
            follow_up=_follow_up(lifecycle, with_follow_up, follow_up_days, remind),
        ))
    except OutreachError as e:
        raise click.ClickException(str(e))

    click.echo(f"✓ Sent message #{message.id} to {message.recipient_address}")
    _echo_follow_up(message)


@cli.command()
@click.argument("recipient_id", type=int)
@click.option("--subject", "-s", required=True)
@click.option("--body", "-b", default=None)
@click.option("--body-file", type=click.Path(exists=True), default=None)
@caller_options
@db_option
@config_option
def draft(recipient_id: int, subject: str, body: Optional[str], body_file: Optional[str],
          caller_id: int, from_email: str, from_name: Optional[str], db_path: str, config_path: str):
    """Save a draft without sending."""
    lifecycle = build_lifecycle(Path(db_path), Path(config_path))
    caller = _caller(lifecycle, caller_id, from_email, from_name)

    try:
        message = lifecycle.save_draft(caller, recipient_id, subject, _read_body(body, body_file))
    except OutreachError as e:
        raise click.ClickException(str(e))

    click.echo(f"Saved draft #{message.id}")


@cli.command("send-draft")
@click.argument("message_id", type=int)
@click.option("--follow-up", "with_follow_up", is_flag=True, help="Follow up after the configured default delay")
@click.option("--follow-up-days", type=int, default=None, help="Follow up after N days")
@click.option("--remind", is_flag=True, help="Create a reminder task instead of auto-sending the follow-up")
@caller_options
@db_option
@config_option
def send_draft(message_id: int, with_follow_up: bool, follow_up_days: Optional[int], remind: bool, caller_id: int,
               from_email: str, from_name: Optional[str], db_path: str, config_path: str):
    """Send a saved draft."""
    lifecycle = build_lifecycle(Path(db_path), Path(config_path))
    caller = _caller(lifecycle, caller_id, from_email, from_name)

    try:
        message = asyncio.run(lifecycle.send_existing_draft(
            caller, message_id, follow_up=_follow_up(lifecycle, with_follow_up, follow_up_days, remind)
        ))
    except OutreachError as e:
        raise click.ClickException(str(e))

    click.echo(f"✓ Sent message #{message.id} to {message.recipient_address}")
    _echo_follow_up(message)


@cli.command("import-replies")
@click.argument("file", type=click.Path(exists=True))
@caller_options
@db_option
@config_option
def import_replies(file: str, caller_id: int, from_email: str, from_name: Optional[str],
                   db_path: str, config_path: str):
    """Import replies from a JSON file (a list of emails, or {"emails": [...]})."""
    lifecycle = build_lifecycle(Path(db_path), Path(config_path))
    caller = _caller(lifecycle, caller_id, from_email, from_name)

    data = json.loads(Path(file).read_text())
    if isinstance(data, dict):
        data = data.get("emails", [])

    result = lifecycle.import_replies(caller, data)
    click.echo(f"Imported {result['imported']}, skipped {result['skipped']}, errors {result['errors']}")


@cli.command("poll-replies")
@click.option("--since", default=None, help="Only mail after this ISO date")
@click.option("--hours", type=int, default=24, help="Look back N hours when --since is not given")
@caller_options
@db_option
@config_option
def poll_replies(since: Optional[str], hours: int, caller_id: int, from_email: str,
                 from_name: Optional[str], db_path: str, config_path: str):
    """Pull new replies from the connected inbox."""
    lifecycle = build_lifecycle(Path(db_path), Path(config_path))
    caller = _caller(lifecycle, caller_id, from_email, from_name)

    start = parse_date(since) if since else lifecycle.clock.now() - timedelta(hours=hours)
    result = asyncio.run(lifecycle.poll_and_import(caller, start))

    click.echo(f"Polled {result['polled']} email(s)")
    click.echo(f"Imported {result['imported']}, skipped {result['skipped']}, errors {result['errors']}")


@cli.command("fire-followups")
@db_option
@config_option
def fire_followups(db_path: str, config_path: str):
    """Send every follow-up that is due."""
    lifecycle = build_lifecycle(Path(db_path), Path(config_path))

    async def run_fire():
        results = await lifecycle.fire_due_follow_ups()
        if lifecycle.notifier:
            await lifecycle.notifier.send_summary(results)
        return results

    result = asyncio.run(run_fire())

    click.echo(f"Follow-ups sent: {result['sent']}")
    if result["retrying"]:
        click.echo(f"Will retry:      {result['retrying']}")
    if result["failed"] or result["errors"]:
        click.echo(f"Failed:          {result['failed'] + result['errors']}")


@cli.command("cancel-followup")
@click.argument("message_id", type=int)
@caller_options
@db_option
@config_option
def cancel_followup(message_id: int, caller_id: int, from_email: str, from_name: Optional[str],
                    db_path: str, config_path: str):
    """Cancel a scheduled follow-up."""
    lifecycle = build_lifecycle(Path(db_path), Path(config_path))
    caller = _caller(lifecycle, caller_id, from_email, from_name)

    try:
        lifecycle.cancel_follow_up(caller, message_id)
    except OutreachError as e:
        raise click.ClickException(str(e))

    click.echo(f"Cancelled follow-up #{message_id}")


@cli.command()
@click.option("--caller-id", type=int, default=None, envvar="OUTREACH_CALLER_ID",
              help="Limit to one athlete")
@db_option
@config_option
def status(caller_id: Optional[int], db_path: str, config_path: str):
    """Show pipeline status."""
    lifecycle = build_lifecycle(Path(db_path), Path(config_path))
    caller = CallerContext(caller_id=caller_id, email="") if caller_id is not None else None
    stats = lifecycle.stats(caller)

    click.echo("\nPipeline Status")
    click.echo("───────────────")
    click.echo(f"Drafts:                {stats.get('draft', 0)}")
    click.echo(f"Scheduled:             {stats.get('scheduled', 0)}")
    click.echo(f"  - Due for follow-up: {stats.get('due_for_follow_up', 0)}")
    click.echo(f"Sent:                  {stats.get('sent', 0)}")
    click.echo(f"Delivered:             {stats.get('delivered', 0)}")
    click.echo(f"Opened:                {stats.get('opened', 0)}")
    click.echo(f"Failed:                {stats.get('failed', 0)}")
    click.echo(f"Replies received:      {stats.get('received', 0)}")
    click.echo("───────────────")
    click.echo(f"Emails answered: {stats.get('responded', 0)}")


@cli.command()
@click.argument("recipient_id", type=int)
@caller_options
@db_option
@config_option
def history(recipient_id: int, caller_id: int, from_email: str, from_name: Optional[str],
            db_path: str, config_path: str):
    """Show messages exchanged with a recipient, newest first."""
    lifecycle = build_lifecycle(Path(db_path), Path(config_path))
    caller = _caller(lifecycle, caller_id, from_email, from_name)

    messages = lifecycle.history(caller, recipient_id)
    if not messages:
        click.echo("No messages")
        return

    for m in messages:
        when = m.sent_at or m.received_at or m.created_at
        arrow = "→" if m.direction.value == "outbound" else "←"
        label = " (follow-up)" if m.is_follow_up else ""
        click.echo(f"#{m.id} {arrow} [{m.status.value}] {when:%Y-%m-%d %H:%M} {m.subject}{label}")
        if m.scheduled_for and m.status.value == "scheduled":
            click.echo(f"    scheduled for {m.scheduled_for:%Y-%m-%d %H:%M}")


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
