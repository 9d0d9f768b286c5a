"""Tests for the command-line interface."""

import json
import tempfile
from pathlib import Path
from unittest.mock import patch

from click.testing import CliRunner

from recruit_outreach.core.cli import cli
from recruit_outreach.core.db import init_db
from recruit_outreach.core.models import MessageStatus
from recruit_outreach.outreach import store
from recruit_outreach.outreach.directory import SqliteDirectory


def _invoke(args, tmpdir, adapter=None):
    tmpdir = Path(tmpdir)
    paths = ["--db", str(tmpdir / "test.db"), "--config", str(tmpdir / "config")]
    runner = CliRunner()
    if adapter is None:
        return runner.invoke(cli, args + paths)
    with patch("recruit_outreach.core.cli.build_delivery_adapter", return_value=adapter):
        return runner.invoke(cli, args + paths)


def _add_coach(tmpdir):
    db_path = Path(tmpdir) / "test.db"
    init_db(db_path)
    return SqliteDirectory(db_path).add_recipient("Jane Doe", "coach.doe@state.edu", "State University")


def test_init():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "data" / "test.db"

        result = CliRunner().invoke(cli, ["init", "--db", str(db_path)])

        assert result.exit_code == 0
        assert db_path.exists()


def test_add_recipient():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = str(Path(tmpdir) / "test.db")
        runner = CliRunner()

        first = runner.invoke(cli, ["add-recipient", "Jane Doe", "Coach.Doe@State.edu",
                                    "-o", "State University", "--db", db_path])
        second = runner.invoke(cli, ["add-recipient", "Jane Doe", "coach.doe@state.edu", "--db", db_path])

        assert first.exit_code == 0
        assert "Added recipient #1" in first.output
        assert "already exists" in second.output


def test_status_empty():
    with tempfile.TemporaryDirectory() as tmpdir:
        result = _invoke(["status"], tmpdir)

        assert result.exit_code == 0
        assert "Pipeline Status" in result.output


def test_send_with_follow_up(adapter):
    with tempfile.TemporaryDirectory() as tmpdir:
        coach = _add_coach(tmpdir)

        result = _invoke(
            ["send", str(coach.id), "--subject", "Prospective student", "--body", "Hello Coach",
             "--follow-up-days", "3", "--from-email", "alex@example.com", "--from-name", "Alex Rivera"],
            tmpdir, adapter,
        )

        assert result.exit_code == 0, result.output
        assert "Sent message #1" in result.output
        assert "Follow-up #2 scheduled" in result.output

        db_path = Path(tmpdir) / "test.db"
        assert store.get_message(db_path, 1).status == MessageStatus.SENT
        assert store.get_live_follow_up(db_path, 1) is not None


def test_send_with_default_follow_up_delay(adapter):
    with tempfile.TemporaryDirectory() as tmpdir:
        coach = _add_coach(tmpdir)

        result = _invoke(["send", str(coach.id), "-s", "Hi", "-b", "Hello", "--follow-up"], tmpdir, adapter)

        assert result.exit_code == 0, result.output
        db_path = Path(tmpdir) / "test.db"
        follow_up = store.get_live_follow_up(db_path, 1)
        assert follow_up.follow_up_days == 3


def test_send_with_reminder_task(adapter):
    with tempfile.TemporaryDirectory() as tmpdir:
        coach = _add_coach(tmpdir)

        result = _invoke(["send", str(coach.id), "-s", "Hi", "-b", "Hello", "--remind"], tmpdir, adapter)

        assert result.exit_code == 0, result.output
        assert "Reminder task #1 created" in result.output
        assert store.get_live_follow_up(Path(tmpdir) / "test.db", 1) is None


def test_send_reports_follow_up_that_could_not_be_scheduled(adapter):
    with tempfile.TemporaryDirectory() as tmpdir:
        coach = _add_coach(tmpdir)

        result = _invoke(["send", str(coach.id), "-s", "Hi", "-b", "Hello", "--follow-up-days=-1"],
                         tmpdir, adapter)

        assert result.exit_code == 0, result.output
        assert "Sent message #1" in result.output
        assert "Follow-up not scheduled" in result.output


def test_send_failure_exits_with_error(adapter):
    adapter.fail_all = "550 Mailbox unavailable"

    with tempfile.TemporaryDirectory() as tmpdir:
        coach = _add_coach(tmpdir)

        result = _invoke(["send", str(coach.id), "-s", "Hi", "-b", "Hello"], tmpdir, adapter)

        assert result.exit_code == 1
        assert "550 Mailbox unavailable" in result.output


def test_send_unknown_recipient(adapter):
    with tempfile.TemporaryDirectory() as tmpdir:
        result = _invoke(["send", "99", "-s", "Hi", "-b", "Hello"], tmpdir, adapter)

        assert result.exit_code == 1
        assert "recipient not found: 99" in result.output
        assert adapter.delivered == []


def test_draft_then_send_draft(adapter):
    with tempfile.TemporaryDirectory() as tmpdir:
        coach = _add_coach(tmpdir)

        drafted = _invoke(["draft", str(coach.id), "-s", "Hi", "-b", "Hello"], tmpdir, adapter)
        assert "Saved draft #1" in drafted.output
        assert adapter.delivered == []

        sent = _invoke(["send-draft", "1"], tmpdir, adapter)
        assert sent.exit_code == 0, sent.output
        assert adapter.delivered == [1]

        again = _invoke(["send-draft", "1"], tmpdir, adapter)
        assert again.exit_code == 1
        assert "draft not found" in again.output


def test_import_replies_and_history(adapter):
    with tempfile.TemporaryDirectory() as tmpdir:
        coach = _add_coach(tmpdir)
        _invoke(["send", str(coach.id), "-s", "Prospective student", "-b", "Hello"], tmpdir, adapter)

        replies = Path(tmpdir) / "replies.json"
        replies.write_text(json.dumps({"emails": [{
            "from": "Coach Doe <coach.doe@state.edu>",
            "to": "alex@example.com",
            "subject": "Re: Prospective student",
            "body": "Call me",
            "date": "2099-01-01T10:00:00Z",
            "threadId": "thread-1",
        }]}))

        imported = _invoke(["import-replies", str(replies)], tmpdir, adapter)
        assert "Imported 1, skipped 0, errors 0" in imported.output

        repeated = _invoke(["import-replies", str(replies)], tmpdir, adapter)
        assert "Imported 0, skipped 1, errors 0" in repeated.output

        history = _invoke(["history", str(coach.id)], tmpdir, adapter)
        assert history.exit_code == 0
        lines = [line for line in history.output.splitlines() if line.startswith("#")]
        assert "← [received]" in lines[0]
        assert "→ [sent]" in lines[1]


def test_fire_followups_and_cancel(adapter):
    with tempfile.TemporaryDirectory() as tmpdir:
        coach = _add_coach(tmpdir)
        _invoke(["send", str(coach.id), "-s", "Hi", "-b", "Hello", "--follow-up-days", "3"], tmpdir, adapter)

        fired = _invoke(["fire-followups"], tmpdir, adapter)
        assert fired.exit_code == 0
        assert "Follow-ups sent: 0" in fired.output

        cancelled = _invoke(["cancel-followup", "2"], tmpdir, adapter)
        assert cancelled.exit_code == 0
        assert "Cancelled follow-up #2" in cancelled.output

        status = store.get_message(Path(tmpdir) / "test.db", 2).status
        assert status == MessageStatus.FAILED

        missing = _invoke(["cancel-followup", "42"], tmpdir, adapter)
        assert missing.exit_code == 1


def test_poll_replies(adapter):
    with tempfile.TemporaryDirectory() as tmpdir:
        result = _invoke(["poll-replies", "--hours", "6"], tmpdir, adapter)

        assert result.exit_code == 0
        assert "Polled 0 email(s)" in result.output
