"""Email lifecycle: store, schedule follow-ups, import replies."""

from recruit_outreach.outreach.directory import SqliteDirectory
from recruit_outreach.outreach.scheduler import schedule_follow_up, due_follow_ups, fire_due_follow_ups
from recruit_outreach.outreach.importer import import_batch
from recruit_outreach.outreach.lifecycle import OutreachLifecycle
