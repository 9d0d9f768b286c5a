"""Follow-up email composition: template-based, optionally written by Claude."""

import json
from pathlib import Path
from typing import Awaitable, Callable, Optional, Union

import anthropic
import structlog

from recruit_outreach.core.config import DEFAULT_CONFIG_PATH, FOLLOW_UP_TEMPLATE, load_template, render_template
from recruit_outreach.core.models import Message, Recipient

log = structlog.get_logger()

MODEL = "claude-opus-4-5-20251101"

DEFAULT_FOLLOW_UP_TEMPLATE = """Hi {{first_name}},

I wanted to follow up on my previous email about my interest in the program at {{organization}}.

I'm still very interested in learning more about the program and would appreciate the opportunity to discuss how I could contribute to the team.

Thank you for your time and consideration.

Best regards,
{{sender_name}}"""

BodyTemplateFn = Callable[[Message, Recipient], Union[str, Awaitable[str]]]


def follow_up_subject(original_subject: str, prefix: str = "Follow-up: ") -> str:
    if original_subject.lower().startswith(prefix.strip().lower()):
        return original_subject
    return f"{prefix}{original_subject}"


def _load_follow_up_template(config_path: Path) -> str:
    try:
        return load_template(config_path, FOLLOW_UP_TEMPLATE)
    except FileNotFoundError:
        return DEFAULT_FOLLOW_UP_TEMPLATE


def render_follow_up_body(
    parent: Message,
    recipient: Recipient,
    sender_name: str,
    config_path: Path = DEFAULT_CONFIG_PATH,
) -> str:
    template = _load_follow_up_template(config_path)
    variables = {
        "first_name": recipient.first_name,
        "recipient_name": recipient.name,
        "organization": recipient.organization or "your school",
        "original_subject": parent.subject,
        "sender_name": sender_name,
    }
    return render_template(template, variables).strip()


def template_body_fn(sender_name: str, config_path: Path = DEFAULT_CONFIG_PATH) -> BodyTemplateFn:
    """Body generator that fills in ``follow_up.md``."""
    def build(parent: Message, recipient: Recipient) -> str:
        return render_follow_up_body(parent, recipient, sender_name, config_path)
    return build


def build_system_prompt() -> str:
    return """You help high school athletes write short, polite follow-up emails to college coaches
who have not answered a recruiting email yet.

Rules:
- 60-120 words, warm and genuine, never pushy or guilt-tripping
- Reference the original email's topic without repeating it
- Re-state interest in the specific program and ask one clear question
- No placeholders; the email must be ready to send
- Sign off with the athlete's name

Return a JSON object with exactly one field, "body", holding the full email body."""


async def generate_follow_up_body(
    parent: Message,
    recipient: Recipient,
    sender_name: str,
    config_path: Path = DEFAULT_CONFIG_PATH,
) -> str:
    """Ask Claude for a follow-up; fall back to the template on any failure."""
    user_message = f"""Write a follow-up email.

Coach: {recipient.name}
Program: {recipient.organization or 'Unknown'}
Athlete: {sender_name}

Original subject: {parent.subject}
Original email:
{parent.body[:2000]}"""

    log.info("generating_follow_up", parent_id=parent.id, recipient_id=recipient.id)

    response_text = ""
    try:
        client = anthropic.AsyncAnthropic()

        response = await client.messages.create(
            model=MODEL,
            max_tokens=600,
            system=build_system_prompt(),
            messages=[{"role": "user", "content": user_message}]
        )

        response_text = response.content[0].text.strip()

        # Handle potential markdown code blocks
        if response_text.startswith("```"):
            response_text = response_text.split("```")[1]
            if response_text.startswith("json"):
                response_text = response_text[4:]
            response_text = response_text.strip()

        body = json.loads(response_text).get("body", "").strip()
        if not body:
            raise ValueError("empty body")
        return body

    except json.JSONDecodeError as e:
        log.error("json_parse_error", error=str(e), response=response_text[:200])
    except Exception as e:
        log.error("claude_error", error=str(e))

    return render_follow_up_body(parent, recipient, sender_name, config_path)


def ai_body_fn(sender_name: str, config_path: Path = DEFAULT_CONFIG_PATH) -> BodyTemplateFn:
    """Body generator backed by Claude."""
    async def build(parent: Message, recipient: Recipient) -> str:
        return await generate_follow_up_body(parent, recipient, sender_name, config_path)
    return build


def body_fn_for(use_ai: bool, sender_name: Optional[str], config_path: Path = DEFAULT_CONFIG_PATH) -> BodyTemplateFn:
    name = sender_name or ""
    return ai_body_fn(name, config_path) if use_ai else template_body_fn(name, config_path)
