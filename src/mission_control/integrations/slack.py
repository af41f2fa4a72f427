"""Slack Web API integration."""

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    response = client.chat_postMessage(channel=channel, text=text, blocks=blocks)
    return SlackMessage(channel=response["channel"], ts=response["ts"], text=text)


STATUS_EMOJI = {
    "inbox": ":inbox_tray:",
    "planning": ":thought_balloon:",
    "assigned": ":white_circle:",
    "in_progress": ":large_blue_circle:",
    "testing": ":test_tube:",
    "review": ":eyes:",
    "done": ":white_check_mark:",
}


def format_task_notification(task: dict) -> list[dict]:
    """Format a task update as Slack blocks."""
    emoji = STATUS_EMOJI.get(task["status"], ":grey_question:")
    agent = task.get("assigned_agent_id") or "unassigned"
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f"{emoji} *Task Update*\n*{task['title']}* (`{task['id']}`)\n"
                    f"Status: *{task['status']}* | Agent: {agent}"
                ),
            },
        }
    ]


def format_planning_complete(task_id: str, spec: dict) -> list[dict]:
    """Format a finished planning conversation as Slack blocks."""
    title = spec.get("title") or task_id
    summary = spec.get("summary") or ""
    deliverables = "\n".join(f"• {d}" for d in spec.get("deliverables") or [])
    text = f":memo: *Planning Complete*\n*{title}* (`{task_id}`)\n{summary}"
    if deliverables:
        text += f"\n{deliverables}"
    return [{"type": "section", "text": {"type": "mrkdwn", "text": text}}]


class SlackEventSink:
    """EventBus subscriber that posts task and planning notifications to a channel."""

    def __init__(self, token: str | None, channel: str):
        self.token = token
        self.channel = channel

    def __call__(self, event_type: str, payload: dict):
        if event_type == "task_updated":
            text = f"Task {payload['id']} is now {payload['status']}"
            blocks = format_task_notification(payload)
        elif event_type == "agent_status_changed":
            text = f"Agent {payload['agent_id']} is now {payload['status']}"
            blocks = None
        elif event_type == "planning_completed":
            text = f"Planning complete for {payload['task_id']}"
            blocks = format_planning_complete(payload["task_id"], payload.get("spec") or {})
        else:
            return
        try:
            send_message(self.token, self.channel, text, blocks)
        except Exception:
            logger.exception("Slack notification failed for %s", event_type)
