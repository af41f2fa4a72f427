"""Append-only event log and the in-process notification channel."""

import logging
import sqlite3
from collections.abc import Callable
from datetime import datetime

from mission_control.db.models import Event

logger = logging.getLogger(__name__)

Subscriber = Callable[[str, dict], None]


class EventBus:
    """Fire-and-forget publish/subscribe.

    Subscribers run synchronously in the publishing thread. A failing
    subscriber is logged and skipped; publishers never see the error.
    """

    def __init__(self):
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber):
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber):
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def publish(self, event_type: str, payload: dict):
        for callback in list(self._subscribers):
            try:
                callback(event_type, payload)
            except Exception:
                logger.exception("Event subscriber failed for %s", event_type)


def publish(events: EventBus | None, event_type: str, payload: dict):
    """Publish on ``events`` when a bus was supplied."""
    if events is not None:
        events.publish(event_type, payload)


# ── Audit Log ────────────────────────────────────────────────────────────────


def log_event(
    db: sqlite3.Connection,
    event_type: str,
    task_id: str | None = None,
    agent_id: str | None = None,
    message: str = "",
    old_value: str | None = None,
    new_value: str | None = None,
):
    db.execute(
        """INSERT INTO events (type, task_id, agent_id, message, old_value, new_value)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (event_type, task_id, agent_id, message, old_value, new_value),
    )


def list_events(
    db: sqlite3.Connection,
    task_id: str | None = None,
    agent_id: str | None = None,
    event_type: str | None = None,
) -> list[Event]:
    """List logged events oldest first, optionally filtered."""
    query = "SELECT * FROM events WHERE 1=1"
    params: list = []
    if task_id:
        query += " AND task_id = ?"
        params.append(task_id)
    if agent_id:
        query += " AND agent_id = ?"
        params.append(agent_id)
    if event_type:
        query += " AND type = ?"
        params.append(event_type)
    query += " ORDER BY id"
    rows = db.execute(query, params).fetchall()
    return [
        Event(
            id=r["id"],
            type=r["type"],
            task_id=r["task_id"],
            agent_id=r["agent_id"],
            message=r["message"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)


def build_event_bus(config) -> EventBus:
    """Event bus with the Slack sink attached when a token and channel are configured."""
    bus = EventBus()
    if config.slack_bot_token and config.slack_channel:
        from mission_control.integrations.slack import SlackEventSink

        bus.subscribe(SlackEventSink(config.slack_bot_token, config.slack_channel))
    return bus
