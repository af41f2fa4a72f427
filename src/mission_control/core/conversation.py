"""Send into a runtime conversation and retrieve the assistant's replies.

Replies are read through an ordered chain of retrieval strategies. The direct
transcript read is preferred; the runtime's history call is the fallback. The
first strategy that yields a fresh assistant turn wins.
"""

import json
import logging
import threading
import time
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

from mission_control.core.errors import ReplyCancelled, ReplyTimeout, TransportError
from mission_control.integrations.runtime import RuntimeClient

logger = logging.getLogger(__name__)


def idempotency_key(task_id: str, timestamp_ms: int) -> str:
    """Uniqueness token for one logical planning turn."""
    return f"planning-{task_id}-{timestamp_ms}"


def agent_from_session_key(session_key: str) -> str | None:
    """``agent:<name>:...`` -> ``<name>``."""
    parts = session_key.split(":")
    if len(parts) >= 2 and parts[0] == "agent" and parts[1]:
        return parts[1]
    return None


# ── Text Extraction ──────────────────────────────────────────────────────────


def message_text(content) -> str:
    """Text of a turn: a plain string, or the first text block of a block list."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text" and block.get("text"):
                return block["text"]
    return ""


def latest_assistant_reply(turns: Iterable[dict]) -> str | None:
    """Latest assistant text, once every user turn has been answered.

    Accepting only when assistant turns >= user turns keeps a poll from
    returning the reply to an earlier message.
    """
    user_count = 0
    assistant_count = 0
    last_text = ""
    for turn in turns:
        role = turn.get("role")
        if role == "user":
            user_count += 1
        elif role == "assistant":
            assistant_count += 1
            text = message_text(turn.get("content"))
            if text:
                last_text = text
    if last_text and assistant_count >= user_count:
        return last_text
    return None


# ── Retrieval Strategies ─────────────────────────────────────────────────────


class ReplyStrategy(Protocol):
    name: str

    def fetch_latest_assistant_turn(self, session_key: str) -> str | None:
        ...


class TranscriptFileReader:
    """Reads the runtime's append-only JSONL transcript for a session.

    ``<home>/agents/<agent>/sessions/sessions.json`` maps session keys to
    ``{"sessionId": ...}``; ``<sessionId>.jsonl`` holds the turns.
    """

    name = "transcript"

    def __init__(self, runtime_home: Path):
        self.runtime_home = Path(runtime_home)

    def transcript_path(self, session_key: str) -> Path | None:
        agent = agent_from_session_key(session_key)
        if not agent:
            return None
        sessions_dir = self.runtime_home / "agents" / agent / "sessions"
        index_path = sessions_dir / "sessions.json"
        if not index_path.exists():
            return None
        index = json.loads(index_path.read_text(encoding="utf-8"))
        info = index.get(session_key) if isinstance(index, dict) else None
        session_id = info.get("sessionId") if isinstance(info, dict) else None
        if not session_id:
            return None
        path = sessions_dir / f"{session_id}.jsonl"
        return path if path.exists() else None

    def read_turns(self, path: Path) -> list[dict]:
        turns = []
        for line in path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                data = json.loads(line)
            except ValueError:
                continue  # Partially written line
            if not isinstance(data, dict) or data.get("type") != "message":
                continue
            if isinstance(data.get("message"), dict):
                turns.append(data["message"])
        return turns

    def fetch_latest_assistant_turn(self, session_key: str) -> str | None:
        path = self.transcript_path(session_key)
        if path is None:
            return None
        return latest_assistant_reply(self.read_turns(path))


class HistoryApiReader:
    """Asks the runtime for the session's history over RPC."""

    name = "history"

    def __init__(self, client: RuntimeClient, limit: int = 50):
        self.client = client
        self.limit = limit

    def fetch_latest_assistant_turn(self, session_key: str) -> str | None:
        return latest_assistant_reply(self.client.history(session_key, self.limit))


# ── Transport ────────────────────────────────────────────────────────────────


class ConversationTransport:
    """Sends planning turns and waits for the remote agent's replies."""

    def __init__(
        self,
        client: RuntimeClient,
        strategies: list[ReplyStrategy],
        poll_interval: float = 2.0,
    ):
        self.client = client
        self.strategies = strategies
        self.poll_interval = poll_interval

    def send(self, session_key: str, message: str, idempotency_key: str):
        """Dispatch a message into the session. Does not wait for a reply."""
        logger.info("Sending to session %s (%s)", session_key, idempotency_key)
        return self.client.send(session_key, message, idempotency_key)

    def fetch_reply(self, session_key: str) -> str | None:
        """One pass over the strategy chain; the first hit short-circuits."""
        for strategy in self.strategies:
            try:
                text = strategy.fetch_latest_assistant_turn(session_key)
            except (OSError, ValueError, TransportError) as e:
                logger.debug("Reply strategy %s failed for %s: %s", strategy.name, session_key, e)
                continue
            if text:
                logger.debug("Reply for %s found via %s", session_key, strategy.name)
                return text
        return None

    def await_reply(
        self,
        session_key: str,
        timeout_s: float,
        cancel_event: threading.Event | None = None,
    ) -> str:
        """Poll until a fresh assistant turn appears.

        Raises ReplyTimeout at the deadline and ReplyCancelled as soon as
        ``cancel_event`` is set. Either way the sent message stays valid and
        the wait can be resumed later.
        """
        cancel_event = cancel_event or threading.Event()
        deadline = time.monotonic() + timeout_s
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ReplyTimeout(f"No reply from {session_key} after {timeout_s:g}s")
            if cancel_event.wait(min(self.poll_interval, remaining)):
                raise ReplyCancelled(f"Stopped waiting for a reply from {session_key}")
            text = self.fetch_reply(session_key)
            if text:
                logger.info("Got reply from %s (%d chars)", session_key, len(text))
                return text


def build_transport(config) -> ConversationTransport:
    """Transport wired from configuration: transcript first, history API second."""
    client = RuntimeClient(config.runtime_url, config.runtime_token)
    return ConversationTransport(
        client,
        [TranscriptFileReader(config.runtime_home), HistoryApiReader(client)],
        poll_interval=config.planning_poll_interval,
    )
