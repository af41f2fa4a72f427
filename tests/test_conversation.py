"""Tests for the conversational transport and its reply strategies."""

import json
import tempfile
import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import httpx
import pytest

from mission_control.core.conversation import (
    ConversationTransport,
    HistoryApiReader,
    TranscriptFileReader,
    agent_from_session_key,
    idempotency_key,
    latest_assistant_reply,
    message_text,
)
from mission_control.core.errors import ReplyCancelled, ReplyTimeout, TransportError
from mission_control.integrations.runtime import RuntimeClient

SESSION = "agent:scout:planning:build-login"


@pytest.fixture
def runtime_home():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp)


def write_transcript(home: Path, session_key: str, lines: list, session_id: str = "abc123"):
    sessions = home / "agents" / "scout" / "sessions"
    sessions.mkdir(parents=True, exist_ok=True)
    (sessions / "sessions.json").write_text(json.dumps({session_key: {"sessionId": session_id}}))
    with open(sessions / f"{session_id}.jsonl", "w") as f:
        for line in lines:
            f.write((line if isinstance(line, str) else json.dumps(line)) + "\n")


def turn(role, content):
    return {"type": "message", "message": {"role": role, "content": content}}


class StaticStrategy:
    def __init__(self, name, replies):
        self.name = name
        self.replies = list(replies)
        self.calls = 0

    def fetch_latest_assistant_turn(self, session_key):
        self.calls += 1
        if len(self.replies) > 1:
            return self.replies.pop(0)
        return self.replies[0] if self.replies else None


class BrokenStrategy:
    name = "broken"

    def fetch_latest_assistant_turn(self, session_key):
        raise OSError("disk gone")


class TestHelpers:
    def test_idempotency_key(self):
        assert idempotency_key("build-login", 1700000000000) == "planning-build-login-1700000000000"

    def test_agent_from_session_key(self):
        assert agent_from_session_key(SESSION) == "scout"
        assert agent_from_session_key("main") is None

    def test_message_text_string(self):
        assert message_text("hello") == "hello"

    def test_message_text_blocks(self):
        content = [{"type": "thinking", "text": "hmm"}, {"type": "text", "text": "answer"}]
        assert message_text(content) == "answer"

    def test_message_text_unknown(self):
        assert message_text(None) == ""
        assert message_text([{"type": "image"}]) == ""


class TestLatestAssistantReply:
    def test_answered(self):
        turns = [{"role": "user", "content": "q"}, {"role": "assistant", "content": "a"}]
        assert latest_assistant_reply(turns) == "a"

    def test_unanswered_user_turn(self):
        turns = [
            {"role": "user", "content": "q1"},
            {"role": "assistant", "content": "a1"},
            {"role": "user", "content": "q2"},
        ]
        assert latest_assistant_reply(turns) is None

    def test_no_assistant(self):
        assert latest_assistant_reply([{"role": "user", "content": "q"}]) is None

    def test_other_roles_ignored(self):
        turns = [
            {"role": "system", "content": "s"},
            {"role": "user", "content": "q"},
            {"role": "assistant", "content": [{"type": "text", "text": "a"}]},
        ]
        assert latest_assistant_reply(turns) == "a"


class TestTranscriptFileReader:
    def test_reads_reply(self, runtime_home):
        write_transcript(runtime_home, SESSION, [turn("user", "q"), turn("assistant", "a")])
        reader = TranscriptFileReader(runtime_home)
        assert reader.fetch_latest_assistant_turn(SESSION) == "a"

    def test_skips_non_message_and_partial_lines(self, runtime_home):
        write_transcript(runtime_home, SESSION, [
            {"type": "session", "id": "abc123"},
            turn("user", "q"),
            "[1, 2]",
            turn("assistant", "a"),
            '{"type": "message", "mess',
        ])
        reader = TranscriptFileReader(runtime_home)
        assert reader.fetch_latest_assistant_turn(SESSION) == "a"

    def test_missing_index(self, runtime_home):
        reader = TranscriptFileReader(runtime_home)
        assert reader.fetch_latest_assistant_turn(SESSION) is None

    def test_unknown_session(self, runtime_home):
        write_transcript(runtime_home, "agent:scout:planning:other", [turn("assistant", "a")])
        reader = TranscriptFileReader(runtime_home)
        assert reader.fetch_latest_assistant_turn(SESSION) is None

    def test_waiting_for_reply(self, runtime_home):
        write_transcript(runtime_home, SESSION, [turn("user", "q")])
        reader = TranscriptFileReader(runtime_home)
        assert reader.fetch_latest_assistant_turn(SESSION) is None


class TestHistoryApiReader:
    def test_reads_reply(self):
        client = MagicMock()
        client.history.return_value = [
            {"role": "user", "content": "q"},
            {"role": "assistant", "content": "a"},
        ]
        reader = HistoryApiReader(client)
        assert reader.fetch_latest_assistant_turn(SESSION) == "a"
        client.history.assert_called_once_with(SESSION, 50)


class TestTransport:
    def test_send_delegates(self):
        client = MagicMock()
        transport = ConversationTransport(client, [])
        transport.send(SESSION, "hello", "planning-x-1")
        client.send.assert_called_once_with(SESSION, "hello", "planning-x-1")

    def test_first_strategy_wins(self):
        first = StaticStrategy("transcript", ["from file"])
        second = StaticStrategy("history", ["from api"])
        transport = ConversationTransport(MagicMock(), [first, second])
        assert transport.fetch_reply(SESSION) == "from file"
        assert second.calls == 0

    def test_falls_back(self):
        first = StaticStrategy("transcript", [None])
        second = StaticStrategy("history", ["from api"])
        transport = ConversationTransport(MagicMock(), [first, second])
        assert transport.fetch_reply(SESSION) == "from api"

    def test_failing_strategy_skipped(self):
        second = StaticStrategy("history", ["from api"])
        transport = ConversationTransport(MagicMock(), [BrokenStrategy(), second])
        assert transport.fetch_reply(SESSION) == "from api"

    def test_await_reply_polls_until_found(self):
        strategy = StaticStrategy("transcript", [None, None, "done"])
        transport = ConversationTransport(MagicMock(), [strategy], poll_interval=0.01)
        assert transport.await_reply(SESSION, timeout_s=5) == "done"
        assert strategy.calls == 3

    def test_await_reply_timeout(self):
        strategy = StaticStrategy("transcript", [None])
        transport = ConversationTransport(MagicMock(), [strategy], poll_interval=0.01)
        with pytest.raises(ReplyTimeout):
            transport.await_reply(SESSION, timeout_s=0.05)

    def test_await_reply_cancelled(self):
        strategy = StaticStrategy("transcript", ["never read"])
        transport = ConversationTransport(MagicMock(), [strategy], poll_interval=0.01)
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(ReplyCancelled):
            transport.await_reply(SESSION, timeout_s=5, cancel_event=cancel)
        assert strategy.calls == 0


class TestRuntimeClient:
    @patch("mission_control.integrations.runtime.httpx.Client")
    def test_send(self, client_cls):
        http = client_cls.return_value.__enter__.return_value
        http.post.return_value.json.return_value = {"result": {"runId": "r1"}}

        client = RuntimeClient("http://runtime:18789/", token="secret")
        assert client.send(SESSION, "hi", "planning-x-1") == {"runId": "r1"}

        args, kwargs = http.post.call_args
        assert args[0] == "http://runtime:18789/rpc"
        assert kwargs["headers"]["Authorization"] == "Bearer secret"
        assert kwargs["json"] == {
            "method": "chat.send",
            "params": {"sessionKey": SESSION, "message": "hi", "idempotencyKey": "planning-x-1"},
        }

    @patch("mission_control.integrations.runtime.httpx.Client")
    def test_history_unwraps_messages(self, client_cls):
        http = client_cls.return_value.__enter__.return_value
        http.post.return_value.json.return_value = {
            "result": {"messages": [{"role": "assistant", "content": "a"}]}
        }
        assert RuntimeClient("http://runtime").history(SESSION) == [{"role": "assistant", "content": "a"}]

    @patch("mission_control.integrations.runtime.httpx.Client")
    def test_error_payload(self, client_cls):
        http = client_cls.return_value.__enter__.return_value
        http.post.return_value.json.return_value = {"error": {"message": "unknown session"}}
        with pytest.raises(TransportError, match="unknown session"):
            RuntimeClient("http://runtime").history(SESSION)

    @patch("mission_control.integrations.runtime.httpx.Client")
    def test_connection_error(self, client_cls):
        http = client_cls.return_value.__enter__.return_value
        http.post.side_effect = httpx.ConnectError("refused")
        with pytest.raises(TransportError):
            RuntimeClient("http://runtime").send(SESSION, "hi", "k")
