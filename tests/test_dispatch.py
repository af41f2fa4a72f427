"""Tests for the dispatch trigger and the Slack sink."""

from unittest.mock import MagicMock, patch

import httpx
import pytest

from mission_control.config import Config
from mission_control.core.dispatch import Dispatcher, build_dispatcher
from mission_control.core.events import build_event_bus
from mission_control.integrations import slack as slack_mod


class TestDispatcher:
    def test_url(self):
        dispatcher = Dispatcher("http://mc.local/")
        assert dispatcher.dispatch_url("build-login") == "http://mc.local/api/tasks/build-login/dispatch"

    @patch("mission_control.core.dispatch.httpx.post")
    def test_posts_with_token(self, mock_post):
        dispatcher = Dispatcher("http://mc.local", api_token="tok", background=False)
        dispatcher.trigger("build-login")
        args, kwargs = mock_post.call_args
        assert args[0] == "http://mc.local/api/tasks/build-login/dispatch"
        assert kwargs["headers"]["Authorization"] == "Bearer tok"

    @patch("mission_control.core.dispatch.httpx.post")
    def test_no_url_skips(self, mock_post):
        Dispatcher(None, background=False).trigger("build-login")
        mock_post.assert_not_called()

    @patch("mission_control.core.dispatch.httpx.post")
    def test_failure_is_swallowed(self, mock_post):
        mock_post.side_effect = httpx.ConnectError("refused")
        Dispatcher("http://mc.local", background=False).trigger("build-login")
        mock_post.assert_called_once()

    @patch("mission_control.core.dispatch.httpx.post")
    def test_http_error_is_swallowed(self, mock_post):
        mock_post.return_value.raise_for_status.side_effect = httpx.HTTPStatusError(
            "boom", request=MagicMock(), response=MagicMock()
        )
        Dispatcher("http://mc.local", background=False).trigger("build-login")

    def test_build_from_config(self):
        config = Config(dispatch_url="http://mc.local", api_token="tok")
        dispatcher = build_dispatcher(config)
        assert dispatcher.base_url == "http://mc.local"
        assert dispatcher.api_token == "tok"


class TestSlack:
    def test_no_token(self):
        assert slack_mod.get_client(None) is None

    def test_send_without_token_raises(self):
        with pytest.raises(slack_mod.SlackError):
            slack_mod.send_message(None, "#ops", "hi")

    def test_task_notification(self):
        blocks = slack_mod.format_task_notification(
            {"id": "build-login", "title": "Build login", "status": "review", "assigned_agent_id": None}
        )
        text = blocks[0]["text"]["text"]
        assert ":eyes:" in text
        assert "unassigned" in text

    @patch("mission_control.integrations.slack.send_message")
    def test_sink_posts_task_updates(self, mock_send):
        sink = slack_mod.SlackEventSink("xoxb-test", "#ops")
        sink("task_updated", {"id": "t1", "title": "T1", "status": "done", "assigned_agent_id": "bot"})
        channel = mock_send.call_args[0][1]
        assert channel == "#ops"

    @patch("mission_control.integrations.slack.send_message")
    def test_sink_ignores_other_events(self, mock_send):
        sink = slack_mod.SlackEventSink("xoxb-test", "#ops")
        sink("task_created", {"id": "t1"})
        mock_send.assert_not_called()

    @patch("mission_control.integrations.slack.send_message")
    def test_sink_failure_is_logged(self, mock_send):
        mock_send.side_effect = slack_mod.SlackError("down")
        sink = slack_mod.SlackEventSink("xoxb-test", "#ops")
        sink("agent_status_changed", {"agent_id": "bot", "status": "working"})

    def test_bus_only_wires_slack_when_configured(self):
        assert build_event_bus(Config())._subscribers == []
        bus = build_event_bus(Config(slack_bot_token="xoxb-test", slack_channel="#ops"))
        assert isinstance(bus._subscribers[0], slack_mod.SlackEventSink)
