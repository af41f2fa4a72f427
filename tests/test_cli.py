"""Tests for the CLI."""

import json
import os
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from mission_control.cli import main
from mission_control.core.errors import ReplyTimeout

QUESTION = json.dumps({
    "question": "Scope?",
    "options": [{"id": "a", "label": "Small"}, {"id": "other", "label": "Other"}],
})


class FakeTransport:
    def __init__(self, replies):
        self.replies = list(replies)
        self.sent = []

    def send(self, session_key, message, idempotency_key):
        self.sent.append((session_key, message, idempotency_key))

    def await_reply(self, session_key, timeout_s, cancel_event=None):
        if not self.replies:
            raise ReplyTimeout(f"No reply from {session_key}")
        return self.replies.pop(0)


@pytest.fixture
def cli_env():
    """Set up a temp environment for CLI testing."""
    with tempfile.TemporaryDirectory() as tmp:
        env = {
            "MC_DB_PATH": str(Path(tmp) / "test.db"),
            "MISSION_CONTROL_URL": "",
            "SLACK_BOT_TOKEN": "",
        }
        old_env = {}
        for k, v in env.items():
            old_env[k] = os.environ.get(k)
            os.environ[k] = v

        yield CliRunner()

        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


class TestCLI:
    def test_help(self, cli_env):
        result = cli_env.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "Mission Control" in result.output

    def test_workspace_add_and_list(self, cli_env):
        result = cli_env.invoke(main, ["workspace", "add", "lab", "--name", "Lab"])
        assert result.exit_code == 0
        result = cli_env.invoke(main, ["workspace", "list"])
        assert "default" in result.output
        assert "lab: Lab" in result.output

    def test_task_add_and_list(self, cli_env):
        result = cli_env.invoke(main, ["task", "add", "Build login", "-p", "high"])
        assert result.exit_code == 0
        assert "Created task: build-login" in result.output

        result = cli_env.invoke(main, ["task", "list"])
        assert "build-login" in result.output

        result = cli_env.invoke(main, ["task", "list", "--json"])
        data = json.loads(result.output)
        assert data[0]["priority"] == "high"

    def test_task_show(self, cli_env):
        cli_env.invoke(main, ["task", "add", "Build login", "-d", "Add a login page"])
        result = cli_env.invoke(main, ["task", "show", "build-login"])
        assert result.exit_code == 0
        assert "Add a login page" in result.output
        assert "task_created" in result.output

    def test_task_show_missing(self, cli_env):
        result = cli_env.invoke(main, ["task", "show", "nope"])
        assert result.exit_code == 1

    def test_agent_flow(self, cli_env):
        cli_env.invoke(main, ["agent", "add", "Builder"])
        cli_env.invoke(main, ["task", "add", "Build login", "--agent", "builder"])

        result = cli_env.invoke(main, ["task", "move", "build-login", "in_progress"])
        assert result.exit_code == 0
        assert "in_progress" in result.output

        result = cli_env.invoke(main, ["agent", "list"])
        assert "[working] builder" in result.output

    def test_agent_offline_online(self, cli_env):
        cli_env.invoke(main, ["agent", "add", "Builder"])
        result = cli_env.invoke(main, ["agent", "offline", "builder"])
        assert "builder is now offline" in result.output
        result = cli_env.invoke(main, ["agent", "online", "builder"])
        assert "builder is now standby" in result.output

    def test_move_invalid_status(self, cli_env):
        cli_env.invoke(main, ["task", "add", "Build login"])
        result = cli_env.invoke(main, ["task", "move", "build-login", "blocked"])
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_approval_gate(self, cli_env):
        cli_env.invoke(main, ["agent", "add", "Builder"])
        cli_env.invoke(main, ["task", "add", "Build login"])
        cli_env.invoke(main, ["task", "move", "build-login", "review"])
        result = cli_env.invoke(main, ["task", "move", "build-login", "done", "--as-agent", "builder"])
        assert result.exit_code == 1
        assert "only the master agent" in result.output

    def test_assign_and_unassign(self, cli_env):
        cli_env.invoke(main, ["agent", "add", "Builder"])
        cli_env.invoke(main, ["task", "add", "Build login"])
        result = cli_env.invoke(main, ["task", "assign", "build-login", "builder"])
        assert "Assigned build-login to builder" in result.output
        result = cli_env.invoke(main, ["task", "assign", "build-login"])
        assert "Unassigned build-login" in result.output

    def test_delete(self, cli_env):
        cli_env.invoke(main, ["task", "add", "Build login"])
        assert cli_env.invoke(main, ["task", "delete", "build-login"]).exit_code == 0
        assert cli_env.invoke(main, ["task", "delete", "build-login"]).exit_code == 1


class TestPlanCommands:
    def test_plan_start_and_show(self, cli_env):
        cli_env.invoke(main, ["task", "add", "Build login"])
        with patch("mission_control.cli.build_transport", return_value=FakeTransport([QUESTION])):
            result = cli_env.invoke(main, ["plan", "start", "build-login"])
        assert result.exit_code == 0
        assert "Scope?" in result.output
        assert "a) Small" in result.output

        result = cli_env.invoke(main, ["plan", "show", "build-login"])
        assert "agent:scout:planning:build-login" in result.output
        assert "Scope?" in result.output

    def test_plan_timeout_and_cancel(self, cli_env):
        cli_env.invoke(main, ["task", "add", "Build login"])
        with patch("mission_control.cli.build_transport", return_value=FakeTransport([])):
            result = cli_env.invoke(main, ["plan", "start", "build-login"])
        assert result.exit_code == 1
        assert "No reply" in result.output

        result = cli_env.invoke(main, ["plan", "show", "build-login"])
        assert "Waiting for a reply" in result.output

        result = cli_env.invoke(main, ["plan", "cancel", "build-login"])
        assert "build-login is now inbox" in result.output

    def test_plan_answer_not_started(self, cli_env):
        cli_env.invoke(main, ["task", "add", "Build login"])
        with patch("mission_control.cli.build_transport", return_value=FakeTransport([QUESTION])):
            result = cli_env.invoke(main, ["plan", "answer", "build-login", "a"])
        assert result.exit_code == 1
