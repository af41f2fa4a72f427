"""CLI entry point for mission control."""

import json
import logging
import sys

import click

from mission_control.config import get_config
from mission_control.core import agents as agents_mod
from mission_control.core import planning as planning_mod
from mission_control.core import tasks as tasks_mod
from mission_control.core import workspaces as workspaces_mod
from mission_control.core.conversation import build_transport
from mission_control.core.dispatch import build_dispatcher
from mission_control.core.errors import MissionControlError
from mission_control.core.events import build_event_bus
from mission_control.db.engine import get_db


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _fail(e: Exception):
    click.echo(f"Error: {e}", err=True)
    sys.exit(1)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose):
    """mc - Mission Control CLI"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Workspace Commands ───────────────────────────────────────────────────────


@main.group("workspace")
def workspace_group():
    """Manage workspaces."""
    pass


@workspace_group.command("add")
@click.argument("workspace_id")
@click.option("--name", default=None, help="Display name (defaults to the ID)")
def workspace_add(workspace_id, name):
    """Create a new workspace."""
    with _get_db() as db:
        try:
            ws = workspaces_mod.create_workspace(db, workspace_id, name or workspace_id)
        except MissionControlError as e:
            _fail(e)
        click.echo(f"Workspace created: {ws.id} ({ws.name})")


@workspace_group.command("list")
def workspace_list():
    """List workspaces."""
    config = get_config()
    with _get_db() as db:
        workspaces_mod.ensure_default_workspace(db, config.workspace_id)
        for ws in workspaces_mod.list_workspaces(db):
            click.echo(f"  {ws.id}: {ws.name}")


# ── Agent Commands ───────────────────────────────────────────────────────────


@main.group("agent")
def agent_group():
    """Manage agents."""
    pass


@agent_group.command("add")
@click.argument("name")
@click.option("--workspace", default=None, help="Workspace ID")
@click.option("--role", default="", help="What the agent does")
@click.option("--master", is_flag=True, help="Register as an orchestrator")
def agent_add(name, workspace, role, master):
    """Register a new agent."""
    config = get_config()
    workspace = workspace or config.workspace_id
    with _get_db() as db:
        workspaces_mod.ensure_default_workspace(db, workspace)
        try:
            agent = agents_mod.create_agent(db, name, workspace, role=role, is_master=master)
        except MissionControlError as e:
            _fail(e)
        click.echo(f"Registered agent: {agent.id}")
        if agent.is_master:
            click.echo("  Master: yes")


@agent_group.command("list")
@click.option("--workspace", default=None, help="Workspace ID")
@click.option("--status", default=None, help="Filter: standby, working, offline")
def agent_list(workspace, status):
    """List agents."""
    with _get_db() as db:
        agents = agents_mod.list_agents(db, workspace, status=status)
        if not agents:
            click.echo("No agents found.")
            return
        for a in agents:
            master = " [master]" if a.is_master else ""
            click.echo(f"  [{a.status}] {a.id}: {a.name}{master}")


@agent_group.command("offline")
@click.argument("agent_id")
def agent_offline(agent_id):
    """Mark an agent offline."""
    config = get_config()
    with _get_db() as db:
        try:
            agent = agents_mod.set_agent_offline(db, agent_id, True, build_event_bus(config))
        except MissionControlError as e:
            _fail(e)
        click.echo(f"{agent.id} is now {agent.status}")


@agent_group.command("online")
@click.argument("agent_id")
def agent_online(agent_id):
    """Bring an offline agent back."""
    config = get_config()
    with _get_db() as db:
        try:
            agent = agents_mod.set_agent_offline(db, agent_id, False, build_event_bus(config))
        except MissionControlError as e:
            _fail(e)
        click.echo(f"{agent.id} is now {agent.status}")


# ── Task Commands ────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--workspace", default=None, help="Workspace ID")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--priority", "-p", default="normal",
              type=click.Choice(["low", "normal", "high", "urgent"]), help="Task priority")
@click.option("--agent", default=None, help="Assign to this agent immediately")
def task_add(title, workspace, description, priority, agent):
    """Create a new task."""
    config = get_config()
    workspace = workspace or config.workspace_id
    with _get_db() as db:
        workspaces_mod.ensure_default_workspace(db, workspace)
        try:
            task = tasks_mod.create_task(
                db, title, workspace, description,
                priority=priority,
                assigned_agent_id=agent,
                events=build_event_bus(config),
                dispatcher=build_dispatcher(config),
            )
        except MissionControlError as e:
            _fail(e)
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: {task.priority}")
        click.echo(f"  Status: {task.status}")


@task_group.command("list")
@click.option("--workspace", default=None, help="Workspace ID")
@click.option("--status", default=None, help="Filter by status")
@click.option("--agent", default=None, help="Filter by assigned agent")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(workspace, status, agent, json_output):
    """List tasks."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, workspace, status=status, assigned_agent_id=agent)

        if json_output:
            click.echo(json.dumps([tasks_mod.task_to_dict(t) for t in tasks], indent=2))
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        status_icons = {
            "inbox": "○",
            "planning": "?",
            "assigned": "◔",
            "in_progress": "●",
            "testing": "◑",
            "review": "◕",
            "done": "✓",
        }
        for task in tasks:
            icon = status_icons.get(task.status, "?")
            agent_info = f" [agent: {task.assigned_agent_id}]" if task.assigned_agent_id else ""
            click.echo(f"  {icon} {task.id}: {task.title} ({task.status}, {task.priority}){agent_info}")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Status: {task.status}")
        click.echo(f"  Priority: {task.priority}")
        click.echo(f"  Workspace: {task.workspace_id}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.assigned_agent_id:
            click.echo(f"  Agent: {task.assigned_agent_id}")
        if task.planning_session_key:
            state = "complete" if task.planning_complete else "in progress"
            click.echo(f"  Planning: {state} ({task.planning_session_key})")
        if task.created_at:
            click.echo(f"  Created: {task.created_at}")

        events = tasks_mod.get_task_events(db, task_id)
        if events:
            click.echo("  History:")
            for e in events:
                click.echo(f"    [{e.created_at}] {e.type}: {e.message}")


@task_group.command("move")
@click.argument("task_id")
@click.argument("status")
@click.option("--as-agent", default=None, help="Agent requesting the change")
def task_move(task_id, status, as_agent):
    """Move a task to a new status."""
    config = get_config()
    with _get_db() as db:
        try:
            task = tasks_mod.transition_task(
                db, task_id, status,
                requesting_agent_id=as_agent,
                events=build_event_bus(config),
                dispatcher=build_dispatcher(config),
            )
        except MissionControlError as e:
            _fail(e)
        click.echo(f"{task.id} is now {task.status}")


@task_group.command("assign")
@click.argument("task_id")
@click.argument("agent_id", required=False)
def task_assign(task_id, agent_id):
    """Assign a task to an agent (omit AGENT_ID to unassign)."""
    config = get_config()
    with _get_db() as db:
        try:
            task = tasks_mod.reassign_task(
                db, task_id, agent_id,
                events=build_event_bus(config),
                dispatcher=build_dispatcher(config),
            )
        except MissionControlError as e:
            _fail(e)
        if task.assigned_agent_id:
            click.echo(f"Assigned {task.id} to {task.assigned_agent_id}")
        else:
            click.echo(f"Unassigned {task.id}")


@task_group.command("delete")
@click.argument("task_id")
def task_delete(task_id):
    """Delete a task."""
    config = get_config()
    with _get_db() as db:
        if not tasks_mod.delete_task(db, task_id, build_event_bus(config)):
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        click.echo(f"Deleted task: {task_id}")


# ── Planning Commands ────────────────────────────────────────────────────────


@main.group("plan")
def plan_group():
    """Run planning conversations."""
    pass


@plan_group.command("start")
@click.argument("task_id")
def plan_start(task_id):
    """Start planning a task and show the first question."""
    config = get_config()
    with _get_db() as db:
        try:
            reply = planning_mod.start_planning(
                db, build_transport(config), task_id,
                agent=config.planning_agent,
                timeout_s=config.planning_timeout_s,
                events=build_event_bus(config),
                dispatcher=build_dispatcher(config),
            )
        except MissionControlError as e:
            _fail(e)
        _echo_reply(reply)


@plan_group.command("answer")
@click.argument("task_id")
@click.argument("answer")
@click.option("--other", "other_text", default=None, help="Free text for the 'other' option")
def plan_answer(task_id, answer, other_text):
    """Answer the current planning question."""
    config = get_config()
    with _get_db() as db:
        try:
            reply = planning_mod.submit_answer(
                db, build_transport(config), task_id, answer,
                other_text=other_text,
                timeout_s=config.planning_timeout_s,
                max_rounds=config.planning_max_rounds,
                events=build_event_bus(config),
                dispatcher=build_dispatcher(config),
            )
        except MissionControlError as e:
            _fail(e)
        _echo_reply(reply)


@plan_group.command("retry")
@click.argument("task_id")
def plan_retry(task_id):
    """Resend the last unanswered planning turn."""
    config = get_config()
    with _get_db() as db:
        try:
            reply = planning_mod.retry_round(
                db, build_transport(config), task_id,
                timeout_s=config.planning_timeout_s,
                events=build_event_bus(config),
                dispatcher=build_dispatcher(config),
            )
        except MissionControlError as e:
            _fail(e)
        _echo_reply(reply)


@plan_group.command("cancel")
@click.argument("task_id")
def plan_cancel(task_id):
    """Cancel planning and return the task to the inbox."""
    config = get_config()
    with _get_db() as db:
        try:
            task = planning_mod.cancel_planning(
                db, task_id,
                events=build_event_bus(config),
                dispatcher=build_dispatcher(config),
            )
        except MissionControlError as e:
            _fail(e)
        click.echo(f"Planning cancelled; {task.id} is now {task.status}")


@plan_group.command("show")
@click.argument("task_id")
def plan_show(task_id):
    """Show the planning state of a task."""
    with _get_db() as db:
        try:
            state = planning_mod.get_planning_state(db, task_id)
        except MissionControlError as e:
            _fail(e)
        if not state["is_started"]:
            click.echo(f"Planning not started for {task_id}")
            return
        click.echo(f"Session: {state['session_key']}")
        click.echo(f"  Turns: {len(state['messages'])}")
        if state["is_complete"]:
            click.echo("  Complete: yes")
            click.echo(json.dumps(state["spec"], indent=2))
        elif state["awaiting_reply"]:
            click.echo("  Waiting for a reply (use 'mc plan retry' to resend)")
        elif state["current_question"]:
            _echo_question(state["current_question"])


# ── Server Commands ──────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve_command(host, port):
    """Run the HTTP API."""
    from mission_control.web.app import run_server

    click.echo(f"Serving API at http://{host}:{port}")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from mission_control.mcp.server import mcp
    from mission_control.mcp import prompts  # noqa: F401 - registers prompts

    mcp.run(transport="stdio")


# ── Helpers ──────────────────────────────────────────────────────────────────


def _echo_question(question: dict):
    click.echo(question.get("question", ""))
    for option in question.get("options") or []:
        click.echo(f"  {option.get('id')}) {option.get('label')}")


def _echo_reply(reply: planning_mod.PlanningReply):
    if reply.kind == "question":
        _echo_question(reply.question)
    elif reply.kind == "complete":
        click.echo("Planning complete")
        click.echo(f"  Title: {reply.spec.get('title', '')}")
        if reply.spec.get("summary"):
            click.echo(f"  Summary: {reply.spec['summary']}")
        for agent in reply.agents or []:
            click.echo(f"  Agent: {agent.get('name')} - {agent.get('role', '')}")
    else:
        click.echo("Unrecognized reply from the planner:")
        click.echo(reply.raw)


if __name__ == "__main__":
    main()
