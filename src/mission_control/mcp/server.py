"""MCP server exposing mission control task, agent and planning tools."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from mission_control.config import Config, get_config
from mission_control.core import agents as agents_mod
from mission_control.core import planning as planning_mod
from mission_control.core import tasks as tasks_mod
from mission_control.core import workspaces as workspaces_mod
from mission_control.core.conversation import ConversationTransport, build_transport
from mission_control.core.dispatch import Dispatcher, build_dispatcher
from mission_control.core.errors import MissionControlError
from mission_control.core.events import EventBus, build_event_bus
from mission_control.db.engine import init_db


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config
    transport: ConversationTransport
    events: EventBus
    dispatcher: Dispatcher


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Initialize DB connection on startup, close on shutdown."""
    config = get_config()
    db = init_db(config.db_path)
    workspaces_mod.ensure_default_workspace(db, config.workspace_id)
    try:
        yield AppContext(
            db=db,
            config=config,
            transport=build_transport(config),
            events=build_event_bus(config),
            dispatcher=build_dispatcher(config),
        )
    finally:
        db.close()


mcp = FastMCP("mission-control", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


# ── Task Tools ───────────────────────────────────────────────────────────────


@mcp.tool()
def create_task(
    ctx: Context,
    title: str,
    description: str = "",
    priority: str = "normal",
    workspace: str | None = None,
    assigned_agent_id: str | None = None,
) -> dict:
    """Create a new task. Priority: low, normal, high or urgent.

    Tasks created with an agent start as 'assigned' and are dispatched right away.
    """
    app = _ctx(ctx)
    workspace = workspace or app.config.workspace_id
    try:
        workspaces_mod.ensure_default_workspace(app.db, workspace)
        task = tasks_mod.create_task(
            app.db, title, workspace, description,
            priority=priority,
            assigned_agent_id=assigned_agent_id,
            events=app.events,
            dispatcher=app.dispatcher,
        )
    except MissionControlError as e:
        return {"error": str(e)}
    return tasks_mod.task_to_dict(task)


@mcp.tool()
def list_tasks(
    ctx: Context,
    workspace: str | None = None,
    status: str | None = None,
    assigned_agent_id: str | None = None,
) -> list[dict]:
    """List tasks, optionally filtered by workspace, status and assigned agent."""
    app = _ctx(ctx)
    tasks = tasks_mod.list_tasks(app.db, workspace, status=status, assigned_agent_id=assigned_agent_id)
    return [tasks_mod.task_to_dict(t) for t in tasks]


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get full details of a task including its planning transcript and history."""
    app = _ctx(ctx)
    task = tasks_mod.get_task(app.db, task_id)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    result = tasks_mod.task_to_dict(task, include_messages=True)
    result["events"] = [
        {"type": e.type, "message": e.message, "created_at": e.created_at.isoformat() if e.created_at else None}
        for e in tasks_mod.get_task_events(app.db, task_id)
    ]
    return result


@mcp.tool()
def update_task_status(
    ctx: Context,
    task_id: str,
    status: str,
    requesting_agent_id: str | None = None,
) -> dict:
    """Move a task. Valid statuses: inbox, planning, assigned, in_progress, testing, review, done.

    Only master agents may approve work from review to done. Moving an assigned
    task to 'assigned' dispatches it to its agent.
    """
    app = _ctx(ctx)
    try:
        task = tasks_mod.transition_task(
            app.db, task_id, status,
            requesting_agent_id=requesting_agent_id,
            events=app.events,
            dispatcher=app.dispatcher,
        )
    except MissionControlError as e:
        return {"error": str(e)}
    return tasks_mod.task_to_dict(task)


@mcp.tool()
def assign_task(ctx: Context, task_id: str, agent_id: str | None = None) -> dict:
    """Assign a task to an agent, or unassign it when agent_id is omitted."""
    app = _ctx(ctx)
    try:
        task = tasks_mod.reassign_task(
            app.db, task_id, agent_id, events=app.events, dispatcher=app.dispatcher
        )
    except MissionControlError as e:
        return {"error": str(e)}
    return tasks_mod.task_to_dict(task)


@mcp.tool()
def delete_task(ctx: Context, task_id: str) -> dict:
    """Delete a task and its history."""
    app = _ctx(ctx)
    if not tasks_mod.delete_task(app.db, task_id, app.events):
        return {"error": f"Task not found: {task_id}"}
    return {"deleted": task_id}


# ── Agent Tools ──────────────────────────────────────────────────────────────


@mcp.tool()
def register_agent(
    ctx: Context,
    name: str,
    role: str = "",
    is_master: bool = False,
    workspace: str | None = None,
) -> dict:
    """Register an agent. Master agents act as orchestrators for their workspace."""
    app = _ctx(ctx)
    workspace = workspace or app.config.workspace_id
    try:
        workspaces_mod.ensure_default_workspace(app.db, workspace)
        agent = agents_mod.create_agent(app.db, name, workspace, role=role, is_master=is_master)
    except MissionControlError as e:
        return {"error": str(e)}
    return _agent_to_dict(agent)


@mcp.tool()
def list_agents(ctx: Context, workspace: str | None = None, status: str | None = None) -> list[dict]:
    """List agents and their current status (standby, working, offline)."""
    app = _ctx(ctx)
    return [_agent_to_dict(a) for a in agents_mod.list_agents(app.db, workspace, status=status)]


@mcp.tool()
def set_agent_offline(ctx: Context, agent_id: str, offline: bool = True) -> dict:
    """Mark an agent offline, or bring it back online with offline=False."""
    app = _ctx(ctx)
    try:
        agent = agents_mod.set_agent_offline(app.db, agent_id, offline, app.events)
    except MissionControlError as e:
        return {"error": str(e)}
    return _agent_to_dict(agent)


# ── Planning Tools ───────────────────────────────────────────────────────────


@mcp.tool()
def start_planning(ctx: Context, task_id: str) -> dict:
    """Start a planning conversation for a task and return the first question.

    Blocks until the planner replies or the planning timeout elapses.
    """
    app = _ctx(ctx)
    try:
        reply = planning_mod.start_planning(
            app.db, app.transport, task_id,
            agent=app.config.planning_agent,
            timeout_s=app.config.planning_timeout_s,
            events=app.events,
            dispatcher=app.dispatcher,
        )
    except MissionControlError as e:
        return {"error": str(e)}
    return reply.to_dict()


@mcp.tool()
def answer_planning_question(
    ctx: Context,
    task_id: str,
    answer: str,
    other_text: str | None = None,
) -> dict:
    """Answer the current planning question with an option id.

    Pass answer='other' together with other_text for a free-text answer.
    """
    app = _ctx(ctx)
    try:
        reply = planning_mod.submit_answer(
            app.db, app.transport, task_id, answer,
            other_text=other_text,
            timeout_s=app.config.planning_timeout_s,
            max_rounds=app.config.planning_max_rounds,
            events=app.events,
            dispatcher=app.dispatcher,
        )
    except MissionControlError as e:
        return {"error": str(e)}
    return reply.to_dict()


@mcp.tool()
def retry_planning(ctx: Context, task_id: str) -> dict:
    """Resend the last unanswered planning turn after a timeout."""
    app = _ctx(ctx)
    try:
        reply = planning_mod.retry_round(
            app.db, app.transport, task_id,
            timeout_s=app.config.planning_timeout_s,
            events=app.events,
            dispatcher=app.dispatcher,
        )
    except MissionControlError as e:
        return {"error": str(e)}
    return reply.to_dict()


@mcp.tool()
def poll_planning(ctx: Context, task_id: str) -> dict:
    """Check once, without waiting, whether the planner has replied."""
    app = _ctx(ctx)
    try:
        reply = planning_mod.poll_planning(
            app.db, app.transport, task_id, events=app.events, dispatcher=app.dispatcher
        )
    except MissionControlError as e:
        return {"error": str(e)}
    if reply is None:
        return {"has_reply": False}
    return {"has_reply": True, **reply.to_dict()}


@mcp.tool()
def get_planning_state(ctx: Context, task_id: str) -> dict:
    """Get a task's planning transcript, current question and completion state."""
    app = _ctx(ctx)
    try:
        return planning_mod.get_planning_state(app.db, task_id)
    except MissionControlError as e:
        return {"error": str(e)}


@mcp.tool()
def cancel_planning(ctx: Context, task_id: str) -> dict:
    """Cancel planning and return the task to the inbox."""
    app = _ctx(ctx)
    try:
        task = planning_mod.cancel_planning(
            app.db, task_id, events=app.events, dispatcher=app.dispatcher
        )
    except MissionControlError as e:
        return {"error": str(e)}
    return tasks_mod.task_to_dict(task)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _agent_to_dict(agent) -> dict:
    return {
        "id": agent.id,
        "name": agent.name,
        "workspace_id": agent.workspace_id,
        "role": agent.role,
        "status": agent.status,
        "is_master": agent.is_master,
    }
