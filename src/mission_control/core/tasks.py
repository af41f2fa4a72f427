"""Task lifecycle: CRUD, status transitions, approval gating and agent-status sync."""

import json
import logging
import sqlite3
from datetime import datetime

from mission_control.core import agents as agents_mod
from mission_control.core.dispatch import Dispatcher
from mission_control.core.errors import Forbidden, NotFound, ValidationError
from mission_control.core.events import EventBus, list_events, log_event, publish
from mission_control.core.ids import slugify, unique_id
from mission_control.db.models import (
    PRIORITIES,
    TASK_STATUSES,
    Agent,
    Event,
    PlanningMessage,
    Task,
)

logger = logging.getLogger(__name__)

# Task statuses after which an agent may drop back to standby.
SETTLING_STATUSES = ("done", "review", "inbox", "testing")

_UNCHANGED = object()


def create_task(
    db: sqlite3.Connection,
    title: str,
    workspace_id: str = "default",
    description: str = "",
    priority: str = "normal",
    assigned_agent_id: str | None = None,
    events: EventBus | None = None,
    dispatcher: Dispatcher | None = None,
) -> Task:
    """Create a new task in the inbox, or already assigned when an agent is given."""
    if not title.strip():
        raise ValidationError("Task title is required")
    _check_priority(priority)
    if not db.execute("SELECT 1 FROM workspaces WHERE id = ?", (workspace_id,)).fetchone():
        raise NotFound(f"Workspace not found: {workspace_id}")
    if assigned_agent_id and not agents_mod.get_agent(db, assigned_agent_id):
        raise NotFound(f"Agent not found: {assigned_agent_id}")

    task_id = unique_id(db, "tasks", slugify(title))
    status = "assigned" if assigned_agent_id else "inbox"

    db.execute(
        """INSERT INTO tasks (id, workspace_id, title, description, status, priority, assigned_agent_id)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (task_id, workspace_id, title, description, status, priority, assigned_agent_id),
    )
    log_event(
        db, "task_created",
        task_id=task_id,
        agent_id=assigned_agent_id,
        message=f'Task "{title}" created',
        new_value=status,
    )
    db.commit()

    task = get_task(db, task_id)
    publish(events, "task_created", task_to_dict(task))
    if assigned_agent_id:
        _request_dispatch(db, task, dispatcher)
    return task


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    return _row_to_task(row)


def require_task(db: sqlite3.Connection, task_id: str) -> Task:
    """Get a task by ID, raising NotFound if it does not exist."""
    task = get_task(db, task_id)
    if not task:
        raise NotFound(f"Task not found: {task_id}")
    return task


def list_tasks(
    db: sqlite3.Connection,
    workspace_id: str | None = None,
    status: str | None = None,
    assigned_agent_id: str | None = None,
) -> list[Task]:
    """List tasks with optional filters."""
    query = "SELECT * FROM tasks WHERE 1=1"
    params: list = []

    if workspace_id:
        query += " AND workspace_id = ?"
        params.append(workspace_id)

    if status:
        query += " AND status = ?"
        params.append(status)

    if assigned_agent_id:
        query += " AND assigned_agent_id = ?"
        params.append(assigned_agent_id)

    query += " ORDER BY created_at ASC, rowid ASC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_task(r) for r in rows]


def delete_task(
    db: sqlite3.Connection,
    task_id: str,
    events: EventBus | None = None,
) -> bool:
    """Delete a task and its event history, settling its agent if it was working on it."""
    task = get_task(db, task_id)
    if not task:
        return False

    db.execute("DELETE FROM events WHERE task_id = ?", (task_id,))
    db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    db.commit()
    publish(events, "task_deleted", {"id": task_id})

    if task.assigned_agent_id and task.status == "in_progress":
        _settle_agent(db, task.assigned_agent_id, events)
    return True


def get_task_events(db: sqlite3.Connection, task_id: str) -> list[Event]:
    """Get the event history for a task."""
    return list_events(db, task_id=task_id)


# ── Transitions ──────────────────────────────────────────────────────────────


def transition_task(
    db: sqlite3.Connection,
    task_id: str,
    new_status: str,
    requesting_agent_id: str | None = None,
    events: EventBus | None = None,
    dispatcher: Dispatcher | None = None,
) -> Task:
    """Move a task to ``new_status``.

    Approving work out of review (``review -> done``) is restricted to master
    agents when an agent makes the request; requests without an agent act
    with operator authority and are not gated. Moving to ``assigned`` with an
    agent bound requests a dispatch. Same-status requests are no-ops.
    """
    return update_task(
        db, task_id,
        status=new_status,
        requesting_agent_id=requesting_agent_id,
        events=events,
        dispatcher=dispatcher,
    )


def reassign_task(
    db: sqlite3.Connection,
    task_id: str,
    agent_id: str | None,
    events: EventBus | None = None,
    dispatcher: Dispatcher | None = None,
) -> Task:
    """Bind a task to a different agent (or unbind it with None)."""
    return update_task(
        db, task_id,
        assigned_agent_id=agent_id,
        events=events,
        dispatcher=dispatcher,
    )


def update_task(
    db: sqlite3.Connection,
    task_id: str,
    title: str | None = None,
    description: str | None = None,
    priority: str | None = None,
    status: str | None = None,
    assigned_agent_id=_UNCHANGED,
    requesting_agent_id: str | None = None,
    events: EventBus | None = None,
    dispatcher: Dispatcher | None = None,
) -> Task:
    """Apply field edits, a status change and an assignment change in one write.

    At most one dispatch is requested per call: when the resulting task is
    ``assigned`` with an agent bound and either its status or its agent changed.
    """
    if all(v is None for v in (title, description, priority, status)) and assigned_agent_id is _UNCHANGED:
        raise ValidationError("No updates provided")
    if status is not None and status not in TASK_STATUSES:
        raise ValidationError(f"Invalid task status: {status}")
    if priority is not None:
        _check_priority(priority)
    if title is not None and not title.strip():
        raise ValidationError("Task title cannot be empty")

    existing = require_task(db, task_id)

    if status == "done" and existing.status == "review" and requesting_agent_id:
        _require_master(db, requesting_agent_id)

    updates: dict = {}
    if title is not None and title != existing.title:
        updates["title"] = title
    if description is not None and description != existing.description:
        updates["description"] = description
    if priority is not None and priority != existing.priority:
        updates["priority"] = priority

    status_changed = status is not None and status != existing.status
    if status_changed:
        updates["status"] = status
        if status == "done":
            updates["completed_at"] = datetime.now().isoformat()

    agent_changed = (
        assigned_agent_id is not _UNCHANGED
        and assigned_agent_id != existing.assigned_agent_id
    )
    new_agent: Agent | None = None
    if agent_changed:
        if assigned_agent_id is not None:
            new_agent = agents_mod.get_agent(db, assigned_agent_id)
            if not new_agent:
                raise NotFound(f"Agent not found: {assigned_agent_id}")
        updates["assigned_agent_id"] = assigned_agent_id

    if not updates:
        return existing

    set_parts = [f"{k} = ?" for k in updates]
    set_parts.append("updated_at = datetime('now')")
    values = list(updates.values()) + [task_id]
    db.execute(f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ?", values)

    final_title = updates.get("title", existing.title)
    if status_changed:
        event_type = "task_completed" if status == "done" else "task_status_changed"
        log_event(
            db, event_type,
            task_id=task_id,
            message=f'Task "{final_title}" moved to {status}',
            old_value=existing.status,
            new_value=status,
        )
    if agent_changed:
        if new_agent:
            log_event(
                db, "task_assigned",
                task_id=task_id,
                agent_id=new_agent.id,
                message=f'"{final_title}" assigned to {new_agent.name}',
                old_value=existing.assigned_agent_id,
                new_value=new_agent.id,
            )
        else:
            log_event(
                db, "task_unassigned",
                task_id=task_id,
                agent_id=existing.assigned_agent_id,
                message=f'"{final_title}" unassigned',
                old_value=existing.assigned_agent_id,
            )
    db.commit()

    task = get_task(db, task_id)
    logger.info("Task '%s' updated: %s", task_id, ", ".join(sorted(updates)))
    publish(events, "task_updated", task_to_dict(task))

    # Keep agent status consistent with the new state of this task.
    if status_changed and task.assigned_agent_id:
        sync_agent_status(db, task.assigned_agent_id, task.status, exclude_task_id=task_id, events=events)
    if agent_changed:
        if existing.assigned_agent_id and existing.status == "in_progress":
            _settle_agent(db, existing.assigned_agent_id, events)
        if new_agent and task.status == "in_progress" and not status_changed:
            sync_agent_status(db, new_agent.id, "in_progress", events=events)

    if task.assigned_agent_id and task.status == "assigned" and (status_changed or agent_changed):
        _request_dispatch(db, task, dispatcher)

    return task


def sync_agent_status(
    db: sqlite3.Connection,
    agent_id: str,
    task_status: str,
    exclude_task_id: str | None = None,
    events: EventBus | None = None,
) -> Agent | None:
    """Bring an agent's status in line with a task that just moved to ``task_status``.

    ``in_progress`` makes the agent working. A settling status makes it standby
    unless another in_progress task remains, counted fresh from the store.
    Offline agents are left alone. The count-then-write is not atomic across
    concurrent requests; a wrong label is corrected by the next transition.
    """
    agent = agents_mod.get_agent(db, agent_id)
    if not agent or agent.status == "offline":
        return agent
    if task_status == "in_progress":
        return agents_mod.set_agent_status(db, agent_id, "working", events)
    if task_status in SETTLING_STATUSES:
        return _settle_agent(db, agent_id, events, exclude_task_id=exclude_task_id)
    return agent


def _settle_agent(
    db: sqlite3.Connection,
    agent_id: str,
    events: EventBus | None,
    exclude_task_id: str | None = None,
) -> Agent | None:
    agent = agents_mod.get_agent(db, agent_id)
    if not agent or agent.status == "offline":
        return agent
    if agents_mod.count_active_tasks(db, agent_id, exclude_task_id) == 0:
        return agents_mod.set_agent_status(db, agent_id, "standby", events)
    return agent


def _require_master(db: sqlite3.Connection, agent_id: str):
    agent = agents_mod.get_agent(db, agent_id)
    if not agent or not agent.is_master:
        raise Forbidden("Forbidden: only the master agent can approve tasks")


def _request_dispatch(db: sqlite3.Connection, task: Task, dispatcher: Dispatcher | None):
    log_event(
        db, "dispatch_requested",
        task_id=task.id,
        agent_id=task.assigned_agent_id,
        message=f'Dispatch requested for "{task.title}"',
    )
    db.commit()
    if dispatcher is not None:
        dispatcher.trigger(task.id)


def _check_priority(priority: str):
    if priority not in PRIORITIES:
        raise ValidationError(
            f"Invalid priority: {priority} (expected one of {', '.join(PRIORITIES)})"
        )


# ── Serialization ────────────────────────────────────────────────────────────


def task_to_dict(task: Task, include_messages: bool = False) -> dict:
    data = {
        "id": task.id,
        "workspace_id": task.workspace_id,
        "title": task.title,
        "description": task.description,
        "status": task.status,
        "priority": task.priority,
        "assigned_agent_id": task.assigned_agent_id,
        "planning_session_key": task.planning_session_key,
        "planning_complete": task.planning_complete,
        "planning_spec": task.planning_spec,
        "planning_agents": task.planning_agents,
        "planning_execution_plan": task.planning_execution_plan,
        "created_at": task.created_at.isoformat() if task.created_at else None,
        "updated_at": task.updated_at.isoformat() if task.updated_at else None,
        "completed_at": task.completed_at.isoformat() if task.completed_at else None,
    }
    if include_messages:
        data["planning_messages"] = [
            {"role": m.role, "content": m.content, "timestamp": m.timestamp}
            for m in task.planning_messages
        ]
    return data


def _row_to_task(row: sqlite3.Row) -> Task:
    messages = json.loads(row["planning_messages"]) if row["planning_messages"] else []
    return Task(
        id=row["id"],
        workspace_id=row["workspace_id"],
        title=row["title"],
        description=row["description"] or "",
        status=row["status"],
        priority=row["priority"] or "normal",
        assigned_agent_id=row["assigned_agent_id"],
        planning_session_key=row["planning_session_key"],
        planning_messages=[
            PlanningMessage(role=m["role"], content=m["content"], timestamp=m["timestamp"])
            for m in messages
        ],
        planning_complete=bool(row["planning_complete"]),
        planning_spec=_loads(row["planning_spec"]),
        planning_agents=_loads(row["planning_agents"]),
        planning_execution_plan=_loads(row["planning_execution_plan"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        completed_at=_parse_dt(row["completed_at"]),
    )


def _loads(val: str | None):
    if val is None:
        return None
    return json.loads(val)


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
