"""Agent registry: identities, presence, and the status writes used by the sync rule."""

import logging
import sqlite3
from datetime import datetime

from mission_control.core.errors import NotFound, ValidationError
from mission_control.core.events import EventBus, log_event, publish
from mission_control.core.ids import slugify, unique_id
from mission_control.db.models import AGENT_STATUSES, Agent

logger = logging.getLogger(__name__)


# ── Row-to-model helpers ────────────────────────────────────────────────────


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)


def _row_to_agent(row: sqlite3.Row) -> Agent:
    return Agent(
        id=row["id"],
        workspace_id=row["workspace_id"],
        name=row["name"],
        role=row["role"] or "",
        status=row["status"],
        is_master=bool(row["is_master"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


# ── Registry ─────────────────────────────────────────────────────────────────


def create_agent(
    db: sqlite3.Connection,
    name: str,
    workspace_id: str = "default",
    role: str = "",
    is_master: bool = False,
) -> Agent:
    """Register a new agent in standby."""
    if not name.strip():
        raise ValidationError("Agent name is required")
    if not db.execute("SELECT 1 FROM workspaces WHERE id = ?", (workspace_id,)).fetchone():
        raise NotFound(f"Workspace not found: {workspace_id}")

    agent_id = unique_id(db, "agents", slugify(name))
    db.execute(
        """INSERT INTO agents (id, workspace_id, name, role, is_master)
           VALUES (?, ?, ?, ?, ?)""",
        (agent_id, workspace_id, name, role, int(is_master)),
    )
    db.commit()
    return get_agent(db, agent_id)


def get_agent(db: sqlite3.Connection, agent_id: str) -> Agent | None:
    """Get an agent by ID."""
    row = db.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
    if not row:
        return None
    return _row_to_agent(row)


def list_agents(
    db: sqlite3.Connection,
    workspace_id: str | None = None,
    status: str | None = None,
) -> list[Agent]:
    """List agents, optionally filtered by workspace and status."""
    query = "SELECT * FROM agents WHERE 1=1"
    params: list = []
    if workspace_id:
        query += " AND workspace_id = ?"
        params.append(workspace_id)
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY created_at ASC, rowid ASC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_agent(r) for r in rows]


def count_active_tasks(
    db: sqlite3.Connection,
    agent_id: str,
    exclude_task_id: str | None = None,
) -> int:
    """Count in_progress tasks assigned to an agent, read fresh from the store."""
    query = "SELECT COUNT(*) AS cnt FROM tasks WHERE assigned_agent_id = ? AND status = 'in_progress'"
    params: list = [agent_id]
    if exclude_task_id:
        query += " AND id != ?"
        params.append(exclude_task_id)
    return db.execute(query, params).fetchone()["cnt"]


# ── Status Writes ────────────────────────────────────────────────────────────


def set_agent_status(
    db: sqlite3.Connection,
    agent_id: str,
    status: str,
    events: EventBus | None = None,
) -> Agent | None:
    """Write an agent's status, logging and publishing only on a real change."""
    if status not in AGENT_STATUSES:
        raise ValidationError(f"Invalid agent status: {status}")
    agent = get_agent(db, agent_id)
    if not agent or agent.status == status:
        return agent

    db.execute(
        "UPDATE agents SET status = ?, updated_at = datetime('now') WHERE id = ?",
        (status, agent_id),
    )
    log_event(
        db, "agent_status_changed",
        agent_id=agent_id,
        message=f"{agent.name} is now {status}",
        old_value=agent.status,
        new_value=status,
    )
    db.commit()
    logger.info("Agent '%s' %s -> %s", agent_id, agent.status, status)
    publish(events, "agent_status_changed", {"agent_id": agent_id, "status": status})
    return get_agent(db, agent_id)


def set_agent_offline(
    db: sqlite3.Connection,
    agent_id: str,
    offline: bool,
    events: EventBus | None = None,
) -> Agent:
    """Externally mark an agent offline, or bring it back online.

    Coming back online settles to working or standby from the agent's
    current in_progress tasks.
    """
    agent = get_agent(db, agent_id)
    if not agent:
        raise NotFound(f"Agent not found: {agent_id}")
    if offline:
        return set_agent_status(db, agent_id, "offline", events)
    if agent.status != "offline":
        return agent
    status = "working" if count_active_tasks(db, agent_id) else "standby"
    return set_agent_status(db, agent_id, status, events)


# ── Orchestrators ────────────────────────────────────────────────────────────


def get_default_master(db: sqlite3.Connection, workspace_id: str) -> Agent | None:
    """The workspace's default orchestrator: its earliest-registered master agent."""
    row = db.execute(
        """SELECT * FROM agents WHERE is_master = 1 AND workspace_id = ?
           ORDER BY created_at ASC, rowid ASC LIMIT 1""",
        (workspace_id,),
    ).fetchone()
    if not row:
        return None
    return _row_to_agent(row)


def list_other_orchestrators(db: sqlite3.Connection, workspace_id: str) -> list[Agent]:
    """Master agents other than the default one that are not offline."""
    default = get_default_master(db, workspace_id)
    rows = db.execute(
        """SELECT * FROM agents
           WHERE is_master = 1 AND id != ? AND workspace_id = ? AND status != 'offline'
           ORDER BY created_at ASC, rowid ASC""",
        (default.id if default else "", workspace_id),
    ).fetchall()
    return [_row_to_agent(r) for r in rows]
