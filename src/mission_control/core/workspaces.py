"""Workspace management operations."""

import sqlite3
from datetime import datetime

from mission_control.core.errors import Conflict
from mission_control.db.models import Workspace


def create_workspace(db: sqlite3.Connection, workspace_id: str, name: str) -> Workspace:
    """Create a new workspace."""
    if get_workspace(db, workspace_id):
        raise Conflict(f"Workspace already exists: {workspace_id}")
    db.execute(
        "INSERT INTO workspaces (id, name) VALUES (?, ?)",
        (workspace_id, name),
    )
    db.commit()
    return get_workspace(db, workspace_id)


def get_workspace(db: sqlite3.Connection, workspace_id: str) -> Workspace | None:
    """Get a workspace by ID."""
    row = db.execute("SELECT * FROM workspaces WHERE id = ?", (workspace_id,)).fetchone()
    if not row:
        return None
    return _row_to_workspace(row)


def list_workspaces(db: sqlite3.Connection) -> list[Workspace]:
    """List all workspaces."""
    rows = db.execute("SELECT * FROM workspaces ORDER BY created_at, id").fetchall()
    return [_row_to_workspace(r) for r in rows]


def ensure_default_workspace(db: sqlite3.Connection, workspace_id: str = "default") -> Workspace:
    """Ensure the given workspace exists, creating it if needed."""
    workspace = get_workspace(db, workspace_id)
    if not workspace:
        name = "Default Workspace" if workspace_id == "default" else workspace_id
        workspace = create_workspace(db, workspace_id, name)
    return workspace


def _row_to_workspace(row: sqlite3.Row) -> Workspace:
    return Workspace(
        id=row["id"],
        name=row["name"],
        created_at=_parse_dt(row["created_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
