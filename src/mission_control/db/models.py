"""Data models for mission control."""

from dataclasses import dataclass, field
from datetime import datetime

TASK_STATUSES = (
    "inbox",
    "planning",
    "assigned",
    "in_progress",
    "testing",
    "review",
    "done",
)

AGENT_STATUSES = ("standby", "working", "offline")

PRIORITIES = ("low", "normal", "high", "urgent")


@dataclass
class Workspace:
    id: str
    name: str
    created_at: datetime | None = None


@dataclass
class PlanningMessage:
    role: str
    content: str
    timestamp: int


@dataclass
class Task:
    id: str
    title: str
    workspace_id: str = "default"
    description: str = ""
    status: str = "inbox"
    priority: str = "normal"
    assigned_agent_id: str | None = None
    planning_session_key: str | None = None
    planning_messages: list[PlanningMessage] = field(default_factory=list)
    planning_complete: bool = False
    planning_spec: dict | None = None
    planning_agents: list[dict] | None = None
    planning_execution_plan: dict | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class Agent:
    id: str
    name: str
    workspace_id: str = "default"
    role: str = ""
    status: str = "standby"
    is_master: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Event:
    id: int | None = None
    type: str = ""
    task_id: str | None = None
    agent_id: str | None = None
    message: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None
