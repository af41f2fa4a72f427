"""Planning conversations: a bounded multiple-choice Q&A with a remote agent.

Each task gets its own session on the runtime, keyed purely from the task id.
The transcript is persisted on the task before anything is sent, so a crashed
or timed-out round can be resumed from the database alone.
"""

import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass

from mission_control.core import agents as agents_mod
from mission_control.core import tasks as tasks_mod
from mission_control.core.conversation import ConversationTransport, idempotency_key
from mission_control.core.dispatch import Dispatcher
from mission_control.core.errors import (
    AlreadyComplete,
    AlreadyStarted,
    Conflict,
    NotStarted,
    OrchestratorConflict,
    RoundLimitExceeded,
    SessionChanged,
    ValidationError,
)
from mission_control.core.events import EventBus, log_event, publish
from mission_control.core.extract import extract_json
from mission_control.db.models import PlanningMessage, Task

logger = logging.getLogger(__name__)

DEFAULT_PLANNING_AGENT = "scout"
DEFAULT_TIMEOUT_S = 45.0
DEFAULT_MAX_ROUNDS = 8
OTHER_OPTION_ID = "other"

_QUESTION_SHAPE = (
    '{"question":"Your question?","options":[{"id":"a","label":"First option"},'
    '{"id":"b","label":"Second option"},{"id":"other","label":"Other"}]}'
)
_COMPLETION_SHAPE = (
    '{"status":"complete","spec":{"title":"Task title","summary":"What needs to be done",'
    '"deliverables":["Deliverable 1"],"success_criteria":["How we know it is done"],'
    '"constraints":{}},"agents":[{"name":"Agent name","role":"What they do",'
    '"instructions":"Specific instructions"}],"execution_plan":{"approach":"How to execute",'
    '"steps":["Step 1","Step 2"]}}'
)


def planning_session_key(task_id: str, agent: str = DEFAULT_PLANNING_AGENT) -> str:
    """Session key for a task's planning conversation on the given runtime agent."""
    return f"agent:{agent}:planning:{task_id}"


# ── Prompts ──────────────────────────────────────────────────────────────────


def build_planning_prompt(title: str, description: str) -> str:
    """Opening prompt: sets the protocol and asks for the first question."""
    return (
        "You are a planning orchestrator. Ask the user 3-5 multiple-choice questions "
        "to pin down what this task needs, then produce a task spec.\n\n"
        f"TASK: {title}\n"
        f"DESCRIPTION: {description or 'No description provided'}\n\n"
        "## Protocol\n"
        "1. Ask 3-5 questions covering scope, deliverables, audience, constraints and priority.\n"
        '2. Every question is multiple choice and includes an option with id "other".\n'
        "3. Questions must be specific to this task.\n"
        "4. Once you know enough, reply with the completion object.\n\n"
        "## Reply format\n"
        "Reply with exactly one raw JSON object and nothing else.\n\n"
        f"A question:\n{_QUESTION_SHAPE}\n\n"
        f"Completion:\n{_COMPLETION_SHAPE}\n\n"
        "Now ask your first question."
    )


def build_answer_prompt(answer: str) -> str:
    """Continuation prompt carrying the user's answer and the same reply contract."""
    return (
        f"User's answer: {answer}\n\n"
        "Given this answer and the conversation so far, ask your next question "
        "or complete the planning.\n\n"
        "Rules:\n"
        "- Reply with exactly one raw JSON object and nothing else.\n"
        "- Ask another multiple-choice question if you need more information.\n"
        "- Produce the completion object once you have asked 3-5 questions in total.\n"
        '- Every question includes an option with id "other".\n\n'
        f"A question:\n{_QUESTION_SHAPE}\n\n"
        f"Completion:\n{_COMPLETION_SHAPE}"
    )


def normalize_answer(answer: str, other_text: str | None = None) -> str:
    """The effective answer: free text when the escape option was picked with text."""
    if answer == OTHER_OPTION_ID and other_text and other_text.strip():
        return other_text.strip()
    return answer


# ── Reply Classification ─────────────────────────────────────────────────────


@dataclass
class PlanningReply:
    kind: str  # "question", "complete" or "unparsed"
    raw: str
    question: dict | None = None
    spec: dict | None = None
    agents: list | None = None
    execution_plan: dict | None = None

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "complete": self.kind == "complete",
            "question": self.question,
            "spec": self.spec,
            "agents": self.agents,
            "execution_plan": self.execution_plan,
            "raw": self.raw if self.kind == "unparsed" else None,
        }


def classify_reply(text: str) -> PlanningReply:
    """Sort a raw reply into a question, a completion, or an unparsed reply."""
    parsed = extract_json(text)
    if parsed is None:
        return PlanningReply(kind="unparsed", raw=text)
    if "question" in parsed:
        return PlanningReply(kind="question", raw=text, question=parsed)
    if parsed.get("status") == "complete" and isinstance(parsed.get("spec"), dict):
        agents = parsed.get("agents")
        return PlanningReply(
            kind="complete",
            raw=text,
            spec=parsed["spec"],
            agents=agents if isinstance(agents, list) else [],
            execution_plan=parsed.get("execution_plan"),
        )
    return PlanningReply(kind="unparsed", raw=text)


# ── Operations ───────────────────────────────────────────────────────────────


def start_planning(
    db: sqlite3.Connection,
    transport: ConversationTransport,
    task_id: str,
    agent: str = DEFAULT_PLANNING_AGENT,
    timeout_s: float = DEFAULT_TIMEOUT_S,
    cancel_event: threading.Event | None = None,
    events: EventBus | None = None,
    dispatcher: Dispatcher | None = None,
) -> PlanningReply:
    """Open a planning session for a task and wait for the first question."""
    task = tasks_mod.require_task(db, task_id)
    if task.planning_session_key:
        raise AlreadyStarted(task_id, task.planning_session_key)

    others = agents_mod.list_other_orchestrators(db, task.workspace_id)
    if others:
        raise OrchestratorConflict([o.name for o in others])

    session_key = planning_session_key(task_id, agent)
    opening = PlanningMessage(
        role="user",
        content=build_planning_prompt(task.title, task.description),
        timestamp=_now_ms(),
    )
    db.execute(
        """UPDATE tasks
           SET planning_session_key = ?, planning_messages = ?, planning_complete = 0,
               planning_spec = NULL, planning_agents = NULL, planning_execution_plan = NULL,
               updated_at = datetime('now')
           WHERE id = ?""",
        (session_key, _dump_messages([opening]), task_id),
    )
    log_event(db, "planning_started", task_id=task_id, new_value=session_key,
              message=f'Planning started for "{task.title}"')
    db.commit()
    logger.info("Planning started for task '%s' on %s", task_id, session_key)

    tasks_mod.transition_task(db, task_id, "planning", events=events, dispatcher=dispatcher)
    task = tasks_mod.require_task(db, task_id)
    return _run_round(db, transport, task, opening, timeout_s, cancel_event, events, dispatcher)


def submit_answer(
    db: sqlite3.Connection,
    transport: ConversationTransport,
    task_id: str,
    answer: str,
    other_text: str | None = None,
    timeout_s: float = DEFAULT_TIMEOUT_S,
    max_rounds: int = DEFAULT_MAX_ROUNDS,
    cancel_event: threading.Event | None = None,
    events: EventBus | None = None,
    dispatcher: Dispatcher | None = None,
) -> PlanningReply:
    """Record the user's answer and wait for the next question or the completion."""
    if not answer or not answer.strip():
        raise ValidationError("Answer is required")

    task = tasks_mod.require_task(db, task_id)
    if not task.planning_session_key:
        raise NotStarted(f"Planning not started for task '{task_id}'")
    if task.planning_complete:
        raise AlreadyComplete(f"Planning already complete for task '{task_id}'")
    if task.planning_messages and task.planning_messages[-1].role == "user":
        raise Conflict(f"Task '{task_id}' is still waiting for a reply; retry the round instead")

    rounds = sum(1 for m in task.planning_messages if m.role == "assistant")
    if rounds >= max_rounds:
        raise RoundLimitExceeded(
            f"Planning for task '{task_id}' reached {max_rounds} rounds without completing"
        )

    prompt = build_answer_prompt(normalize_answer(answer, other_text))
    message = _append_message(db, task, "user", prompt)
    task = tasks_mod.require_task(db, task_id)
    return _run_round(db, transport, task, message, timeout_s, cancel_event, events, dispatcher)


def retry_round(
    db: sqlite3.Connection,
    transport: ConversationTransport,
    task_id: str,
    timeout_s: float = DEFAULT_TIMEOUT_S,
    cancel_event: threading.Event | None = None,
    events: EventBus | None = None,
    dispatcher: Dispatcher | None = None,
) -> PlanningReply:
    """Resend the unanswered user turn (same idempotency key) and wait again."""
    task = tasks_mod.require_task(db, task_id)
    if not task.planning_session_key:
        raise NotStarted(f"Planning not started for task '{task_id}'")
    if task.planning_complete:
        raise AlreadyComplete(f"Planning already complete for task '{task_id}'")
    if not task.planning_messages or task.planning_messages[-1].role != "user":
        raise Conflict(f"Task '{task_id}' has no unanswered planning turn to retry")

    last = task.planning_messages[-1]
    logger.info("Retrying planning round for task '%s'", task_id)
    return _run_round(db, transport, task, last, timeout_s, cancel_event, events, dispatcher)


def poll_planning(
    db: sqlite3.Connection,
    transport: ConversationTransport,
    task_id: str,
    events: EventBus | None = None,
    dispatcher: Dispatcher | None = None,
) -> PlanningReply | None:
    """Check once for a reply to the unanswered turn. Returns None if nothing arrived yet."""
    task = tasks_mod.require_task(db, task_id)
    awaiting = bool(task.planning_messages) and task.planning_messages[-1].role == "user"
    if not task.planning_session_key or task.planning_complete or not awaiting:
        raise Conflict(f"Task '{task_id}' has no planning turn awaiting a reply")

    text = transport.fetch_reply(task.planning_session_key)
    if not text:
        return None
    return _record_reply(db, task, task.planning_messages[-1], text, events, dispatcher)


def cancel_planning(
    db: sqlite3.Connection,
    task_id: str,
    events: EventBus | None = None,
    dispatcher: Dispatcher | None = None,
) -> Task:
    """Drop the planning session and its results, returning the task to the inbox."""
    task = tasks_mod.require_task(db, task_id)
    db.execute(
        """UPDATE tasks
           SET planning_session_key = NULL, planning_messages = NULL, planning_complete = 0,
               planning_spec = NULL, planning_agents = NULL, planning_execution_plan = NULL,
               updated_at = datetime('now')
           WHERE id = ?""",
        (task_id,),
    )
    log_event(db, "planning_cancelled", task_id=task_id, old_value=task.planning_session_key,
              message=f'Planning cancelled for "{task.title}"')
    db.commit()
    logger.info("Planning cancelled for task '%s'", task_id)
    return tasks_mod.transition_task(db, task_id, "inbox", events=events, dispatcher=dispatcher)


def get_planning_state(db: sqlite3.Connection, task_id: str) -> dict:
    """Snapshot of a task's planning conversation."""
    task = tasks_mod.require_task(db, task_id)
    messages = task.planning_messages

    current_question = None
    last_assistant = next((m for m in reversed(messages) if m.role == "assistant"), None)
    if last_assistant and not task.planning_complete:
        parsed = extract_json(last_assistant.content)
        if parsed and "question" in parsed:
            current_question = parsed

    return {
        "task_id": task.id,
        "session_key": task.planning_session_key,
        "messages": [
            {"role": m.role, "content": m.content, "timestamp": m.timestamp}
            for m in messages
        ],
        "current_question": current_question,
        "is_started": bool(messages),
        "is_complete": task.planning_complete,
        "awaiting_reply": bool(messages) and messages[-1].role == "user",
        "spec": task.planning_spec,
        "agents": task.planning_agents,
        "execution_plan": task.planning_execution_plan,
    }


# ── Internals ────────────────────────────────────────────────────────────────


def _run_round(
    db: sqlite3.Connection,
    transport: ConversationTransport,
    task: Task,
    message: PlanningMessage,
    timeout_s: float,
    cancel_event: threading.Event | None,
    events: EventBus | None,
    dispatcher: Dispatcher | None,
) -> PlanningReply:
    session_key = task.planning_session_key
    transport.send(session_key, message.content, idempotency_key(task.id, message.timestamp))
    text = transport.await_reply(session_key, timeout_s, cancel_event)
    return _record_reply(db, task, message, text, events, dispatcher)


def _record_reply(
    db: sqlite3.Connection,
    task: Task,
    reply_to: PlanningMessage,
    text: str,
    events: EventBus | None,
    dispatcher: Dispatcher | None,
) -> PlanningReply:
    _append_message(db, task, "assistant", text, reply_to=reply_to)
    reply = classify_reply(text)
    logger.info("Planning reply for task '%s': %s", task.id, reply.kind)

    if reply.kind == "complete":
        _complete(db, task, reply, events, dispatcher)
    return reply


def _complete(
    db: sqlite3.Connection,
    task: Task,
    reply: PlanningReply,
    events: EventBus | None,
    dispatcher: Dispatcher | None,
):
    if not _session_active(db, task):
        raise _stale(task, "completion")
    # Planning only clarifies scope; the task goes back to the inbox for real assignment.
    tasks_mod.transition_task(db, task.id, "inbox", events=events, dispatcher=dispatcher)
    cursor = db.execute(
        """UPDATE tasks
           SET planning_spec = ?, planning_agents = ?, planning_execution_plan = ?,
               planning_complete = 1, updated_at = datetime('now')
           WHERE id = ? AND planning_session_key = ? AND planning_complete = 0""",
        (
            json.dumps(reply.spec),
            json.dumps(reply.agents),
            json.dumps(reply.execution_plan) if reply.execution_plan is not None else None,
            task.id,
            task.planning_session_key,
        ),
    )
    if cursor.rowcount == 0:
        db.rollback()
        raise _stale(task, "completion")
    log_event(db, "planning_completed", task_id=task.id,
              message=f'Planning completed for "{task.title}"')
    db.commit()
    publish(events, "planning_completed", {"task_id": task.id, "spec": reply.spec})


def _session_active(db: sqlite3.Connection, task: Task) -> bool:
    row = db.execute(
        "SELECT 1 FROM tasks WHERE id = ? AND planning_session_key = ? AND planning_complete = 0",
        (task.id, task.planning_session_key),
    ).fetchone()
    return row is not None


def _stale(task: Task, what: str) -> SessionChanged:
    logger.warning("Dropping planning %s for task '%s': session %s moved on",
                   what, task.id, task.planning_session_key)
    return SessionChanged(f"Planning for task '{task.id}' changed while waiting; {what} dropped")


def _append_message(
    db: sqlite3.Connection,
    task: Task,
    role: str,
    content: str,
    reply_to: PlanningMessage | None = None,
) -> PlanningMessage:
    """Append a turn, but only onto the transcript this round was started from.

    A user turn needs the last turn to be an assistant reply. An assistant turn
    needs the last turn to be ``reply_to`` itself. The UPDATE compares the
    transcript it read, so a cancel, restart or concurrent answer in between
    makes it a no-op.
    """
    row = db.execute(
        "SELECT planning_messages FROM tasks WHERE id = ? AND planning_session_key = ? AND planning_complete = 0",
        (task.id, task.planning_session_key),
    ).fetchone()
    if row is None:
        raise _stale(task, f"{role} turn")

    current = row["planning_messages"]
    messages = json.loads(current) if current else []
    last = messages[-1] if messages else None
    if reply_to is None:
        in_order = last is None or last["role"] != "user"
    else:
        in_order = (
            last is not None
            and last["role"] == "user"
            and last["timestamp"] == reply_to.timestamp
            and last["content"] == reply_to.content
        )
    if not in_order:
        raise _stale(task, f"{role} turn")

    message = PlanningMessage(role=role, content=content, timestamp=_now_ms())
    messages.append({"role": role, "content": content, "timestamp": message.timestamp})
    cursor = db.execute(
        """UPDATE tasks SET planning_messages = ?, updated_at = datetime('now')
           WHERE id = ? AND planning_session_key = ? AND planning_complete = 0
             AND planning_messages IS ?""",
        (json.dumps(messages), task.id, task.planning_session_key, current),
    )
    if cursor.rowcount == 0:
        db.rollback()
        raise _stale(task, f"{role} turn")
    db.commit()
    return message


def _dump_messages(messages: list[PlanningMessage]) -> str:
    return json.dumps([
        {"role": m.role, "content": m.content, "timestamp": m.timestamp}
        for m in messages
    ])


def _now_ms() -> int:
    return int(time.time() * 1000)
