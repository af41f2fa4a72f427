"""HTTP API for mission control."""

import asyncio
import logging
import threading

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from mission_control.config import Config, get_config
from mission_control.core import agents as agents_mod
from mission_control.core import planning as planning_mod
from mission_control.core import tasks as tasks_mod
from mission_control.core import workspaces as workspaces_mod
from mission_control.core.conversation import ConversationTransport, build_transport
from mission_control.core.dispatch import build_dispatcher
from mission_control.core.errors import (
    AlreadyStarted,
    Conflict,
    Forbidden,
    MissionControlError,
    NotFound,
    OrchestratorConflict,
    ReplyCancelled,
    ReplyTimeout,
    TransportError,
    ValidationError,
)
from mission_control.core.events import build_event_bus
from mission_control.db.engine import init_db

logger = logging.getLogger(__name__)

_STATUS_CODES = [
    (ValidationError, 400),
    (Forbidden, 403),
    (NotFound, 404),
    (Conflict, 409),
    (ReplyCancelled, 499),
    (TransportError, 502),
    (ReplyTimeout, 504),
]


def _get_db(request: Request):
    return init_db(request.app.state.config.db_path)


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


# ── Task Handlers ────────────────────────────────────────────────────────────


async def api_list_tasks(request: Request):
    db = _get_db(request)
    try:
        tasks = tasks_mod.list_tasks(
            db,
            request.query_params.get("workspace_id"),
            status=request.query_params.get("status"),
            assigned_agent_id=request.query_params.get("assigned_agent_id"),
        )
        return JSONResponse([tasks_mod.task_to_dict(t) for t in tasks])
    finally:
        db.close()


async def api_create_task(request: Request):
    body = await _json_body(request)
    state = request.app.state
    workspace_id = body.get("workspace_id") or state.config.workspace_id
    db = _get_db(request)
    try:
        workspaces_mod.ensure_default_workspace(db, workspace_id)
        task = tasks_mod.create_task(
            db,
            body.get("title") or "",
            workspace_id,
            body.get("description") or "",
            priority=body.get("priority") or "normal",
            assigned_agent_id=body.get("assigned_agent_id"),
            events=state.events,
            dispatcher=state.dispatcher,
        )
        return JSONResponse(tasks_mod.task_to_dict(task), status_code=201)
    finally:
        db.close()


async def api_get_task(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db(request)
    try:
        task = tasks_mod.require_task(db, task_id)
        td = tasks_mod.task_to_dict(task)
        td["events"] = [_event_dict(e) for e in tasks_mod.get_task_events(db, task_id)]
        return JSONResponse(td)
    finally:
        db.close()


async def api_update_task(request: Request):
    task_id = request.path_params["task_id"]
    body = await _json_body(request)
    state = request.app.state

    kwargs = {k: body[k] for k in ("title", "description", "priority", "status") if k in body}
    if "assigned_agent_id" in body:
        kwargs["assigned_agent_id"] = body["assigned_agent_id"]

    db = _get_db(request)
    try:
        task = tasks_mod.update_task(
            db, task_id,
            requesting_agent_id=body.get("updated_by_agent_id"),
            events=state.events,
            dispatcher=state.dispatcher,
            **kwargs,
        )
        return JSONResponse(tasks_mod.task_to_dict(task))
    finally:
        db.close()


async def api_delete_task(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db(request)
    try:
        if not tasks_mod.delete_task(db, task_id, request.app.state.events):
            raise NotFound(f"Task not found: {task_id}")
        return JSONResponse({"deleted": task_id})
    finally:
        db.close()


# ── Planning Handlers ────────────────────────────────────────────────────────


async def _run_planning(request: Request, operation, *args, **kwargs):
    """Run a blocking planning round in the threadpool.

    The worker opens its own connection. If the request is cancelled the
    wait is abandoned and the transcript is left ready for a retry.
    """
    state = request.app.state
    cancel_event = threading.Event()

    def work():
        db = init_db(state.config.db_path)
        try:
            return operation(
                db, state.transport, *args,
                cancel_event=cancel_event,
                events=state.events,
                dispatcher=state.dispatcher,
                **kwargs,
            )
        finally:
            db.close()

    try:
        return await run_in_threadpool(work)
    except asyncio.CancelledError:
        cancel_event.set()
        raise


async def api_get_planning(request: Request):
    db = _get_db(request)
    try:
        return JSONResponse(planning_mod.get_planning_state(db, request.path_params["task_id"]))
    finally:
        db.close()


async def api_start_planning(request: Request):
    config = request.app.state.config
    reply = await _run_planning(
        request, planning_mod.start_planning, request.path_params["task_id"],
        agent=config.planning_agent,
        timeout_s=config.planning_timeout_s,
    )
    return JSONResponse(reply.to_dict())


async def api_answer_planning(request: Request):
    body = await _json_body(request)
    config = request.app.state.config
    reply = await _run_planning(
        request, planning_mod.submit_answer, request.path_params["task_id"],
        body.get("answer") or "",
        other_text=body.get("other_text"),
        timeout_s=config.planning_timeout_s,
        max_rounds=config.planning_max_rounds,
    )
    return JSONResponse(reply.to_dict())


async def api_retry_planning(request: Request):
    reply = await _run_planning(
        request, planning_mod.retry_round, request.path_params["task_id"],
        timeout_s=request.app.state.config.planning_timeout_s,
    )
    return JSONResponse(reply.to_dict())


async def api_poll_planning(request: Request):
    state = request.app.state
    task_id = request.path_params["task_id"]

    def work():
        db = init_db(state.config.db_path)
        try:
            return planning_mod.poll_planning(
                db, state.transport, task_id, events=state.events, dispatcher=state.dispatcher
            )
        finally:
            db.close()

    reply = await run_in_threadpool(work)
    if reply is None:
        return JSONResponse({"has_reply": False})
    return JSONResponse({"has_reply": True, **reply.to_dict()})


async def api_cancel_planning(request: Request):
    state = request.app.state
    db = _get_db(request)
    try:
        task = planning_mod.cancel_planning(
            db, request.path_params["task_id"], events=state.events, dispatcher=state.dispatcher
        )
        return JSONResponse(tasks_mod.task_to_dict(task))
    finally:
        db.close()


# ── Agent Handlers ───────────────────────────────────────────────────────────


async def api_list_agents(request: Request):
    db = _get_db(request)
    try:
        agents = agents_mod.list_agents(
            db,
            request.query_params.get("workspace_id"),
            status=request.query_params.get("status"),
        )
        return JSONResponse([_agent_dict(a) for a in agents])
    finally:
        db.close()


# ── Errors & Serialization ───────────────────────────────────────────────────


async def handle_error(request: Request, exc: MissionControlError):
    status_code = next((code for cls, code in _STATUS_CODES if isinstance(exc, cls)), 500)
    body = {"error": str(exc)}
    if isinstance(exc, AlreadyStarted):
        body["session_key"] = exc.session_key
    if isinstance(exc, OrchestratorConflict):
        body["other_orchestrators"] = exc.names
    if status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(body, status_code=status_code)


def _agent_dict(a) -> dict:
    return {
        "id": a.id,
        "name": a.name,
        "workspace_id": a.workspace_id,
        "role": a.role,
        "status": a.status,
        "is_master": a.is_master,
        "created_at": a.created_at.isoformat() if a.created_at else None,
    }


def _event_dict(e) -> dict:
    return {
        "id": e.id,
        "type": e.type,
        "agent_id": e.agent_id,
        "message": e.message,
        "old_value": e.old_value,
        "new_value": e.new_value,
        "created_at": e.created_at.isoformat() if e.created_at else None,
    }


# ── App ──────────────────────────────────────────────────────────────────────


def create_app(
    config: Config | None = None,
    transport: ConversationTransport | None = None,
) -> Starlette:
    config = config or get_config()
    routes = [
        Route("/api/tasks", api_list_tasks, methods=["GET"]),
        Route("/api/tasks", api_create_task, methods=["POST"]),
        Route("/api/tasks/{task_id}", api_get_task, methods=["GET"]),
        Route("/api/tasks/{task_id}", api_update_task, methods=["PATCH"]),
        Route("/api/tasks/{task_id}", api_delete_task, methods=["DELETE"]),
        Route("/api/tasks/{task_id}/planning", api_get_planning, methods=["GET"]),
        Route("/api/tasks/{task_id}/planning", api_start_planning, methods=["POST"]),
        Route("/api/tasks/{task_id}/planning", api_cancel_planning, methods=["DELETE"]),
        Route("/api/tasks/{task_id}/planning/answer", api_answer_planning, methods=["POST"]),
        Route("/api/tasks/{task_id}/planning/retry", api_retry_planning, methods=["POST"]),
        Route("/api/tasks/{task_id}/planning/poll", api_poll_planning, methods=["GET"]),
        Route("/api/agents", api_list_agents, methods=["GET"]),
    ]
    app = Starlette(routes=routes, exception_handlers={MissionControlError: handle_error})
    app.state.config = config
    app.state.transport = transport or build_transport(config)
    app.state.events = build_event_bus(config)
    app.state.dispatcher = build_dispatcher(config)
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
