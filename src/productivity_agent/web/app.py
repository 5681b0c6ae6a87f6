"""HTTP and WebSocket API for the productivity agent."""

import asyncio
import functools
import json
import logging

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect

from productivity_agent.core import notifications as notifications_mod
from productivity_agent.core import profiles as profiles_mod
from productivity_agent.core import projects as projects_mod
from productivity_agent.core import tasks as tasks_mod
from productivity_agent.core.session import WORKFLOW_ACTIONS
from productivity_agent.db.models import format_dt, utcnow
from productivity_agent.runtime import Runtime, build_runtime
from productivity_agent.serialization import (
    message_dict,
    notification_dict,
    preference_changes,
    profile_dict,
    project_dict,
    project_fields,
    task_dict,
    task_fields,
)

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, PATCH, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}


class NotFound(Exception):
    """Raised by handlers for a missing resource."""


class CORSHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=CORS_HEADERS)
        response = await call_next(request)
        response.headers.update(CORS_HEADERS)
        return response


def api_handler(fn):
    """Map handler exceptions onto JSON error responses."""

    @functools.wraps(fn)
    async def wrapper(request: Request):
        try:
            return await fn(request)
        except NotFound as e:
            return JSONResponse({"error": str(e)}, status_code=404)
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        except Exception:
            logger.exception("Unhandled error on %s %s", request.method, request.url.path)
            return JSONResponse({"error": "Internal server error"}, status_code=500)

    return wrapper


def _runtime(request) -> Runtime:
    return request.app.state.runtime


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError as e:
        raise ValueError("Request body must be valid JSON") from e
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


def _user_id(request: Request, body: dict | None = None) -> str:
    user_id = request.query_params.get("userId") or (body or {}).get("userId")
    if not user_id or not isinstance(user_id, str):
        raise ValueError("userId is required")
    return user_id


async def _in_shard(request: Request, user_id: str, fn, *args, **kwargs):
    """Run a store function against the user's shard off the event loop."""
    runtime = _runtime(request)

    def call():
        with runtime.shards.connect(user_id) as db:
            return fn(db, user_id, *args, **kwargs)

    return await run_in_threadpool(call)


# ── Handlers ──────────────────────────────────────────────────────────────────


async def health(request: Request):
    return JSONResponse({"status": "healthy", "timestamp": format_dt(utcnow())})


@api_handler
async def api_chat(request: Request):
    body = await _json_body(request)
    user_id, message = _user_id(request, body), body.get("message")
    if not isinstance(message, str) or not message.strip():
        raise ValueError("message is required")
    session = _runtime(request).session(user_id)
    reply = await run_in_threadpool(session.handle_chat, message)
    return JSONResponse(message_dict(reply))


@api_handler
async def api_list_tasks(request: Request):
    user_id = _user_id(request)
    params = request.query_params
    status = params.get("status")
    statuses = [s.strip() for s in status.split(",") if s.strip()] if status else None
    tasks = await _in_shard(
        request,
        user_id,
        tasks_mod.list_tasks,
        status=statuses,
        project_id=params.get("project_id") or params.get("projectId"),
        due_before=params.get("due_before") or params.get("dueBefore"),
    )
    return JSONResponse([task_dict(t) for t in tasks])


@api_handler
async def api_create_task(request: Request):
    body = await _json_body(request)
    user_id = _user_id(request, body)
    fields = task_fields(body)
    fields.setdefault("title", None)
    task = await _in_shard(
        request, user_id, tasks_mod.create_task, indexer=_runtime(request).indexer, **fields
    )
    return JSONResponse(task_dict(task), status_code=201)


@api_handler
async def api_update_task(request: Request):
    task_id = request.path_params["task_id"]
    body = await _json_body(request)
    user_id = _user_id(request, body)
    task = await _in_shard(
        request, user_id, tasks_mod.update_task, task_id,
        indexer=_runtime(request).indexer, **task_fields(body),
    )
    if task is None:
        raise NotFound("Task not found")
    return JSONResponse(task_dict(task))


@api_handler
async def api_delete_task(request: Request):
    task_id = request.path_params["task_id"]
    user_id = _user_id(request)
    deleted = await _in_shard(
        request, user_id, tasks_mod.delete_task, task_id, indexer=_runtime(request).indexer
    )
    if not deleted:
        raise NotFound("Task not found")
    return Response(status_code=204)


@api_handler
async def api_list_projects(request: Request):
    user_id = _user_id(request)
    projects = await _in_shard(
        request, user_id, projects_mod.list_projects, status=request.query_params.get("status")
    )
    return JSONResponse([project_dict(p) for p in projects])


@api_handler
async def api_create_project(request: Request):
    body = await _json_body(request)
    user_id = _user_id(request, body)
    fields = project_fields(body)
    fields.setdefault("name", None)
    if "tasks" in body:
        fields["task_ids"] = body["tasks"]
    project = await _in_shard(request, user_id, projects_mod.create_project, **fields)
    return JSONResponse(project_dict(project), status_code=201)


@api_handler
async def api_update_project(request: Request):
    project_id = request.path_params["project_id"]
    body = await _json_body(request)
    user_id = _user_id(request, body)
    project = await _in_shard(
        request, user_id, projects_mod.update_project, project_id, **project_fields(body)
    )
    if project is None:
        raise NotFound("Project not found")
    return JSONResponse(project_dict(project))


@api_handler
async def api_delete_project(request: Request):
    project_id = request.path_params["project_id"]
    user_id = _user_id(request)
    project = await _in_shard(request, user_id, projects_mod.archive_project, project_id)
    if project is None:
        raise NotFound("Project not found")
    return Response(status_code=204)


@api_handler
async def api_get_profile(request: Request):
    user_id = _user_id(request)
    profile = await _in_shard(request, user_id, profiles_mod.get_profile)
    return JSONResponse(profile_dict(profile))


@api_handler
async def api_update_profile(request: Request):
    body = await _json_body(request)
    user_id = _user_id(request, body)
    changes = preference_changes(body.get("preferences", body))
    profile = await _in_shard(request, user_id, profiles_mod.update_preferences, changes)
    return JSONResponse(profile_dict(profile))


@api_handler
async def api_search(request: Request):
    body = await _json_body(request)
    user_id, query = _user_id(request, body), body.get("query")
    if not isinstance(query, str) or not query.strip():
        raise ValueError("query is required")
    indexer = _runtime(request).indexer
    try:
        matches = await run_in_threadpool(indexer.search, user_id, query)
    except Exception:
        logger.exception("Semantic search failed for %s", user_id)
        return JSONResponse({"error": "Search failed"}, status_code=500)
    return JSONResponse({"results": matches})


@api_handler
async def api_notifications(request: Request):
    user_id = _user_id(request)
    limit = max(1, min(100, int(request.query_params.get("limit", 20))))
    items = await _in_shard(request, user_id, notifications_mod.list_notifications, limit=limit)
    return JSONResponse([notification_dict(n) for n in items])


@api_handler
async def api_run_workflow(request: Request):
    body = await _json_body(request)
    user_id = _user_id(request, body)
    kind = body.get("type")
    if not kind or not isinstance(kind, str):
        raise ValueError("type is required")
    orchestrator = _runtime(request).orchestrator
    await run_in_threadpool(orchestrator.trigger, WORKFLOW_ACTIONS.get(kind, kind), user_id)
    return JSONResponse({"success": True, "message": f"{kind} workflow scheduled"})


# ── Real-time channel ─────────────────────────────────────────────────────────


async def ws_channel(websocket: WebSocket):
    runtime = _runtime(websocket)
    user_id = websocket.query_params.get("userId")
    await websocket.accept()
    if not user_id:
        await websocket.close(code=1008, reason="userId is required")
        return

    loop = asyncio.get_running_loop()
    outbox: asyncio.Queue = asyncio.Queue()
    unsubscribe = runtime.hub.subscribe(
        user_id, lambda n: loop.call_soon_threadsafe(outbox.put_nowait, n)
    )
    pusher = asyncio.create_task(_push_notifications(websocket, outbox))
    logger.info("Channel opened for %s", user_id)
    try:
        while True:
            raw = await websocket.receive_text()
            await websocket.send_json(await _channel_reply(runtime, user_id, raw))
    except WebSocketDisconnect as e:
        logger.info("Channel closed for %s (%s)", user_id, e.code)
    finally:
        unsubscribe()
        pusher.cancel()


async def _push_notifications(websocket: WebSocket, outbox: asyncio.Queue):
    while True:
        notification = await outbox.get()
        try:
            await websocket.send_json({"type": "notification", "data": notification_dict(notification)})
        except Exception:
            logger.exception("Failed to push notification to %s", notification.user_id)
            return


async def _channel_reply(runtime: Runtime, user_id: str, raw: str) -> dict:
    try:
        data = json.loads(raw)
    except ValueError:
        data = None
    if not isinstance(data, dict):
        return {"type": "error", "message": "Invalid message format"}

    kind = data.get("type")
    try:
        if kind == "ping":
            return {"type": "pong"}
        if kind == "chat":
            content = data.get("content") or data.get("message")
            if not isinstance(content, str) or not content.strip():
                return {"type": "error", "message": "Message content is required"}
            reply = await run_in_threadpool(runtime.session(user_id).handle_chat, content)
            return {"type": "chat_response", "data": message_dict(reply)}
        if kind == "get_tasks":
            tasks = await run_in_threadpool(runtime.session(user_id).list_tasks)
            return {"type": "tasks", "data": [task_dict(t) for t in tasks]}
    except Exception:
        logger.exception("Error handling %s message for %s", kind, user_id)
        return {"type": "error", "message": "Error processing message"}
    return {"type": "error", "message": "Unknown message type"}


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(runtime: Runtime | None = None) -> Starlette:
    routes = [
        Route("/health", health),
        Route("/api/chat", api_chat, methods=["POST"]),
        Route("/api/tasks", api_list_tasks, methods=["GET"]),
        Route("/api/tasks", api_create_task, methods=["POST"]),
        Route("/api/tasks/{task_id}", api_update_task, methods=["PATCH", "PUT"]),
        Route("/api/tasks/{task_id}", api_delete_task, methods=["DELETE"]),
        Route("/api/projects", api_list_projects, methods=["GET"]),
        Route("/api/projects", api_create_project, methods=["POST"]),
        Route("/api/projects/{project_id}", api_update_project, methods=["PATCH", "PUT"]),
        Route("/api/projects/{project_id}", api_delete_project, methods=["DELETE"]),
        Route("/api/profile", api_get_profile, methods=["GET"]),
        Route("/api/profile", api_update_profile, methods=["POST", "PATCH"]),
        Route("/api/search", api_search, methods=["POST"]),
        Route("/api/notifications", api_notifications, methods=["GET"]),
        Route("/api/workflows/run", api_run_workflow, methods=["POST"]),
        WebSocketRoute("/api/ws", ws_channel),
    ]
    app = Starlette(routes=routes, middleware=[Middleware(CORSHeadersMiddleware)])
    app.state.runtime = runtime or build_runtime()
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787, runtime: Runtime | None = None):
    runtime = runtime or build_runtime()
    runtime.start_scheduler()
    try:
        uvicorn.run(create_app(runtime), host=host, port=port)
    finally:
        runtime.close()
