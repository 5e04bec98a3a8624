"""JSON API over project state, for answering escalations and watching progress."""

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from pm_orchestrator.config import get_config
from pm_orchestrator.core import projects as projects_mod
from pm_orchestrator.core import views
from pm_orchestrator.core.messaging import MessageStateError


def _project_paths(request: Request):
    """Paths for ``?project=``, defaulting to the newest project. None if there is none."""
    config = get_config()
    name = request.query_params.get("project")
    if not name:
        latest = projects_mod.latest_project(config.runtime_dir)
        if not latest:
            return None
        name = latest.name
    if not projects_mod.get_project(config.runtime_dir, name):
        return None
    return projects_mod.project_paths(config.runtime_dir, name)


def _not_found():
    return JSONResponse({"error": "Project not found"}, status_code=404)


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_list_projects(request: Request):
    config = get_config()
    projects = projects_mod.list_projects(config.runtime_dir)
    return JSONResponse([p.to_dict() for p in projects])


async def api_get_project(request: Request):
    config = get_config()
    name = request.path_params["name"]
    project = projects_mod.get_project(config.runtime_dir, name)
    if not project:
        return _not_found()
    paths = projects_mod.project_paths(config.runtime_dir, name)
    data = project.to_dict()
    data["orchestrator"] = views.orchestrator_status(paths)
    return JSONResponse(data)


async def api_tasks(request: Request):
    paths = _project_paths(request)
    if paths is None:
        return _not_found()
    return JSONResponse(views.task_views(paths))


async def api_agents(request: Request):
    paths = _project_paths(request)
    if paths is None:
        return _not_found()
    return JSONResponse(views.agent_views(paths))


async def api_messages(request: Request):
    paths = _project_paths(request)
    if paths is None:
        return _not_found()
    pending = request.query_params.get("pending", "").lower() in ("1", "true", "yes")
    return JSONResponse(views.message_views(paths, pending_only=pending))


async def api_respond(request: Request):
    paths = _project_paths(request)
    if paths is None:
        return _not_found()
    message_id = request.path_params["message_id"]
    try:
        body = await request.json()
    except ValueError:
        body = {}
    answer = (body.get("answer") or "").strip() if isinstance(body, dict) else ""
    if not answer:
        return JSONResponse({"error": "An answer is required"}, status_code=400)
    try:
        reply = views.respond_to_message(paths, message_id, answer)
    except MessageStateError as e:
        return JSONResponse({"error": str(e)}, status_code=409)
    return JSONResponse(reply)


async def api_logs(request: Request):
    paths = _project_paths(request)
    if paths is None:
        return _not_found()
    try:
        limit = int(request.query_params.get("limit", 100))
    except ValueError:
        limit = 100
    return JSONResponse(views.activity_views(paths, limit))


async def api_orchestrator_status(request: Request):
    paths = _project_paths(request)
    if paths is None:
        return _not_found()
    return JSONResponse(views.orchestrator_status(paths))


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/api/projects", api_list_projects),
        Route("/api/projects/{name}", api_get_project),
        Route("/api/tasks", api_tasks),
        Route("/api/agents", api_agents),
        Route("/api/messages", api_messages),
        Route("/api/messages/{message_id}/respond", api_respond, methods=["POST"]),
        Route("/api/logs", api_logs),
        Route("/api/orchestrator/status", api_orchestrator_status),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
