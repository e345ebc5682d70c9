"""FastAPI server: bridges an editor or chat client to the agent engine."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from .agent import AgentLoop, ToolExecutor
from .backend import ModelBackend, ProviderConfig
from .commands import ApprovalGate, CommandRunner
from .config import get_config
from .embeddings import OllamaEmbedder
from .errors import BackendError, NotFoundError
from .watcher import watch_workspace
from .workspace import Workspace

logger = logging.getLogger("codewright.server")

# Global instances
backend: ModelBackend | None = None
runner: CommandRunner | None = None
approvals: ApprovalGate | None = None
workspace: Workspace | None = None
agent: AgentLoop | None = None
_task_lock: asyncio.Lock | None = None
_watch_task: asyncio.Task | None = None
_watch_stop: asyncio.Event | None = None


async def open_workspace(path: str) -> Workspace:
    """Open ``path`` as the active workspace, replacing any previous one."""
    global workspace, agent, _watch_task, _watch_stop

    cfg = get_config()
    embedder = OllamaEmbedder(cfg) if cfg.embedding_enabled else None
    new_workspace = Workspace(path, cfg, embedder)

    await close_workspace()
    await new_workspace.open()
    workspace = new_workspace
    executor = ToolExecutor(workspace, runner, approvals, cfg)
    agent = AgentLoop(backend, executor, workspace, cfg)

    if cfg.watch_enabled:
        _watch_stop = asyncio.Event()
        _watch_task = asyncio.create_task(watch_workspace(workspace, _watch_stop))
    return workspace


async def close_workspace() -> None:
    global workspace, agent, _watch_task, _watch_stop

    if _watch_stop is not None:
        _watch_stop.set()
    if _watch_task is not None:
        try:
            await asyncio.wait_for(_watch_task, timeout=5.0)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            logger.warning("File watcher did not stop in time")
    _watch_task = None
    _watch_stop = None

    if workspace is not None:
        await workspace.close()
    workspace = None
    agent = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle."""
    global backend, runner, approvals, _task_lock

    cfg = get_config()
    logger.info(f"Starting codewright server on {cfg.host}:{cfg.port}")
    logger.info(f"  Provider: {cfg.default_provider} (ollama model: {cfg.ollama_model})")

    backend = ModelBackend(cfg)
    runner = CommandRunner(cfg)
    approvals = ApprovalGate()
    _task_lock = asyncio.Lock()

    if cfg.workspace_path:
        try:
            await open_workspace(cfg.workspace_path)
        except NotFoundError as e:
            logger.error(f"Configured workspace not opened: {e}")

    yield

    await close_workspace()
    if backend:
        await backend.close()
    logger.info("codewright server shutdown complete")


app = FastAPI(
    title="codewright",
    version="0.1.0",
    description="Autonomous coding agent engine",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── Request Models ──────────────────────────────────────────────────

class WorkspaceRequest(BaseModel):
    path: str


class TaskRequest(BaseModel):
    task: str
    provider: Optional[str] = None
    api_key: str = ""
    model: str = ""
    active_file: Optional[str] = None
    stream: bool = True


class ApprovalRequest(BaseModel):
    approved: bool


def _no_workspace() -> JSONResponse:
    return JSONResponse({"error": "No workspace open. POST /api/workspace first."}, status_code=409)


# ─── Routes ──────────────────────────────────────────────────────────

@app.get("/api/status")
async def get_status() -> JSONResponse:
    """Health check, workspace and approval state."""
    cfg = get_config()
    ollama_ok = await backend.health_check() if backend else False
    return JSONResponse({
        "status": "ok" if workspace is not None else "idle",
        "provider": cfg.default_provider,
        "ollama": {"connected": ollama_ok, "url": cfg.ollama_url, "model": cfg.ollama_model},
        "workspace": workspace.status() if workspace is not None else None,
        "busy": bool(_task_lock and _task_lock.locked()),
        "pending_approval": approvals.pending if approvals else None,
    })


@app.get("/api/models")
async def list_models() -> JSONResponse:
    """Models available on the local Ollama server."""
    try:
        models = await backend.list_models()
    except BackendError as e:
        return JSONResponse({"error": str(e), "status": e.status}, status_code=502)
    return JSONResponse({"models": models, "default": get_config().ollama_model})


@app.post("/api/workspace")
async def set_workspace(request: WorkspaceRequest) -> JSONResponse:
    if _task_lock and _task_lock.locked():
        return JSONResponse({"error": "A task is running"}, status_code=409)
    try:
        ws = await open_workspace(request.path)
    except NotFoundError as e:
        return JSONResponse({"error": str(e)}, status_code=404)
    return JSONResponse({"status": "ok", "workspace": ws.status()})


@app.post("/api/task", response_model=None)
async def run_task(request: TaskRequest) -> EventSourceResponse | JSONResponse:
    """Run a task; progress is streamed as SSE unless ``stream`` is false."""
    if agent is None:
        return _no_workspace()

    if request.stream:
        return EventSourceResponse(_stream_task(request), media_type="text/event-stream")

    async with _task_lock:
        try:
            result = await agent.run_task(
                request.task,
                provider=request.provider,
                provider_config=ProviderConfig(api_key=request.api_key, model=request.model),
                active_file=request.active_file,
            )
        except BackendError as e:
            logger.error(f"Task aborted: {e}")
            return JSONResponse({"error": str(e), "status": e.status}, status_code=502)
    return JSONResponse(result.to_dict())


async def _run_and_report(request: TaskRequest, queue: asyncio.Queue) -> None:
    try:
        result = await agent.run_task(
            request.task,
            provider=request.provider,
            provider_config=ProviderConfig(api_key=request.api_key, model=request.model),
            on_event=lambda step: queue.put_nowait(("step", step.to_dict())),
            active_file=request.active_file,
        )
        queue.put_nowait(("result", result.to_dict()))
    except BackendError as e:
        logger.error(f"Task aborted: {e}")
        queue.put_nowait(("error", {"error": str(e), "status": e.status}))
    finally:
        queue.put_nowait(("end", None))


async def _stream_task(request: TaskRequest) -> AsyncIterator[dict]:
    """Stream step events, then one result or error event."""
    queue: asyncio.Queue = asyncio.Queue()
    async with _task_lock:
        task = asyncio.create_task(_run_and_report(request, queue))
        try:
            while True:
                kind, payload = await queue.get()
                if kind == "end":
                    break
                yield {"event": kind, "data": json.dumps(payload, default=str)}
        finally:
            # Keep the lock until the task really ends, even if the client left
            if not task.done():
                await task


@app.post("/api/approval")
async def resolve_approval(request: ApprovalRequest) -> JSONResponse:
    """Approve or deny the pending run_command."""
    command = approvals.pending if approvals else None
    if approvals is None or not approvals.resolve(request.approved):
        return JSONResponse({"error": "No command is awaiting approval"}, status_code=409)
    return JSONResponse({"status": "ok", "command": command, "approved": request.approved})


@app.post("/api/reset")
async def reset_conversation() -> JSONResponse:
    """Reset conversation history."""
    if agent:
        agent.reset()
    return JSONResponse({"status": "ok", "message": "Conversation reset"})


@app.get("/api/history")
async def get_history() -> JSONResponse:
    if not agent:
        return JSONResponse({"messages": []})
    return JSONResponse({"messages": list(agent.session.messages)})


@app.get("/api/graph")
async def get_graph() -> JSONResponse:
    if workspace is None:
        return _no_workspace()
    return JSONResponse({**workspace.graph.to_dict(), "summary": workspace.graph.summary()})


@app.get("/api/blast-radius")
async def get_blast_radius(path: str, depth: Optional[int] = None) -> JSONResponse:
    if workspace is None:
        return _no_workspace()
    depth = depth if depth is not None else get_config().blast_radius_depth
    affected = workspace.graph.blast_radius(workspace.resolve(path), depth)
    return JSONResponse({
        "path": path,
        "depth": depth,
        "affected": [workspace.relative(p) for p in affected],
    })


@app.get("/api/search")
async def semantic_search(query: str, limit: Optional[int] = None) -> JSONResponse:
    if workspace is None:
        return _no_workspace()
    if workspace.index is None:
        return JSONResponse({"error": "Semantic index is disabled"}, status_code=409)
    try:
        results = await workspace.index.search(query, limit or get_config().semantic_search_limit)
    except BackendError as e:
        return JSONResponse({"error": str(e), "status": e.status}, status_code=502)
    return JSONResponse({"query": query, "results": [r.to_dict() for r in results]})


@app.get("/api/terminal", response_model=None)
async def terminal_stream() -> EventSourceResponse:
    """Mirror of approved command invocations and their output."""
    return EventSourceResponse(_terminal_events(), media_type="text/event-stream")


async def _terminal_events() -> AsyncIterator[dict[str, Any]]:
    queue: asyncio.Queue = asyncio.Queue()
    sink = queue.put_nowait
    runner.attach(sink)
    try:
        while True:
            text = await queue.get()
            yield {"event": "output", "data": text}
    finally:
        runner.detach(sink)


def create_app() -> FastAPI:
    """Factory function for creating the app."""
    return app


def run_server() -> None:
    """Run the API server."""
    import uvicorn

    cfg = get_config()
    uvicorn.run(
        "codewright.engine.server:app",
        host=cfg.host,
        port=cfg.port,
        log_level="warning",
        log_config=None,  # keep the logging set up by setup_logging()
        reload=False,
    )
