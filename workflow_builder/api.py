"""FastAPI service for the workflow builder engine.

Each workflow lives in its own WorkflowStore, held in an in-memory registry
for the lifetime of the process. Two ways to change a workflow:

  1. Send a patch:   POST /workflows/{id}/patches
       Body is a Patch IR object, an array of ops, or {"ops": [...]}.
       Malformed payloads → 422. Structural failures → 200 with ok=false.

  2. Send intent:    POST /workflows/{id}/chat
       The configured planner turns text into a patch, which is committed
       through the same path as /patches.

Observers can follow commits live:  GET /workflows/{id}/events  (SSE)
"""

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any
from uuid import uuid4

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from workflow_builder.config import EngineSettings
from workflow_builder.engine.connectors import connections_required
from workflow_builder.engine.graph_model import WorkflowGraph
from workflow_builder.engine.patch_ir import PatchIRValidationError, patch_from_payload
from workflow_builder.engine.planner import RuleBasedPlanner, create_planner
from workflow_builder.engine.store import StoreEvent, WorkflowStore
from workflow_builder.reasoning import ReasoningSettings

logger = logging.getLogger("workflow_builder.api")

# Seconds between SSE keepalive comments when no commit happens
_SSE_KEEPALIVE_INTERVAL = float(os.getenv("SSE_KEEPALIVE_INTERVAL", "15"))

# ---------------------------------------------------------------------------
# API key authentication (optional, enabled when AGENT_API_KEY is set)
# ---------------------------------------------------------------------------

_bearer = HTTPBearer(auto_error=False)


def _verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer),
) -> None:
    """Verify Bearer token matches AGENT_API_KEY env var.

    If AGENT_API_KEY is not set, all requests are allowed (open dev mode).
    If set, every request must carry 'Authorization: Bearer <key>'.
    """
    api_key = os.getenv("AGENT_API_KEY")
    if not api_key:
        return  # open access in dev mode
    if not credentials or credentials.credentials != api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


# ---------------------------------------------------------------------------
# Lifespan: settings, planner and an empty registry, created once at startup
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan: load settings and the planner on startup."""
    load_dotenv()

    settings = EngineSettings.from_env()
    reasoning_settings = ReasoningSettings()
    planner = create_planner(reasoning_settings)

    logger.info(
        "Starting workflow builder | planner: %s | history limit: %d",
        planner.name,
        settings.history_limit,
    )

    app.state.settings = settings
    app.state.planner = planner
    app.state.workflows = {}

    yield

    logger.info("Shutting down workflow builder (%d workflows)", len(app.state.workflows))
    app.state.workflows.clear()


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------


_rate_limit = os.getenv("RATE_LIMIT_PER_MIN", "30")
limiter = Limiter(key_func=get_remote_address, default_limits=[f"{_rate_limit}/minute"])

app = FastAPI(
    title="Workflow Builder API",
    description=(
        "Graph mutation and validation engine for a visual workflow builder. "
        "Applies Patch IR atomically, validates workflow invariants, keeps "
        "undo/redo history and turns natural-language intent into patches."
    ),
    version="0.1.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

_CORS_ORIGINS: list[str] = [
    o.strip()
    for o in os.environ.get("CORS_ORIGINS", "http://localhost:3001,http://localhost:3000").split(",")
    if o.strip()
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class CreateWorkflowRequest(BaseModel):
    """Request body for POST /workflows."""

    name: str = Field("New Workflow", max_length=120, description="Display name.")
    document: dict[str, Any] | None = Field(
        None,
        description="Optional interchange document to start from instead of an empty graph.",
    )


class PatchRequest(BaseModel):
    """Request body for POST /workflows/{id}/patches."""

    patch: dict[str, Any] | list[Any] = Field(
        ...,
        description=(
            "A Patch IR op, an array of ops (applied as one BULK), "
            "or an {\"ops\": [...]} envelope."
        ),
        examples=[{"op": "ADD_NODE", "node": {"id": "t1", "kind": "trigger.schedule",
                                               "config": {"cron": "0 9 * * *"}}}],
    )


class ChatRequest(BaseModel):
    """Request body for POST /workflows/{id}/chat."""

    text: str = Field(..., min_length=1, description="What the user wants to change.")
    rule_based: bool = Field(False, description="Skip the LLM and use the rule-based planner.")


class ResetRequest(BaseModel):
    name: str = Field("New Workflow", max_length=120)


class WorkflowInfo(BaseModel):
    """Lightweight entry returned by GET /workflows."""

    workflow_id: str
    name: str
    version: int
    node_count: int
    edge_count: int
    can_undo: bool
    can_redo: bool


# ---------------------------------------------------------------------------
# Dependency
# ---------------------------------------------------------------------------


def _registry(request: Request) -> dict[str, WorkflowStore]:
    return request.app.state.workflows


def _get_store(workflow_id: str, request: Request) -> WorkflowStore:
    store = _registry(request).get(workflow_id)
    if store is None:
        raise HTTPException(status_code=404, detail=f"Workflow '{workflow_id}' not found.")
    return store


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _info(workflow_id: str, store: WorkflowStore) -> WorkflowInfo:
    graph = store.graph
    return WorkflowInfo(
        workflow_id=workflow_id,
        name=graph.name,
        version=store.version,
        node_count=len(graph.nodes),
        edge_count=len(graph.edges),
        can_undo=store.can_undo,
        can_redo=store.can_redo,
    )


def _state(workflow_id: str, store: WorkflowStore) -> dict:
    return {
        **_info(workflow_id, store).model_dump(),
        "graph": store.export_document(),
        "validation": store.validate().to_dict(),
    }


def _format_sse(event: StoreEvent | dict) -> str:
    """Format one store event as an SSE frame: named event + JSON data line."""
    payload = event.to_dict() if isinstance(event, StoreEvent) else event
    return f"event: {payload['kind']}\ndata: {json.dumps(payload)}\n\n"


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/health", tags=["system"], dependencies=[Depends(_verify_api_key)])
async def health(request: Request) -> dict:
    """Health check. Reports the active planner and workflow count."""
    planner = getattr(request.app.state, "planner", None)
    return {
        "api": "ok",
        "planner": planner.name if planner is not None else None,
        "workflows": len(getattr(request.app.state, "workflows", {})),
    }


@app.post("/workflows", tags=["workflows"], dependencies=[Depends(_verify_api_key)])
@limiter.limit(f"{_rate_limit}/minute")
async def create_workflow(request: Request, body: CreateWorkflowRequest) -> dict:
    """Create a workflow, empty or from an interchange document."""
    store = WorkflowStore(WorkflowGraph(name=body.name), settings=request.app.state.settings)
    if body.document is not None:
        try:
            result = store.load_document(body.document)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        if not result.ok:
            raise HTTPException(status_code=422, detail=result.issues)

    workflow_id = str(uuid4())
    _registry(request)[workflow_id] = store
    logger.info("Created workflow %s (%s)", workflow_id, store.name)
    return _state(workflow_id, store)


@app.get("/workflows", response_model=list[WorkflowInfo], tags=["workflows"], dependencies=[Depends(_verify_api_key)])
async def list_workflows(request: Request) -> list[WorkflowInfo]:
    return [_info(wid, store) for wid, store in _registry(request).items()]


@app.get("/workflows/{workflow_id}", tags=["workflows"], dependencies=[Depends(_verify_api_key)])
async def get_workflow(workflow_id: str, request: Request) -> dict:
    return _state(workflow_id, _get_store(workflow_id, request))


@app.post("/workflows/{workflow_id}/patches", tags=["workflows"], dependencies=[Depends(_verify_api_key)])
async def apply_workflow_patch(workflow_id: str, body: PatchRequest, request: Request) -> dict:
    """Apply one patch atomically.

    A structurally invalid patch is not an HTTP error: the response carries
    ok=false with the issues, and the workflow is unchanged.
    """
    store = _get_store(workflow_id, request)
    try:
        patch = patch_from_payload(body.patch)
    except PatchIRValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors)

    result = store.apply(patch)
    return {
        "ok": result.ok,
        "issues": result.issues,
        "warnings": result.warnings,
        "diff_summary": result.diff_summary,
        "failed_op": result.failed_op,
        "changed": result.changed,
        **_state(workflow_id, store),
    }


@app.post("/workflows/{workflow_id}/undo", tags=["history"], dependencies=[Depends(_verify_api_key)])
async def undo_workflow(workflow_id: str, request: Request) -> dict:
    store = _get_store(workflow_id, request)
    return {"applied": store.undo(), **_state(workflow_id, store)}


@app.post("/workflows/{workflow_id}/redo", tags=["history"], dependencies=[Depends(_verify_api_key)])
async def redo_workflow(workflow_id: str, request: Request) -> dict:
    store = _get_store(workflow_id, request)
    return {"applied": store.redo(), **_state(workflow_id, store)}


@app.post("/workflows/{workflow_id}/reset", tags=["history"], dependencies=[Depends(_verify_api_key)])
async def reset_workflow(
    workflow_id: str,
    request: Request,
    body: ResetRequest | None = None,
) -> dict:
    """Clear the graph and its history."""
    store = _get_store(workflow_id, request)
    store.reset(name=body.name if body is not None else "New Workflow")
    return _state(workflow_id, store)


@app.get("/workflows/{workflow_id}/validate", tags=["workflows"], dependencies=[Depends(_verify_api_key)])
async def validate_workflow(workflow_id: str, request: Request) -> dict:
    """Run the invariant validator (the pre-run check). Issues block running."""
    return _get_store(workflow_id, request).validate().to_dict()


@app.get("/workflows/{workflow_id}/export", tags=["workflows"], dependencies=[Depends(_verify_api_key)])
async def export_workflow(workflow_id: str, request: Request) -> dict:
    return _get_store(workflow_id, request).export_document()


@app.post("/workflows/{workflow_id}/import", tags=["workflows"], dependencies=[Depends(_verify_api_key)])
async def import_workflow(workflow_id: str, document: dict[str, Any], request: Request) -> dict:
    """Replace the workflow with an interchange document. History restarts."""
    store = _get_store(workflow_id, request)
    try:
        result = store.load_document(document)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    if not result.ok:
        raise HTTPException(status_code=422, detail=result.issues)
    return {"warnings": result.warnings, **_state(workflow_id, store)}


@app.get("/workflows/{workflow_id}/summary", tags=["workflows"], dependencies=[Depends(_verify_api_key)])
async def summarize_workflow(workflow_id: str, request: Request) -> dict:
    return {"summary": _get_store(workflow_id, request).summary()}


@app.get("/workflows/{workflow_id}/connections", tags=["workflows"], dependencies=[Depends(_verify_api_key)])
async def workflow_connections(workflow_id: str, request: Request) -> dict:
    """Connectors the workflow's nodes need before it can run."""
    store = _get_store(workflow_id, request)
    return {"connections": [m.to_dict() for m in connections_required(store.graph.nodes)]}


@app.post("/workflows/{workflow_id}/chat", tags=["workflows"], dependencies=[Depends(_verify_api_key)])
@limiter.limit(f"{_rate_limit}/minute")
async def chat_workflow(workflow_id: str, request: Request, body: ChatRequest) -> dict:
    """Turn natural-language intent into a patch and commit it.

    status is "committed", "rejected" (issues explain why) or "no_patch"
    (the planner was unsure; ask the user to rephrase).
    """
    store = _get_store(workflow_id, request)
    planner = RuleBasedPlanner() if body.rule_based else request.app.state.planner
    logger.info("Chat on workflow %s via %s: %r", workflow_id, planner.name, body.text[:80])

    outcome = await store.submit_intent(body.text, planner)
    return {**outcome.to_dict(), **_state(workflow_id, store)}


@app.get("/workflows/{workflow_id}/events", tags=["workflows"], dependencies=[Depends(_verify_api_key)])
async def stream_workflow_events(
    workflow_id: str,
    request: Request,
    max_events: int | None = None,
) -> StreamingResponse:
    """Stream store events for a workflow as Server-Sent Events.

    One frame per event, named after its kind:

      event: committed
      data: {"kind":"committed","version":3,"graph":{...},"patch":{...},...}

    Kinds: committed, rejected, undo, redo, reset, loaded. A keepalive
    comment is sent when the workflow is idle. The stream ends when the
    client disconnects, or after ``max_events`` events when given.
    """
    store = _get_store(workflow_id, request)
    queue: asyncio.Queue[dict] = asyncio.Queue()
    unsubscribe = store.subscribe(lambda event: queue.put_nowait(event.to_dict()))

    async def event_stream():
        sent = 0
        try:
            yield ": connected\n\n"
            while max_events is None or sent < max_events:
                if await request.is_disconnected():
                    break
                try:
                    payload = await asyncio.wait_for(queue.get(), timeout=_SSE_KEEPALIVE_INTERVAL)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                sent += 1
                yield _format_sse(payload)
        finally:
            unsubscribe()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.delete("/workflows/{workflow_id}", tags=["workflows"], dependencies=[Depends(_verify_api_key)])
async def delete_workflow(workflow_id: str, request: Request) -> dict:
    _get_store(workflow_id, request)
    del _registry(request)[workflow_id]
    return {"deleted": workflow_id}


# ---------------------------------------------------------------------------
# Entry point (for uvicorn programmatic launch)
# ---------------------------------------------------------------------------


def serve(host: str = "0.0.0.0", port: int = 8000, reload: bool = False) -> None:
    """Launch the FastAPI server via uvicorn."""
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(
        "workflow_builder.api:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


if __name__ == "__main__":
    serve()
