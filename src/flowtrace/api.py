"""
FastAPI backend for the flow trace explorer.
Wraps the retrieval coordinator, graph builder and layouts behind a small
JSON API so any front end can render traces.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from flowtrace.config import FlowConfig
from flowtrace.errors import (
    FlowTraceError,
    JobError,
    NetworkError,
    TraceTimeoutError,
    ValidationError,
)
from flowtrace.flow_http_client import FlowHTTPClient
from flowtrace.graph_builder import build_graph, build_graph_from_result
from flowtrace.history import RunHistoryStore
from flowtrace.layout import LayoutMode, Viewport, compute_layout
from flowtrace.models import FlowLink, FlowNode, GraphData, TraceQuery, TraceResult
from flowtrace.reporting import compute_trace_stats
from flowtrace.retrieval import RetrievalCoordinator
from flowtrace.share import build_share_url_for_key, build_share_url_for_params

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


class LayoutOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    layout: LayoutMode = "tree"
    width: float = 1200
    height: float = 800
    avoid_overlap: bool = Field(True, alias="avoidOverlap")


class TraceRequest(LayoutOptions):
    query: TraceQuery
    force_fresh: bool = Field(False, alias="forceFresh")


class ContinueRequest(LayoutOptions):
    budget: Optional[int] = None


class GraphRequest(LayoutOptions):
    nodes: List[FlowNode] = Field(default_factory=list)
    links: List[FlowLink] = Field(default_factory=list)
    start_node: Optional[str] = Field(None, alias="startNode")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting Flow Trace API...")
    client = FlowHTTPClient()
    history = RunHistoryStore(FlowConfig.HISTORY_PATH)
    history.load()
    app.state.coordinator = RetrievalCoordinator(client, history)
    logger.info(f"Flow service at {client.api_url}, {len(history)} recent run(s) loaded")
    yield
    logger.info("Shutting down Flow Trace API...")
    await client.aclose()


app = FastAPI(
    title="Flow Trace API",
    description="Token flow tracing, graph building and layout",
    version=VERSION,
    lifespan=lifespan,
)

# Enable CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_coordinator(request: Request) -> RetrievalCoordinator:
    return request.app.state.coordinator


def _http_error(e: FlowTraceError) -> HTTPException:
    if isinstance(e, ValidationError):
        status = 400
    elif isinstance(e, TraceTimeoutError):
        status = 504
    elif isinstance(e, (JobError, NetworkError)):
        status = 502
    else:
        status = 500
    return HTTPException(status_code=status, detail=e.user_message)


async def _render(result: TraceResult, options: LayoutOptions, start_node: Optional[str] = None) -> Dict[str, Any]:
    graph = build_graph_from_result(result, start_node)
    # layouts run off the event loop
    layout = await run_in_threadpool(
        compute_layout, graph, options.layout, Viewport(options.width, options.height), options.avoid_overlap
    )
    return {
        "result": result.model_dump(by_alias=True),
        "graph": graph.model_dump(by_alias=True),
        "layout": layout.to_dict(),
        "stats": compute_trace_stats(result),
    }


@app.post("/api/trace")
async def start_trace(body: TraceRequest, request: Request):
    """
    Retrieve a trace (cache first, then the flow service) and lay it out.
    A newer request supersedes an older one still in flight.
    """
    coordinator = get_coordinator(request)
    try:
        result = await coordinator.retrieve(body.query, force_fresh=body.force_fresh)
    except FlowTraceError as e:
        logger.warning(f"Trace failed: {e}")
        raise _http_error(e)
    if result is None:
        raise HTTPException(status_code=409, detail="Superseded by a newer trace request")
    return await _render(result, body, body.query.start)


@app.post("/api/trace/continue")
async def continue_trace(body: ContinueRequest, request: Request):
    """Resubmit the last truncated trace with a larger budget."""
    coordinator = get_coordinator(request)
    try:
        result = await coordinator.continue_trace(body.budget)
    except FlowTraceError as e:
        raise _http_error(e)
    if result is None:
        raise HTTPException(status_code=409, detail="Superseded by a newer trace request")
    start = coordinator.last_params.start if coordinator.last_params else None
    return await _render(result, body, start)


@app.get("/api/cache/{key_hash}")
async def get_cached_trace(key_hash: str, request: Request, layout: LayoutMode = "tree"):
    coordinator = get_coordinator(request)
    try:
        result = await coordinator.load_from_cache(key_hash)
    except NetworkError as e:
        raise _http_error(e)
    except FlowTraceError as e:
        raise HTTPException(status_code=404, detail=e.user_message)
    entry = coordinator.history.find(key_hash)
    return await _render(result, LayoutOptions(layout=layout), entry.params.start if entry else None)


@app.post("/api/graph")
async def graph(body: GraphRequest):
    """Build and lay out a graph from posted nodes and links."""
    data: GraphData = build_graph(body.nodes, body.links, body.start_node)
    layout = await run_in_threadpool(
        compute_layout, data, body.layout, Viewport(body.width, body.height), body.avoid_overlap
    )
    return {"graph": data.model_dump(by_alias=True), "layout": layout.to_dict()}


@app.get("/api/history")
async def get_history(request: Request):
    return {"entries": get_coordinator(request).history.to_json()}


@app.delete("/api/history")
async def clear_history(request: Request):
    get_coordinator(request).history.clear()
    return {"status": "cleared"}


@app.get("/api/share")
async def share(request: Request, key_hash: Optional[str] = None, base_url: Optional[str] = None):
    """Shareable link for a cache key, or for the last query's parameters."""
    coordinator = get_coordinator(request)
    base = base_url or str(request.base_url)
    if key_hash:
        return {"url": build_share_url_for_key(base, key_hash)}
    if coordinator.last_result is not None and coordinator.last_result.key_hash:
        return {"url": build_share_url_for_key(base, coordinator.last_result.key_hash)}
    if coordinator.last_params is not None:
        return {"url": build_share_url_for_params(base, coordinator.last_params)}
    raise HTTPException(status_code=404, detail="Nothing to share yet")


@app.get("/api/health")
async def health(request: Request):
    """Detailed health check."""
    coordinator = get_coordinator(request)
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "version": VERSION,
        "state": coordinator.state.value,
        "pending_key": coordinator.pending_key,
        "recent_runs": len(coordinator.history),
    }


def main():
    """Run the API server."""
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(
        "flowtrace.api:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )


if __name__ == "__main__":
    main()
