"""
AWPA Metrics Service

REST API over recorded performance sessions with a Server-Sent Events (SSE)
stream of the live session history.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from .config import StorageConfig
from .lifecycle import EndReason
from .query import MetricQuery, NamedRange, RequestQuery, SessionFilter, TimeWindow
from .service import PerformanceSessionService
from .storage_interface import (
    DataValidationError,
    InvariantViolation,
    MalformedExport,
    Metric,
    MetricType,
    NetworkRequest,
    Session,
    SessionDescriptor,
    SessionNotFound,
    SessionStatus,
    StorageError,
)


logger = logging.getLogger(__name__)

# Global session service
session_service: Optional[PerformanceSessionService] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown"""
    global session_service

    # Startup
    config = StorageConfig.from_env()
    logger.info(f"Starting AWPA Metrics Service (store: {config.db_path})...")
    session_service = PerformanceSessionService(config)
    await session_service.initialize()

    yield

    # Shutdown
    logger.info("Shutting down AWPA Metrics Service...")
    if session_service:
        await session_service.shutdown()
    session_service = None
    logger.info("Service shutdown complete")


app = FastAPI(
    title="AWPA Metrics API",
    description="""
    REST API for recorded Android WebView performance sessions.

    **Features:**
    - Session lifecycle (begin, end, delete, rename, tag)
    - Metric and network request ingestion
    - Windowed queries and session search
    - JSON envelope and SQLite image export/import
    - Live history streaming (SSE)
    """,
    version="1.0.0",
    lifespan=lifespan,
)

# Add CORS middleware for dashboard access
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_service() -> PerformanceSessionService:
    if not session_service:
        raise HTTPException(status_code=503, detail="Session service not initialized")
    return session_service


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    """Map the storage error hierarchy onto HTTP status codes."""
    if isinstance(exc, SessionNotFound):
        status_code = 404
    elif isinstance(exc, InvariantViolation):
        status_code = 409
    elif isinstance(exc, MalformedExport):
        status_code = 400
    elif isinstance(exc, DataValidationError):
        status_code = 422
    else:
        logger.error(f"Storage failure on {request.url.path}: {exc}")
        status_code = 500

    body: Dict[str, Any] = {"detail": exc.message, "error": type(exc).__name__}
    if isinstance(exc, DataValidationError):
        body["stage"] = exc.stage
    if isinstance(exc, InvariantViolation):
        body["invariant"] = exc.invariant
    return JSONResponse(status_code=status_code, content=body)


# ============================================================
# Request models
# ============================================================


class SessionBeginRequest(BaseModel):
    """Request model for beginning a recording session"""

    device_id: str = Field(..., min_length=1, description="ADB device serial")
    device_name: Optional[str] = Field(None, description="Human device name")
    package_name: Optional[str] = Field(None, description="Target app package")
    target_title: Optional[str] = Field(None, description="Debug target title")
    webview_url: Optional[str] = Field(None, description="Debug target URL")
    display_name: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None


class SessionEndRequest(BaseModel):
    reason: EndReason = EndReason.NORMAL


class SessionUpdateRequest(BaseModel):
    """Request model for user edits to a session"""

    display_name: Optional[str] = None
    tags: Optional[List[str]] = None


class MetricIngestRequest(BaseModel):
    timestamp: int = Field(..., description="Epoch milliseconds")
    metric_type: MetricType
    data: Dict[str, Any]


class NetworkRequestIngest(BaseModel):
    id: str = Field(..., min_length=1, description="Request id, unique within the session")
    url: str = Field(..., min_length=1)
    method: Optional[str] = None
    status_code: Optional[int] = None
    request_time: int
    response_time: Optional[int] = None
    duration_ms: Optional[float] = None
    size_bytes: Optional[float] = None
    headers: Optional[Dict[str, str]] = None


class PresetCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    device_id: str
    device_name: str
    socket_name: str
    package_name: Optional[str] = None


class RecentConnectionRequest(BaseModel):
    device_id: str
    device_name: str
    socket_name: str
    package_name: Optional[str] = None
    target_title: Optional[str] = None
    target_url: Optional[str] = None
    target_id: Optional[str] = None


# ============================================================
# Serialization helpers
# ============================================================


def session_to_dict(session: Session) -> Dict[str, Any]:
    data = asdict(session)
    data["status"] = session.status.value
    data["duration_ms"] = session.duration_ms
    data["is_imported"] = session.is_imported
    return data


def metric_to_dict(metric: Metric) -> Dict[str, Any]:
    return {
        "id": metric.id,
        "session_id": metric.session_id,
        "timestamp": metric.timestamp,
        "metric_type": metric.metric_type.value,
        "data": metric.payload.to_dict(),
    }


def request_to_dict(request: NetworkRequest) -> Dict[str, Any]:
    return asdict(request)


def _window(start: Optional[int], end: Optional[int]) -> Optional[TimeWindow]:
    if start is None and end is None:
        return None
    if start is None or end is None:
        raise HTTPException(status_code=400, detail="start and end must be given together")
    try:
        return TimeWindow(start, end)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# ============================================================
# Health and statistics
# ============================================================


@app.get("/health")
async def health():
    return {"status": "ok", "initialized": session_service is not None}


@app.get("/stats")
async def get_stats():
    return await get_service().get_stats()


# ============================================================
# Sessions
# ============================================================


@app.post("/sessions", status_code=201)
async def begin_session(request: SessionBeginRequest):
    session = await get_service().begin_session(SessionDescriptor(**request.model_dump()))
    return session_to_dict(session)


@app.get("/sessions")
async def search_sessions(
    search: Optional[str] = Query(None, description="Case-insensitive text search"),
    device_id: Optional[str] = None,
    status: Optional[SessionStatus] = None,
    tags: List[str] = Query([], description="Match any of these tags"),
    include_imported: bool = True,
    limit: Optional[int] = Query(None, ge=1),
):
    session_filter = SessionFilter(
        search_text=search,
        device_id=device_id,
        status=status,
        tags=tags,
        include_imported=include_imported,
    )
    sessions = await get_service().search_sessions(session_filter, limit)
    return {"sessions": [session_to_dict(s) for s in sessions], "count": len(sessions)}


@app.get("/sessions/current")
async def get_current_session():
    service = get_service()
    if service.current_session_id is None:
        raise HTTPException(status_code=404, detail="No active session")
    return session_to_dict(await service.get_session(service.current_session_id))


@app.get("/sessions/{session_id}")
async def get_session(session_id: str):
    return session_to_dict(await get_service().get_session(session_id))


@app.post("/sessions/{session_id}/end")
async def end_session(session_id: str, request: Optional[SessionEndRequest] = None):
    reason = request.reason if request else EndReason.NORMAL
    session = await get_service().end_session(session_id, reason)
    return session_to_dict(session)


@app.patch("/sessions/{session_id}")
async def update_session(session_id: str, request: SessionUpdateRequest):
    service = get_service()
    fields_set = request.model_fields_set
    session = await service.get_session(session_id)
    if "display_name" in fields_set:
        session = await service.rename_session(session_id, request.display_name)
    if "tags" in fields_set:
        session = await service.set_session_tags(session_id, request.tags or [])
    return session_to_dict(session)


@app.delete("/sessions/{session_id}")
async def delete_session(session_id: str):
    result = await get_service().delete_session(session_id)
    return asdict(result)


# ============================================================
# Metrics and network requests
# ============================================================


@app.post("/sessions/{session_id}/metrics", status_code=201)
async def record_metric(session_id: str, request: MetricIngestRequest):
    metric = await get_service().record_metric(
        session_id, request.timestamp, request.metric_type, request.data
    )
    return metric_to_dict(metric)


@app.get("/sessions/{session_id}/metrics")
async def get_metrics(
    session_id: str,
    start: Optional[int] = Query(None, description="Inclusive start, epoch ms"),
    end: Optional[int] = Query(None, description="Inclusive end, epoch ms"),
    named_range: NamedRange = Query(NamedRange.ALL, alias="range", description="Named range relative to now"),
    types: List[MetricType] = Query([]),
    limit: Optional[int] = Query(None, ge=0),
    offset: Optional[int] = Query(None, ge=0),
):
    try:
        query = MetricQuery(
            time_range=_window(start, end),
            named_range=named_range,
            metric_types=types or None,
            limit=limit,
            offset=offset,
        )
        metrics = await get_service().query(session_id, query)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"metrics": [metric_to_dict(m) for m in metrics], "count": len(metrics)}


@app.post("/sessions/{session_id}/network-requests")
async def record_network_request(session_id: str, request: NetworkRequestIngest):
    applied = await get_service().record_network_request(
        NetworkRequest(session_id=session_id, **request.model_dump())
    )
    return {"applied": applied}


@app.get("/sessions/{session_id}/network-requests")
async def get_network_requests(
    session_id: str,
    start: Optional[int] = None,
    end: Optional[int] = None,
    named_range: NamedRange = Query(NamedRange.ALL, alias="range"),
    failed_only: bool = False,
    limit: Optional[int] = Query(None, ge=0),
    offset: Optional[int] = Query(None, ge=0),
):
    try:
        query = RequestQuery(
            time_range=_window(start, end),
            named_range=named_range,
            failed_only=failed_only,
            limit=limit,
            offset=offset,
        )
        requests = await get_service().query_network_requests(session_id, query)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"requests": [request_to_dict(r) for r in requests], "count": len(requests)}


@app.get("/sessions/{session_id}/summary")
async def get_session_summary(session_id: str):
    summary = await get_service().summarize_session(session_id)
    return summary.to_dict()


@app.get("/sessions/{baseline_id}/compare/{candidate_id}")
async def compare_sessions(baseline_id: str, candidate_id: str, threshold: float = 0.1):
    comparison = await get_service().compare_sessions(baseline_id, candidate_id)
    return {
        "baseline_id": comparison.baseline_id,
        "candidate_id": comparison.candidate_id,
        "deltas": {name: asdict(delta) for name, delta in comparison.deltas.items()},
        "regressions": comparison.regressions(threshold),
    }


# ============================================================
# Export / import
# ============================================================


@app.get("/sessions/{session_id}/export")
async def export_session(session_id: str):
    """Stream a session as a JSON envelope download."""
    service = get_service()
    filename = await service.export_filename(session_id)
    return StreamingResponse(
        service.stream_export(session_id),
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/export/database")
async def export_database(session_id: Optional[str] = None):
    """The whole store, or one session, as a SQLite database file."""
    image = await get_service().export_buffer(session_id)
    return Response(
        content=image,
        media_type="application/vnd.sqlite3",
        headers={"Content-Disposition": 'attachment; filename="awpa-metrics.db"'},
    )


@app.post("/import")
async def import_data(request: Request):
    """Import a JSON envelope or a SQLite database image sent as the request body."""
    body = await request.body()
    if not body:
        raise HTTPException(status_code=400, detail="Empty import body")
    results = await get_service().import_data(body)
    return {"imported": [asdict(r) for r in results], "count": len(results)}


# ============================================================
# Connections
# ============================================================


@app.get("/connections/presets")
async def list_presets():
    return {"presets": [asdict(p) for p in get_service().registry.list_presets()]}


@app.post("/connections/presets", status_code=201)
async def add_preset(request: PresetCreateRequest):
    preset = get_service().registry.add_preset(**request.model_dump())
    return asdict(preset)


@app.delete("/connections/presets/{preset_id}")
async def remove_preset(preset_id: str):
    if not get_service().registry.remove_preset(preset_id):
        raise HTTPException(status_code=404, detail=f"Preset not found: {preset_id}")
    return {"removed": preset_id}


@app.get("/connections/recent")
async def list_recent_connections():
    return {"recent_connections": [asdict(r) for r in get_service().registry.list_recents()]}


@app.post("/connections/recent", status_code=201)
async def add_recent_connection(request: RecentConnectionRequest):
    recent = get_service().register_recent_connection(**request.model_dump())
    return asdict(recent)


@app.get("/connections/match")
async def match_connection(device_id: str, socket_name: str):
    match = get_service().match_preset(device_id, socket_name)
    return {
        "preset": asdict(match.preset) if match.preset else None,
        "recent": asdict(match.recent) if match.recent else None,
    }


# ============================================================
# Live stream
# ============================================================


async def live_events(
    service: PerformanceSessionService,
    interval: float = 1.0,
    max_events: Optional[int] = None,
) -> AsyncIterator[Dict[str, str]]:
    """
    SSE events for the live history cache.

    Each event carries the metrics cached since the previous event and the
    current newest-first request list.
    """
    last_timestamp: Optional[int] = None
    sent = 0
    while max_events is None or sent < max_events:
        metrics = service.cache.metrics()
        if last_timestamp is not None:
            metrics = [m for m in metrics if m.timestamp > last_timestamp]
        if metrics:
            last_timestamp = metrics[-1].timestamp

        yield {
            "event": "history",
            "data": json.dumps(
                {
                    "session_id": service.current_session_id,
                    "metrics": [metric_to_dict(m) for m in metrics],
                    "requests": [request_to_dict(r) for r in service.cache.requests()],
                }
            ),
        }
        sent += 1
        if max_events is not None and sent >= max_events:
            break
        await asyncio.sleep(interval)


@app.get("/stream/live")
async def stream_live(interval: float = Query(1.0, gt=0, le=60)):
    """
    Stream the live session history via SSE.

    Usage:
        ```javascript
        const source = new EventSource('http://localhost:8003/stream/live');
        source.addEventListener('history', (event) => {
            const { metrics, requests } = JSON.parse(event.data);
        });
        ```
    """
    service = get_service()
    logger.info(f"Starting live history stream with {interval}s interval")
    return EventSourceResponse(live_events(service, interval))
