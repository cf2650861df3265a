"""
HTTP API for the threat engine.

Includes:
- Event ingestion (429 when the ingest queue is full)
- Incident queries and lifecycle actions
- Audit export, configuration reload and telemetry
"""

from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from src.threat_engine.errors import ConfigError, IncidentNotFound, InvalidTransition, QueueFullError
from src.threat_engine.export import EXPORT_KINDS, AuditExporter
from src.threat_engine.pipeline import ThreatPipeline
from src.threat_engine.schemas import EventSource, IncidentStatus

router = APIRouter()


# =============================================================================
# Request Models
# =============================================================================


class EventBatch(BaseModel):
    """Raw events from one source."""
    source: EventSource
    events: list[dict[str, Any]] = Field(min_length=1)


class AcknowledgeRequest(BaseModel):
    actor: str


class StatusRequest(BaseModel):
    status: IncidentStatus
    actor: str = "api"
    note: str = ""


class ReloadRequest(BaseModel):
    path: str | None = None


def get_pipeline(request: Request) -> ThreatPipeline:
    return request.app.state.pipeline


# =============================================================================
# Ingestion
# =============================================================================


@router.post("/events", status_code=202)
async def ingest_events(batch: EventBatch, request: Request):
    """Normalize and enqueue a batch. Malformed events are dropped and counted."""
    pipeline = get_pipeline(request)
    accepted = 0
    dropped = 0
    for payload in batch.events:
        try:
            event = pipeline.ingest_raw(payload, batch.source)
        except QueueFullError as e:
            raise HTTPException(
                status_code=429,
                detail={"error": str(e), "accepted": accepted, "dropped": dropped},
                headers={"Retry-After": "1"},
            ) from e
        if event is None:
            dropped += 1
        else:
            accepted += 1
    return {"accepted": accepted, "dropped": dropped}


# =============================================================================
# Incidents
# =============================================================================


@router.get("/incidents")
async def list_incidents(request: Request, entity: str | None = None, include_closed: bool = False):
    """Open incidents by default; ``entity`` searches every incident for that entity key."""
    incidents = get_pipeline(request).incidents
    if entity:
        found = incidents.find_by_entity(entity)
    elif include_closed:
        found = incidents.list_all()
    else:
        found = incidents.list_open()
    return {"incidents": [i.to_dict() for i in found], "count": len(found)}


@router.get("/incidents/{incident_id}")
async def get_incident(incident_id: str, request: Request):
    try:
        return get_pipeline(request).incidents.get(incident_id).to_dict()
    except IncidentNotFound as e:
        raise HTTPException(status_code=404, detail=f"Incident not found: {incident_id}") from e


@router.post("/incidents/{incident_id}/acknowledge")
async def acknowledge_incident(incident_id: str, body: AcknowledgeRequest, request: Request):
    try:
        return get_pipeline(request).acknowledge(incident_id, body.actor).to_dict()
    except IncidentNotFound as e:
        raise HTTPException(status_code=404, detail=f"Incident not found: {incident_id}") from e
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e)) from e


@router.post("/incidents/{incident_id}/status")
async def change_incident_status(incident_id: str, body: StatusRequest, request: Request):
    try:
        return get_pipeline(request).transition(incident_id, body.status, body.actor, body.note).to_dict()
    except IncidentNotFound as e:
        raise HTTPException(status_code=404, detail=f"Incident not found: {incident_id}") from e
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e)) from e


# =============================================================================
# Export / Config / Telemetry
# =============================================================================


@router.get("/export/{kind}")
async def export_records(kind: str, request: Request, format: str = "json", hours_back: float | None = None):
    """Audit export as a JSON list or JSON Lines (``format=jsonl``)."""
    pipeline = get_pipeline(request)
    if kind not in EXPORT_KINDS:
        raise HTTPException(status_code=404, detail=f"Unknown export kind: {kind}")
    if pipeline.storage is None:
        raise HTTPException(status_code=503, detail="Storage is not configured")

    exporter = AuditExporter(pipeline.storage)
    if format == "jsonl":
        return PlainTextResponse("".join(exporter.iter_jsonl(kind, hours_back=hours_back)),
                                 media_type="application/x-ndjson")
    return exporter.records(kind, hours_back=hours_back)


@router.post("/config/reload")
async def reload_config(body: ReloadRequest, request: Request):
    try:
        config = get_pipeline(request).reload_config(body.path)
    except ConfigError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return {"status": "reloaded", "version": config.version}


@router.get("/telemetry")
async def telemetry(request: Request):
    return get_pipeline(request).status()


@router.post("/dead-letters/replay")
async def replay_dead_letters(request: Request, target: str | None = None):
    report = await get_pipeline(request).dispatcher.replay_dead_letters(target)
    return {"delivered": report.delivered, "failed": report.failed, "skipped": report.skipped}


def create_app(pipeline: ThreatPipeline) -> FastAPI:
    """FastAPI app whose lifespan starts and stops ``pipeline``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await pipeline.start()
        try:
            yield
        finally:
            await pipeline.stop()

    app = FastAPI(title="Threatline", version="0.1.0", lifespan=lifespan)
    app.state.pipeline = pipeline
    app.include_router(router)
    return app
