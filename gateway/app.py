"""
FastAPI application — REST API of the event gateway.
Run with: python -m gateway
"""
import asyncio
import logging
import secrets
import time
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Depends, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from gateway.config import (
    ALLOW_INSECURE, ALLOWED_ORIGINS, API_KEY, EXPORT_DEFAULT_TIMEOUT_MS,
    EXPORT_MIN_TIMEOUT_MS, IMPORT_MAX_FILE_BYTES, LOG_LEVEL,
)
from gateway.database import init_db
from gateway.errors import ConflictError, GatewayError, InternalError, ValidationError
from gateway.scheduler import JobScheduler
from services.checkpoint_service import CheckpointService
from services.data_source_service import DataSourceService
from services.event_audit_service import EventAuditService
from services.import_service import ImportService, generate_import_template, parse_import_file, validate_event_count
from services.ingestion_service import IngestionService
from services.job_service import JobService

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Event Gateway", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


def require_admin_api_key(x_api_key: Optional[str] = Header(default=None, alias="X-API-Key")):
    """Protect API endpoints with API key."""
    if ALLOW_INSECURE:
        return

    if not API_KEY:
        raise HTTPException(
            status_code=503,
            detail="GATEWAY_API_KEY is not configured. Set it or enable GATEWAY_ALLOW_INSECURE=true only for development.",
        )

    if not x_api_key or not secrets.compare_digest(x_api_key, API_KEY):
        raise HTTPException(status_code=401, detail="Invalid API key")


def require_org_id(x_org_id: Optional[str] = Header(default=None, alias="X-Org-Id")) -> int:
    """Every tenant-scoped request names its organization."""
    if not x_org_id:
        raise HTTPException(400, "X-Org-Id header is required")
    try:
        return int(x_org_id)
    except ValueError:
        raise HTTPException(400, "X-Org-Id must be an integer")


def get_scheduler(request: Request) -> JobScheduler:
    return request.app.state.scheduler


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    if isinstance(exc, InternalError):
        logger.error(f"[APP] {request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ============================================================================
# Pydantic Schemas
# ============================================================================

class ScheduledJobCreate(BaseModel):
    # Field presence is checked by JobService so that errors come back as 400
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: Optional[str] = None
    description: Optional[str] = None
    event_type: Optional[str] = None
    schedule: Optional[Dict[str, Any]] = None
    data_source: Optional[Dict[str, Any]] = None
    target_url: Optional[str] = None
    http_method: Optional[str] = "POST"
    headers: Optional[Dict[str, str]] = None
    timeout_seconds: Optional[float] = None
    is_active: bool = True


class ScheduledJobUpdate(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: Optional[str] = None
    description: Optional[str] = None
    event_type: Optional[str] = None
    schedule: Optional[Dict[str, Any]] = None
    data_source: Optional[Dict[str, Any]] = None
    target_url: Optional[str] = None
    http_method: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    timeout_seconds: Optional[float] = None
    is_active: Optional[bool] = None


class DataSourceTestRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    data_source: Optional[Dict[str, Any]] = None


# ============================================================================
# Lifecycle
# ============================================================================

@app.on_event("startup")
async def startup():
    init_db()
    app.state.scheduler = JobScheduler()
    app.state.scheduler.start()
    if ALLOW_INSECURE:
        logger.warning("[SECURITY] GATEWAY_ALLOW_INSECURE=true. API key checks are disabled.")
    elif not API_KEY:
        logger.error("[SECURITY] GATEWAY_API_KEY is not set. API endpoints will reject requests.")
    logger.info("[APP] Event gateway started")


@app.on_event("shutdown")
async def shutdown():
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler:
        scheduler.shutdown()


@app.get("/api/health")
def health():
    return {"status": "ok", "time": datetime.utcnow().isoformat()}


# ============================================================================
# API — Events
# ============================================================================

def _event_filters(
    status: Optional[str],
    event_type: Optional[str],
    source: Optional[str],
    skip_category: Optional[str],
    search: Optional[str],
    start_date: Optional[datetime],
    end_date: Optional[datetime],
) -> Dict[str, Any]:
    return {
        "status": status,
        "eventType": event_type,
        "source": source,
        "skipCategory": skip_category,
        "search": search,
        "startDate": start_date,
        "endDate": end_date,
    }


@app.post("/api/events/push", status_code=202)
async def push_event(
    request: Request,
    org_id: int = Depends(require_org_id),
    _auth: None = Depends(require_admin_api_key),
):
    """Webhook entry point for a single event."""
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Request body must be JSON")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be an object")

    result = await asyncio.to_thread(
        IngestionService.push_event,
        org_id, body.get("eventType"), body.get("payload"), body.get("sourceId"), body.get("orgUnitId"),
    )
    if result["status"] == "duplicate":
        return JSONResponse(status_code=200, content=result)
    return result


@app.get("/api/events")
def list_events(
    status: Optional[str] = None,
    event_type: Optional[str] = Query(default=None, alias="eventType"),
    source: Optional[str] = None,
    skip_category: Optional[str] = Query(default=None, alias="skipCategory"),
    search: Optional[str] = None,
    start_date: Optional[datetime] = Query(default=None, alias="startDate"),
    end_date: Optional[datetime] = Query(default=None, alias="endDate"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=500),
    org_id: int = Depends(require_org_id),
    _auth: None = Depends(require_admin_api_key),
):
    """Filtered, paginated audit trail."""
    filters = _event_filters(status, event_type, source, skip_category, search, start_date, end_date)
    return EventAuditService.list_event_audit(org_id, filters, page, limit)


@app.get("/api/events/stats")
def event_stats(
    hours_back: float = Query(default=24, alias="hoursBack", gt=0),
    org_id: int = Depends(require_org_id),
    _auth: None = Depends(require_admin_api_key),
):
    return EventAuditService.get_event_audit_stats(org_id, hours_back)


@app.get("/api/events/checkpoints")
def source_checkpoints(
    source: Optional[str] = None,
    org_id: int = Depends(require_org_id),
    _auth: None = Depends(require_admin_api_key),
):
    return {"checkpoints": CheckpointService.get_source_checkpoints(org_id, source)}


@app.get("/api/events/gaps")
def source_gaps(
    source: Optional[str] = None,
    hours_back: float = Query(default=24, alias="hoursBack", gt=0),
    org_id: int = Depends(require_org_id),
    _auth: None = Depends(require_admin_api_key),
):
    if not source:
        raise ValidationError("source query parameter is required")
    return CheckpointService.get_source_gaps(org_id, source, hours_back)


@app.get("/api/events/export")
async def export_events(
    request: Request,
    status: Optional[str] = None,
    event_type: Optional[str] = Query(default=None, alias="eventType"),
    source: Optional[str] = None,
    skip_category: Optional[str] = Query(default=None, alias="skipCategory"),
    search: Optional[str] = None,
    start_date: Optional[datetime] = Query(default=None, alias="startDate"),
    end_date: Optional[datetime] = Query(default=None, alias="endDate"),
    timeout_ms: int = Query(default=EXPORT_DEFAULT_TIMEOUT_MS, alias="timeoutMs"),
    org_id: int = Depends(require_org_id),
    _auth: None = Depends(require_admin_api_key),
):
    """Stream matching audit records as CSV, one page of rows per chunk."""
    timeout_ms = max(EXPORT_MIN_TIMEOUT_MS, timeout_ms)
    deadline = time.monotonic() + timeout_ms / 1000
    filters = _event_filters(status, event_type, source, skip_category, search, start_date, end_date)
    chunks = EventAuditService.iter_export_csv(org_id, filters)

    def first_chunk():
        header = next(chunks)
        return header + next(chunks, "")

    try:
        first = await asyncio.wait_for(asyncio.to_thread(first_chunk), timeout=deadline - time.monotonic())
    except asyncio.TimeoutError:
        logger.warning(f"[EXPORT] org={org_id} timed out after {timeout_ms}ms before the first chunk")
        return JSONResponse(
            status_code=408,
            content={"error": "Export timed out", "code": "EXPORT_TIMEOUT", "details": {"timeoutMs": timeout_ms}},
        )

    async def stream():
        sent = 0
        try:
            yield first
            sent = 1
            while True:
                if await request.is_disconnected():
                    logger.info(f"[EXPORT] org={org_id} client disconnected after {sent} chunk(s)")
                    break
                if time.monotonic() > deadline:
                    logger.warning(f"[EXPORT] org={org_id} deadline reached, stream truncated after {sent} chunk(s)")
                    break
                chunk = await asyncio.to_thread(next, chunks, None)
                if chunk is None:
                    break
                sent += 1
                yield chunk
        finally:
            chunks.close()

    filename = f"events_{org_id}_{datetime.utcnow().strftime('%Y%m%d_%H%M%S')}.csv"
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return StreamingResponse(stream(), media_type="text/csv; charset=utf-8", headers=headers)


@app.post("/api/events/import")
async def import_events(
    request: Request,
    dry_run: bool = Query(default=False, alias="dryRun"),
    continue_on_error: bool = Query(default=True, alias="continueOnError"),
    org_id: int = Depends(require_org_id),
    _auth: None = Depends(require_admin_api_key),
):
    """Bulk import from an uploaded .json/.csv/.xlsx file or a JSON body."""
    no_input = ValidationError("No events provided. Send file or JSON body with events array", code="NO_INPUT")
    parse_errors = []

    if request.headers.get("content-type", "").startswith("multipart/form-data"):
        form = await request.form()
        upload = form.get("file")
        if upload is None or isinstance(upload, str):
            raise no_input
        content = await upload.read()
        if len(content) > IMPORT_MAX_FILE_BYTES:
            raise ValidationError(f"File exceeds {IMPORT_MAX_FILE_BYTES} bytes", code="FILE_TOO_LARGE")
        events, parse_errors = parse_import_file(upload.filename, content)
    else:
        try:
            body = await request.json()
        except ValueError:
            raise no_input
        if isinstance(body, dict) and "events" in body:
            events = body["events"]
        elif isinstance(body, list):
            events = body
        else:
            raise no_input

    try:
        validate_event_count(events)
    except ValidationError as e:
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": e.message, "code": e.code, "parseErrors": parse_errors},
        )

    result = await asyncio.to_thread(ImportService.process_import, events, org_id, dry_run, continue_on_error)
    if parse_errors:
        result["parseErrors"] = parse_errors
    return JSONResponse(status_code=200 if result["success"] else 207, content=result)


@app.get("/api/events/import/template")
def import_template(
    fmt: str = Query(default="csv", alias="format", pattern="^(csv|json|xlsx)$"),
    _auth: None = Depends(require_admin_api_key),
):
    body, media_type = generate_import_template(fmt)
    headers = {"Content-Disposition": f'attachment; filename="event-import-template.{fmt}"'}
    return Response(content=body, media_type=media_type, headers=headers)


@app.get("/api/events/{event_id}")
def get_event(
    event_id: str,
    org_id: int = Depends(require_org_id),
    _auth: None = Depends(require_admin_api_key),
):
    return EventAuditService.get_event_audit_by_id(org_id, event_id)


# ============================================================================
# API — Scheduled Jobs
# ============================================================================

@app.get("/api/scheduled-jobs")
def list_scheduled_jobs(
    org_id: int = Depends(require_org_id),
    scheduler: JobScheduler = Depends(get_scheduler),
    _auth: None = Depends(require_admin_api_key),
):
    jobs = JobService.list_jobs(org_id)
    for job in jobs:
        job["nextRun"] = scheduler.get_next_run(job["id"])
    return {"jobs": jobs}


@app.post("/api/scheduled-jobs", status_code=201)
def create_scheduled_job(
    job: ScheduledJobCreate,
    org_id: int = Depends(require_org_id),
    scheduler: JobScheduler = Depends(get_scheduler),
    _auth: None = Depends(require_admin_api_key),
):
    created = JobService.create_job(org_id, job.model_dump(by_alias=True))
    scheduler.schedule_job(created)
    return created


@app.post("/api/scheduled-jobs/test-datasource")
async def test_data_source(
    body: DataSourceTestRequest,
    org_id: int = Depends(require_org_id),
    _auth: None = Depends(require_admin_api_key),
):
    """Run a data source once and return a capped sample."""
    try:
        return await DataSourceService.test_data_source(body.data_source, org_id)
    except GatewayError as e:
        logger.warning(f"[EXECUTOR] Data source test failed for org={org_id}: {e.message}")
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": e.message, "details": {"code": e.code}},
        )


@app.get("/api/scheduled-jobs/{job_id}")
def get_scheduled_job(
    job_id: int,
    org_id: int = Depends(require_org_id),
    scheduler: JobScheduler = Depends(get_scheduler),
    _auth: None = Depends(require_admin_api_key),
):
    job = JobService.get_job(org_id, job_id)
    job["nextRun"] = scheduler.get_next_run(job_id)
    return job


@app.put("/api/scheduled-jobs/{job_id}")
def update_scheduled_job(
    job_id: int,
    updates: ScheduledJobUpdate,
    org_id: int = Depends(require_org_id),
    scheduler: JobScheduler = Depends(get_scheduler),
    _auth: None = Depends(require_admin_api_key),
):
    updated = JobService.update_job(org_id, job_id, updates.model_dump(by_alias=True, exclude_unset=True))
    # Re-schedule (unschedules when deactivated)
    scheduler.schedule_job(updated)
    return updated


@app.delete("/api/scheduled-jobs/{job_id}")
def delete_scheduled_job(
    job_id: int,
    org_id: int = Depends(require_org_id),
    scheduler: JobScheduler = Depends(get_scheduler),
    _auth: None = Depends(require_admin_api_key),
):
    JobService.delete_job(org_id, job_id)
    scheduler.unschedule_job(job_id)
    return {"status": "deleted"}


@app.post("/api/scheduled-jobs/{job_id}/execute", status_code=202)
async def execute_scheduled_job(
    job_id: int,
    org_id: int = Depends(require_org_id),
    scheduler: JobScheduler = Depends(get_scheduler),
    _auth: None = Depends(require_admin_api_key),
):
    """Fire-and-forget manual run."""
    JobService.get_job(org_id, job_id)
    if not scheduler.trigger_job(job_id):
        raise ConflictError("Job is already running", code="JOB_ALREADY_RUNNING", details={"jobId": job_id})
    return {"status": "triggered", "jobId": job_id}


@app.get("/api/scheduled-jobs/{job_id}/logs")
def scheduled_job_logs(
    job_id: int,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    status: Optional[str] = None,
    org_id: int = Depends(require_org_id),
    _auth: None = Depends(require_admin_api_key),
):
    return JobService.get_job_logs(org_id, job_id, limit, offset, status)


@app.get("/api/scheduled-jobs/{job_id}/logs/{log_id}")
def scheduled_job_log(
    job_id: int,
    log_id: int,
    org_id: int = Depends(require_org_id),
    _auth: None = Depends(require_admin_api_key),
):
    return JobService.get_job_log(org_id, job_id, log_id)


@app.get("/api/scheduler/status")
def scheduler_status(
    scheduler: JobScheduler = Depends(get_scheduler),
    _auth: None = Depends(require_admin_api_key),
):
    return scheduler.get_status()

