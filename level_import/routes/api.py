"""
Level Import Service - JSON API Routes

Provides the REST API endpoints for:
- Import job submission, polling and listing
- Audio import capability reporting
- Reading and publishing the draft a job produced
- Health check

The caller's identity arrives in the ``X-User-Id`` header; authentication
itself happens upstream.
"""

import time
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from level_import.config import APP_VERSION, DB_PATH
from level_import.database import (
    get_import_job,
    get_level_version,
    get_user_level,
    list_import_jobs,
    publish_user_level,
)
from level_import.models import JobStatus
from level_import.services.capabilities import (
    AudioImportUnavailableError,
    get_audio_import_capability,
    get_runtime_dependency_status,
)
from level_import.services.jobs import (
    AssetNotFoundError,
    ImportJobRequest,
    ImportValidationError,
    create_import_job,
    serialize_job,
)
from level_import.services.queue import ImportQueueRuntime

router = APIRouter(prefix="/api", tags=["API"])

# Track startup time for health check
_START_TIME = time.time()


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------
class CreateImportJobBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_asset_id: str = Field(default="", alias="sourceAssetId")
    title: str = ""
    source_type: Optional[str] = Field(default=None, alias="sourceType")
    audio_asset_id: Optional[str] = Field(default=None, alias="audioAssetId")
    manual_bpm: Optional[float] = Field(default=None, alias="manualBpm")
    quantization: str = "off"
    instrument_preset: str = Field(default="guitar", alias="instrumentPreset")
    transcription_tuning: str = Field(default="balanced", alias="transcriptionTuning")
    selected_stem: str = Field(default="guitar", alias="selectedStem")


def _require_owner(x_user_id: Optional[str]) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Authentication required")
    return x_user_id.strip()


def _queue_runtime(request: Request) -> ImportQueueRuntime:
    return request.app.state.queue_runtime


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------
@router.get("/health")
async def health_check(request: Request):
    """Health check endpoint for the service."""
    uptime = round(time.time() - _START_TIME, 2)
    db_ok = DB_PATH.exists()
    runtime = _queue_runtime(request)

    return {
        "status": "ok" if db_ok else "degraded",
        "database": "ok" if db_ok else "missing",
        "importQueue": "running" if runtime.running else "stopped",
        "uptime_seconds": uptime,
        "version": APP_VERSION,
    }


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------
@router.get("/import-capabilities")
async def api_import_capabilities():
    """Report whether audio imports can run and which analysis tools exist."""
    capability = get_audio_import_capability()
    return {
        "audioImport": capability.to_dict(),
        "runtimeDependencies": get_runtime_dependency_status().to_dict(),
    }


# ---------------------------------------------------------------------------
# Import jobs
# ---------------------------------------------------------------------------
@router.post("/import-jobs", status_code=201)
async def api_create_import_job(
    body: CreateImportJobBody,
    request: Request,
    x_user_id: Optional[str] = Header(default=None),
):
    """Validate and enqueue an import job."""
    owner_id = _require_owner(x_user_id)
    import_request = ImportJobRequest(**body.model_dump(by_alias=False))

    try:
        job_id = await create_import_job(owner_id, import_request)
    except ImportValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except AssetNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except AudioImportUnavailableError as e:
        logger.warning("⚠️ Rejected audio import for {}: {}", owner_id, e)
        return JSONResponse(
            status_code=503,
            content={
                "detail": str(e),
                "code": e.code,
                "capability": e.capability.to_dict(),
            },
        )

    _queue_runtime(request).kick()
    return {"jobId": job_id, "status": "queued"}


@router.get("/import-jobs")
async def api_list_import_jobs(x_user_id: Optional[str] = Header(default=None)):
    """Return the caller's 20 most recent import jobs."""
    owner_id = _require_owner(x_user_id)
    jobs = await list_import_jobs(owner_id, limit=20)
    return {"jobs": [serialize_job(job) for job in jobs]}


@router.get("/import-jobs/{job_id}")
async def api_get_import_job(
    job_id: str,
    request: Request,
    x_user_id: Optional[str] = Header(default=None),
):
    """Poll a single import job."""
    owner_id = _require_owner(x_user_id)
    job = await get_import_job(job_id, owner_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Import job not found")
    if job["status"] in (JobStatus.QUEUED, JobStatus.PROCESSING):
        _queue_runtime(request).kick()
    return serialize_job(job)


# ---------------------------------------------------------------------------
# User levels
# ---------------------------------------------------------------------------
@router.get("/user-levels/{level_id}")
async def api_get_user_level(level_id: str, x_user_id: Optional[str] = Header(default=None)):
    """Return a level with its current draft chart."""
    owner_id = _require_owner(x_user_id)
    level = await get_user_level(level_id, owner_id)
    if level is None:
        raise HTTPException(status_code=404, detail="Level not found")

    draft = None
    if level.get("current_draft_version_id"):
        draft = await get_level_version(level["current_draft_version_id"])

    chart = draft["chart"] if draft else None
    return {
        "level": {
            "id": level["id"],
            "title": level["title"],
            "sourceType": level["source_type"],
            "status": level["status"],
            "currentDraftVersionId": level.get("current_draft_version_id"),
            "publishedVersionId": level.get("published_version_id"),
            "latestImportJobId": level.get("latest_import_job_id"),
            "createdAt": level["created_at"],
            "updatedAt": level["updated_at"],
        },
        "draft": {
            "id": draft["id"],
            "versionNumber": draft["version_number"],
            "status": draft["status"],
            "chart": chart,
        }
        if draft
        else None,
        "canPublish": bool(chart and chart.get("audioUrl")),
    }


@router.post("/user-levels/{level_id}/publish")
async def api_publish_user_level(
    level_id: str, x_user_id: Optional[str] = Header(default=None)
):
    """Publish the level's current draft."""
    owner_id = _require_owner(x_user_id)
    try:
        level = await publish_user_level(level_id, owner_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if level is None:
        raise HTTPException(status_code=404, detail="Level not found")
    return {
        "id": level["id"],
        "status": level["status"],
        "publishedVersionId": level["published_version_id"],
    }
