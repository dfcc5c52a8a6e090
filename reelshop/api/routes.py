"""FastAPI routes for the Reelshop API."""

import logging
from typing import Any, Dict, List, Optional, Union

import httpx
from fastapi import APIRouter, Body, Depends, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from reelshop.api.deps import (
    get_attribute_matcher,
    get_job_store,
    get_media_source,
    get_product_matcher,
    get_qstash_receiver,
    get_settings_dep,
    get_store_creator,
    get_video_queue,
    get_video_worker,
)
from reelshop.config import Settings
from reelshop.models.job import JobStatus
from reelshop.models.matching import (
    MatchRequest,
    MatchResponse,
    ProductMatchRequest,
    ProductMatchResponse,
)
from reelshop.models.queue import DispatchPayload, EnqueueRequest, UploadConfirmRequest
from reelshop.services.job_store import JobStore
from reelshop.services.matching import BUDGET_VERSION, AttributeMatcher
from reelshop.services.media import MediaSource
from reelshop.services.model_registry import MODEL_REGISTRY, RoutingTable, ai_readiness
from reelshop.services.product_matcher import ProductMatcher
from reelshop.services.qstash import SIGNATURE_HEADER, QStashReceiver
from reelshop.services.queue import VideoQueue
from reelshop.services.store_creator import StoreCreator
from reelshop.services.worker import VideoWorker
from reelshop.utils.errors import (
    ConcurrentModificationError,
    DuplicateJobError,
    InvalidTransitionError,
    JobNotFoundError,
    MatchingError,
    MediaError,
    ModelRouterError,
    QueuePublishError,
    ReelshopError,
    SignatureError,
    StaleTransitionError,
    UnknownActionError,
)

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix="/api")


# ==================== Error Response Model ====================


class ErrorResponse(BaseModel):
    """Standard error response model."""

    success: bool = False
    error: str
    error_type: str
    errors: Optional[List[Dict[str, Any]]] = None


def _error_body(error: str, error_type: str, **extra: Any) -> Dict[str, Any]:
    return ErrorResponse(error=error, error_type=error_type, **extra).model_dump(exclude_none=True)


# ==================== Exception Handlers ====================

# Most specific first
_STATUS_BY_ERROR = (
    (JobNotFoundError, 404),
    (DuplicateJobError, 409),
    (InvalidTransitionError, 409),
    (StaleTransitionError, 409),
    (ConcurrentModificationError, 409),
    (SignatureError, 401),
    (QueuePublishError, 502),
    (MediaError, 502),
    (UnknownActionError, 422),
    (ModelRouterError, 422),
    (MatchingError, 422),
)


def status_code_for(exc: ReelshopError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def validation_exception_handler(
    request: Request, exc: Union[RequestValidationError, ValidationError]
) -> JSONResponse:
    """Handle request and Pydantic validation errors."""
    # Drop ctx/input so raw values and exception objects stay out of the response
    errors = [
        {k: v for k, v in e.items() if k in ("type", "loc", "msg")} for e in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content=_error_body("Validation error", "ValidationError", errors=jsonable_encoder(errors)),
    )


async def reelshop_exception_handler(request: Request, exc: ReelshopError) -> JSONResponse:
    """Handle application-specific errors."""
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc}")
    return JSONResponse(status_code=status_code, content=_error_body(str(exc), type(exc).__name__))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTP exceptions with consistent format."""
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(str(exc.detail), "HTTPException"),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.exception(f"Unexpected error: {exc}")
    return JSONResponse(status_code=500, content=_error_body("Internal server error", "InternalError"))


# ==================== Intake ====================


@router.post("/upload/confirm")
async def confirm_upload(
    body: Dict[str, Any] = Body(...),
    settings: Settings = Depends(get_settings_dep),
    media: MediaSource = Depends(get_media_source),
    queue: VideoQueue = Depends(get_video_queue),
) -> Dict[str, Any]:
    """
    Confirm a finished direct upload and queue it for processing.

    The file id becomes the job id, so confirming the same upload twice
    returns 409.
    """
    if not body.get("fileId") or not body.get("key"):
        raise HTTPException(status_code=400, detail="fileId and key are required")

    request = UploadConfirmRequest.model_validate(body)

    try:
        stored = await media.head(request.key)
    except httpx.HTTPError as e:
        raise MediaError(f"Could not verify upload: {e}")
    if stored is None:
        raise HTTPException(status_code=404, detail="File not found in storage. Upload may have failed.")

    job = await queue.enqueue(
        EnqueueRequest(
            file_id=request.file_id,
            key=request.key,
            bucket=settings.storage_bucket,
            source=request.source,
            platform=request.platform,
            original_url=request.original_url,
            size=stored.size if stored.size is not None else request.size,
            content_type=stored.content_type,
        )
    )
    logger.info(f"Upload confirmed and queued: {job.id}")

    return {
        "success": True,
        "jobId": job.id,
        "status": job.status.value,
        "message": "Upload confirmed and queued for processing",
        "file": {"key": job.key, "size": job.size, "contentType": job.content_type},
    }


# ==================== Worker Ingress ====================


@router.post("/queue/worker")
async def queue_worker(
    request: Request,
    settings: Settings = Depends(get_settings_dep),
    receiver: QStashReceiver = Depends(get_qstash_receiver),
    worker: VideoWorker = Depends(get_video_worker),
) -> JSONResponse:
    """
    Receive one queue delivery.

    Callbacks must carry a valid Upstash-Signature. Outside production an
    ``x-local-dev: true`` header skips verification.
    """
    body = await request.body()
    local_dev = request.headers.get("x-local-dev") == "true" and not settings.is_production

    if not local_dev:
        try:
            receiver.verify(request.headers.get(SIGNATURE_HEADER), body, url=settings.worker_url)
        except SignatureError as e:
            logger.error(f"Invalid QStash signature: {e}")
            return JSONResponse(status_code=401, content=_error_body("Invalid signature", "SignatureError"))

    payload = DispatchPayload.model_validate_json(body)
    logger.info(f"Received job: {payload.job_id}")

    try:
        result = await worker.process(payload)
    except Exception as e:
        logger.exception(f"Worker error for {payload.job_id}: {e}")
        return JSONResponse(
            status_code=500, content=_error_body(f"Worker error: {e}", type(e).__name__)
        )

    if not result.success:
        return JSONResponse(
            status_code=422,
            content={
                "success": False,
                "error": result.message,
                "jobId": result.job_id,
                "status": result.status,
            },
        )
    return JSONResponse(content=result.to_wire())


@router.get("/queue/worker")
async def worker_health(queue: VideoQueue = Depends(get_video_queue)) -> Dict[str, Any]:
    return {"status": "ok", "service": "video-worker", "mode": queue.transport.mode}


# ==================== Jobs ====================


@router.get("/jobs")
async def get_jobs(
    id: Optional[str] = None,
    status: Optional[JobStatus] = None,
    store: JobStore = Depends(get_job_store),
    queue: VideoQueue = Depends(get_video_queue),
) -> Dict[str, Any]:
    """Get one job by id, or list jobs (optionally by status) with stats."""
    if id:
        job = await store.get(id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return {"job": job.model_dump(mode="json")}

    jobs = await store.list_jobs(status)
    return {
        "jobs": [job.model_dump(mode="json") for job in jobs],
        "total": len(jobs),
        "stats": await store.stats(),
        "queue": queue.queue_info(),
    }


@router.delete("/jobs/{job_id}")
async def delete_job(job_id: str, store: JobStore = Depends(get_job_store)) -> Dict[str, Any]:
    """Administrative delete."""
    if not await store.delete(job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    logger.info(f"Deleted job {job_id}")
    return {"success": True, "jobId": job_id, "message": "Job deleted"}


# ==================== AI Trigger ====================


@router.get("/ai")
async def ai_status(settings: Settings = Depends(get_settings_dep)) -> Dict[str, Any]:
    """Report AI readiness and the active task routing."""
    routing = RoutingTable.from_overrides(settings.task_model_overrides)
    ready, missing = ai_readiness(settings, routing)
    return {
        "status": "ready" if ready else "not_configured",
        "missing": missing,
        "routing": routing.as_dict(),
        "models": {model_id: config.model_dump() for model_id, config in MODEL_REGISTRY.items()},
        "instructions": (
            "AI processor is configured and ready. POST with { jobId } to process."
            if ready
            else f"Set {' and '.join(missing)} to enable AI processing"
        ),
    }


@router.post("/ai")
async def trigger_ai(
    body: Dict[str, Any] = Body(...),
    store: JobStore = Depends(get_job_store),
    worker: VideoWorker = Depends(get_video_worker),
) -> JSONResponse:
    """Manually re-run AI processing for a job."""
    job_id = body.get("jobId")
    if not job_id:
        raise HTTPException(status_code=400, detail="jobId is required")

    if await store.get(str(job_id)) is None:
        raise HTTPException(status_code=404, detail="Job not found")

    result = await worker.trigger(str(job_id))
    if not result.success:
        return JSONResponse(
            status_code=422,
            content={"success": False, "error": result.message, "jobId": result.job_id},
        )
    return JSONResponse(content=result.to_wire())


# ==================== Matching ====================


@router.post("/matching/score", response_model=MatchResponse)
async def score_candidates(
    request: MatchRequest,
    matcher: AttributeMatcher = Depends(get_attribute_matcher),
) -> MatchResponse:
    """Rank shopping candidates against a reference garment profile."""
    if request.critical_mismatch_cap is not None:
        matcher = AttributeMatcher(critical_mismatch_cap=request.critical_mismatch_cap)

    rankings = matcher.rank(request.reference, request.candidates)
    return MatchResponse(
        budget_version=BUDGET_VERSION,
        rankings=rankings,
        top_match=rankings[0] if rankings else None,
    )


@router.post("/matching/match", response_model=ProductMatchResponse)
async def match_product(
    request: ProductMatchRequest,
    matcher: ProductMatcher = Depends(get_product_matcher),
) -> ProductMatchResponse:
    """Extract attributes from video frames and listing images, then rank the listings."""
    return await matcher.match(request)


# ==================== Stores ====================


@router.get("/stores")
async def list_stores(
    status: Optional[str] = None,
    limit: int = 10,
    creator: StoreCreator = Depends(get_store_creator),
) -> Dict[str, Any]:
    """Published storefronts, newest first."""
    if limit < 1:
        raise HTTPException(status_code=400, detail="limit must be positive")
    stores = await creator.list_stores(status=status, limit=limit)
    return {
        "stores": [store.model_dump(mode="json") for store in stores],
        "total": len(stores),
        "hasMore": len(stores) >= limit,
    }
