"""Pydantic models for Reelshop."""

from reelshop.models.analysis import (
    DetectedProduct,
    ProcessedVideo,
    ProcessingMeta,
    SentimentDetails,
    SeoFields,
    VideoAnalysis,
    VisionSummary,
)
from reelshop.models.job import (
    ALLOWED_TRANSITIONS,
    CreatorStatus,
    JobLogEntry,
    JobStatus,
    VideoJob,
    VideoMetadata,
    can_transition,
)
from reelshop.models.queue import (
    DispatchData,
    DispatchPayload,
    EnqueueRequest,
    UploadConfirmRequest,
    WorkerResult,
)
from reelshop.models.store import StoreEntry, StoreTheme

__all__ = [
    "ALLOWED_TRANSITIONS",
    "CreatorStatus",
    "DetectedProduct",
    "DispatchData",
    "DispatchPayload",
    "EnqueueRequest",
    "JobLogEntry",
    "JobStatus",
    "ProcessedVideo",
    "ProcessingMeta",
    "SentimentDetails",
    "SeoFields",
    "StoreEntry",
    "StoreTheme",
    "UploadConfirmRequest",
    "VideoAnalysis",
    "VideoJob",
    "VideoMetadata",
    "VisionSummary",
    "WorkerResult",
    "can_transition",
]
