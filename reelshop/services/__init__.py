"""Service layer for Reelshop."""

from reelshop.services.job_store import JobStore, JsonFileJobStore, SupabaseJobStore, create_job_store
from reelshop.services.matching import AttributeMatcher, fuse_frame_extractions
from reelshop.services.model_router import CostLedger, ModelRouter, create_model_router
from reelshop.services.queue import VideoQueue, create_video_queue
from reelshop.services.worker import VideoWorker, create_video_worker

__all__ = [
    "AttributeMatcher",
    "fuse_frame_extractions",
    "CostLedger",
    "ModelRouter",
    "create_model_router",
    "JobStore",
    "JsonFileJobStore",
    "SupabaseJobStore",
    "create_job_store",
    "VideoQueue",
    "create_video_queue",
    "VideoWorker",
    "create_video_worker",
]
