"""Video job model and its status machine."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Literal, Optional

from pydantic import BaseModel, Field, computed_field, model_validator

from reelshop.models.analysis import VideoAnalysis


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CreatorStatus(str, Enum):
    """Status vocabulary shown to creators in the dashboard."""

    FETCHING_SOURCE = "fetching_source"
    REMOVING_WATERMARK = "removing_watermark"
    TRANSCRIBING_AUDIO = "transcribing_audio"
    GENERATING_SOHO_VIBE = "generating_soho_vibe"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatus(str, Enum):
    """Primary pipeline status."""

    QUEUED = "queued"
    PROCESSING = "processing"
    UPLOADED = "uploaded"
    TRANSCRIBING = "transcribing"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def creator_status(self) -> CreatorStatus:
        return CREATOR_STATUS[self]


CREATOR_STATUS: Dict[JobStatus, CreatorStatus] = {
    JobStatus.QUEUED: CreatorStatus.FETCHING_SOURCE,
    JobStatus.PROCESSING: CreatorStatus.FETCHING_SOURCE,
    JobStatus.UPLOADED: CreatorStatus.REMOVING_WATERMARK,
    JobStatus.TRANSCRIBING: CreatorStatus.TRANSCRIBING_AUDIO,
    JobStatus.ANALYZING: CreatorStatus.GENERATING_SOHO_VIBE,
    JobStatus.COMPLETED: CreatorStatus.COMPLETED,
    JobStatus.FAILED: CreatorStatus.FAILED,
}

# uploaded is the re-entry point after an AI stage fails; terminal states
# only leave through an explicit retrigger back to processing.
ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({JobStatus.UPLOADED, JobStatus.FAILED}),
    JobStatus.UPLOADED: frozenset(
        {JobStatus.PROCESSING, JobStatus.TRANSCRIBING, JobStatus.FAILED}
    ),
    JobStatus.TRANSCRIBING: frozenset(
        {JobStatus.ANALYZING, JobStatus.UPLOADED, JobStatus.FAILED}
    ),
    JobStatus.ANALYZING: frozenset(
        {JobStatus.COMPLETED, JobStatus.UPLOADED, JobStatus.FAILED}
    ),
    JobStatus.COMPLETED: frozenset({JobStatus.PROCESSING}),
    JobStatus.FAILED: frozenset({JobStatus.PROCESSING}),
}

IN_FLIGHT_STATUSES = frozenset(
    {JobStatus.PROCESSING, JobStatus.TRANSCRIBING, JobStatus.ANALYZING}
)


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Check whether the status machine allows moving from current to target."""
    return target in ALLOWED_TRANSITIONS[current]


class JobLogEntry(BaseModel):
    """One append-only audit line on a job."""

    timestamp: datetime = Field(default_factory=utc_now)
    status: JobStatus
    message: str
    details: Optional[Dict[str, Any]] = None


class VideoMetadata(BaseModel):
    """Descriptive fields reported by the source platform."""

    title: Optional[str] = None
    author: Optional[str] = None
    duration: Optional[float] = Field(default=None, ge=0)
    thumbnail: Optional[str] = None


class VideoJob(BaseModel):
    """End-to-end processing record for one video."""

    id: str = Field(min_length=1)
    status: JobStatus = JobStatus.QUEUED
    source: Literal["direct", "scrape"] = "direct"
    platform: Optional[str] = None
    original_url: Optional[str] = None
    bucket: str = Field(min_length=1)
    key: str = Field(min_length=1)
    endpoint: str = ""
    size: Optional[int] = Field(default=None, ge=0)
    content_type: str = "video/mp4"
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    log: List[JobLogEntry] = Field(default_factory=list)
    metadata: VideoMetadata = Field(default_factory=VideoMetadata)
    transcription: Optional[str] = None
    analysis: Optional[VideoAnalysis] = None
    error: Optional[str] = None
    version: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def check_source_and_result(self) -> "VideoJob":
        """Scraped jobs name their origin; only completed jobs carry results."""
        if self.source == "scrape":
            if not self.original_url or not self.platform:
                raise ValueError("scraped jobs require original_url and platform")
        elif self.original_url is not None or self.platform is not None:
            raise ValueError("direct uploads must not set original_url or platform")
        if self.status != JobStatus.COMPLETED and (
            self.transcription is not None or self.analysis is not None
        ):
            raise ValueError("result fields are only present on completed jobs")
        return self

    @computed_field  # type: ignore[misc]
    @property
    def creator_status(self) -> CreatorStatus:
        return self.status.creator_status
