"""Wire models for intake, queue dispatch and worker results."""

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

PROCESS_VIDEO = "process_video"


class _SourceFields(BaseModel):
    """Source descriptor shared by intake requests and dispatch payloads."""

    model_config = ConfigDict(populate_by_name=True)

    file_id: str = Field(alias="fileId", min_length=1)
    key: str = Field(min_length=1)
    source: Literal["direct", "scrape"] = "direct"
    platform: Optional[str] = None
    original_url: Optional[str] = Field(default=None, alias="originalUrl")
    size: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def check_scrape_fields(self) -> "_SourceFields":
        if self.source == "scrape":
            if not self.original_url or not self.platform:
                raise ValueError("scrape sources require originalUrl and platform")
        elif self.original_url is not None or self.platform is not None:
            raise ValueError("direct uploads must not set originalUrl or platform")
        return self


class EnqueueRequest(_SourceFields):
    """Everything the dispatcher needs to create and dispatch a job."""

    bucket: str = Field(min_length=1)
    content_type: str = Field(default="video/mp4", alias="contentType")


class UploadConfirmRequest(_SourceFields):
    """Body of POST /api/upload/confirm."""

    pass


class DispatchData(_SourceFields):
    bucket: str = Field(min_length=1)


class DispatchPayload(BaseModel):
    """Message carried by the transport to the worker ingress."""

    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="jobId", min_length=1)
    # Kept as a plain string so unknown actions reach the worker and fail there.
    action: str = PROCESS_VIDEO
    data: DispatchData

    def to_wire(self) -> Dict[str, Any]:
        """Serialize with camelCase keys, omitting unset optionals."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class WorkerResult(BaseModel):
    """Outcome of one worker run."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    job_id: str = Field(alias="jobId")
    status: str
    message: str
    error: Optional[str] = None
    data: Optional[Dict[str, Any]] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
