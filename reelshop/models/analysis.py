"""Result schema produced by the AI processing stages."""

from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class DetectedProduct(BaseModel):
    """A product spotted in the video frames."""

    name: str = "Unknown Product"
    category: str = "General"
    colors: List[str] = Field(default_factory=list)
    description: str = ""
    estimated_price_usd: Optional[str] = None
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)


class SceneData(BaseModel):
    timestamp: str = "Unknown"
    description: str = ""
    setting: str = "Unknown"
    mood: str = "Neutral"


class VisionSummary(BaseModel):
    """Overall look and feel of the video."""

    dominant_colors: List[str] = Field(default_factory=list)
    aesthetic_style: str = "Modern"
    content_type: str = "Product Video"
    target_audience: str = "General"
    scenes: List[SceneData] = Field(default_factory=list)


class SeoFields(BaseModel):
    """Storefront copy derived from the transcript and detected products."""

    title: str = "Product Video"
    description: str = ""
    keywords: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)


class SentimentDetails(BaseModel):
    """Tone of the spoken content."""

    label: Literal["positive", "neutral", "negative"] = "neutral"
    score: int = Field(default=50, ge=0, le=100)
    highlights: List[str] = Field(default_factory=list)
    source: Literal["model", "keywords"] = "keywords"


class ProcessingMeta(BaseModel):
    """Bookkeeping for one processing run."""

    processed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    frames_analyzed: int = Field(default=0, ge=0)
    audio_duration: float = Field(default=0.0, ge=0)
    language: str = "unknown"
    models_used: Dict[str, str] = Field(default_factory=dict)
    total_cost: float = Field(default=0.0, ge=0)
    cost_by_task: Dict[str, float] = Field(default_factory=dict)


class VideoAnalysis(BaseModel):
    """Structured analysis stored on a completed job."""

    products: List[DetectedProduct] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)
    sentiment: Literal["positive", "neutral", "negative"] = "neutral"
    vision_data: VisionSummary = Field(default_factory=VisionSummary)
    seo: SeoFields = Field(default_factory=SeoFields)
    sentiment_data: SentimentDetails = Field(default_factory=SentimentDetails)
    processing_meta: ProcessingMeta = Field(default_factory=ProcessingMeta)


class ProcessedVideo(BaseModel):
    """Everything a successful run writes back onto its job."""

    transcription: str
    analysis: VideoAnalysis
