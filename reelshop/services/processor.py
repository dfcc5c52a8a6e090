"""AI stages of a video processing run, built on the model router."""

import logging
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from reelshop.config import Settings, get_settings
from reelshop.models.analysis import (
    DetectedProduct,
    ProcessedVideo,
    ProcessingMeta,
    SceneData,
    SentimentDetails,
    SeoFields,
    VideoAnalysis,
    VisionSummary,
)
from reelshop.services.media import ExtractedMedia, MediaSource
from reelshop.services.model_registry import ExtractionTask
from reelshop.services.model_router import CostLedger, ModelRouter
from reelshop.utils.errors import ProcessorError

logger = logging.getLogger(__name__)

DETAILED_FRAME_COUNT = 8
TRANSCRIPTION_PROMPT = (
    "E-commerce product video. May include: Thai, Vietnamese, Indonesian, "
    "Malay, English, Chinese."
)

VISION_SYSTEM_PROMPT = """You are an expert e-commerce product analyst. Analyze video frames and extract structured product data.

IMPORTANT: You MUST respond with valid JSON only. No markdown, no explanation, just JSON.

Required JSON schema:
{
  "products": [
    {
      "name": "Product name",
      "category": "Category (e.g., Skincare, Fashion, Electronics)",
      "colors": ["color1", "color2"],
      "description": "2-3 sentence product description",
      "estimatedPriceUSD": "$XX-$XX or null if unknown",
      "confidence": 0.0-1.0
    }
  ],
  "visual": {
    "dominantColors": ["color1", "color2", "color3"],
    "aestheticStyle": "Minimalist|Luxury|Casual|Professional|Playful|Vintage",
    "contentType": "Product Review|Unboxing|Tutorial|Lifestyle|Advertisement",
    "targetAudience": "e.g., Young Women 18-35, Tech Enthusiasts",
    "scenes": [
      {"timestamp": "Frame X", "description": "...", "setting": "Indoor Studio|Outdoor|Home|Store", "mood": "Energetic|Calm|Professional|Fun"}
    ]
  }
}"""

SEO_SYSTEM_PROMPT = """You write SEO metadata for shoppable product videos.
Respond with JSON only:
{
  "keywords": ["10-15 search keywords"],
  "tags": ["5-8 hashtag-style tags"],
  "title": "SEO-optimized title (60 chars max)",
  "description": "SEO-optimized description (160 chars max)"
}"""

SENTIMENT_SYSTEM_PROMPT = """You rate how a creator feels about the products in a video transcript.
Respond with JSON only:
{
  "label": "positive|neutral|negative",
  "score": 0-100,
  "highlights": ["up to 5 short phrases that drive the rating"]
}"""

POSITIVE_WORDS = [
    "love", "amazing", "great", "excellent", "perfect", "best", "recommend",
    "favorite", "beautiful", "awesome", "wonderful", "fantastic", "incredible",
    "must-have", "worth it", "impressed", "quality", "smooth", "soft", "effective",
]

NEGATIVE_WORDS = [
    "bad", "terrible", "worst", "hate", "disappointed", "poor", "awful",
    "horrible", "waste", "don't buy", "not recommend", "cheap", "broke",
    "failed", "useless", "overpriced", "scam", "fake",
]

SENTIMENT_THRESHOLD = 0.2
MAX_HIGHLIGHTS = 5


class TranscriptionOutcome(BaseModel):
    """Transcript plus the media it was taken from, reused by analysis."""

    text: str
    language: str = "unknown"
    duration: float = 0.0
    media: ExtractedMedia = Field(default_factory=ExtractedMedia)


# ==================== Normalization ====================


def select_even_frames(frames: Sequence[bytes], count: int) -> List[bytes]:
    """Pick ``count`` frames spread evenly across the clip."""
    if len(frames) <= count:
        return list(frames)
    step = len(frames) / count
    return [frames[int(i * step)] for i in range(count)]


def _str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item not in (None, "")]


def normalize_products(raw: Any) -> List[DetectedProduct]:
    if not isinstance(raw, list):
        return []

    products = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        confidence = item.get("confidence")
        if not isinstance(confidence, (int, float)) or isinstance(confidence, bool):
            confidence = 0.7
        price = item.get("estimatedPriceUSD") or item.get("estimatedPrice")
        products.append(
            DetectedProduct(
                name=item.get("name") or "Unknown Product",
                category=item.get("category") or "General",
                colors=_str_list(item.get("colors")),
                description=item.get("description") or "",
                estimated_price_usd=str(price) if price else None,
                confidence=min(max(float(confidence), 0.0), 1.0),
            )
        )
    return products


def normalize_visual(raw: Any) -> VisionSummary:
    if not isinstance(raw, dict):
        return VisionSummary()

    scenes = []
    for scene in raw.get("scenes") or []:
        if isinstance(scene, dict):
            scenes.append(
                SceneData(
                    timestamp=str(scene.get("timestamp") or "Unknown"),
                    description=scene.get("description") or "",
                    setting=scene.get("setting") or "Unknown",
                    mood=scene.get("mood") or "Neutral",
                )
            )

    return VisionSummary(
        dominant_colors=_str_list(raw.get("dominantColors")),
        aesthetic_style=raw.get("aestheticStyle") or "Modern",
        content_type=raw.get("contentType") or "Product Video",
        target_audience=raw.get("targetAudience") or "General",
        scenes=scenes,
    )


def normalize_seo(raw: Dict[str, Any]) -> SeoFields:
    return SeoFields(
        title=raw.get("title") or "Product Video",
        description=raw.get("description") or "",
        keywords=_str_list(raw.get("keywords")),
        tags=_str_list(raw.get("tags")),
    )


def keyword_sentiment(text: str) -> SentimentDetails:
    """
    Score sentiment by counting positive and negative phrases.

    The balance (pos - neg) / (pos + neg) is in [-1, 1]; it is mapped onto
    0-100 for the score and compared against +/-0.2 for the label.
    """
    lower = text.lower()
    highlights: List[str] = []
    positive = negative = 0

    for word in POSITIVE_WORDS:
        if word in lower:
            positive += 1
            if len(highlights) < MAX_HIGHLIGHTS:
                highlights.append(f"+{word}")

    for word in NEGATIVE_WORDS:
        if word in lower:
            negative += 1
            if len(highlights) < MAX_HIGHLIGHTS:
                highlights.append(f"-{word}")

    balance = (positive - negative) / ((positive + negative) or 1)
    if balance > SENTIMENT_THRESHOLD:
        label = "positive"
    elif balance < -SENTIMENT_THRESHOLD:
        label = "negative"
    else:
        label = "neutral"

    return SentimentDetails(
        label=label,
        score=round((balance + 1) * 50),
        highlights=highlights,
        source="keywords",
    )


def normalize_sentiment(raw: Dict[str, Any]) -> Optional[SentimentDetails]:
    """Validate a model's sentiment reply; None means fall back to keywords."""
    label = str(raw.get("label", "")).lower()
    score = raw.get("score")
    if label not in ("positive", "neutral", "negative"):
        return None
    if not isinstance(score, (int, float)) or isinstance(score, bool):
        return None
    return SentimentDetails(
        label=label,
        score=int(min(max(round(score), 0), 100)),
        highlights=_str_list(raw.get("highlights"))[:MAX_HIGHLIGHTS],
        source="model",
    )


# ==================== Processor ====================


class VideoProcessor:
    """Runs transcription and analysis for one job at a time."""

    def __init__(
        self,
        router: ModelRouter,
        media: MediaSource,
        max_frames: int = 12,
        frame_interval: float = 2.0,
    ) -> None:
        self.router = router
        self.media = media
        self.max_frames = max_frames
        self.frame_interval = frame_interval

    async def transcribe(self, key: str, ledger: CostLedger) -> TranscriptionOutcome:
        """Extract audio and frames, then transcribe the audio track."""
        media = await self.media.extract(key, self.max_frames, self.frame_interval)

        if not media.audio:
            logger.warning(f"{key} has no audio track; continuing with an empty transcript")
            return TranscriptionOutcome(text="", duration=media.duration, media=media)

        result = await self.router.execute_transcription_task(
            media.audio, prompt=TRANSCRIPTION_PROMPT, ledger=ledger
        )
        return TranscriptionOutcome(
            text=result.data.get("text", ""),
            language=result.data.get("language", "unknown"),
            duration=result.data.get("duration") or media.duration,
            media=media,
        )

    async def analyze(
        self, transcription: TranscriptionOutcome, ledger: CostLedger
    ) -> ProcessedVideo:
        """
        Detect products, write SEO copy and rate sentiment.

        Raises:
            ProcessorError: If no frames were extracted from the video
        """
        frames = select_even_frames(transcription.media.frames, DETAILED_FRAME_COUNT)
        if not frames:
            raise ProcessorError("No frames could be extracted from the video")

        text = transcription.text
        excerpt = text[:500] + ("..." if len(text) > 500 else "")

        vision = await self.router.execute_vision_task(
            ExtractionTask.PRODUCT_DETECTION,
            frames,
            VISION_SYSTEM_PROMPT,
            f"Analyze these {len(frames)} video frames.\n\n"
            f'Transcription context: "{excerpt}"\n\n'
            "Extract all visible products with: name, category, colors, description, "
            "estimated price.\nDescribe the visual style, dominant colors, and scene "
            "settings.\n\nRespond with JSON only.",
            ledger=ledger,
        )
        products = normalize_products(vision.data.get("products"))
        visual = normalize_visual(vision.data.get("visual"))

        seo = await self._generate_seo(text, products, visual, ledger)
        sentiment = await self._analyze_sentiment(text, ledger)

        meta = ProcessingMeta(
            frames_analyzed=len(frames),
            audio_duration=transcription.duration,
            language=transcription.language,
            models_used={r.task: r.model for r in ledger.records},
            total_cost=round(ledger.total_cost, 6),
            cost_by_task=ledger.summary()["by_task"],
        )

        analysis = VideoAnalysis(
            products=products,
            keywords=seo.keywords,
            sentiment=sentiment.label,
            vision_data=visual,
            seo=seo,
            sentiment_data=sentiment,
            processing_meta=meta,
        )
        logger.info(
            f"Analysis found {len(products)} products, sentiment {sentiment.label}, "
            f"cost ${meta.total_cost:.4f}"
        )
        return ProcessedVideo(transcription=text, analysis=analysis)

    async def _generate_seo(
        self,
        text: str,
        products: List[DetectedProduct],
        visual: VisionSummary,
        ledger: CostLedger,
    ) -> SeoFields:
        names = ", ".join(p.name for p in products)
        categories = ", ".join(dict.fromkeys(p.category for p in products))
        colors = ", ".join(dict.fromkeys(c for p in products for c in p.colors))

        result = await self.router.execute_text_task(
            ExtractionTask.SEO_GENERATION,
            SEO_SYSTEM_PROMPT,
            f"Products: {names or 'Various products'}\n"
            f"Categories: {categories or 'General'}\n"
            f"Colors: {colors or 'Various'}\n"
            f"Style: {visual.aesthetic_style}\n"
            f"Content Type: {visual.content_type}\n"
            f'Transcription excerpt: "{text[:300]}"',
            ledger=ledger,
        )
        return normalize_seo(result.data)

    async def _analyze_sentiment(self, text: str, ledger: CostLedger) -> SentimentDetails:
        if not text.strip():
            return keyword_sentiment(text)

        result = await self.router.execute_text_task(
            ExtractionTask.TEXT_ANALYSIS,
            SENTIMENT_SYSTEM_PROMPT,
            f'Transcript: "{text[:2000]}"',
            ledger=ledger,
        )
        sentiment = normalize_sentiment(result.data)
        if sentiment is None:
            logger.warning("Sentiment model reply unusable; using keyword scoring")
            return keyword_sentiment(text)
        return sentiment


def create_video_processor(
    router: ModelRouter, media: MediaSource, settings: Optional[Settings] = None
) -> VideoProcessor:
    settings = settings or get_settings()
    return VideoProcessor(
        router,
        media,
        max_frames=settings.max_frames,
        frame_interval=settings.frame_interval_seconds,
    )
