"""Pytest fixtures for Reelshop tests."""

import base64
import hashlib
import hmac
import json
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

import pytest

from reelshop.services.job_store import SupabaseJobStore
from reelshop.services.media import ExtractedMedia, MediaObject, MediaSource
from reelshop.services.model_registry import ModelConfig, RoutingTable
from reelshop.services.model_router import (
    BackendResponse,
    ModelBackend,
    ModelRouter,
    TranscriptionBackend,
    TranscriptionResponse,
)
from reelshop.services.processor import VideoProcessor
from reelshop.services.worker import VideoWorker

WORKER_URL = "https://reelshop.example/api/queue/worker"
CURRENT_KEY = "sig_current_test_key"
NEXT_KEY = "sig_next_test_key"


# ==================== Mock Supabase Client ====================


class MockSupabaseResponse:
    """Mock response from Supabase operations."""

    def __init__(self, data: Optional[List[Dict[str, Any]]] = None) -> None:
        self.data = data or []


class MockSupabaseTable:
    """Mock Supabase table keyed by job_id."""

    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, Any]] = {}
        self._filters: List[tuple] = []
        self._pending: Optional[tuple] = None

    def select(self, columns: str = "*") -> "MockSupabaseTable":
        self._pending = ("select", None)
        return self

    def insert(self, data: Dict[str, Any]) -> "MockSupabaseTable":
        self._pending = ("insert", data)
        return self

    def update(self, data: Dict[str, Any]) -> "MockSupabaseTable":
        self._pending = ("update", data)
        return self

    def delete(self) -> "MockSupabaseTable":
        self._pending = ("delete", None)
        return self

    def eq(self, field: str, value: Any) -> "MockSupabaseTable":
        self._filters.append((field, value))
        return self

    def execute(self) -> MockSupabaseResponse:
        op, payload = self._pending or ("select", None)
        filters, self._filters, self._pending = self._filters, [], None
        matches = [
            pk for pk, row in self._data.items()
            if all(row.get(field) == value for field, value in filters)
        ]

        if op == "insert":
            self._data[payload["job_id"]] = json.loads(json.dumps(payload))
            return MockSupabaseResponse([payload])
        if op == "update":
            for pk in matches:
                self._data[pk].update(json.loads(json.dumps(payload)))
            return MockSupabaseResponse([self._data[pk] for pk in matches])
        if op == "delete":
            return MockSupabaseResponse([self._data.pop(pk) for pk in matches])
        return MockSupabaseResponse([self._data[pk] for pk in matches])


class MockSupabaseClient:
    """Mock Supabase client for testing."""

    def __init__(self) -> None:
        self._tables: Dict[str, MockSupabaseTable] = {}

    def table(self, name: str) -> MockSupabaseTable:
        return self._tables.setdefault(name, MockSupabaseTable())


# ==================== Fake AI and Media ====================

VISION_REPLY = {
    "products": [
        {
            "name": "Olive Ribbed Cardigan",
            "category": "Fashion",
            "colors": ["olive"],
            "description": "Chunky ribbed knit with buttons",
            "estimatedPriceUSD": "$45",
            "confidence": 0.92,
        }
    ],
    "visual": {
        "dominantColors": ["olive", "cream"],
        "aestheticStyle": "Cozy Minimal",
        "contentType": "Try-on",
        "targetAudience": "Women 20-35",
        "scenes": [{"timestamp": "0:03", "description": "Mirror try-on", "setting": "Bedroom", "mood": "Calm"}],
    },
}
SEO_REPLY = {
    "title": "Olive Ribbed Cardigan Try-On",
    "description": "A cozy olive cardigan styled three ways.",
    "keywords": ["olive cardigan", "ribbed knit"],
    "tags": ["fashion", "knitwear"],
}
SENTIMENT_REPLY = {"label": "positive", "score": 88, "highlights": ["love how soft it is"]}


def happy_replies() -> List[BackendResponse]:
    """Backend replies in pipeline order: vision, SEO, sentiment."""
    return [
        BackendResponse(content=json.dumps(VISION_REPLY), input_tokens=4200, output_tokens=380),
        BackendResponse(content=f"```json\n{json.dumps(SEO_REPLY)}\n```", input_tokens=310, output_tokens=120),
        BackendResponse(content=json.dumps(SENTIMENT_REPLY)),
    ]


class FakeBackend(ModelBackend):
    """Returns queued replies in order and records each call."""

    def __init__(self, replies: Optional[Sequence[BackendResponse]] = None, error: Optional[Exception] = None) -> None:
        self.replies = list(replies or [])
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def complete(
        self,
        model: ModelConfig,
        system_prompt: str,
        user_prompt: str,
        images: Sequence[bytes] = (),
        temperature: float = 0.3,
        max_tokens: int = 2000,
    ) -> BackendResponse:
        self.calls.append(
            {"model": model.id, "images": len(images), "system_prompt": system_prompt, "user_prompt": user_prompt}
        )
        if self.error is not None:
            raise self.error
        return self.replies.pop(0) if self.replies else BackendResponse(content="{}")


class FakeTranscriptionBackend(TranscriptionBackend):
    def __init__(self, text: str = "I love this cardigan, the quality is amazing", duration: float = 30.0) -> None:
        self.text = text
        self.duration = duration

    async def transcribe(self, model: ModelConfig, audio: bytes, prompt: Optional[str] = None) -> TranscriptionResponse:
        return TranscriptionResponse(text=self.text, language="en", duration=self.duration)


class FakeMediaSource(MediaSource):
    def __init__(self, exists: bool = True, frames: int = 6, audio: bytes = b"ID3-audio") -> None:
        self.exists = exists
        self.media = ExtractedMedia(audio=audio, frames=[b"jpeg-%d" % i for i in range(frames)], duration=30.0)
        self.extracted: List[str] = []

    async def head(self, key: str) -> Optional[MediaObject]:
        return MediaObject(key=key, size=2048, content_type="video/mp4") if self.exists else None

    async def extract(self, key: str, max_frames: int, interval: float) -> ExtractedMedia:
        self.extracted.append(key)
        return self.media


# ==================== Fixtures ====================


@pytest.fixture
def make_backend() -> Callable[..., FakeBackend]:
    """Factory for a chat backend; defaults to the happy-path replies."""

    def factory(replies: Optional[Sequence[BackendResponse]] = None, error: Optional[Exception] = None) -> FakeBackend:
        return FakeBackend(happy_replies() if replies is None else replies, error=error)

    return factory


@pytest.fixture
def make_media() -> Callable[..., FakeMediaSource]:
    return FakeMediaSource


@pytest.fixture
def make_store() -> Callable[[], SupabaseJobStore]:
    """Factory for an empty store over a mock Supabase table."""
    return lambda: SupabaseJobStore(MockSupabaseClient(), table="jobs")


@pytest.fixture
def make_router() -> Callable[..., ModelRouter]:
    def factory(backend: Optional[ModelBackend] = None, routing: Optional[RoutingTable] = None) -> ModelRouter:
        return ModelRouter(
            routing or RoutingTable(),
            backend if backend is not None else FakeBackend(happy_replies()),
            FakeTranscriptionBackend(),
        )

    return factory


@pytest.fixture
def make_worker(make_router: Callable[..., ModelRouter]) -> Callable[..., VideoWorker]:
    """
    Factory for a worker wired to fakes.

    ``ai_ready=False`` builds a worker without a processor, as when no
    provider keys are configured.
    """

    def factory(
        store: Any,
        backend: Optional[ModelBackend] = None,
        media: Optional[FakeMediaSource] = None,
        store_creator: Any = None,
        ai_ready: bool = True,
    ) -> VideoWorker:
        media = media or FakeMediaSource()
        processor = VideoProcessor(make_router(backend), media) if ai_ready else None
        return VideoWorker(
            store,
            processor=processor,
            media=media,
            store_creator=store_creator,
            missing_ai_config=() if ai_ready else ["OPENAI_API_KEY"],
        )

    return factory


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


@pytest.fixture
def qstash_signer() -> Callable[..., str]:
    """Build an Upstash-Signature token the way QStash does."""

    def sign(body: bytes, key: str = CURRENT_KEY, url: str = WORKER_URL, **claims: Any) -> str:
        now = int(time.time())
        payload = {
            "iss": "Upstash",
            "sub": url,
            "exp": now + 300,
            "nbf": now,
            "iat": now,
            "jti": "jwt_test",
            "body": _b64url(hashlib.sha256(body).digest()),
        }
        payload.update(claims)
        header = _b64url(json.dumps({"alg": "HS256", "typ": "JWT"}).encode())
        encoded = _b64url(json.dumps(payload).encode())
        signature = hmac.new(key.encode(), f"{header}.{encoded}".encode(), hashlib.sha256).digest()
        return f"{header}.{encoded}.{_b64url(signature)}"

    return sign


@pytest.fixture
def direct_job_fields() -> Dict[str, Any]:
    return {
        "id": "file-abc123",
        "bucket": "reelshop",
        "key": "uploads/file-abc123.mp4",
        "endpoint": "https://reelshop.sgp1.digitaloceanspaces.com/uploads/file-abc123.mp4",
        "size": 2048,
    }
