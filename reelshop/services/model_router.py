"""Cost-aware dispatch of AI sub-tasks to backend models."""

import json
import logging
import math
import re
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from reelshop.config import Settings, get_settings
from reelshop.services.model_registry import (
    ExtractionTask,
    ModelConfig,
    RoutingTable,
)
from reelshop.utils.errors import CapabilityError

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
IMAGE_TOKEN_ESTIMATE = 500

VISION_SETTINGS = {"temperature": 0.2, "max_tokens": 4000}
TEXT_SETTINGS = {"temperature": 0.3, "max_tokens": 2000}

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


# ==================== Telemetry ====================


class CostRecord(BaseModel):
    """Cost of one model call."""

    model_config = ConfigDict(frozen=True)

    model: str
    task: str
    input_tokens: int = 0
    output_tokens: int = 0
    audio_seconds: float = 0.0
    cost: float = 0.0


class CostLedger:
    """
    Accumulates cost records for one unit of work.

    Callers create a fresh ledger per job run and pass it to each router
    call; the router itself keeps no cost state.
    """

    def __init__(self) -> None:
        self._records: List[CostRecord] = []

    def add(self, record: CostRecord) -> None:
        self._records.append(record)

    @property
    def records(self) -> Tuple[CostRecord, ...]:
        return tuple(self._records)

    @property
    def total_cost(self) -> float:
        return sum(r.cost for r in self._records)

    def summary(self) -> Dict[str, Any]:
        """Totals by task and by model."""
        by_task: Dict[str, float] = defaultdict(float)
        by_model: Dict[str, float] = defaultdict(float)
        for record in self._records:
            by_task[record.task] += record.cost
            by_model[record.model] += record.cost
        return {
            "calls": len(self._records),
            "total_cost": round(self.total_cost, 6),
            "by_task": {k: round(v, 6) for k, v in by_task.items()},
            "by_model": {k: round(v, 6) for k, v in by_model.items()},
            "input_tokens": sum(r.input_tokens for r in self._records),
            "output_tokens": sum(r.output_tokens for r in self._records),
        }


class TaskResult(BaseModel):
    """Normalized outcome of a routed call."""

    data: Dict[str, Any] = Field(default_factory=dict)
    cost: CostRecord
    latency_ms: float


# ==================== Backends ====================


class BackendResponse(BaseModel):
    content: str
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None


class TranscriptionResponse(BaseModel):
    text: str
    language: str = "unknown"
    duration: float = 0.0


class ModelBackend(ABC):
    """Provider call path for chat-style models."""

    @abstractmethod
    async def complete(
        self,
        model: ModelConfig,
        system_prompt: str,
        user_prompt: str,
        images: Sequence[bytes] = (),
        temperature: float = 0.3,
        max_tokens: int = 2000,
    ) -> BackendResponse:
        ...


class TranscriptionBackend(ABC):
    """Provider call path for speech-to-text models."""

    @abstractmethod
    async def transcribe(
        self, model: ModelConfig, audio: bytes, prompt: Optional[str] = None
    ) -> TranscriptionResponse:
        ...


class PydanticAIBackend(ModelBackend):
    """
    Runs chat completions through pydantic-ai agents.

    API keys are handed to each provider directly; an empty key lets the
    provider fall back to its own environment variable.
    """

    def __init__(self, openai_api_key: str = "", google_api_key: str = "") -> None:
        self.openai_api_key = openai_api_key
        self.google_api_key = google_api_key

    def build_model(self, model: ModelConfig) -> Any:
        """pydantic-ai model object for a registry entry."""
        if model.provider == "openai":
            from pydantic_ai.models.openai import OpenAIChatModel
            from pydantic_ai.providers.openai import OpenAIProvider

            return OpenAIChatModel(
                model.api_model, provider=OpenAIProvider(api_key=self.openai_api_key or None)
            )
        if model.provider == "google":
            from pydantic_ai.models.google import GoogleModel
            from pydantic_ai.providers.google import GoogleProvider

            return GoogleModel(
                model.api_model, provider=GoogleProvider(api_key=self.google_api_key or None)
            )
        raise CapabilityError(f"No chat backend for provider {model.provider}")

    async def complete(
        self,
        model: ModelConfig,
        system_prompt: str,
        user_prompt: str,
        images: Sequence[bytes] = (),
        temperature: float = 0.3,
        max_tokens: int = 2000,
    ) -> BackendResponse:
        from pydantic_ai import Agent, BinaryContent

        agent = Agent(
            self.build_model(model),
            system_prompt=system_prompt,
            model_settings={"temperature": temperature, "max_tokens": max_tokens},
        )

        prompt: Any = user_prompt
        if images:
            prompt = [user_prompt] + [
                BinaryContent(data=image, media_type="image/jpeg") for image in images
            ]

        result = await agent.run(prompt)
        usage = result.usage()
        return BackendResponse(
            content=result.output or "",
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
        )


class OpenAITranscriptionBackend(TranscriptionBackend):
    """Whisper transcription via the OpenAI SDK."""

    def __init__(self, api_key: Optional[str] = None) -> None:
        from openai import AsyncOpenAI

        self.client = AsyncOpenAI(api_key=api_key or None)

    async def transcribe(
        self, model: ModelConfig, audio: bytes, prompt: Optional[str] = None
    ) -> TranscriptionResponse:
        kwargs: Dict[str, Any] = {}
        if prompt:
            kwargs["prompt"] = prompt

        response = await self.client.audio.transcriptions.create(
            model=model.api_model,
            file=("audio.mp3", audio, "audio/mpeg"),
            response_format="verbose_json",
            **kwargs,
        )
        return TranscriptionResponse(
            text=response.text,
            language=getattr(response, "language", None) or "unknown",
            duration=float(getattr(response, "duration", None) or 0.0),
        )


# ==================== Helpers ====================


def estimate_tokens(text: str) -> int:
    """Rough token count used when a provider reports no usage."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def parse_json_response(content: str) -> Dict[str, Any]:
    """
    Parse a model's JSON reply.

    Markdown code fences are stripped first. Anything that is not a JSON
    object yields an empty dict.
    """
    cleaned = _FENCE_RE.sub("", content.strip())
    try:
        parsed = json.loads(cleaned)
    except ValueError:
        logger.warning(f"Model returned invalid JSON: {content[:200]!r}")
        return {}
    if not isinstance(parsed, dict):
        logger.warning(f"Model returned {type(parsed).__name__}, expected a JSON object")
        return {}
    return parsed


def compute_cost(model: ModelConfig, input_tokens: int, output_tokens: int) -> float:
    return (input_tokens / 1_000_000) * model.input_cost_per_million + (
        output_tokens / 1_000_000
    ) * model.output_cost_per_million


# ==================== Router ====================


class ModelRouter:
    """
    Picks a model per task, calls it, and normalizes the reply.

    Provider errors propagate unchanged; the router never retries.
    """

    def __init__(
        self,
        routing: RoutingTable,
        backend: ModelBackend,
        transcription_backend: Optional[TranscriptionBackend] = None,
    ) -> None:
        self.routing = routing
        self.backend = backend
        self.transcription_backend = transcription_backend

    async def execute_vision_task(
        self,
        task: ExtractionTask,
        images: Sequence[bytes],
        system_prompt: str,
        user_prompt: str,
        ledger: Optional[CostLedger] = None,
    ) -> TaskResult:
        """
        Run a task that needs to look at images.

        Args:
            task: Task to route
            images: JPEG images attached inline
            system_prompt: System instructions
            user_prompt: User message sent with the images
            ledger: Cost ledger to record the call in

        Raises:
            CapabilityError: The routed model cannot take images
        """
        model = self.routing.model_for(task)
        if not model.supports_vision:
            raise CapabilityError(f"Model {model.id} routed for {task.value} has no vision support")
        if not images:
            raise ValueError(f"Vision task {task.value} needs at least one image")

        return await self._execute(
            task, model, system_prompt, user_prompt, images, VISION_SETTINGS, ledger
        )

    async def execute_text_task(
        self,
        task: ExtractionTask,
        system_prompt: str,
        user_prompt: str,
        ledger: Optional[CostLedger] = None,
    ) -> TaskResult:
        """Run a text-only task."""
        model = self.routing.model_for(task)
        if model.supports_audio:
            raise CapabilityError(f"Model {model.id} cannot serve text task {task.value}")

        return await self._execute(task, model, system_prompt, user_prompt, (), TEXT_SETTINGS, ledger)

    async def execute_transcription_task(
        self,
        audio: bytes,
        prompt: Optional[str] = None,
        ledger: Optional[CostLedger] = None,
    ) -> TaskResult:
        """Transcribe audio; data holds text, language and duration."""
        task = ExtractionTask.TRANSCRIPTION
        model = self.routing.model_for(task)
        if not model.supports_audio or self.transcription_backend is None:
            raise CapabilityError(f"No transcription backend for model {model.id}")

        started = time.perf_counter()
        response = await self.transcription_backend.transcribe(model, audio, prompt)
        latency_ms = (time.perf_counter() - started) * 1000

        record = CostRecord(
            model=model.id,
            task=task.value,
            audio_seconds=response.duration,
            cost=(response.duration / 60) * (model.audio_cost_per_minute or 0.0),
        )
        if ledger is not None:
            ledger.add(record)

        logger.info(
            f"{task.value} via {model.id}: {response.duration:.1f}s audio, "
            f"${record.cost:.5f}, {latency_ms:.0f}ms"
        )
        return TaskResult(data=response.model_dump(), cost=record, latency_ms=latency_ms)

    async def _execute(
        self,
        task: ExtractionTask,
        model: ModelConfig,
        system_prompt: str,
        user_prompt: str,
        images: Sequence[bytes],
        call_settings: Dict[str, Any],
        ledger: Optional[CostLedger],
    ) -> TaskResult:
        started = time.perf_counter()
        response = await self.backend.complete(
            model,
            system_prompt,
            user_prompt,
            images=images,
            temperature=call_settings["temperature"],
            max_tokens=call_settings["max_tokens"],
        )
        latency_ms = (time.perf_counter() - started) * 1000

        data = parse_json_response(response.content)

        input_tokens = response.input_tokens or (
            estimate_tokens(system_prompt + user_prompt) + IMAGE_TOKEN_ESTIMATE * len(images)
        )
        output_tokens = response.output_tokens or estimate_tokens(response.content)

        record = CostRecord(
            model=model.id,
            task=task.value,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=compute_cost(model, input_tokens, output_tokens),
        )
        if ledger is not None:
            ledger.add(record)

        logger.info(
            f"{task.value} via {model.id}: {input_tokens} in / {output_tokens} out, "
            f"${record.cost:.5f}, {latency_ms:.0f}ms"
        )
        return TaskResult(data=data, cost=record, latency_ms=latency_ms)


def create_model_router(settings: Optional[Settings] = None) -> ModelRouter:
    """
    Create a ModelRouter using application settings.

    Provider keys go straight to the backends.
    """
    settings = settings or get_settings()

    routing = RoutingTable.from_overrides(settings.task_model_overrides)
    transcription_backend = (
        OpenAITranscriptionBackend(settings.openai_api_key) if settings.openai_api_key else None
    )
    backend = PydanticAIBackend(
        openai_api_key=settings.openai_api_key, google_api_key=settings.google_ai_api_key
    )
    return ModelRouter(routing, backend, transcription_backend)
