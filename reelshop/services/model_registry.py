"""Cost model registry and the task routing table."""

from enum import Enum
from types import MappingProxyType
from typing import Dict, List, Literal, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from reelshop.config import Settings
from reelshop.utils.errors import UnknownTaskError


class ModelTier(str, Enum):
    PREMIUM = "premium"
    STANDARD = "standard"
    BUDGET = "budget"


class ModelConfig(BaseModel):
    """Pricing and capabilities of one backend model."""

    model_config = ConfigDict(frozen=True)

    id: str
    provider: Literal["openai", "google"]
    # Name sent to the provider API when it differs from the registry id
    api_model: str
    tier: ModelTier
    input_cost_per_million: float = 0.0
    output_cost_per_million: float = 0.0
    supports_vision: bool = False
    supports_json: bool = False
    supports_audio: bool = False
    audio_cost_per_minute: Optional[float] = None


class ExtractionTask(str, Enum):
    """Sub-tasks the router knows how to place on a model."""

    PRODUCT_DETECTION = "product_detection"
    REFERENCE_EXTRACTION = "reference_extraction"
    VISUAL_TIEBREAKER = "visual_tiebreaker"
    CANDIDATE_EXTRACTION = "candidate_extraction"
    SEO_GENERATION = "seo_generation"
    TEXT_ANALYSIS = "text_analysis"
    TRANSCRIPTION = "transcription"


MODEL_REGISTRY: Mapping[str, ModelConfig] = MappingProxyType(
    {
        "gpt-4o": ModelConfig(
            id="gpt-4o",
            provider="openai",
            api_model="gpt-4o",
            tier=ModelTier.PREMIUM,
            input_cost_per_million=5.0,
            output_cost_per_million=15.0,
            supports_vision=True,
            supports_json=True,
        ),
        "gemini-1.5-pro": ModelConfig(
            id="gemini-1.5-pro",
            provider="google",
            api_model="gemini-1.5-pro",
            tier=ModelTier.STANDARD,
            input_cost_per_million=1.25,
            output_cost_per_million=5.0,
            supports_vision=True,
            supports_json=True,
        ),
        "gemini-1.5-flash": ModelConfig(
            id="gemini-1.5-flash",
            provider="google",
            api_model="gemini-2.0-flash",
            tier=ModelTier.BUDGET,
            input_cost_per_million=0.10,
            output_cost_per_million=0.40,
            supports_vision=True,
            supports_json=True,
        ),
        "gpt-4o-mini": ModelConfig(
            id="gpt-4o-mini",
            provider="openai",
            api_model="gpt-4o-mini",
            tier=ModelTier.BUDGET,
            input_cost_per_million=0.15,
            output_cost_per_million=0.60,
            supports_vision=True,
            supports_json=True,
        ),
        "whisper-1": ModelConfig(
            id="whisper-1",
            provider="openai",
            api_model="whisper-1",
            tier=ModelTier.BUDGET,
            supports_audio=True,
            audio_cost_per_minute=0.006,
        ),
    }
)

DEFAULT_ROUTES: Mapping[ExtractionTask, str] = MappingProxyType(
    {
        # Complex reasoning over several images
        ExtractionTask.PRODUCT_DETECTION: "gpt-4o",
        ExtractionTask.REFERENCE_EXTRACTION: "gpt-4o",
        ExtractionTask.VISUAL_TIEBREAKER: "gpt-4o",
        # Bulk per-image extraction
        ExtractionTask.CANDIDATE_EXTRACTION: "gemini-1.5-flash",
        # Text only
        ExtractionTask.SEO_GENERATION: "gpt-4o-mini",
        ExtractionTask.TEXT_ANALYSIS: "gpt-4o-mini",
        ExtractionTask.TRANSCRIPTION: "whisper-1",
    }
)

# Tasks a video processing run depends on
PIPELINE_TASKS: Tuple[ExtractionTask, ...] = (
    ExtractionTask.TRANSCRIPTION,
    ExtractionTask.PRODUCT_DETECTION,
    ExtractionTask.SEO_GENERATION,
    ExtractionTask.TEXT_ANALYSIS,
)

PROVIDER_ENV_VARS: Mapping[str, str] = MappingProxyType(
    {"openai": "OPENAI_API_KEY", "google": "GOOGLE_AI_API_KEY"}
)


class RoutingTable:
    """
    Immutable task -> model mapping.

    Built once at startup from the defaults plus any configured overrides,
    then handed to the router. Every route is checked against the registry
    on construction.
    """

    def __init__(
        self,
        routes: Mapping[ExtractionTask, str] = DEFAULT_ROUTES,
        registry: Mapping[str, ModelConfig] = MODEL_REGISTRY,
    ) -> None:
        for task, model_id in routes.items():
            if model_id not in registry:
                raise ValueError(f"Task {task.value} routed to unknown model {model_id}")
        self._routes: Mapping[ExtractionTask, str] = MappingProxyType(dict(routes))
        self._registry = registry

    @classmethod
    def from_overrides(cls, overrides: Mapping[str, str]) -> "RoutingTable":
        """Apply task-name -> model-id overrides on top of the defaults."""
        routes = dict(DEFAULT_ROUTES)
        for task_name, model_id in overrides.items():
            try:
                task = ExtractionTask(task_name)
            except ValueError:
                raise UnknownTaskError(f"Cannot override unknown task: {task_name}")
            routes[task] = model_id
        return cls(routes)

    def model_id_for(self, task: ExtractionTask) -> str:
        try:
            return self._routes[task]
        except KeyError:
            raise UnknownTaskError(f"No model routed for task: {task}")

    def model_for(self, task: ExtractionTask) -> ModelConfig:
        return self._registry[self.model_id_for(task)]

    def as_dict(self) -> Dict[str, str]:
        return {task.value: model_id for task, model_id in self._routes.items()}

    def __repr__(self) -> str:
        return f"RoutingTable({self.as_dict()})"


def ai_readiness(
    settings: Settings, routing: Optional[RoutingTable] = None
) -> Tuple[bool, List[str]]:
    """
    Check whether every provider the pipeline needs has an API key.

    Returns:
        (ready, names of the missing environment variables)
    """
    routing = routing or RoutingTable.from_overrides(settings.task_model_overrides)
    keys = {"openai": settings.openai_api_key, "google": settings.google_ai_api_key}

    missing: List[str] = []
    for task in PIPELINE_TASKS:
        provider = routing.model_for(task).provider
        env_var = PROVIDER_ENV_VARS[provider]
        if not keys[provider] and env_var not in missing:
            missing.append(env_var)

    return not missing, missing
