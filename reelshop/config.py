"""Application settings from environment variables."""

from functools import lru_cache
from typing import Dict, Literal

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

# Load environment variables
load_dotenv()


class Settings(BaseSettings):
    """Application settings from environment."""

    environment: Literal["development", "production"] = "development"

    # AI providers
    openai_api_key: str = ""
    google_ai_api_key: str = ""
    # JSON object of task name -> model id, applied once when the router is built
    task_model_overrides: Dict[str, str] = {}

    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""
    jobs_table: str = "jobs"

    # QStash push queue
    qstash_url: str = "https://qstash.upstash.io"
    qstash_token: str = ""
    qstash_current_signing_key: str = ""
    qstash_next_signing_key: str = ""
    qstash_retries: int = 3
    worker_url: str = "http://localhost:3000/api/queue/worker"
    local_queue_delay_seconds: float = 0.1

    # Object storage and media extraction
    storage_bucket: str = "reelshop"
    storage_url_template: str = "https://{bucket}.sgp1.digitaloceanspaces.com/{key}"
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    max_frames: int = 12
    frame_interval_seconds: float = 2.0

    # Configuration
    data_dir: str = "data"
    log_level: str = "INFO"
    # Outbound HTTP retries: QStash publishes and media downloads
    max_retry_attempts: int = 3
    base_delay_seconds: float = 1.0

    model_config = {"env_file": ".env", "extra": "ignore"}

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def qstash_configured(self) -> bool:
        return bool(self.qstash_token)

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
