"""Application settings."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "agent-engine"
    database_url: str = ""

    # "deterministic" uses keyword heuristics; "llm" asks the LLM adapter.
    planner_mode: str = "deterministic"
    decision_mode: str = "deterministic"

    agent_max_iterations: int = Field(default=8, ge=1)
    agent_multi_step_max_iterations: int = Field(default=10, ge=1)
    agent_step_max_iterations: int = Field(default=5, ge=1)
    agent_timeout_s: float = Field(default=240.0, ge=1.0)
    multi_step_min_timeout_s: float = Field(default=360.0, ge=1.0)
    history_limit: int = Field(default=20, ge=1)
    # Summarize every N stored messages; 0 turns automatic summaries off.
    summary_every_messages: int = Field(default=20, ge=0)
    summary_min_messages: int = Field(default=10, ge=2)

    # Per generation class provider timeouts.
    text_timeout_s: float = Field(default=30.0, ge=0.01)
    image_timeout_s: float = Field(default=120.0, ge=0.01)
    audio_timeout_s: float = Field(default=180.0, ge=0.01)
    video_timeout_s: float = Field(default=600.0, ge=0.01)

    circuit_failure_threshold: int = Field(default=5, ge=1)
    circuit_reset_s: float = Field(default=60.0, ge=0.0)

    image_providers: list[str] = ["gemini", "openai", "grok"]
    video_providers: list[str] = ["veo3", "sora", "kling"]
    music_providers: list[str] = ["suno"]
    speech_providers: list[str] = ["elevenlabs"]
    transcription_providers: list[str] = ["elevenlabs"]
    text_providers: list[str] = ["openai"]
    # Provider id -> HTTP endpoint accepting {"kind", "parameters"} JSON.
    provider_endpoints: dict[str, str] = {}

    upload_max_bytes: int = Field(default=50 * 1024 * 1024, ge=1)
    speech_min_bytes: int = Field(default=1024, ge=1)

    llm_provider: str = "openai"
    llm_model: str = "gpt-4o-mini"
    llm_base_url: str = "https://api.openai.com/v1"
    llm_timeout_s: float = Field(default=20.0, ge=0.5)
    llm_max_retries: int = Field(default=1, ge=0)
    llm_backoff_s: float = Field(default=0.2, ge=0.0)
    llm_trace: bool = False
    openai_api_key: str = ""

    model_config = SettingsConfigDict(
        env_prefix="AGENT_ENGINE_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def default_chain(self, kind: str) -> list[str]:
        """Default provider order for a generation kind."""
        chains = {
            "image": self.image_providers,
            "image_edit": self.image_providers,
            "video": self.video_providers,
            "video_edit": self.video_providers,
            "music": self.music_providers,
            "speech": self.speech_providers,
            "transcription": self.transcription_providers,
            "text": self.text_providers,
        }
        return list(chains.get(kind, self.text_providers))

    def timeout_for(self, kind: str) -> float:
        if kind in {"image", "image_edit"}:
            return self.image_timeout_s
        if kind in {"video", "video_edit"}:
            return self.video_timeout_s
        if kind in {"music", "speech", "transcription"}:
            return self.audio_timeout_s
        return self.text_timeout_s


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
