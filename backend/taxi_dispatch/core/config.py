"""Application configuration using pydantic-settings."""
from functools import lru_cache
from pathlib import Path
from urllib.parse import urlparse

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[3] / ".env"),
        case_sensitive=False,
    )

    # Application
    log_level: str = "INFO"
    dispatch_db_path: str = "./data/dispatch.db"
    auth_enabled: bool = False
    default_tenant_id: str = "demo"
    tenant_tokens: str = ""
    app_mode: str = "demo"

    # LLM (OpenAI-compatible)
    openai_api_key: str = ""
    openai_base_url: str | None = None
    llm_model: str = "gpt-4o-mini"
    llm_audio_model: str = "gpt-4o-audio-preview"
    llm_transcription_model: str = "whisper-1"
    llm_temperature: float = 0.1
    llm_max_tokens: int = 800
    llm_timeout_seconds: float = 30.0

    # SMTP invitations
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_pass: str = ""
    smtp_from: str = "dispatch@localhost"
    smtp_timeout_seconds: float = 20.0

    # Live ride views only show rides in these states
    live_ride_statuses: str = "pending,assigned,in-progress"

    def resolved_openai_api_key(self) -> str | None:
        """
        Resolve API key for OpenAI-compatible clients.

        Local endpoints (e.g. Ollama) often do not require a real key, but the
        OpenAI SDK still expects a non-empty value.
        """
        key = (self.openai_api_key or "").strip()
        if key and key != "sk-your-key-here":
            return key
        if self._is_local_base_url():
            return "local-dev"
        return None

    def _is_local_base_url(self) -> bool:
        if not self.openai_base_url:
            return False
        try:
            host = (urlparse(self.openai_base_url).hostname or "").lower()
        except ValueError:
            return False
        return host in {"localhost", "127.0.0.1", "::1"} or host.endswith(".local")

    def live_status_set(self) -> set[str]:
        return {part.strip() for part in self.live_ride_statuses.split(",") if part.strip()}

    def normalized_app_mode(self) -> str:
        mode = (self.app_mode or "").strip().lower()
        return mode if mode in {"demo", "production"} else "production"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
