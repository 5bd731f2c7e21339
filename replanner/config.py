"""
Replanner - Configuration
Service settings + completion provider + reschedule engine tuning
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # ==========================================
    # SERVICE
    # ==========================================
    env: str = "dev"  # dev | prod
    db_url: str = "sqlite+aiosqlite:///./replanner.db"
    cors_origins: list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"

    # ==========================================
    # COMPLETION PROVIDER
    # ==========================================
    ai_enabled: bool = False
    openai_api_key: Optional[str] = None
    ai_model: str = "gpt-4o-mini-2024-07-18"
    ai_max_tokens: int = Field(4096, ge=100, le=8192)
    ai_temperature: float = Field(0.3, ge=0.0, le=1.0)
    ai_request_timeout_seconds: float = 30.0
    ai_max_retries: int = 2  # transport-level, handled by the SDK
    ai_tool_loop_max_iterations: int = 5

    # ==========================================
    # RESCHEDULE ENGINE
    # ==========================================
    reschedule_progress_tolerance: float = 0.0  # percentage points of grace, 0 reports every overrun
    reschedule_max_tokens: int = 4096
    reschedule_heuristic_fallback: bool = False

    class Config:
        env_file = ".env"

    @field_validator("ai_enabled", mode="before")
    @classmethod
    def _parse_flag(cls, value):
        if isinstance(value, str):
            return value.strip().lower() in ("true", "1")
        return value


# Global settings instance
settings = Settings()
