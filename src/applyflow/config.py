from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "ApplyFlow"
    app_env: str = "development"
    app_host: str = "127.0.0.1"
    app_port: int = 8788
    log_level: str = "INFO"

    database_url: str = "sqlite:///./data/applyflow.db"
    data_dir: Path = Path("./data")

    core_url: str = "http://localhost:4000"
    core_submit_path: str = "/api/applications/submit"
    orchestrator_secret: str = "dev_orchestrator_secret"
    core_timeout_sec: float = 30.0

    core_max_retries: int = 2
    core_retry_initial_delay_sec: float = 1.0
    core_retry_max_delay_sec: float = 10.0
    core_retry_exponential: bool = True
    core_retryable_statuses: str = "408,429,500,502,503,504"

    breaker_failure_threshold: int = 5
    breaker_success_threshold: int = 2
    breaker_timeout_sec: float = 60.0
    breaker_reset_timeout_sec: float = 120.0

    rate_limit_hourly: int = 8
    rate_limit_daily: int = 200
    rate_limit_cooldown_min: int = 60

    worker_poll_interval_sec: float = 5.0
    worker_batch_size: int = 20
    worker_max_attempts: int = 5
    worker_backoff_cap_min: int = 60
    worker_concurrency: int = 1
    worker_call_timeout_sec: float = 120.0
    worker_max_error_backoff_sec: float = 300.0
    worker_claim_lease_min: int = 30

    ai_provider: str = "openai"
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model_writer: str = "gpt-5-mini"
    openai_timeout_sec: int = 60

    local_llm_enabled: bool = False
    local_llm_base_url: str = "http://localhost:11434/v1"
    local_llm_api_key: str = "local"
    local_llm_model: str = "qwen2.5:14b-instruct"
    local_llm_timeout_sec: int = 90

    cors_origins: str = "http://127.0.0.1:8788"

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, value: str) -> str:
        allowed = {"development", "staging", "production", "test"}
        if value not in allowed:
            raise ValueError(f"app_env must be one of {sorted(allowed)}")
        return value

    @field_validator("ai_provider")
    @classmethod
    def validate_ai_provider(cls, value: str) -> str:
        allowed = {"openai", "local"}
        if value not in allowed:
            raise ValueError(f"ai_provider must be one of {sorted(allowed)}")
        return value

    @field_validator(
        "core_max_retries",
        "worker_batch_size",
        "worker_max_attempts",
        "worker_backoff_cap_min",
        "worker_concurrency",
        "breaker_failure_threshold",
        "breaker_success_threshold",
        "rate_limit_hourly",
        "rate_limit_daily",
        "rate_limit_cooldown_min",
    )
    @classmethod
    def validate_non_negative(cls, value: int, info) -> int:
        minimum = 0 if info.field_name == "core_max_retries" else 1
        if value < minimum:
            raise ValueError(f"{info.field_name} must be >= {minimum}")
        return value

    @field_validator("core_retryable_statuses")
    @classmethod
    def validate_statuses(cls, value: str) -> str:
        for part in value.split(","):
            part = part.strip()
            if part and not part.isdigit():
                raise ValueError(f"invalid HTTP status '{part}' in core_retryable_statuses")
        return value

    @property
    def retryable_status_set(self) -> set[int]:
        return {int(part) for part in self.core_retryable_statuses.split(",") if part.strip()}

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
