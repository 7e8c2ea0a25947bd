"""Core configuration for the audit engine."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ENGINE_VERSION = "1.0.0"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="AUDITENGINE_",
        case_sensitive=False,
        extra="ignore",
    )

    # ── App ──────────────────────────────────────────────────────────────
    app_name: str = "AuditEngine"
    app_env: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    log_level: str = "INFO"
    cors_allowed_origins: str = "http://localhost:3000"

    # ── Database ─────────────────────────────────────────────────────────
    database_url: str = "sqlite+aiosqlite:///./auditengine.db"
    database_echo: bool = False

    # ── LLM ──────────────────────────────────────────────────────────────
    anthropic_api_key: str = ""
    openai_api_key: str = ""
    openai_base_url: str = ""  # OpenAI-compatible gateway, e.g. OpenRouter
    primary_llm_model: str = "claude-sonnet-4-20250514"
    fallback_llm_model: str = "gpt-4o"
    llm_temperature: float = 0.1
    llm_max_tokens: int = 4000
    llm_max_retries: int = 3
    llm_retry_base_delay: float = 1.0
    llm_timeout_seconds: float = 90.0
    llm_max_concurrent: int = 4
    llm_max_file_chars: int = 24_000

    # ── External tools ───────────────────────────────────────────────────
    external_tool_timeout_seconds: float = 60.0
    move_prover_timeout_seconds: float = 120.0
    cargo_bin: str = "cargo"
    move_bin: str = "move"
    semgrep_bin: str = "semgrep"
    workspace_prefix: str = "auditengine_"

    # ── Pipeline ─────────────────────────────────────────────────────────
    job_timeout_seconds: float = Field(default=0.0, ge=0.0)  # 0 = unbounded
    default_confidence_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    aggregator_deduplicate: bool = False
    rules_config_path: str = ""

    # ── Report ───────────────────────────────────────────────────────────
    report_auditor: str = "AuditEngine Analysis Pipeline"
    report_version: str = ENGINE_VERSION

    @property
    def llm_configured(self) -> bool:
        return bool(self.anthropic_api_key or self.openai_api_key)


@lru_cache
def get_settings() -> Settings:
    """Return cached settings singleton."""
    return Settings()
