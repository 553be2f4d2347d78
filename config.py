"""Application configuration for the AI dispatch service."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from dispatch.llm.gemini_bridge import GEMINI_API_BASE

BASE_DIR = Path(__file__).resolve().parent


class Settings(BaseSettings):
    """Centralised runtime configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="DISPATCH_",
        env_file=os.getenv("DISPATCH_ENV_FILE"),
        env_file_encoding="utf-8",
        protected_namespaces=("settings_",),
    )

    server_host: str = Field(default="127.0.0.1", description="Host that the Flask app binds to")
    server_port: int = Field(default=5000, description="Port that the Flask app listens on")

    max_total_parallel: int = Field(default=10, gt=0, description="Maximum AI tasks running at once")

    ai_model: str = Field(default="gemini-2.5-flash", description="Default model for generation and key checks")
    gemini_base_url: str = Field(default=GEMINI_API_BASE, description="Gemini REST base URL")
    request_timeout: float = Field(default=60.0, description="Timeout for generation requests in seconds")
    health_timeout: float = Field(default=15.0, description="Timeout for key probes in seconds")
    key_cooldown_seconds: float = Field(default=60.0, description="Cooldown for rate-limited keys")

    gemini_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("GEMINI_API_KEY", "DISPATCH_GEMINI_API_KEY"),
        description="Primary API key",
    )
    api_key_pool: str = Field(default="", description="Extra keys separated by newlines, commas or semicolons")
    api_keys_file: Optional[Path] = Field(
        default=BASE_DIR / "config" / "api_keys.yaml",
        description="Optional YAML file with primary_key and pool",
    )


settings = Settings()
