"""Configuration management using Pydantic Settings."""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Platform tokens
    telegram_token: str = ""

    # Coding session containers
    session_image: str = "ghcr.io/goniz/telegram-claude-code-runtime:main"
    container_prefix: str = "coding-session-"
    volume_prefix: str = "dev-session-claude-"
    session_cpu_limit: float | None = None
    session_memory_limit: str | None = None
    # Remove leftover session containers from a previous run on startup
    clear_sessions_on_startup: bool = True

    # Timeouts (seconds)
    ready_timeout: float = 30.0
    ready_poll_interval: float = 1.0
    exec_timeout: float = 120.0
    # Upper bound for an interactive auth handshake (OAuth code paste, device flow)
    auth_timeout: float = 300.0
    # One Claude prompt, tool calls included
    prompt_timeout: float = 600.0

    # Forwarded into session containers as GH_TOKEN when set
    gh_token: str = ""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
