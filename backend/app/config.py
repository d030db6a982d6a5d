from typing import Literal

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Storage
    store_backend: Literal["postgres", "memory"] = "postgres"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "parley"
    postgres_user: str = "parley"
    db_password: str = "changeme"

    # Providers
    default_provider: str = "openai"

    openai_api_key: str = ""
    openai_host: str = "https://api.openai.com"
    openai_path: str = "/v1/chat/completions"
    openai_model: str = "gpt-4o-mini"

    copilot_api_key: str = ""
    copilot_host: str = "https://api.githubcopilot.com"
    copilot_path: str = "/chat/completions"
    copilot_model: str = "gpt-4o-mini"

    claude_api_key: str = ""
    claude_host: str = "https://api.anthropic.com"
    claude_path: str = "/v1/messages"
    claude_model: str = "claude-sonnet-4-5"
    claude_api_version: str = "2023-06-01"

    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"

    # Generation defaults
    default_temperature: float = 0.3
    default_max_tokens: int = 2048
    request_timeout: float = 30.0

    # Context engine
    history_window: int = 20
    context_token_budget: int = 14000
    min_window_messages: int = 2
    memory_top_k: int = 3
    memory_capacity: int = 200
    summary_threshold: int = 20
    summary_max_tokens: int = 500
    max_attachments: int = 4

    # App
    log_level: str = "INFO"

    def provider_api_key(self, provider: str) -> str:
        return getattr(self, f"{provider}_api_key", "") or ""

    def configured_providers(self) -> list[str]:
        return [
            name
            for name in ("openai", "claude", "gemini", "copilot")
            if self.provider_api_key(name)
        ]

    class Config:
        env_file = ".env"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
