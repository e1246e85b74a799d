"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration for atelier. Reads from .env automatically."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # LLM API keys (only required for the providers you actually use)
    openai_api_key: str = ""
    anthropic_api_key: str = ""

    # Ollama base URL — set this when using local Ollama models
    ollama_base_url: str = "http://localhost:11434"

    # Model identifiers — prefix determines the provider:
    #   "ollama:<model>"     → local Ollama  (e.g. "ollama:llama3.1:70b")
    #   "claude-*" / "claude" → Anthropic API
    #   anything else        → OpenAI API    (e.g. "gpt-4o", "gpt-4o-mini")
    coordinator_model: str = "gpt-4o-mini"
    executor_model: str = "gpt-4o-mini"
    verifier_model: str = "gpt-4o-mini"
    chat_model: str = "gpt-4o-mini"

    # Default project when a request does not name one
    target_project_path: str = ""

    @field_validator("target_project_path")
    @classmethod
    def _resolve_project(cls, value: str) -> str:
        if value:
            return str(Path(value).expanduser().resolve())
        return value

    # ── Agent loop ────────────────────────────────────────────────────
    max_tool_rounds: int = 5
    # Direct chat runs one long tool session instead of a plan
    chat_max_steps: int = 25
    # "fail_open"   → a verifier backend error lets the plan continue
    # "fail_closed" → a verifier backend error aborts the plan
    verification_policy: str = "fail_open"

    @field_validator("verification_policy")
    @classmethod
    def _check_policy(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in ("fail_open", "fail_closed"):
            raise ValueError("verification_policy must be 'fail_open' or 'fail_closed'")
        return value

    graph_recursion_limit: int = 200
    # Oldest conversation entries are dropped past this count.
    history_max_entries: int = 100

    # ── Event stream ──────────────────────────────────────────────────
    # Producer blocks once this many events are waiting to be consumed.
    event_queue_size: int = 1000
    event_history_size: int = 1000

    # ── Tools ─────────────────────────────────────────────────────────
    command_timeout_seconds: int = 30
    max_output_chars: int = 12_000
    command_stdout_chars: int = 2_000
    command_stderr_chars: int = 500
    large_file_bytes: int = 50_000

    # Web UI
    web_host: str = "127.0.0.1"
    web_port: int = 8430

    # Conversation history (one directory per project under this root)
    history_dir: str = "cache/chat"

    # Logging
    log_level: str = "INFO"
    log_file: str = "logs/atelier.log"
    # Comma-separated third-party loggers capped at WARNING (request-level chatter)
    log_quiet: str = "httpx,httpcore,openai,anthropic"


_settings: Settings | None = None


def get_settings() -> Settings:
    """Singleton accessor."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
