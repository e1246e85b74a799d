"""LLM model configuration and factory.

Provider routing is done via model name prefix:
  - "ollama:<model>"  → local Ollama  (e.g. "ollama:llama3.1:70b")
  - "claude-*"        → Anthropic API
  - anything else     → OpenAI API   (e.g. "gpt-4o", "gpt-4o-mini")

Set COORDINATOR_MODEL, EXECUTOR_MODEL, VERIFIER_MODEL and CHAT_MODEL in .env to choose freely.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from langchain_core.language_models import BaseChatModel

from atelier.core.config import get_settings
from atelier.core.logging import get_logger

logger = get_logger("agents.models")

AgentRole = Literal["coordinator", "executor", "verifier", "chat"]

PROMPTS_DIR = Path(__file__).parent / "prompts"


# ---------------------------------------------------------------------------
# Provider detection
# ---------------------------------------------------------------------------

def _is_ollama_model(model_name: str) -> bool:
    """Models prefixed with 'ollama:' are served by local Ollama."""
    return model_name.lower().startswith("ollama:")


def _is_anthropic_model(model_name: str) -> bool:
    """Anthropic models contain 'claude' in their name."""
    return "claude" in model_name.lower()


def _strip_ollama_prefix(model_name: str) -> str:
    return model_name[len("ollama:"):]


# ---------------------------------------------------------------------------
# LLM constructors
# ---------------------------------------------------------------------------

def _make_ollama(model: str, base_url: str, temperature: float = 0.1) -> BaseChatModel:
    """Create a ChatOllama instance. langchain-ollama must be installed."""
    try:
        from langchain_ollama import ChatOllama  # type: ignore[import-untyped]
    except ImportError as exc:
        raise ImportError(
            "langchain-ollama is not installed. Run: pip install 'atelier[ollama]'"
        ) from exc

    bare_model = _strip_ollama_prefix(model)
    logger.info("Using Ollama model '%s' at %s", bare_model, base_url)
    return ChatOllama(model=bare_model, base_url=base_url, temperature=temperature)


def _make_anthropic(model: str, api_key: str, temperature: float = 0.1, max_tokens: int = 8192) -> BaseChatModel:
    from langchain_anthropic import ChatAnthropic

    logger.info("Using Anthropic model '%s'", model)
    return ChatAnthropic(model=model, api_key=api_key, temperature=temperature, max_tokens=max_tokens)


def _make_openai(model: str, api_key: str, temperature: float = 0.2, max_tokens: int = 8192) -> BaseChatModel:
    from langchain_openai import ChatOpenAI

    logger.info("Using OpenAI model '%s'", model)
    return ChatOpenAI(model=model, api_key=api_key, temperature=temperature, max_tokens=max_tokens)


# ---------------------------------------------------------------------------
# Key validation helpers
# ---------------------------------------------------------------------------

def _require_key(role: AgentRole, model: str, api_key: str, env_var: str) -> str:
    key = (api_key or "").strip()
    if key:
        return key
    raise ValueError(
        f"Missing {env_var} for role '{role}' with model '{model}'. "
        f"Set {env_var} in .env or switch to another provider."
    )


def _build_for_model(role: AgentRole, model: str, temperature: float, max_tokens: int = 8192) -> BaseChatModel:
    """Build an LLM for *any* supported provider based on the model string."""
    settings = get_settings()
    if _is_ollama_model(model):
        return _make_ollama(model, base_url=settings.ollama_base_url, temperature=temperature)

    if _is_anthropic_model(model):
        key = _require_key(role, model, settings.anthropic_api_key, "ANTHROPIC_API_KEY")
        return _make_anthropic(model, key, temperature=temperature, max_tokens=max_tokens)

    key = _require_key(role, model, settings.openai_api_key, "OPENAI_API_KEY")
    return _make_openai(model, key, temperature=temperature, max_tokens=max_tokens)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def model_name_for_role(role: AgentRole) -> str:
    settings = get_settings()
    mapping = {
        "coordinator": settings.coordinator_model,
        "executor": settings.executor_model,
        "verifier": settings.verifier_model,
        "chat": settings.chat_model,
    }
    if role not in mapping:
        raise ValueError(f"Unknown agent role: {role!r}")
    return mapping[role]


def get_llm(role: AgentRole) -> BaseChatModel:
    """Create an LLM instance for the given agent role."""
    model = model_name_for_role(role)
    if role == "coordinator":
        return _build_for_model(role, model, temperature=0.2, max_tokens=4096)
    if role == "verifier":
        return _build_for_model(role, model, temperature=0.0, max_tokens=2048)
    return _build_for_model(role, model, temperature=0.1)


def load_system_prompt(role: AgentRole, **values: str) -> str:
    """Load ``prompts/<role>.txt`` and fill its ``{placeholders}``."""
    prompt_file = PROMPTS_DIR / f"{role}.txt"
    if not prompt_file.exists():
        raise FileNotFoundError(f"System prompt not found: {prompt_file}")
    template = prompt_file.read_text(encoding="utf-8")
    return template.format(**values) if values else template
