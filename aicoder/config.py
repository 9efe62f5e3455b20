from __future__ import annotations

import os
from dataclasses import dataclass

from aicoder.errors import ConfigError

DEFAULT_BASE_URL = "https://api.x.ai/v1"
DEFAULT_MODEL = "grok-4"


def _env_str(name: str, default: str = "") -> str:
    return (os.environ.get(name) or "").strip() or default


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.environ.get(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return float(default)
    try:
        return float(raw)
    except ValueError:
        return float(default)


@dataclass(frozen=True)
class Settings:
    api_key: str
    base_url: str = DEFAULT_BASE_URL
    model: str = DEFAULT_MODEL
    request_timeout_s: float = 45.0
    temperature: float = 0.2
    max_tokens: int = 1500
    stream: bool = True
    debounce_ms: int = 300
    max_log_lines: int = 2000
    template_id: str = "vite_react"
    sandbox_root_dir: str | None = None
    context_max_chars: int = 24_000

    @classmethod
    def from_env(cls) -> Settings:
        """Build settings from the environment; fail fast without an API key."""
        api_key = _env_str("XAI_API_KEY")
        if not api_key:
            raise ConfigError("missing XAI_API_KEY")
        return cls(
            api_key=api_key,
            base_url=_env_str("XAI_API_BASE_URL", DEFAULT_BASE_URL).rstrip("/"),
            model=_env_str("XAI_MODEL", DEFAULT_MODEL),
            request_timeout_s=max(5.0, _env_float("AICODER_REQUEST_TIMEOUT_S", 45.0)),
            temperature=min(2.0, max(0.0, _env_float("AICODER_TEMPERATURE", 0.2))),
            max_tokens=max(1, _env_int("AICODER_MAX_TOKENS", 1500)),
            stream=_env_bool("AICODER_STREAM", True),
            debounce_ms=max(0, _env_int("AICODER_DEBOUNCE_MS", 300)),
            max_log_lines=max(100, _env_int("AICODER_MAX_LOG_LINES", 2000)),
            template_id=_env_str("AICODER_TEMPLATE", "vite_react"),
            sandbox_root_dir=_env_str("SANDBOX_ROOT_DIR") or None,
            context_max_chars=max(1000, _env_int("AICODER_CONTEXT_MAX_CHARS", 24_000)),
        )
