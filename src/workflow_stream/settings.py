from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    v = (os.getenv(name) or "").strip().lower()
    if not v:
        return default
    return v in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    """
    Process-wide configuration, read once at startup.

    Every field maps to an environment variable; see `from_env`.
    """

    provider: str = "openai"
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: int = 1200
    llm_timeout_sec: float = 60.0

    thread_stage_outputs: bool = False

    heartbeat_sec: float = 15.0
    stream_buffer: int = 64
    notification_buffer: int = 16
    close_timeout_sec: float = 5.0

    http_log: bool = False
    http_log_headers: bool = False
    http_log_body_max_bytes: int = 4096
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            provider=(os.getenv("DSPY_PROVIDER") or "openai").strip().lower(),
            model=(os.getenv("DSPY_MODEL") or "gpt-4o-mini").strip(),
            temperature=_env_float("DSPY_TEMPERATURE", 0.7),
            max_tokens=max(1, _env_int("DSPY_MAX_TOKENS", 1200)),
            llm_timeout_sec=max(1.0, _env_float("DSPY_LLM_TIMEOUT_SEC", 60.0)),
            thread_stage_outputs=_env_bool("WORKFLOW_THREAD_STAGE_OUTPUTS", default=False),
            heartbeat_sec=max(0.0, _env_float("WORKFLOW_STREAM_HEARTBEAT_SEC", 15.0)),
            stream_buffer=max(1, _env_int("WORKFLOW_STREAM_BUFFER", 64)),
            notification_buffer=max(0, _env_int("WORKFLOW_NOTIFICATION_BUFFER", 16)),
            close_timeout_sec=max(0.1, _env_float("WORKFLOW_STREAM_CLOSE_TIMEOUT_SEC", 5.0)),
            http_log=_env_bool("WORKFLOW_HTTP_LOG", default=False),
            http_log_headers=_env_bool("WORKFLOW_HTTP_LOG_HEADERS", default=False),
            http_log_body_max_bytes=max(0, _env_int("WORKFLOW_HTTP_LOG_BODY_MAX_BYTES", 4096)),
            log_level=(os.getenv("WORKFLOW_LOG_LEVEL") or "INFO").strip().upper(),
        )
