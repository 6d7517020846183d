from __future__ import annotations

import logging
import os
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationError


# Environment variable names
ENV_BACKEND = "GRASP_STATE_BACKEND"
ENV_STATE_PATH = "GRASP_STATE_PATH"
ENV_STATE_BUCKET = "GRASP_STATE_BUCKET"
ENV_STATE_PREFIX = "GRASP_STATE_PREFIX"
ENV_FERNET_KEY = "GRASP_FERNET_KEY"
ENV_QUOTA_BYTES = "GRASP_STATE_QUOTA_BYTES"
ENV_MAX_AGE_DAYS = "GRASP_STATE_MAX_AGE_DAYS"
ENV_AUTOSAVE_SECONDS = "GRASP_AUTOSAVE_SECONDS"
ENV_LOG_LEVEL = "GRASP_LOG_LEVEL"

ENV_LLM_PROVIDER = "LLM_PROVIDER"
ENV_OLLAMA_ENDPOINT = "OLLAMA_ENDPOINT"
ENV_OLLAMA_MODEL = "OLLAMA_MODEL"
ENV_LLM_TEMPERATURE = "LLM_TEMPERATURE"
ENV_LLM_MAX_TOKENS = "LLM_MAX_TOKENS"
ENV_LLM_TIMEOUT = "LLM_TIMEOUT"

DEFAULT_STATE_PATH = ".cache/grasp_state.json"
# Same order of magnitude as browser local storage
DEFAULT_QUOTA_BYTES = 5 * 1024 * 1024


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


def _require(v: Optional[str], what: str) -> str:
    if not v:
        raise RuntimeError(f"Missing required configuration: {what}")
    return v


class PersistenceSettings(BaseModel):
    """
    Where and how page state is persisted.

    - backend: "memory" (process-local), "file" (single JSON file) or "s3".
    - quota_bytes: capacity of the keyed medium; 0 disables the limit.
    - max_age_days: freshness window for stored records.
    - autosave_seconds: period of the unconditional re-save timer.
    """

    backend: Literal["memory", "file", "s3"] = "file"
    path: str = DEFAULT_STATE_PATH
    bucket: Optional[str] = None
    prefix: str = "grasp/state/"
    fernet_key: Optional[str] = None
    quota_bytes: int = Field(default=DEFAULT_QUOTA_BYTES, ge=0)
    max_age_days: float = Field(default=7.0, gt=0)
    autosave_seconds: float = Field(default=30.0, gt=0)

    @property
    def max_age_ms(self) -> int:
        return int(self.max_age_days * 24 * 60 * 60 * 1000)

    @classmethod
    def from_env(cls) -> "PersistenceSettings":
        raw = {
            "backend": _getenv(ENV_BACKEND),
            "path": _getenv(ENV_STATE_PATH),
            "bucket": _getenv(ENV_STATE_BUCKET),
            "prefix": _getenv(ENV_STATE_PREFIX),
            "fernet_key": _getenv(ENV_FERNET_KEY),
            "quota_bytes": _getenv(ENV_QUOTA_BYTES),
            "max_age_days": _getenv(ENV_MAX_AGE_DAYS),
            "autosave_seconds": _getenv(ENV_AUTOSAVE_SECONDS),
        }
        try:
            settings = cls(**{k: v for k, v in raw.items() if v is not None})
        except ValidationError as ve:
            raise RuntimeError(f"Invalid persistence configuration: {ve}") from ve

        if settings.backend == "s3":
            _require(settings.bucket, ENV_STATE_BUCKET)
            _require(settings.fernet_key, ENV_FERNET_KEY)
        return settings


class LLMSettings(BaseModel):
    provider: Literal["ollama"] = "ollama"
    endpoint: str = "http://localhost:11434"
    model: str = "llama3.1:8b"
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2000, gt=0)
    timeout: float = Field(default=60.0, gt=0)

    @classmethod
    def from_env(cls) -> "LLMSettings":
        raw = {
            "provider": _getenv(ENV_LLM_PROVIDER),
            "endpoint": _getenv(ENV_OLLAMA_ENDPOINT),
            "model": _getenv(ENV_OLLAMA_MODEL),
            "temperature": _getenv(ENV_LLM_TEMPERATURE),
            "max_tokens": _getenv(ENV_LLM_MAX_TOKENS),
            "timeout": _getenv(ENV_LLM_TIMEOUT),
        }
        try:
            return cls(**{k: v for k, v in raw.items() if v is not None})
        except ValidationError as ve:
            raise RuntimeError(f"Invalid LLM configuration: {ve}") from ve


def configure_logging(level: Optional[str] = None) -> None:
    """Root logging setup for entry points (handlers, scripts)."""
    name = (level or _getenv(ENV_LOG_LEVEL, "INFO") or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


__all__ = [
    "PersistenceSettings",
    "LLMSettings",
    "configure_logging",
]
