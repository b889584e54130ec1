"""Configuration models and loaders for :mod:`bridgemem`."""

from __future__ import annotations

from collections.abc import Mapping as MappingABC
import hashlib
import json
import os
from typing import Any, Literal, Mapping

import tomllib
from pydantic import BaseModel, Field, field_validator, model_validator

from bridgemem.resources import get_resource

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_OPENAI_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_GEMINI_EMBEDDING_MODEL = "gemini-embedding-001"

MEMORY_SOURCE = "memory"
SESSIONS_SOURCE = "sessions"

ProviderName = Literal["openai", "gemini"]

_API_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "gemini": "GEMINI_API_KEY",
}
_AUTH_HEADERS = frozenset({"authorization", "x-goog-api-key"})


class BatchSettings(BaseModel):
    """Batch embedding settings shared by the OpenAI and Gemini paths."""

    enabled: bool = Field(
        default=True,
        description="Whether batch embedding jobs are attempted at all.",
    )
    wait: bool = Field(
        default=True,
        description="Poll submitted jobs until completion instead of failing.",
    )
    concurrency: int = Field(
        default=2,
        description="Maximum batch groups submitted concurrently.",
    )
    poll_interval_ms: int = Field(
        default=2000,
        description="Milliseconds between job status checks.",
    )
    timeout_minutes: int = Field(
        default=60,
        description="Minutes to wait for a job before reporting a timeout.",
    )

    model_config = {"frozen": True}

    @field_validator("concurrency")
    @classmethod
    def _clamp_concurrency(cls, value: int) -> int:
        return max(1, value)

    @field_validator("poll_interval_ms")
    @classmethod
    def _clamp_poll_interval(cls, value: int) -> int:
        return max(100, value)

    @field_validator("timeout_minutes")
    @classmethod
    def _clamp_timeout(cls, value: int) -> int:
        return max(1, value)

    @property
    def poll_interval(self) -> float:
        """Poll interval in seconds."""

        return self.poll_interval_ms / 1000.0

    @property
    def timeout(self) -> float:
        """Job deadline in seconds."""

        return self.timeout_minutes * 60.0


class RemoteSettings(BaseModel):
    """Remote embedding endpoint configuration."""

    base_url: str = Field(
        default="",
        description="Provider base URL; blank selects the provider default.",
    )
    api_key: str = Field(
        default="",
        description="API key; blank falls back to the provider env var.",
    )
    headers: dict[str, str] = Field(
        default_factory=dict,
        description="Extra HTTP headers sent with every provider request.",
    )
    batch: BatchSettings = Field(default_factory=BatchSettings)

    model_config = {"frozen": True, "str_strip_whitespace": True}


class VectorSettings(BaseModel):
    """Vector extension settings."""

    enabled: bool = Field(
        default=True,
        description="Whether the sqlite vector extension is used.",
    )
    extension_path: str = Field(
        default="",
        description="Loadable extension path; blank assumes compiled-in vec0.",
    )

    model_config = {"frozen": True, "str_strip_whitespace": True}


class StoreSettings(BaseModel):
    """Storage settings for the memory index."""

    vector: VectorSettings = Field(default_factory=VectorSettings)

    model_config = {"frozen": True}


class CacheSettings(BaseModel):
    """Embedding cache settings."""

    enabled: bool = Field(
        default=True,
        description="Whether embeddings are memoized in the cache table.",
    )
    max_entries: int = Field(
        default=0,
        description="Prune the cache to this many rows; 0 disables pruning.",
    )

    model_config = {"frozen": True}

    @field_validator("max_entries")
    @classmethod
    def _clamp_max_entries(cls, value: int) -> int:
        return max(0, value)


class SyncSettings(BaseModel):
    """Re-sync scheduling settings."""

    session_debounce_ms: int = Field(
        default=5000,
        description="Quiet period before a session change triggers a sync.",
    )

    model_config = {"frozen": True}

    @field_validator("session_debounce_ms")
    @classmethod
    def _default_debounce(cls, value: int) -> int:
        return value if value > 0 else 5000

    @property
    def session_debounce(self) -> float:
        """Session debounce in seconds."""

        return self.session_debounce_ms / 1000.0


class ExperimentalSettings(BaseModel):
    """Feature flags that are not yet on by default."""

    session_memory: bool = Field(
        default=False,
        description="Index chat sessions alongside memory files.",
    )

    model_config = {"frozen": True}


class MemorySettings(BaseModel):
    """Resolved configuration for one memory manager."""

    provider: ProviderName = Field(
        default="openai",
        description="Embedding provider used for this scope.",
    )
    model: str = Field(
        default="",
        description="Embedding model; blank selects the provider default.",
    )
    sources: tuple[str, ...] = Field(
        default=(MEMORY_SOURCE,),
        description="Content sources indexed into memory.",
    )
    remote: RemoteSettings = Field(default_factory=RemoteSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    experimental: ExperimentalSettings = Field(
        default_factory=ExperimentalSettings,
    )

    model_config = {"frozen": True, "str_strip_whitespace": True}

    @field_validator("provider", mode="before")
    @classmethod
    def _normalize_provider(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @model_validator(mode="after")
    def _normalize(self) -> "MemorySettings":
        """Fill the default model and filter unsupported sources."""

        if not self.model:
            default = (
                DEFAULT_GEMINI_EMBEDDING_MODEL
                if self.provider == "gemini"
                else DEFAULT_OPENAI_EMBEDDING_MODEL
            )
            object.__setattr__(self, "model", default)

        allowed = {MEMORY_SOURCE}
        if self.experimental.session_memory:
            allowed.add(SESSIONS_SOURCE)
        normalized = tuple(
            dict.fromkeys(
                source.strip().lower()
                for source in self.sources
                if source.strip().lower() in allowed
            )
        )
        object.__setattr__(self, "sources", normalized or (MEMORY_SOURCE,))
        return self

    @property
    def base_url(self) -> str:
        """Return the configured base URL without a trailing slash."""

        raw = self.remote.base_url
        if not raw:
            raw = (
                DEFAULT_GEMINI_BASE_URL
                if self.provider == "gemini"
                else DEFAULT_OPENAI_BASE_URL
            )
        return raw.rstrip("/")

    @property
    def session_memory_enabled(self) -> bool:
        """Return ``True`` when session transcripts are indexed."""

        return (
            self.experimental.session_memory
            and SESSIONS_SOURCE in self.sources
        )

    @property
    def provider_key(self) -> str:
        """Fingerprint of the endpoint identity used to key cache rows.

        Authentication headers are excluded so rotating a key does not
        invalidate previously cached embeddings.
        """

        headers = {
            key.lower(): value
            for key, value in self.remote.headers.items()
            if key.lower() not in _AUTH_HEADERS
        }
        payload = json.dumps(
            {
                "provider": self.provider,
                "model": self.model,
                "base_url": self.base_url,
                "headers": headers,
            },
            sort_keys=True,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def resolve_api_key(
        self,
        environ: Mapping[str, str] | None = None,
    ) -> str:
        """Return the configured API key or the provider's env variable."""

        if self.remote.api_key:
            return self.remote.api_key
        env = os.environ if environ is None else environ
        return env.get(_API_KEY_ENV[self.provider], "").strip()


class AppConfig(BaseModel):
    """Root configuration for :mod:`bridgemem`."""

    log_level: str = Field(
        default="INFO",
        description="Default logging level for the application runtime.",
    )
    memory: MemorySettings = Field(default_factory=MemorySettings)

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
    }

    @model_validator(mode="after")
    def _post_process(self) -> "AppConfig":
        object.__setattr__(self, "log_level", self.log_level.upper())
        return self


DEFAULTS_RESOURCE_NAME = "bridgemem.defaults.toml"

_ENV_PREFIX = "BRIDGEMEM_"
_ENV_KEYS: Mapping[str, tuple[str, ...]] = {
    "LOG_LEVEL": ("log_level",),
    "MEMORY_PROVIDER": ("memory", "provider"),
    "MEMORY_MODEL": ("memory", "model"),
    "MEMORY_BASE_URL": ("memory", "remote", "base_url"),
    "VECTOR_EXTENSION_PATH": ("memory", "store", "vector", "extension_path"),
}


def load_packaged_defaults() -> dict[str, Any]:
    """Load the packaged defaults as a plain dictionary.

    Example:
        >>> load_packaged_defaults()["log_level"]
        'INFO'
    """

    text = get_resource(DEFAULTS_RESOURCE_NAME).read_text(encoding="utf-8")
    return tomllib.loads(text)


def _deep_merge(
    base: Mapping[str, Any],
    overlay: Mapping[str, Any],
) -> dict[str, Any]:
    """Recursively merge ``overlay`` into ``base`` returning a new dict."""

    merged: dict[str, Any] = dict(base)
    for key, value in overlay.items():
        if (
            key in merged
            and isinstance(merged[key], MappingABC)
            and isinstance(value, MappingABC)
        ):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def env_config_from_environ(
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Translate ``BRIDGEMEM_*`` variables into a config overlay."""

    env = os.environ if environ is None else environ
    overlay: dict[str, Any] = {}
    for suffix, path in _ENV_KEYS.items():
        value = env.get(f"{_ENV_PREFIX}{suffix}")
        if value is None or not value.strip():
            continue
        cursor = overlay
        for segment in path[:-1]:
            cursor = cursor.setdefault(segment, {})
        cursor[path[-1]] = value.strip()
    return overlay


def load_config(
    *,
    defaults: Mapping[str, Any] | None = None,
    user_config: Mapping[str, Any] | None = None,
    env_config: Mapping[str, Any] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> AppConfig:
    """Load configuration according to the precedence stack.

    Later layers win: ``overrides`` > ``env_config`` > ``user_config`` >
    ``defaults``. Packaged defaults are used when ``defaults`` is omitted.
    """

    stack = dict(defaults if defaults is not None else load_packaged_defaults())
    for layer in (user_config, env_config, overrides):
        if layer:
            stack = _deep_merge(stack, layer)
    return AppConfig.model_validate(stack)


__all__ = [
    "AppConfig",
    "BatchSettings",
    "CacheSettings",
    "DEFAULTS_RESOURCE_NAME",
    "DEFAULT_GEMINI_BASE_URL",
    "DEFAULT_GEMINI_EMBEDDING_MODEL",
    "DEFAULT_OPENAI_BASE_URL",
    "DEFAULT_OPENAI_EMBEDDING_MODEL",
    "ExperimentalSettings",
    "MEMORY_SOURCE",
    "MemorySettings",
    "ProviderName",
    "RemoteSettings",
    "SESSIONS_SOURCE",
    "StoreSettings",
    "SyncSettings",
    "VectorSettings",
    "env_config_from_environ",
    "load_config",
    "load_packaged_defaults",
]
