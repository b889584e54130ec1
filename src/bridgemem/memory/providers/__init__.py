"""Online embedding providers and their registry.

These providers embed texts synchronously and are the fallback whenever
batch mode is disabled or a batch run fails.
"""

from __future__ import annotations

from dataclasses import dataclass
import random
import re
from types import MappingProxyType
from typing import (
    TYPE_CHECKING,
    Callable,
    Mapping,
    Protocol,
    Sequence,
    runtime_checkable,
)

import numpy as np

from bridgemem.core.logging import Logger

__all__ = [
    "EmbeddingVector",
    "EmbeddingMatrix",
    "EmbedRequestOptions",
    "EmbeddingProviderCaps",
    "EmbeddingProviderModel",
    "EmbeddingsProvider",
    "ProviderFactory",
    "ProviderInitContext",
    "ProviderRegistry",
    "ProviderRegistryError",
    "ProviderNotRegisteredError",
    "GeminiEmbeddingsProvider",
    "OpenAIEmbeddingsProvider",
    "compute_backoff",
    "gemini_provider_factory",
    "is_retryable_message",
    "normalize_embedding",
    "openai_provider_factory",
    "register_builtin_providers",
    "create_default_provider_registry",
]

EmbeddingVector = tuple[float, ...]
EmbeddingMatrix = tuple[EmbeddingVector, ...]

BACKOFF_BASE = 0.5
BACKOFF_CAP = 8.0
JITTER_RATIO = 0.2
MAX_RETRIES = 3

_RETRYABLE_PATTERN = re.compile(
    r"(rate[_ ]limit|too many requests|429|resource has been exhausted|5\d\d|cloudflare)",
    re.IGNORECASE,
)


def is_retryable_message(message: str) -> bool:
    """Return ``True`` for rate-limit and server-side error messages."""

    return bool(_RETRYABLE_PATTERN.search(message))


def compute_backoff(retry: int, rng: random.Random) -> float:
    """Return the delay before retry number ``retry`` (0-based)."""

    base = BACKOFF_BASE * (2**retry)
    delay = base * (1.0 + rng.uniform(0.0, JITTER_RATIO))
    return round(min(delay, BACKOFF_CAP), 3)


def normalize_embedding(values: Sequence[float]) -> EmbeddingVector:
    """Return ``values`` scaled to unit length with non-finite entries zeroed."""

    vector = np.nan_to_num(
        np.asarray(values, dtype=np.float64),
        nan=0.0,
        posinf=0.0,
        neginf=0.0,
    )
    magnitude = float(np.linalg.norm(vector))
    if magnitude < 1e-10:
        return tuple(float(value) for value in vector)
    return tuple(float(value) for value in vector / magnitude)


@dataclass(frozen=True, slots=True)
class EmbedRequestOptions:
    """Request tuning options shared across embedding providers."""

    max_batch_size: int
    max_request_tokens: int | None = None

    def __post_init__(self) -> None:
        if self.max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")
        if self.max_request_tokens is not None and self.max_request_tokens < 1:
            raise ValueError("max_request_tokens must be >= 1 when set")


@dataclass(frozen=True, slots=True)
class EmbeddingProviderCaps:
    """Capability metadata surfaced by providers for planning."""

    max_batch_size: int
    max_request_tokens: int | None = None

    def __post_init__(self) -> None:
        if self.max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")


@dataclass(frozen=True, slots=True)
class EmbeddingProviderModel:
    """Model descriptor returned from providers when resolving dims."""

    provider: str
    name: str
    dim: int | None = None

    def __post_init__(self) -> None:
        provider = self.provider.strip().lower()
        if not provider:
            raise ValueError("provider cannot be empty")
        object.__setattr__(self, "provider", provider)

        name = self.name.strip()
        if not name:
            raise ValueError("model name cannot be empty")
        object.__setattr__(self, "name", name)

        if self.dim is not None and self.dim < 1:
            raise ValueError("dim must be >= 1 when provided")

    @property
    def key(self) -> str:
        """Return the canonical provider:model key."""

        return f"{self.provider}:{self.name}"


@runtime_checkable
class EmbeddingsProvider(Protocol):
    """Boundary contract for online embedding providers."""

    def describe_model(self, model: str) -> EmbeddingProviderModel:
        """Return provider metadata for ``model``."""

    def capabilities(
        self,
        *,
        model: str | None = None,
    ) -> EmbeddingProviderCaps:
        """Return provider-level or model-specific capability hints."""

    def embed_texts(
        self,
        texts: Sequence[str],
        *,
        model: str,
        options: EmbedRequestOptions,
    ) -> EmbeddingMatrix:
        """Embed ``texts`` using ``model`` honoring ``options`` constraints."""


@dataclass(frozen=True, slots=True)
class ProviderInitContext:
    """Construction context supplied to provider factories."""

    logger: Logger
    config: Mapping[str, object] | None = None

    def __post_init__(self) -> None:
        config = dict(self.config or {})
        object.__setattr__(self, "config", MappingProxyType(config))


ProviderFactory = Callable[[ProviderInitContext], EmbeddingsProvider]
"""Factory callable responsible for instantiating providers."""


class ProviderRegistryError(RuntimeError):
    """Base error type raised when interacting with the provider registry."""


class ProviderNotRegisteredError(ProviderRegistryError):
    """Raised when a provider lookup fails for the requested key."""


class ProviderRegistry:
    """Mutable registry mapping provider keys to factory callables."""

    def __init__(
        self,
        factories: Mapping[str, ProviderFactory] | None = None,
    ) -> None:
        self._factories: dict[str, ProviderFactory] = {}
        if factories:
            for key, factory in factories.items():
                self.register(key, factory)

    @staticmethod
    def _normalize_key(key: str) -> str:
        normalized = key.strip().lower()
        if not normalized:
            raise ValueError("provider key cannot be empty")
        return normalized

    def register(self, key: str, factory: ProviderFactory) -> None:
        """Register ``factory`` under ``key``; errors if key already present."""

        normalized = self._normalize_key(key)
        if normalized in self._factories:
            raise ProviderRegistryError(
                f"Provider {normalized!r} already registered",
            )
        self._factories[normalized] = factory

    def get_factory(self, key: str) -> ProviderFactory:
        """Return the factory registered for ``key`` or raise."""

        normalized = self._normalize_key(key)
        try:
            return self._factories[normalized]
        except KeyError as exc:
            raise ProviderNotRegisteredError(
                f"No provider registered under key {normalized!r}",
            ) from exc

    def create(
        self,
        key: str,
        *,
        logger: Logger,
        config: Mapping[str, object] | None = None,
    ) -> EmbeddingsProvider:
        """Instantiate the provider registered under ``key``."""

        factory = self.get_factory(key)
        context = ProviderInitContext(logger=logger, config=config)
        return factory(context)

    def snapshot(self) -> Mapping[str, ProviderFactory]:
        """Return an immutable view of registered provider factories."""

        return MappingProxyType(dict(self._factories))


if TYPE_CHECKING:  # pragma: no cover - type checker imports only
    from .gemini import GeminiEmbeddingsProvider, gemini_provider_factory
    from .openai import OpenAIEmbeddingsProvider, openai_provider_factory


def __getattr__(name: str) -> object:
    if name in {"OpenAIEmbeddingsProvider", "openai_provider_factory"}:
        from .openai import OpenAIEmbeddingsProvider, openai_provider_factory

        exports = {
            "OpenAIEmbeddingsProvider": OpenAIEmbeddingsProvider,
            "openai_provider_factory": openai_provider_factory,
        }
        return exports[name]
    if name in {"GeminiEmbeddingsProvider", "gemini_provider_factory"}:
        from .gemini import GeminiEmbeddingsProvider, gemini_provider_factory

        exports = {
            "GeminiEmbeddingsProvider": GeminiEmbeddingsProvider,
            "gemini_provider_factory": gemini_provider_factory,
        }
        return exports[name]

    message = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(message)


def __dir__() -> list[str]:
    return sorted({*globals(), *__all__})


def _load_openai_factory() -> ProviderFactory:
    from .openai import openai_provider_factory

    return openai_provider_factory


def _load_gemini_factory() -> ProviderFactory:
    from .gemini import gemini_provider_factory

    return gemini_provider_factory


def register_builtin_providers(
    registry: ProviderRegistry,
) -> ProviderRegistry:
    """Register built-in embedding providers on ``registry``."""

    registered = registry.snapshot()
    if "openai" not in registered:
        registry.register("openai", _load_openai_factory())
    if "gemini" not in registered:
        registry.register("gemini", _load_gemini_factory())
    return registry


def create_default_provider_registry() -> ProviderRegistry:
    """Return a provider registry populated with built-in providers."""

    registry = ProviderRegistry()
    register_builtin_providers(registry)
    return registry
