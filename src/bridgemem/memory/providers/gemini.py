"""Gemini online embeddings provider using ``batchEmbedContents``."""

from __future__ import annotations

import json
import random
import time
from typing import Any, Callable, Mapping, Sequence

import httpx

from bridgemem.core.config import (
    DEFAULT_GEMINI_BASE_URL,
    DEFAULT_GEMINI_EMBEDDING_MODEL,
)
from bridgemem.core.logging import Logger
from bridgemem.memory.batch import build_headers
from bridgemem.memory.batch.gemini import gemini_model_path
from bridgemem.memory.errors import (
    EmbeddingProviderConfigurationError,
    EmbeddingProviderError,
    EmbeddingProviderRateLimitError,
    EmbeddingProviderRequestError,
    EmbeddingProviderRetryExceededError,
    EmbeddingProviderRetryableError,
)

from . import (
    MAX_RETRIES,
    EmbedRequestOptions,
    EmbeddingMatrix,
    EmbeddingProviderCaps,
    EmbeddingProviderModel,
    EmbeddingsProvider,
    ProviderInitContext,
    compute_backoff,
    is_retryable_message,
    normalize_embedding,
)

__all__ = [
    "GeminiEmbeddingsProvider",
    "gemini_provider_factory",
    "normalize_gemini_model",
]

_DEFAULT_TIMEOUT = 60.0
_MAX_BATCH_SIZE = 100
_REQUEST_TOKEN_BUDGET = 8_000
_TASK_TYPE = "RETRIEVAL_DOCUMENT"


def normalize_gemini_model(model: str) -> str:
    """Strip resource and routing prefixes and fill the default model."""

    trimmed = model.strip()
    if not trimmed:
        return DEFAULT_GEMINI_EMBEDDING_MODEL
    trimmed = trimmed.removeprefix("models/")
    for prefix in ("gemini/", "google/"):
        if trimmed.startswith(prefix):
            return trimmed[len(prefix) :]
    return trimmed


def _normalize_base_url(raw: str) -> str:
    trimmed = raw.rstrip("/")
    index = trimmed.find("/openai")
    return trimmed[:index] if index > -1 else trimmed


class GeminiEmbeddingsProvider(EmbeddingsProvider):
    """Embed texts via ``models/{model}:batchEmbedContents``."""

    def __init__(
        self,
        *,
        logger: Logger,
        config: Mapping[str, object] | None = None,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.logger = logger
        self._config = dict(config or {})
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._dim_cache: dict[str, int] = {}

        self._api_key = str(self._config.get("api_key") or "").strip()
        if not self._api_key:
            raise EmbeddingProviderConfigurationError(
                "gemini embeddings require api_key",
                provider="gemini",
                model="*",
            )
        self._base_url = _normalize_base_url(
            str(self._config.get("base_url") or DEFAULT_GEMINI_BASE_URL)
        )
        self._headers = build_headers(
            self._config.get("headers") or {},  # type: ignore[arg-type]
            auth_header="x-goog-api-key",
            auth_value=self._api_key,
        )
        timeout = self._config.get("timeout")
        self._client = client or httpx.Client(
            timeout=float(timeout) if isinstance(timeout, (int, float)) else _DEFAULT_TIMEOUT,
        )

    def describe_model(self, model: str) -> EmbeddingProviderModel:
        name = normalize_gemini_model(model)
        return EmbeddingProviderModel(
            provider="gemini",
            name=name,
            dim=self._dim_cache.get(name),
        )

    def capabilities(
        self,
        *,
        model: str | None = None,
    ) -> EmbeddingProviderCaps:
        return EmbeddingProviderCaps(
            max_batch_size=_MAX_BATCH_SIZE,
            max_request_tokens=_REQUEST_TOKEN_BUDGET,
        )

    def embed_texts(
        self,
        texts: Sequence[str],
        *,
        model: str,
        options: EmbedRequestOptions,
    ) -> EmbeddingMatrix:
        if not texts:
            return ()
        name = normalize_gemini_model(model)
        limit = min(options.max_batch_size, _MAX_BATCH_SIZE)
        budget = options.max_request_tokens or _REQUEST_TOKEN_BUDGET

        results: list[tuple[float, ...]] = []
        for batch in self._chunk_batches(texts, limit=limit, budget=budget):
            vectors = self._invoke_with_retries(model=name, batch=batch)
            results.extend(normalize_embedding(vector) for vector in vectors)
        if results and results[0]:
            self._dim_cache[name] = len(results[0])
        return tuple(results)

    @staticmethod
    def _chunk_batches(
        texts: Sequence[str],
        *,
        limit: int,
        budget: int,
    ) -> list[tuple[str, ...]]:
        # Approximates one token per character.
        batches: list[tuple[str, ...]] = []
        current: list[str] = []
        current_tokens = 0
        for text in texts:
            estimate = len(text)
            if current and (
                len(current) >= limit or current_tokens + estimate > budget
            ):
                batches.append(tuple(current))
                current = []
                current_tokens = 0
            current.append(text)
            current_tokens += estimate
        if current:
            batches.append(tuple(current))
        return batches

    def _batch_url(self, model: str) -> str:
        return f"{self._base_url}/{gemini_model_path(model)}:batchEmbedContents"

    def _post(self, model: str, batch: Sequence[str]) -> list[list[float]]:
        model_path = gemini_model_path(model)
        body = {
            "requests": [
                {
                    "model": model_path,
                    "content": {"parts": [{"text": text}]},
                    "taskType": _TASK_TYPE,
                }
                for text in batch
            ]
        }
        response = self._client.post(
            self._batch_url(model),
            headers=self._headers,
            json=body,
        )
        if not response.is_success:
            raise _StatusFailure(response)
        try:
            payload: Mapping[str, Any] = response.json()
        except json.JSONDecodeError as exc:
            raise EmbeddingProviderRequestError(
                "gemini embeddings failed: invalid JSON response",
                provider="gemini",
                model=model,
                status_code=response.status_code,
            ) from exc

        embeddings = payload.get("embeddings") or []
        vectors: list[list[float]] = []
        for index in range(len(batch)):
            entry = embeddings[index] if index < len(embeddings) else {}
            vectors.append([float(value) for value in entry.get("values") or []])
        return vectors

    def _invoke_with_retries(
        self,
        *,
        model: str,
        batch: Sequence[str],
    ) -> list[list[float]]:
        retries = 0
        while True:
            try:
                vectors = self._post(model, batch)
            except (httpx.HTTPError, _StatusFailure) as exc:
                retryable = self._is_retryable(exc)
                if not retryable or retries >= MAX_RETRIES:
                    raise self._translate_exception(
                        exc,
                        retries=retries,
                        model=model,
                    ) from exc
                delay = compute_backoff(retries, self._rng)
                self.logger.warning(
                    "gemini-embed-retry",
                    provider="gemini",
                    model=model,
                    retry=retries + 1,
                    max_retries=MAX_RETRIES,
                    retry_delay=delay,
                    error=str(exc),
                )
                retries += 1
                self._sleep(delay)
                continue
            self.logger.debug(
                "gemini-embed-request",
                provider="gemini",
                model=model,
                batch_size=len(batch),
                retries=retries,
            )
            return vectors

    @staticmethod
    def _is_retryable(exc: Exception) -> bool:
        if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)):
            return True
        return is_retryable_message(str(exc))

    @staticmethod
    def _translate_exception(
        exc: Exception,
        *,
        retries: int,
        model: str,
    ) -> EmbeddingProviderError:
        status = exc.status_code if isinstance(exc, _StatusFailure) else None
        message = str(exc) or exc.__class__.__name__
        if retries >= MAX_RETRIES:
            return EmbeddingProviderRetryExceededError(
                message,
                provider="gemini",
                model=model,
                status_code=status,
                attempts=retries + 1,
            )
        if status == 429:
            return EmbeddingProviderRateLimitError(
                message,
                provider="gemini",
                model=model,
                status_code=status,
            )
        if isinstance(exc, httpx.HTTPError) or (status is not None and status >= 500):
            return EmbeddingProviderRetryableError(
                message,
                provider="gemini",
                model=model,
                status_code=status,
            )
        return EmbeddingProviderRequestError(
            message,
            provider="gemini",
            model=model,
            status_code=status,
        )


class _StatusFailure(Exception):
    def __init__(self, response: httpx.Response) -> None:
        status = f"{response.status_code} {response.reason_phrase}".strip()
        super().__init__(f"gemini embeddings failed: {status} {response.text}")
        self.status_code = response.status_code


def gemini_provider_factory(
    context: ProviderInitContext,
) -> GeminiEmbeddingsProvider:
    """Factory registered with the provider registry."""

    return GeminiEmbeddingsProvider(
        logger=context.logger,
        config=context.config,
    )
