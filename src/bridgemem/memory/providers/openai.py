"""OpenAI online embeddings provider."""

from __future__ import annotations

import hashlib
import random
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Sequence

import httpx
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    OpenAI,
    RateLimitError,
)
import tiktoken

from bridgemem.core.config import (
    DEFAULT_OPENAI_BASE_URL,
    DEFAULT_OPENAI_EMBEDDING_MODEL,
)
from bridgemem.core.logging import Logger
from bridgemem.memory.errors import (
    EmbeddingProviderConfigurationError,
    EmbeddingProviderError,
    EmbeddingProviderInputTooLargeError,
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
    EmbeddingVector,
    EmbeddingsProvider,
    ProviderInitContext,
    compute_backoff,
    is_retryable_message,
    normalize_embedding,
)

__all__ = [
    "OpenAIEmbeddingsProvider",
    "openai_provider_factory",
]

_DEFAULT_TIMEOUT = 60.0
_REQUEST_TOKEN_BUDGET = 8_000
_FALLBACK_ENCODING = "cl100k_base"
_TOKEN_CACHE_LIMIT = 4_096


@dataclass(frozen=True, slots=True)
class _OpenAIModelMetadata:
    name: str
    dim: int
    max_batch_size: int
    max_input_tokens: int


_OPENAI_MODELS: Mapping[str, _OpenAIModelMetadata] = {
    "text-embedding-3-small": _OpenAIModelMetadata(
        name="text-embedding-3-small",
        dim=1_536,
        max_batch_size=128,
        max_input_tokens=8_191,
    ),
    "text-embedding-3-large": _OpenAIModelMetadata(
        name="text-embedding-3-large",
        dim=3_072,
        max_batch_size=64,
        max_input_tokens=8_191,
    ),
    "text-embedding-ada-002": _OpenAIModelMetadata(
        name="text-embedding-ada-002",
        dim=1_536,
        max_batch_size=128,
        max_input_tokens=8_191,
    ),
}


def normalize_openai_model(model: str) -> str:
    """Strip routing prefixes and fill the default model name."""

    trimmed = model.strip()
    if not trimmed:
        return DEFAULT_OPENAI_EMBEDDING_MODEL
    return trimmed.removeprefix("openai/")


@dataclass(slots=True)
class _Batch:
    texts: tuple[str, ...]
    tokens: int


class OpenAIEmbeddingsProvider(EmbeddingsProvider):
    """Embed texts via the OpenAI embeddings API."""

    def __init__(
        self,
        *,
        logger: Logger,
        config: Mapping[str, object] | None = None,
        client: OpenAI | None = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], float] = time.perf_counter,
        rng: random.Random | None = None,
    ) -> None:
        self.logger = logger
        self._config = dict(config or {})
        self._sleep = sleep
        self._now = now
        self._rng = rng or random.Random()
        self._token_cache: dict[tuple[str, str], int] = {}
        self._dim_cache: dict[str, int] = {}
        self._stats = {"requests": 0, "retries": 0, "failures": 0}
        self._client = client or self._build_client()

    @property
    def stats(self) -> Mapping[str, int]:
        """Return counters captured during the provider lifetime."""

        return dict(self._stats)

    # ------------------------------------------------------------------#
    # Provider interface
    # ------------------------------------------------------------------#
    def describe_model(self, model: str) -> EmbeddingProviderModel:
        name = normalize_openai_model(model)
        metadata = _OPENAI_MODELS.get(name)
        dim = metadata.dim if metadata else self._dim_cache.get(name)
        return EmbeddingProviderModel(provider="openai", name=name, dim=dim)

    def capabilities(
        self,
        *,
        model: str | None = None,
    ) -> EmbeddingProviderCaps:
        metadata = _OPENAI_MODELS.get(normalize_openai_model(model or ""))
        return EmbeddingProviderCaps(
            max_batch_size=metadata.max_batch_size if metadata else 128,
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

        name = normalize_openai_model(model)
        caps = self.capabilities(model=name)
        limit = min(options.max_batch_size, caps.max_batch_size)
        token_budget = options.max_request_tokens or caps.max_request_tokens
        metadata = _OPENAI_MODELS.get(name)
        input_limit = metadata.max_input_tokens if metadata else None

        token_counts = [self._estimate_tokens(model=name, text=text) for text in texts]
        for tokens in token_counts:
            if input_limit is not None and tokens > input_limit:
                raise EmbeddingProviderInputTooLargeError(
                    f"Input text exceeds OpenAI token limit ({tokens} > {input_limit}).",
                    provider="openai",
                    model=name,
                    token_count=tokens,
                    limit=input_limit,
                )

        results: list[EmbeddingVector] = []
        for batch in self._chunk_batches(
            texts,
            token_counts,
            limit=limit,
            token_budget=token_budget or _REQUEST_TOKEN_BUDGET,
        ):
            vectors = self._invoke_with_retries(
                model=name,
                batch=batch.texts,
                token_count=batch.tokens,
            )
            if len(vectors) != len(batch.texts):
                raise EmbeddingProviderRequestError(
                    (
                        "OpenAI returned "
                        f"{len(vectors)} embeddings for {len(batch.texts)} inputs."
                    ),
                    provider="openai",
                    model=name,
                )
            results.extend(normalize_embedding(vector) for vector in vectors)

        if results:
            self._dim_cache[name] = len(results[0])
        return tuple(results)

    # ------------------------------------------------------------------#
    # Internal helpers
    # ------------------------------------------------------------------#
    def _build_client(self) -> OpenAI:
        api_key = str(self._config.get("api_key") or "").strip()
        if not api_key:
            raise EmbeddingProviderConfigurationError(
                "openai embeddings require api_key",
                provider="openai",
                model="*",
            )
        base_url = str(self._config.get("base_url") or DEFAULT_OPENAI_BASE_URL)
        headers = self._config.get("headers") or {}
        timeout = self._config.get("timeout")
        return OpenAI(
            api_key=api_key,
            base_url=base_url,
            default_headers={
                str(key): str(value)
                for key, value in dict(headers).items()
                if str(value).strip()
            },
            timeout=float(timeout) if isinstance(timeout, (int, float)) else _DEFAULT_TIMEOUT,
            max_retries=0,
        )

    def _chunk_batches(
        self,
        texts: Sequence[str],
        token_counts: Sequence[int],
        *,
        limit: int,
        token_budget: int,
    ) -> list[_Batch]:
        """Group texts under ``limit`` items and ``token_budget`` tokens.

        A single text over the budget is sent on its own.
        """

        batches: list[_Batch] = []
        current: list[str] = []
        current_tokens = 0

        for text, tokens in zip(texts, token_counts):
            would_exceed_batch = len(current) >= limit
            would_exceed_tokens = current_tokens + tokens > token_budget
            if current and (would_exceed_batch or would_exceed_tokens):
                batches.append(_Batch(texts=tuple(current), tokens=current_tokens))
                current = []
                current_tokens = 0
            current.append(text)
            current_tokens += tokens

        if current:
            batches.append(_Batch(texts=tuple(current), tokens=current_tokens))
        return batches

    def _estimate_tokens(self, *, model: str, text: str) -> int:
        key = (model, hashlib.sha1(text.encode("utf-8")).hexdigest())
        cached = self._token_cache.get(key)
        if cached is not None:
            return cached
        try:
            encoding = tiktoken.encoding_for_model(model)
        except KeyError:
            encoding = tiktoken.get_encoding(_FALLBACK_ENCODING)
        estimate = len(encoding.encode(text, disallowed_special=()))
        if len(self._token_cache) >= _TOKEN_CACHE_LIMIT:
            self._token_cache.pop(next(iter(self._token_cache)))
        self._token_cache[key] = estimate
        return estimate

    def _invoke_with_retries(
        self,
        *,
        model: str,
        batch: Sequence[str],
        token_count: int,
    ) -> list[list[float]]:
        retries = 0
        while True:
            start = self._now()
            try:
                response = self._client.embeddings.create(
                    model=model,
                    input=list(batch),
                    encoding_format="float",
                )
            except Exception as exc:  # pragma: no branch - handled below
                status, request_id = self._extract_context(exc)
                retryable = self._is_retryable(exc)
                if not retryable or retries >= MAX_RETRIES:
                    self._stats["failures"] += 1
                    error = self._translate_exception(
                        exc,
                        retries=retries,
                        model=model,
                        status=status,
                        request_id=request_id,
                    )
                    raise error from exc

                delay = compute_backoff(retries, self._rng)
                self.logger.warning(
                    "openai-embed-retry",
                    provider="openai",
                    model=model,
                    retry=retries + 1,
                    max_retries=MAX_RETRIES,
                    retry_delay=delay,
                    error_type=exc.__class__.__name__,
                    status_code=status,
                    request_id=request_id,
                )
                self._stats["retries"] += 1
                retries += 1
                self._sleep(delay)
                continue

            self._stats["requests"] += 1
            self.logger.debug(
                "openai-embed-request",
                provider="openai",
                model=model,
                batch_size=len(batch),
                token_count=token_count,
                latency=self._now() - start,
                retries=retries,
            )
            return [list(item.embedding) for item in response.data]

    @staticmethod
    def _is_retryable(exc: Exception) -> bool:
        if isinstance(
            exc,
            (
                RateLimitError,
                APITimeoutError,
                APIConnectionError,
                httpx.TimeoutException,
                httpx.NetworkError,
            ),
        ):
            return True
        if isinstance(exc, APIStatusError):
            return exc.status_code >= 500
        return is_retryable_message(str(exc))

    @staticmethod
    def _extract_context(exc: Exception) -> tuple[int | None, str | None]:
        status: int | None = None
        request_id: str | None = None
        if isinstance(exc, APIStatusError):
            status = exc.status_code
            request_id = exc.request_id
        return status, request_id

    @staticmethod
    def _translate_exception(
        exc: Exception,
        *,
        retries: int,
        model: str,
        status: int | None,
        request_id: str | None,
    ) -> EmbeddingProviderError:
        message = str(exc) or exc.__class__.__name__
        context = {
            "provider": "openai",
            "model": model,
            "status_code": status,
            "request_id": request_id,
        }
        if retries >= MAX_RETRIES:
            return EmbeddingProviderRetryExceededError(
                f"Exceeded retry attempts when calling OpenAI embeddings API: {message}",
                attempts=retries + 1,
                **context,
            )
        if isinstance(exc, RateLimitError):
            return EmbeddingProviderRateLimitError(message, **context)
        if isinstance(
            exc,
            (APITimeoutError, APIConnectionError, httpx.HTTPError),
        ):
            return EmbeddingProviderRetryableError(message, **context)
        if isinstance(exc, APIStatusError) and status and status >= 500:
            return EmbeddingProviderRetryableError(message, **context)
        return EmbeddingProviderRequestError(message, **context)


def openai_provider_factory(
    context: ProviderInitContext,
) -> OpenAIEmbeddingsProvider:
    """Factory registered with the provider registry."""

    return OpenAIEmbeddingsProvider(
        logger=context.logger,
        config=context.config,
    )
