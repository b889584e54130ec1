from __future__ import annotations

from types import MethodType, SimpleNamespace
from typing import Iterable, Sequence

import pytest
from structlog import get_logger

pytest.importorskip("openai")

import httpx  # noqa: E402  (import after skip guard)
from openai import APIStatusError, RateLimitError  # noqa: E402  (import after skip guard)

from bridgemem.memory.errors import (  # noqa: E402
    EmbeddingProviderConfigurationError,
    EmbeddingProviderInputTooLargeError,
    EmbeddingProviderRequestError,
    EmbeddingProviderRetryExceededError,
)
from bridgemem.memory.providers import EmbedRequestOptions  # noqa: E402
import bridgemem.memory.providers.openai as openai_provider_module  # noqa: E402
from bridgemem.memory.providers.openai import (  # noqa: E402
    OpenAIEmbeddingsProvider,
    normalize_openai_model,
)


class _FakeEmbeddingsAPI:
    """Stub embeddings API returning scripted responses."""

    def __init__(self, script: Iterable[Sequence[Sequence[float]] | Exception]):
        self._script = list(script)
        self.calls: list[tuple[str, tuple[str, ...]]] = []

    def create(
        self,
        *,
        model: str,
        input: Sequence[str],
        encoding_format: str,
    ) -> SimpleNamespace:
        assert encoding_format == "float"
        self.calls.append((model, tuple(input)))
        if not self._script:
            raise AssertionError("unexpected OpenAI call")
        next_item = self._script.pop(0)
        if isinstance(next_item, Exception):
            raise next_item
        data = [SimpleNamespace(embedding=list(vector)) for vector in next_item]
        return SimpleNamespace(data=data)


class _FakeOpenAIClient:
    """Container exposing an embeddings API attribute."""

    def __init__(self, script: Iterable[Sequence[Sequence[float]] | Exception]):
        self.embeddings = _FakeEmbeddingsAPI(script)


def _provider(client: _FakeOpenAIClient, sleeps: list[float] | None = None):
    delays = sleeps if sleeps is not None else []
    return OpenAIEmbeddingsProvider(
        logger=get_logger("test.openai.provider"),
        client=client,  # type: ignore[arg-type]
        sleep=delays.append,
        now=lambda: 0.0,
    )


def _patch_token_estimator(
    provider: OpenAIEmbeddingsProvider,
    values: Iterable[int],
) -> None:
    iterator = iter(values)

    def _estimate(
        self: OpenAIEmbeddingsProvider,
        *,
        model: str,
        text: str,
    ) -> int:
        try:
            return next(iterator)
        except StopIteration:
            return 1

    provider._estimate_tokens = MethodType(_estimate, provider)


def _status_error(code: int, cls=APIStatusError) -> Exception:
    request = httpx.Request("POST", "https://api.openai.com/v1/embeddings")
    response = httpx.Response(status_code=code, request=request)
    return cls(message=f"status {code}", response=response, body=None)


def test_openai_provider_returns_normalized_embeddings_in_batches() -> None:
    client = _FakeOpenAIClient([((3.0, 4.0),), ((0.0, 2.0),)])
    provider = _provider(client)
    _patch_token_estimator(provider, [1, 1])

    vectors = provider.embed_texts(
        ["alpha", "beta"],
        model="openai/text-embedding-3-small",
        options=EmbedRequestOptions(max_batch_size=1),
    )

    assert vectors[0] == pytest.approx((0.6, 0.8))
    assert vectors[1] == pytest.approx((0.0, 1.0))
    assert client.embeddings.calls == [
        ("text-embedding-3-small", ("alpha",)),
        ("text-embedding-3-small", ("beta",)),
    ]
    assert provider.describe_model("text-embedding-3-small").dim == 1_536


def test_openai_provider_splits_batches_by_token_budget() -> None:
    client = _FakeOpenAIClient([((1.0,),), ((1.0,), (1.0,))])
    provider = _provider(client)
    _patch_token_estimator(provider, [5000, 4000, 1000])

    provider.embed_texts(
        ["alpha", "beta", "gamma"],
        model="text-embedding-3-small",
        options=EmbedRequestOptions(max_batch_size=3),
    )

    assert client.embeddings.calls == [
        ("text-embedding-3-small", ("alpha",)),
        ("text-embedding-3-small", ("beta", "gamma")),
    ]


def test_openai_provider_rejects_oversized_input() -> None:
    provider = _provider(_FakeOpenAIClient([]))
    _patch_token_estimator(provider, [10_000])

    with pytest.raises(EmbeddingProviderInputTooLargeError) as exc_info:
        provider.embed_texts(
            ["oversize"],
            model="text-embedding-3-small",
            options=EmbedRequestOptions(max_batch_size=1),
        )

    assert exc_info.value.limit == 8_191
    assert "token limit" in str(exc_info.value).lower()


def test_openai_provider_retries_server_errors_then_succeeds() -> None:
    client = _FakeOpenAIClient([_status_error(503), _status_error(502), ((1.0, 0.0),)])
    sleeps: list[float] = []
    provider = _provider(client, sleeps)
    _patch_token_estimator(provider, [1])

    vectors = provider.embed_texts(
        ["alpha"],
        model="text-embedding-3-small",
        options=EmbedRequestOptions(max_batch_size=1),
    )

    assert vectors == ((1.0, 0.0),)
    assert len(sleeps) == 2
    assert provider.stats["retries"] == 2


def test_openai_provider_gives_up_after_max_retries() -> None:
    script = [_status_error(429, RateLimitError) for _ in range(5)]
    client = _FakeOpenAIClient(script)
    provider = _provider(client)
    _patch_token_estimator(provider, [1])

    with pytest.raises(EmbeddingProviderRetryExceededError) as exc_info:
        provider.embed_texts(
            ["alpha"],
            model="text-embedding-3-small",
            options=EmbedRequestOptions(max_batch_size=1),
        )

    assert exc_info.value.attempts == 4
    assert len(client.embeddings.calls) == 4


def test_openai_provider_does_not_retry_client_errors() -> None:
    client = _FakeOpenAIClient([_status_error(400)])
    provider = _provider(client)
    _patch_token_estimator(provider, [1])

    with pytest.raises(EmbeddingProviderRequestError) as exc_info:
        provider.embed_texts(
            ["alpha"],
            model="text-embedding-3-small",
            options=EmbedRequestOptions(max_batch_size=1),
        )

    assert exc_info.value.status_code == 400
    assert len(client.embeddings.calls) == 1


def test_openai_provider_requires_api_key_without_client() -> None:
    with pytest.raises(EmbeddingProviderConfigurationError):
        OpenAIEmbeddingsProvider(logger=get_logger("test"), config={})


def test_normalize_openai_model() -> None:
    assert normalize_openai_model(" ") == "text-embedding-3-small"
    assert normalize_openai_model("openai/text-embedding-3-large") == (
        "text-embedding-3-large"
    )


class _CountingEncoding:
    def __init__(self) -> None:
        self.calls = 0

    def encode(self, text: str, disallowed_special=()) -> list[int]:
        self.calls += 1
        return [0] * len(text.split())


def test_token_cache_is_bounded_and_does_not_keep_texts(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    encoding = _CountingEncoding()
    monkeypatch.setattr(
        openai_provider_module.tiktoken,
        "encoding_for_model",
        lambda model: encoding,
    )
    monkeypatch.setattr(openai_provider_module, "_TOKEN_CACHE_LIMIT", 3)
    provider = _provider(_FakeOpenAIClient([]))
    texts = [f"chunk number {index} body" for index in range(5)]

    for text in texts:
        assert provider._estimate_tokens(model="text-embedding-3-small", text=text) == 4
    assert provider._estimate_tokens(model="text-embedding-3-small", text=texts[-1]) == 4

    assert encoding.calls == 5
    assert len(provider._token_cache) == 3
    cached_parts = {part for key in provider._token_cache for part in key}
    assert not cached_parts.intersection(texts)
