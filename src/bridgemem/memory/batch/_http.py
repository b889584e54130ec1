"""HTTP plumbing shared by the batch providers."""

from __future__ import annotations

import json
import threading
from typing import Any, Mapping

import httpx

from bridgemem.core.logging import Logger, get_logger

from ..errors import BatchRequestError, BatchTimeoutError
from . import build_headers, check_cancelled

__all__ = ["HttpBatchProvider"]


class HttpBatchProvider:
    """Base class holding the client, endpoint and auth for one provider."""

    name = "http"
    auth_header = "Authorization"

    def __init__(
        self,
        client: httpx.Client,
        *,
        base_url: str,
        api_key: str,
        model: str,
        headers: Mapping[str, str] | None = None,
        logger: Logger | None = None,
    ) -> None:
        if not model.strip():
            raise ValueError("model cannot be blank")
        self._client = client
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self.model = model.strip()
        self._extra_headers = dict(headers or {})
        self.logger = logger or get_logger(
            __name__,
            component="memory-batch",
            provider=self.name,
        )

    def _auth_value(self) -> str | None:
        return self._api_key or None

    def _headers(
        self,
        content_type: str | None = "application/json",
    ) -> httpx.Headers:
        return build_headers(
            self._extra_headers,
            auth_header=self.auth_header,
            auth_value=self._auth_value(),
            content_type=content_type,
        )

    def _send(
        self,
        method: str,
        url: str,
        *,
        action: str,
        cancel: threading.Event | None,
        batch_id: str | None = None,
        headers: httpx.Headers | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        check_cancelled(cancel, provider=self.name, batch_id=batch_id)
        try:
            response = self._client.request(
                method,
                url,
                headers=headers if headers is not None else self._headers(),
                **kwargs,
            )
        except httpx.TimeoutException as exc:
            raise BatchTimeoutError(
                f"{self.name} batch {action} timed out: {exc}",
                provider=self.name,
                batch_id=batch_id,
            ) from exc
        except httpx.HTTPError as exc:
            raise BatchRequestError(
                f"{self.name} batch {action} failed: {exc}",
                provider=self.name,
                batch_id=batch_id,
            ) from exc

        if not response.is_success:
            raise self._status_error(response, action=action, batch_id=batch_id)
        return response

    def _status_error(
        self,
        response: httpx.Response,
        *,
        action: str,
        batch_id: str | None,
    ) -> BatchRequestError:
        status = f"{response.status_code} {response.reason_phrase}".strip()
        return BatchRequestError(
            f"{self.name} batch {action} failed: {status} {response.text}",
            provider=self.name,
            batch_id=batch_id,
            status_code=response.status_code,
        )

    def _json(
        self,
        response: httpx.Response,
        *,
        action: str,
        batch_id: str | None = None,
    ) -> Mapping[str, Any]:
        try:
            payload = response.json()
        except json.JSONDecodeError as exc:
            raise BatchRequestError(
                f"{self.name} batch {action} failed: invalid JSON response",
                provider=self.name,
                batch_id=batch_id,
                status_code=response.status_code,
            ) from exc
        if not isinstance(payload, dict):
            raise BatchRequestError(
                f"{self.name} batch {action} failed: unexpected response",
                provider=self.name,
                batch_id=batch_id,
                status_code=response.status_code,
            )
        return payload
