"""Gemini ``asyncBatchEmbedContent`` implementation of :class:`BatchProvider`."""

from __future__ import annotations

import hashlib
import json
import threading
import time
from typing import Any, Callable, Mapping, Sequence

import httpx

from bridgemem.core.logging import Logger

from ..errors import BatchCapabilityError, BatchRequestError
from ..models import BatchJob, BatchJobState
from . import BatchOutputRow, BatchRequest
from ._http import HttpBatchProvider

__all__ = [
    "GeminiBatchProvider",
    "build_upload_body",
    "gemini_model_path",
    "gemini_upload_url",
]

TASK_TYPE = "RETRIEVAL_DOCUMENT"
CAPABILITY_MISSING = "gemini batch create failed: 404 (asyncBatchEmbedContent not available)"

_SUCCESS_STATES = frozenset({"SUCCEEDED", "COMPLETED", "DONE"})
_FAILURE_STATES = {
    "FAILED": BatchJobState.FAILED,
    "CANCELLED": BatchJobState.CANCELLED,
    "CANCELED": BatchJobState.CANCELLED,
    "EXPIRED": BatchJobState.EXPIRED,
}
_STATE_PREFIX = "BATCH_STATE_"


def gemini_model_path(model: str) -> str:
    """Return ``model`` with the ``models/`` resource prefix."""

    model = model.strip()
    if not model or model.startswith("models/"):
        return model
    return f"models/{model}"


def gemini_upload_url(base_url: str) -> str:
    """Rewrite ``base_url`` to the media upload host path."""

    if "/v1beta" in base_url:
        return base_url.replace("/v1beta", "/upload/v1beta", 1).rstrip("/")
    return f"{base_url}/upload"


def build_upload_body(display_name: str, jsonl: str) -> tuple[bytes, str]:
    """Return a ``multipart/related`` body and its content type.

    The first part carries file metadata, the second the JSONL requests.
    """

    boundary = "ai-bridge-" + hashlib.sha256(display_name.encode("utf-8")).hexdigest()
    meta = json.dumps(
        {"file": {"displayName": display_name, "mimeType": "application/jsonl"}},
        separators=(",", ":"),
    )
    body = (
        f"--{boundary}\r\n"
        "Content-Type: application/json; charset=UTF-8\r\n\r\n"
        f"{meta}\r\n"
        f"--{boundary}\r\n"
        "Content-Type: application/jsonl; charset=UTF-8\r\n\r\n"
        f"{jsonl}\r\n"
        f"--{boundary}--\r\n"
    )
    return body.encode("utf-8"), f"multipart/related; boundary={boundary}"


def _normalize_state(raw_state: str) -> BatchJobState:
    state = raw_state.strip().upper()
    if state.startswith(_STATE_PREFIX):
        state = state[len(_STATE_PREFIX) :]
    if state in _SUCCESS_STATES:
        return BatchJobState.COMPLETED
    return _FAILURE_STATES.get(state, BatchJobState.PROCESSING)


def _resolve_output_file(payload: Mapping[str, Any]) -> str | None:
    output_config = payload.get("outputConfig") or {}
    metadata = payload.get("metadata") or {}
    output = metadata.get("output") or {}
    return (
        output_config.get("file")
        or output_config.get("fileId")
        or output.get("responsesFile")
        or None
    )


def _job_from_payload(payload: Mapping[str, Any]) -> BatchJob:
    raw_state = str(payload.get("state") or "")
    if not raw_state:
        metadata = payload.get("metadata") or {}
        raw_state = str(metadata.get("state") or "")
    state = _normalize_state(raw_state)
    error: str | None = None
    if state.failed:
        error_payload = payload.get("error") or {}
        error = error_payload.get("message") or "unknown error"
    return BatchJob(
        id=str(payload.get("name") or ""),
        state=state,
        raw_state=raw_state,
        output_file=_resolve_output_file(payload),
        error=error,
    )


def _first_non_empty(*values: Any) -> str:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value
    return ""


def _values(container: Any) -> list[Any]:
    if not isinstance(container, dict):
        return []
    embedding = container.get("embedding") or {}
    if not isinstance(embedding, dict):
        return []
    return list(embedding.get("values") or [])


def _message(container: Any) -> str:
    if not isinstance(container, dict):
        return ""
    error = container.get("error") or {}
    if not isinstance(error, dict):
        return ""
    return str(error.get("message") or "")


class GeminiBatchProvider(HttpBatchProvider):
    """Run embedding jobs through the Gemini file and batch APIs."""

    name = "gemini"
    auth_header = "x-goog-api-key"

    def __init__(
        self,
        client: httpx.Client,
        *,
        base_url: str,
        api_key: str,
        model: str,
        headers: Mapping[str, str] | None = None,
        logger: Logger | None = None,
        now_ns: Callable[[], int] = time.time_ns,
    ) -> None:
        super().__init__(
            client,
            base_url=base_url,
            api_key=api_key,
            model=model,
            headers=headers,
            logger=logger,
        )
        self._now_ns = now_ns

    def build_request_line(self, request: BatchRequest) -> Mapping[str, Any]:
        return {
            "key": request.custom_id,
            "request": {
                "content": {"parts": [{"text": request.text}]},
                "task_type": TASK_TYPE,
            },
        }

    def submit(
        self,
        lines: Sequence[Mapping[str, Any]],
        *,
        agent_id: str,
        cancel: threading.Event | None = None,
    ) -> BatchJob:
        jsonl = "\n".join(json.dumps(line) for line in lines)
        display_name = f"memory-embeddings-{self._now_ns()}"
        body, content_type = build_upload_body(display_name, jsonl)

        upload_headers = self._headers()
        upload_headers["Content-Type"] = content_type
        response = self._send(
            "POST",
            f"{gemini_upload_url(self.base_url)}/files?uploadType=multipart",
            action="file upload",
            cancel=cancel,
            headers=upload_headers,
            content=body,
        )
        uploaded = self._json(response, action="file upload")
        file_payload = uploaded.get("file") or {}
        file_id = uploaded.get("name") or file_payload.get("name")
        if not file_id:
            raise BatchRequestError(
                "gemini batch file upload failed: missing file id",
                provider=self.name,
            )

        create_url = (
            f"{self.base_url}/{gemini_model_path(self.model)}:asyncBatchEmbedContent"
        )
        try:
            response = self._send(
                "POST",
                create_url,
                action="create",
                cancel=cancel,
                json={
                    "batch": {
                        "displayName": f"memory-embeddings-{agent_id}",
                        "inputConfig": {"file_name": file_id},
                    }
                },
            )
        except BatchRequestError as exc:
            if exc.status_code == 404:
                raise BatchCapabilityError(
                    CAPABILITY_MISSING,
                    provider=self.name,
                    status_code=404,
                ) from exc
            raise

        job = _job_from_payload(self._json(response, action="create"))
        if not job.id:
            raise BatchRequestError(
                "gemini batch create failed: missing batch name",
                provider=self.name,
            )
        return job

    def poll(
        self,
        job_id: str,
        *,
        cancel: threading.Event | None = None,
    ) -> BatchJob:
        name = job_id if job_id.startswith("batches/") else f"batches/{job_id}"
        response = self._send(
            "GET",
            f"{self.base_url}/{name}",
            action="status",
            cancel=cancel,
            batch_id=job_id,
        )
        job = _job_from_payload(
            self._json(response, action="status", batch_id=job_id)
        )
        if job.id != job_id:
            return BatchJob(
                id=job_id,
                state=job.state,
                raw_state=job.raw_state,
                output_file=job.output_file,
                error=job.error,
            )
        return job

    def fetch_output(
        self,
        file_id: str,
        *,
        cancel: threading.Event | None = None,
    ) -> str:
        name = file_id if file_id.startswith("files/") else f"files/{file_id}"
        response = self._send(
            "GET",
            f"{self.base_url}/{name}:download",
            action="file content",
            cancel=cancel,
        )
        return response.text

    def parse_output_line(
        self,
        payload: Mapping[str, Any],
    ) -> BatchOutputRow | None:
        custom_id = _first_non_empty(
            payload.get("key"),
            payload.get("custom_id"),
            payload.get("request_id"),
        )
        if not custom_id:
            return None

        response = payload.get("response")
        message = _message(payload) or _message(response)
        if message:
            return BatchOutputRow(custom_id=custom_id, error=message)

        values = _values(payload) or _values(response)
        if not values:
            return BatchOutputRow(custom_id=custom_id, error="empty embedding")
        return BatchOutputRow(
            custom_id=custom_id,
            embedding=tuple(float(value) for value in values),
        )
