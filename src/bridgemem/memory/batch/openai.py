"""OpenAI Batch API implementation of :class:`BatchProvider`."""

from __future__ import annotations

import json
import threading
from typing import Any, Mapping, Sequence

from ..errors import BatchRequestError
from ..models import BatchJob, BatchJobState
from . import BatchOutputRow, BatchRequest
from ._http import HttpBatchProvider

__all__ = ["OpenAIBatchProvider"]

EMBEDDINGS_ENDPOINT = "/v1/embeddings"
COMPLETION_WINDOW = "24h"
UPLOAD_FILENAME = "memory-embeddings.jsonl"
METADATA_SOURCE = "ai-bridge-memory"

_STATES = {
    "completed": BatchJobState.COMPLETED,
    "failed": BatchJobState.FAILED,
    "expired": BatchJobState.EXPIRED,
    "cancelled": BatchJobState.CANCELLED,
    "canceled": BatchJobState.CANCELLED,
}


def _job_from_payload(payload: Mapping[str, Any]) -> BatchJob:
    raw_state = str(payload.get("status") or "")
    return BatchJob(
        id=str(payload.get("id") or ""),
        state=_STATES.get(raw_state.lower(), BatchJobState.PROCESSING),
        raw_state=raw_state,
        output_file=payload.get("output_file_id") or None,
    )


class OpenAIBatchProvider(HttpBatchProvider):
    """Run embedding jobs through ``/files`` and ``/batches``."""

    name = "openai"
    auth_header = "Authorization"

    def _auth_value(self) -> str | None:
        return f"Bearer {self._api_key}" if self._api_key else None

    def build_request_line(self, request: BatchRequest) -> Mapping[str, Any]:
        return {
            "custom_id": request.custom_id,
            "method": "POST",
            "url": EMBEDDINGS_ENDPOINT,
            "body": {"model": self.model, "input": request.text},
        }

    def submit(
        self,
        lines: Sequence[Mapping[str, Any]],
        *,
        agent_id: str,
        cancel: threading.Event | None = None,
    ) -> BatchJob:
        jsonl = "\n".join(json.dumps(line) for line in lines)

        upload_headers = self._headers(content_type=None)
        upload_headers.pop("Content-Type", None)
        response = self._send(
            "POST",
            f"{self.base_url}/files",
            action="file upload",
            cancel=cancel,
            headers=upload_headers,
            data={"purpose": "batch"},
            files={
                "file": (
                    UPLOAD_FILENAME,
                    jsonl.encode("utf-8"),
                    "application/octet-stream",
                )
            },
        )
        file_id = self._json(response, action="file upload").get("id")
        if not file_id:
            raise BatchRequestError(
                "openai batch file upload failed: missing file id",
                provider=self.name,
            )

        response = self._send(
            "POST",
            f"{self.base_url}/batches",
            action="create",
            cancel=cancel,
            json={
                "input_file_id": file_id,
                "endpoint": EMBEDDINGS_ENDPOINT,
                "completion_window": COMPLETION_WINDOW,
                "metadata": {"source": METADATA_SOURCE, "agent": agent_id},
            },
        )
        job = _job_from_payload(self._json(response, action="create"))
        if not job.id:
            raise BatchRequestError(
                "openai batch create failed: missing batch id",
                provider=self.name,
            )
        return job

    def poll(
        self,
        job_id: str,
        *,
        cancel: threading.Event | None = None,
    ) -> BatchJob:
        response = self._send(
            "GET",
            f"{self.base_url}/batches/{job_id}",
            action="status",
            cancel=cancel,
            batch_id=job_id,
        )
        job = _job_from_payload(
            self._json(response, action="status", batch_id=job_id)
        )
        if not job.id:
            return BatchJob(
                id=job_id,
                state=job.state,
                raw_state=job.raw_state,
                output_file=job.output_file,
            )
        return job

    def fetch_output(
        self,
        file_id: str,
        *,
        cancel: threading.Event | None = None,
    ) -> str:
        response = self._send(
            "GET",
            f"{self.base_url}/files/{file_id}/content",
            action="file content",
            cancel=cancel,
        )
        return response.text

    def parse_output_line(
        self,
        payload: Mapping[str, Any],
    ) -> BatchOutputRow | None:
        custom_id = payload.get("custom_id")
        if not isinstance(custom_id, str) or not custom_id:
            return None

        error = payload.get("error") or {}
        if isinstance(error, dict) and error.get("message"):
            return BatchOutputRow(custom_id=custom_id, error=str(error["message"]))

        response = payload.get("response") or {}
        body = response.get("body") or {}
        status_code = int(response.get("status_code") or 0)
        if status_code >= 400:
            body_error = body.get("error") or {}
            message = body_error.get("message") or f"status {status_code}"
            return BatchOutputRow(custom_id=custom_id, error=str(message))

        data = body.get("data") or []
        embedding = data[0].get("embedding") if data else None
        if not embedding:
            return BatchOutputRow(custom_id=custom_id, error="empty embedding")
        return BatchOutputRow(
            custom_id=custom_id,
            embedding=tuple(float(value) for value in embedding),
        )
