"""Formio forms backend connector.

Purpose
- Provide a small, testable async wrapper for the Formio submission endpoints
  this backend uses (list, get, create, update, delete).
- Keep the API key header and wrapper metadata in one place.

This module is intentionally independent of FastAPI and the engine; it returns
raw JSON documents. Parsing lives in `records.py`.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from src.backend.common.config.app_config import config

logger = logging.getLogger(__name__)

# Formio's list endpoint paginates at 10 by default.
_LIST_LIMIT = "1000000"


class FormioHTTPError(RuntimeError):
    def __init__(self, method: str, url: str, status_code: int, text: str) -> None:
        super().__init__(f"Formio {method} {url} failed: HTTP {status_code}: {text}")
        self.status_code = status_code


class FormioClient:
    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 30.0,
        metadata: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._metadata = dict(metadata or {})
        self._transport = transport

    @classmethod
    def from_env(cls) -> "FormioClient":
        if not config.FORMIO_API_KEY:
            raise ValueError("Missing FORMIO_API_KEY")
        return cls(
            base_url=config.FORMIO_BASE_URL,
            api_key=config.FORMIO_API_KEY,
            timeout_seconds=config.FORMIO_HTTP_TIMEOUT_SECONDS,
            metadata=config.formio_metadata(),
        )

    def _form_url(self, form_path: str) -> str:
        return f"{self._base_url}/{form_path.strip('/')}"

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: list[tuple[str, str]] | None = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        async with httpx.AsyncClient(
            timeout=self._timeout_seconds,
            headers={"x-token": self._api_key, "Accept": "application/json"},
            transport=self._transport,
        ) as client:
            return await client.request(method, url, params=params, json=json)

    async def _request_json(self, method: str, url: str, **kwargs: Any) -> Any:
        resp = await self._request(method, url, **kwargs)
        if resp.status_code >= 400:
            raise FormioHTTPError(method, url, resp.status_code, resp.text)
        return resp.json()

    async def list_submissions(
        self,
        *,
        form_path: str,
        combo_key_field: str,
        combo_keys: list[str],
    ) -> list[dict[str, Any]]:
        """List submissions whose hidden combo key field is one of `combo_keys`, newest first."""

        if not combo_keys:
            return []

        params: list[tuple[str, str]] = [("sort", "-modified"), ("limit", _LIST_LIMIT)]
        params.extend((f"data.{combo_key_field}", key) for key in combo_keys)

        url = f"{self._form_url(form_path)}/submission"
        payload = await self._request_json("GET", url, params=params)
        if not isinstance(payload, list):
            raise FormioHTTPError("GET", url, 200, f"expected a list, got {type(payload).__name__}")
        return payload

    async def get_submission(self, *, form_path: str, submission_id: str) -> dict[str, Any]:
        url = f"{self._form_url(form_path)}/submission/{submission_id}"
        return await self._request_json("GET", url)

    async def create_submission(self, *, form_path: str, submission: dict[str, Any]) -> dict[str, Any]:
        body = dict(submission)
        body["metadata"] = {**(submission.get("metadata") or {}), **self._metadata}
        url = f"{self._form_url(form_path)}/submission"
        return await self._request_json("POST", url, json=body)

    async def update_submission(
        self,
        *,
        form_path: str,
        submission_id: str,
        submission: dict[str, Any],
    ) -> dict[str, Any]:
        body = dict(submission)
        body["metadata"] = {**(submission.get("metadata") or {}), **self._metadata}
        url = f"{self._form_url(form_path)}/submission/{submission_id}"
        return await self._request_json("PUT", url, json=body)

    async def delete_submission(self, *, form_path: str, submission_id: str) -> bool:
        """Delete a submission.

        Returns False when Formio reports the submission does not exist (already
        deleted), True when it was deleted by this call.
        """

        url = f"{self._form_url(form_path)}/submission/{submission_id}"
        resp = await self._request("DELETE", url)
        if resp.status_code == 404:
            logger.info("Formio submission %s already deleted", submission_id)
            return False
        if resp.status_code >= 400:
            raise FormioHTTPError("DELETE", url, resp.status_code, resp.text)
        return True
