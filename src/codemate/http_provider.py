"""Shared HTTP plumbing for providers that talk to a vendor REST API.

``requests`` is blocking, so every network call runs in a worker thread via
``asyncio.to_thread``. Streaming responses are pulled one line per thread
hop, which lets the event loop observe cancellation between lines.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator
from typing import Any

import requests

from .errors import ConfigurationError, ProviderError
from .provider import ChatRequest, LLMProvider

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 60.0


class HttpLLMProvider(LLMProvider):
    """Base class for ``requests``-backed providers."""

    _DEFAULT_BASE_URL = ""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float = _DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        self._base_url = (base_url or self._DEFAULT_BASE_URL).rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()

    def close(self) -> None:
        """Release pooled connections."""
        self._session.close()

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def _base(self, request: ChatRequest) -> str:
        return (request.base_url or self._base_url).rstrip("/")

    def _require_key(self, request: ChatRequest) -> str:
        if not request.api_key:
            msg = f"No API key configured for provider '{self.name()}'"
            raise ConfigurationError(msg)
        return request.api_key

    async def _post_json(
        self, url: str, payload: dict[str, Any], headers: dict[str, str]
    ) -> dict[str, Any]:
        """POST *payload* and return the decoded JSON body."""
        try:
            resp = await asyncio.to_thread(
                self._session.post, url, json=payload, headers=headers, timeout=self._timeout
            )
        except requests.RequestException as exc:
            msg = f"{self.name()} request failed: {exc}"
            raise ProviderError(msg, provider=self.name(), retryable=True) from exc

        self._check_status(resp)
        try:
            body = resp.json()
        except ValueError as exc:
            msg = f"{self.name()} returned a non-JSON body"
            raise ProviderError(msg, provider=self.name(), status_code=resp.status_code) from exc
        if not isinstance(body, dict):
            msg = f"{self.name()} returned an unexpected body"
            raise ProviderError(msg, provider=self.name(), status_code=resp.status_code)
        return body

    async def _post_lines(
        self,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str],
        cancel: asyncio.Event | None = None,
    ) -> AsyncGenerator[str, None]:
        """POST with a streamed response and yield its non-empty text lines.

        Stops quietly once *cancel* is set; the HTTP response is closed in
        every case.
        """
        try:
            resp = await asyncio.to_thread(
                self._session.post,
                url,
                json=payload,
                headers=headers,
                timeout=self._timeout,
                stream=True,
            )
        except requests.RequestException as exc:
            msg = f"{self.name()} stream request failed: {exc}"
            raise ProviderError(msg, provider=self.name(), retryable=True) from exc

        try:
            self._check_status(resp)
            if not resp.encoding:
                resp.encoding = "utf-8"
            lines = resp.iter_lines(decode_unicode=True)
            while True:
                if cancel is not None and cancel.is_set():
                    logger.debug("%s stream cancelled by consumer", self.name())
                    return
                try:
                    line = await asyncio.to_thread(next, lines, None)
                except requests.RequestException as exc:
                    msg = f"{self.name()} stream interrupted: {exc}"
                    raise ProviderError(msg, provider=self.name(), retryable=True) from exc
                if line is None:
                    return
                if line:
                    yield line
        finally:
            resp.close()

    def _check_status(self, resp: requests.Response) -> None:
        if 200 <= resp.status_code < 300:
            return
        raise ProviderError.from_status(self.name(), resp.status_code, _error_detail(resp))

    @staticmethod
    def _decode_event(data: str, provider: str) -> dict[str, Any]:
        try:
            event = json.loads(data)
        except json.JSONDecodeError as exc:
            msg = f"{provider} sent a malformed stream event"
            raise ProviderError(msg, provider=provider) from exc
        if not isinstance(event, dict):
            msg = f"{provider} sent an unexpected stream event"
            raise ProviderError(msg, provider=provider)
        return event


def _error_detail(resp: requests.Response) -> str:
    """Best-effort extraction of the vendor's error message."""
    try:
        body = resp.json()
    except ValueError:
        return (resp.text or resp.reason or "unknown error")[:500]
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and "message" in error:
            return str(error["message"])
        if isinstance(error, str):
            return error
        if "message" in body:
            return str(body["message"])
    return json.dumps(body)[:500]


def drop_none(values: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in values.items() if v is not None}
