"""
Remote state storage over HTTP.

Stores the record as a single JSON object on any server that speaks
plain GET / PUT / DELETE on a URL (an object store, a small state
service, a presigned bucket proxy):

    GET    {url}/{project}/{stage}.json   -> 200 record | 404 empty
    PUT    {url}/{project}/{stage}.json   <- record
    DELETE {url}/{project}/{stage}.json

Configuration:
    state:
      backend: http
      url: https://state.example.com/stackweave
      headers:
        Authorization: Bearer ${env:STATE_TOKEN}
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from stackweave.errors import StorageError

from .base import StateStorage

logger = logging.getLogger(__name__)


class HttpStateStorage(StateStorage):
    """
    State storage backed by a remote JSON object.

    The HTTP client is created lazily and reused for every request.
    Pass `client` to inject a preconfigured client (tests use
    httpx.MockTransport).
    """

    def __init__(
        self,
        url: str,
        project: str,
        stage: str,
        *,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__()
        self.url = url.rstrip("/")
        self.project = project
        self.stage = stage
        self._headers = headers or {}
        self._timeout = timeout
        self._client = client

    @property
    def name(self) -> str:
        return f"http:{self.project}/{self.stage}"

    @property
    def state_url(self) -> str:
        return f"{self.url}/{self.project}/{self.stage}.json"

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                    **self._headers,
                },
            )
        return self._client

    async def close(self) -> None:
        """Flush pending writes and close the HTTP client."""
        await super().close()
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _load(self) -> dict[str, Any] | None:
        client = await self._get_client()
        try:
            response = await client.get(self.state_url)
        except httpx.HTTPError as e:
            raise StorageError(
                f"Could not read state from {self.state_url}: {e}", "CANNOT_READ_REMOTE_STATE"
            ) from e

        if response.status_code == 404:
            logger.debug(f"[state] No remote state at {self.state_url}, starting empty")
            return None
        if response.is_error:
            raise StorageError(
                f"Could not read state from {self.state_url}: "
                f"HTTP {response.status_code} {response.text[:200]}",
                "CANNOT_READ_REMOTE_STATE",
            )

        try:
            record = response.json()
        except ValueError as e:
            raise StorageError(
                f"Could not read state from {self.state_url}: invalid JSON ({e})",
                "CANNOT_READ_REMOTE_STATE",
            ) from e
        if not isinstance(record, dict):
            raise StorageError(
                f"Could not read state from {self.state_url}: expected a JSON object",
                "CANNOT_READ_REMOTE_STATE",
            )
        return record

    async def _save(self, record: dict[str, Any]) -> None:
        client = await self._get_client()
        try:
            response = await client.put(self.state_url, json=record)
        except httpx.HTTPError as e:
            raise StorageError(
                f"Could not update state at {self.state_url}: {e}", "CANNOT_UPDATE_REMOTE_STATE"
            ) from e
        if response.is_error:
            raise StorageError(
                f"Could not update state at {self.state_url}: HTTP {response.status_code}",
                "CANNOT_UPDATE_REMOTE_STATE",
            )

    async def _delete(self) -> None:
        client = await self._get_client()
        try:
            response = await client.delete(self.state_url)
        except httpx.HTTPError as e:
            raise StorageError(
                f"Could not remove state at {self.state_url}: {e}", "CANNOT_REMOVE_REMOTE_STATE"
            ) from e
        if response.is_error and response.status_code != 404:
            raise StorageError(
                f"Could not remove state at {self.state_url}: HTTP {response.status_code}",
                "CANNOT_REMOVE_REMOTE_STATE",
            )
