"""
HTTP client for the Cody LLM API.

One UpstreamClient is created per inbound request and closed when that
request is done (for streams, when the relay finishes). Every httpx failure
is converted into the bridge's own error types here, so callers only deal
with UpstreamRejected, TransportFailure and StreamInterrupted.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import TYPE_CHECKING, Any

import httpx

from errors import StreamInterrupted, TransportFailure, UpstreamRejected

if TYPE_CHECKING:
    from codybridge import BridgeConfig

logger = logging.getLogger(__name__)

MODELS_PATH = "models"
CHAT_COMPLETIONS_PATH = "chat/completions"

JSON_CONTENT_TYPE = "application/json"
EVENT_STREAM_CONTENT_TYPE = "text/event-stream"


class UpstreamClient:
    """Thin async wrapper around httpx for the two upstream endpoints."""

    def __init__(
        self,
        config: BridgeConfig,
        transport: httpx.AsyncBaseTransport | None = None,
        log_prefix: str = "",
    ):
        """
        Args:
            config: Bridge configuration (endpoint, credential, timeouts)
            transport: Optional httpx transport, used by tests to stub the upstream
            log_prefix: Prefix for log lines (request id)
        """
        self.config = config
        self.log_prefix = log_prefix
        self._client = httpx.AsyncClient(
            base_url=config.api_base,
            transport=transport,
            timeout=config.request_timeout,
        )

    async def __aenter__(self) -> UpstreamClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def build_headers(self, accept: str, with_body: bool = False) -> dict[str, str]:
        """Headers sent on every upstream call."""
        headers = {
            "Accept": accept,
            "X-Requested-With": self.config.client_name,
        }
        if self.config.access_token:
            headers["Authorization"] = (
                f"{self.config.auth_scheme} {self.config.access_token}"
            )
        if with_body:
            headers["Content-Type"] = JSON_CONTENT_TYPE
        return headers

    # -------------------------------------------------------------------------
    # Endpoints
    # -------------------------------------------------------------------------

    async def list_models(self) -> dict[str, Any]:
        """Fetch the upstream model catalog."""
        response = await self._request(
            "GET", MODELS_PATH, headers=self.build_headers(JSON_CONTENT_TYPE)
        )
        return self._parse_json(response)

    async def create_chat_completion(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Send a non-streaming chat completion and return the parsed body."""
        response = await self._request(
            "POST",
            CHAT_COMPLETIONS_PATH,
            headers=self.build_headers(JSON_CONTENT_TYPE, with_body=True),
            json=payload,
        )
        return self._parse_json(response)

    async def open_chat_stream(self, payload: dict[str, Any]) -> httpx.Response:
        """
        Start a streaming chat completion.

        Returns once the upstream response headers arrived with a success
        status; the body is still unread. The caller owns the returned
        response and must close it. A rejected request is read in full and
        closed before UpstreamRejected is raised.
        """
        request = self._client.build_request(
            "POST",
            CHAT_COMPLETIONS_PATH,
            headers=self.build_headers(EVENT_STREAM_CONTENT_TYPE, with_body=True),
            json=payload,
            timeout=httpx.Timeout(
                self.config.request_timeout, read=self.config.stream_timeout
            ),
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise TransportFailure(f"POST {request.url} failed: {e}") from e

        logger.info(
            f"{self.log_prefix}POST {request.url} => status {response.status_code} (stream)"
        )
        if not response.is_success:
            try:
                await response.aread()
            except httpx.HTTPError as e:
                raise TransportFailure(f"Reading error body failed: {e}") from e
            finally:
                await response.aclose()
            raise self._rejection(response)
        return response

    async def iter_stream(self, response: httpx.Response) -> AsyncGenerator[bytes, None]:
        """Yield raw body chunks of an open stream.

        Raises:
            StreamInterrupted: If the connection fails mid-transfer
        """
        try:
            async for chunk in response.aiter_bytes():
                yield chunk
        except httpx.HTTPError as e:
            raise StreamInterrupted(f"Upstream stream failed: {e}") from e

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        headers: dict[str, str],
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, path, headers=headers, json=json)
        except httpx.HTTPError as e:
            raise TransportFailure(f"{method} {path} failed: {e}") from e

        logger.info(f"{self.log_prefix}{method} {response.request.url} => status {response.status_code}")
        if not response.is_success:
            raise self._rejection(response)
        return response

    def _rejection(self, response: httpx.Response) -> UpstreamRejected:
        return UpstreamRejected(
            status_code=response.status_code,
            body=response.content,
            content_type=response.headers.get("content-type"),
        )

    def _parse_json(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise TransportFailure(f"Upstream returned invalid JSON: {e}") from e
