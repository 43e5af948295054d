"""
HTTP push channel: opens the generation stream and yields its raw lines.
"""
import logging
from typing import AsyncIterator, Optional, Protocol

import httpx

from chatstream.config import settings
from chatstream.exceptions import TransportError, UnauthorizedError

logger = logging.getLogger(__name__)


class LineSource(Protocol):
    """Anything the stream controller can pull push-channel lines from."""

    def open(
        self,
        conversation_id: int,
        *,
        prompt: Optional[str],
        token: Optional[str],
        thinking: bool,
    ) -> AsyncIterator[str]:
        ...


def stream_params(prompt: Optional[str], token: Optional[str], thinking: bool) -> dict[str, str]:
    """Connection parameters for the stream request.

    The credential travels as a query parameter because the push channel is
    an EventSource-style GET that cannot carry custom headers.
    """
    params: dict[str, str] = {}
    if prompt:
        params["prompt"] = prompt
    if token:
        params["token"] = token
    params["thinking"] = "enabled" if thinking else "disabled"
    return params


class PushChannel:
    """Wrapper around an httpx client for the ``/ai/stream/{id}`` endpoint.

    Use as an async context manager, or pass in an existing client (which
    the channel will then not close).
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        connect_timeout: Optional[float] = None,
    ):
        self.base_url = (base_url or settings.base_url).rstrip("/")
        self._connect_timeout = connect_timeout if connect_timeout is not None else settings.connect_timeout
        self._client = client
        self._owns_client = client is None

    async def connect(self):
        if self._client is None:
            # Reads may legitimately stall while the model thinks; idle
            # detection belongs to the stream controller.
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._connect_timeout, read=None),
            )
            self._owns_client = True

    async def disconnect(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()

    def stream_url(self, conversation_id: int) -> str:
        return f"{self.base_url}/ai/stream/{conversation_id}"

    async def open(
        self,
        conversation_id: int,
        *,
        prompt: Optional[str],
        token: Optional[str],
        thinking: bool,
    ) -> AsyncIterator[str]:
        """Yield raw lines of one generation stream until the server closes it."""
        await self.connect()
        url = self.stream_url(conversation_id)
        logger.info("Opening push channel conversation=%s thinking=%s", conversation_id, thinking)

        try:
            async with self._client.stream(
                "GET",
                url,
                params=stream_params(prompt, token, thinking),
                headers={"Accept": "text/event-stream", "Cache-Control": "no-cache"},
            ) as response:
                if response.status_code == 401:
                    raise UnauthorizedError()
                if response.is_error:
                    raise TransportError(
                        f"Stream request failed with HTTP {response.status_code}",
                        status_code=response.status_code,
                    )
                async for line in response.aiter_lines():
                    yield line
        except httpx.HTTPError as e:
            raise TransportError(f"Push channel failed: {e}") from e
        finally:
            logger.info("Push channel closed conversation=%s", conversation_id)
