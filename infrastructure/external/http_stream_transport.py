"""
HTTP stream transport - posts a generation request to the streaming proxy and yields raw body chunks.
"""

from typing import AsyncIterator, Optional

import httpx

from services.ai_service.models import GenerationRequest
from infrastructure.config.settings import get_config
from infrastructure.monitoring.logging_service import get_logger
from infrastructure.resilience.retry_service import TransportError


class HttpStreamTransport:
    """
    Streaming collaborator speaking newline-delimited envelopes over HTTP.

    Non-success statuses and network failures surface as TransportError so the
    session manager can fold them into its retry budget.
    """

    def __init__(self, url: Optional[str] = None, timeout: Optional[float] = None,
                 client: Optional[httpx.AsyncClient] = None):
        config = get_config()
        self.logger = get_logger(__name__)
        self.url = url or config.api.gateway_url
        self.timeout = timeout if timeout is not None else config.llm.request_timeout
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout, connect=10.0))
        return self._client

    async def stream(self, request: GenerationRequest) -> AsyncIterator[bytes]:
        """
        Open one streamed generation

        Args:
            request: Generation request; its credential goes in the Authorization header

        Yields:
            Raw response body chunks
        """
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {request.auth_token}",
        }
        self.logger.debug(f"Opening stream for model {request.model_id} ({len(request.messages)} messages)")

        try:
            async with self._get_client().stream("POST", self.url, json=request.to_payload(), headers=headers) as response:
                if response.status_code < 200 or response.status_code >= 300:
                    await response.aread()
                    raise TransportError(f"HTTP error! status: {response.status_code}", response.status_code)

                async for chunk in response.aiter_bytes():
                    yield chunk
        except httpx.HTTPError as e:
            raise TransportError(str(e) or e.__class__.__name__) from e

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
