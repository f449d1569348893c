"""
OpenAI gateway transport - streams chat completions from an OpenAI-compatible gateway
and re-emits them as newline-delimited envelopes.
"""

from typing import Any, AsyncIterator, Dict, List, Optional

import openai

from services.ai_service.model_catalog import supports_reasoning
from services.ai_service.models import (
    CompleteEvent,
    DeltaEvent,
    ErrorEvent,
    GenerationRequest,
    ReasoningEvent,
    StartEvent,
    encode_envelope,
)
from infrastructure.config.settings import get_config, get_gateway_api_key
from infrastructure.monitoring.logging_service import get_logger
from infrastructure.resilience.retry_service import TransportError


WEB_SEARCH_SUFFIX = ":online"


def to_openai_content(content: Any) -> Any:
    """Convert stored content parts to the chat-completions part format"""
    if isinstance(content, str):
        return content

    parts: List[Dict[str, Any]] = []
    for part in content:
        part_type = part.get("type")
        if part_type == "text":
            parts.append({"type": "text", "text": part.get("text", "")})
        elif part_type == "image_url":
            parts.append({"type": "image_url", "image_url": {"url": part["image_url"]["url"]}})
        elif part_type == "file":
            parts.append({
                "type": "file",
                "file": {
                    "filename": part.get("name") or "document.pdf",
                    "file_data": part.get("data"),
                },
            })
    return parts


class OpenAIGatewayTransport:
    """
    Streaming collaborator calling the gateway through the openai SDK.

    Gateway failures during a generation become an `error` envelope so they enter
    the retry budget; rejected credentials raise TransportError with the status.
    """

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 system_prompt: Optional[str] = None, client: Optional[openai.AsyncOpenAI] = None):
        config = get_config()
        self.logger = get_logger(__name__)
        self.api_key = api_key if api_key is not None else get_gateway_api_key()
        self.base_url = base_url or config.api.gateway_base_url
        self.system_prompt = system_prompt if system_prompt is not None else config.llm.system_prompt
        self.timeout = config.llm.request_timeout
        self._client = client

    def _get_client(self) -> openai.AsyncOpenAI:
        """
        Get configured gateway client

        Returns:
            AsyncOpenAI: Client bound to the gateway base url
        """
        if self._client is None:
            if not self.api_key:
                raise ValueError("Gateway API key not configured")

            self._client = openai.AsyncOpenAI(api_key=self.api_key, base_url=self.base_url, timeout=self.timeout)
            self.logger.info(f"Gateway client initialized: {self.base_url}")

        return self._client

    def build_messages(self, request: GenerationRequest) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        for message in request.messages:
            messages.append({"role": message["role"], "content": to_openai_content(message["content"])})
        return messages

    async def stream(self, request: GenerationRequest) -> AsyncIterator[bytes]:
        model = request.model_id + WEB_SEARCH_SUFFIX if request.web_search else request.model_id

        yield encode_envelope(StartEvent(supports_reasoning=supports_reasoning(request.model_id)))

        try:
            completion = await self._get_client().chat.completions.create(
                model=model,
                messages=self.build_messages(request),
                stream=True,
            )
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise TransportError(str(e), e.status_code) from e
        except openai.OpenAIError as e:
            self.logger.warning(f"Gateway rejected generation for {model}: {e}")
            yield encode_envelope(ErrorEvent(message=str(e)))
            return

        try:
            async for chunk in completion:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                # OpenRouter extension field
                reasoning = getattr(delta, "reasoning", None)
                if reasoning:
                    yield encode_envelope(ReasoningEvent(content=reasoning))
                if delta.content:
                    yield encode_envelope(DeltaEvent(content=delta.content))
        except openai.OpenAIError as e:
            self.logger.warning(f"Gateway stream for {model} failed: {e}")
            yield encode_envelope(ErrorEvent(message=str(e)))
            return
        finally:
            await completion.close()

        yield encode_envelope(CompleteEvent())
