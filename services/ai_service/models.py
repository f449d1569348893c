"""
AI service data models: generation requests and streaming envelopes.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter
from typing_extensions import Annotated


@dataclass
class GenerationRequest:
    """Request for one streamed model response"""
    messages: List[Dict[str, Any]]
    model_id: str
    auth_token: str
    web_search: bool = False
    conversation_id: Optional[str] = None
    is_temporary: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        """JSON body expected by the streaming proxy"""
        return {
            "messages": self.messages,
            "chatId": self.conversation_id,
            "modelId": self.model_id,
            "authToken": self.auth_token,
            "webSearchEnabled": self.web_search,
            "isTemporary": self.is_temporary,
        }


class _Envelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class StartEvent(_Envelope):
    type: Literal["start"] = "start"
    supports_reasoning: bool = Field(default=False, alias="supportsReasoning")


class DeltaEvent(_Envelope):
    type: Literal["delta"] = "delta"
    content: Optional[str] = None


class ReasoningEvent(_Envelope):
    type: Literal["reasoning"] = "reasoning"
    content: Optional[str] = None


class CompleteEvent(_Envelope):
    type: Literal["complete"] = "complete"


class ErrorEvent(_Envelope):
    type: Literal["error"] = "error"
    message: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("error", "message"),
        serialization_alias="error",
    )

    @property
    def error_message(self) -> str:
        return self.message or "Unknown error"


StreamEvent = Annotated[
    Union[StartEvent, DeltaEvent, ReasoningEvent, CompleteEvent, ErrorEvent],
    Field(discriminator="type"),
]

STREAM_EVENT_ADAPTER: TypeAdapter = TypeAdapter(StreamEvent)

TERMINAL_EVENTS = (CompleteEvent, ErrorEvent)


def encode_envelope(event: BaseModel) -> bytes:
    """Serialize one event as a newline-terminated envelope"""
    return (event.model_dump_json(by_alias=True, exclude_none=True) + "\n").encode("utf-8")
