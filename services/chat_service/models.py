"""
Chat service data models for conversations, messages and stream sessions.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


USER = "user"
ASSISTANT = "assistant"
ROLES = (USER, ASSISTANT)


class Visibility(str, Enum):
    PRIVATE = "private"
    PUBLIC = "public"


class AttachmentKind(str, Enum):
    IMAGE = "image"
    PDF = "pdf"


@dataclass(frozen=True)
class ContentPart:
    """One typed segment of a structured user message"""
    type: str  # "text", "image_url", "file"
    text: Optional[str] = None
    url: Optional[str] = None
    mime_type: Optional[str] = None
    name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.type == "text":
            return {"type": "text", "text": self.text or ""}
        if self.type == "image_url":
            part = {"type": "image_url", "image_url": {"url": self.url}}
        else:
            part = {"type": "file", "data": self.url, "mimeType": self.mime_type}
        if self.name:
            part["name"] = self.name
        return part

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ContentPart':
        part_type = data.get("type")
        if part_type == "text":
            return cls(type="text", text=data.get("text", ""))
        if part_type == "image_url":
            return cls(type="image_url", url=(data.get("image_url") or {}).get("url"), name=data.get("name"))
        if part_type == "file":
            return cls(type="file", url=data.get("data"), mime_type=data.get("mimeType"), name=data.get("name"))
        raise ValueError(f"Unknown content part type: {part_type}")


MessageContent = Union[str, Tuple[ContentPart, ...]]


def content_to_text(content: MessageContent) -> str:
    """Plain-text view of a message body, attachments rendered as one line each"""
    if isinstance(content, str):
        return content
    lines = []
    for part in content:
        if part.type == "text":
            lines.append(part.text or "")
        else:
            lines.append(f"📎 {part.name or part.url}")
    return "\n".join(lines)


@dataclass(frozen=True)
class Message:
    """Individual message in a conversation"""
    role: str  # "user" or "assistant"
    content: MessageContent = ""
    reasoning: Optional[str] = None
    # Local only, never sent to the system of record or the gateway
    is_streaming: bool = False

    @property
    def text(self) -> str:
        return content_to_text(self.content)

    def to_wire(self, include_reasoning: bool = False) -> Dict[str, Any]:
        """Serialize for the gateway (role and content) or the system of record (with reasoning)"""
        if isinstance(self.content, str):
            content: Union[str, List[Dict[str, Any]]] = self.content
        else:
            content = [part.to_dict() for part in self.content]
        data: Dict[str, Any] = {"role": self.role, "content": content}
        if include_reasoning and self.reasoning:
            data["reasoning"] = self.reasoning
        return data

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> 'Message':
        raw = data.get("content", "")
        if isinstance(raw, list):
            content: MessageContent = tuple(ContentPart.from_dict(part) for part in raw)
        else:
            content = raw or ""
        return cls(role=data["role"], content=content, reasoning=data.get("reasoning"))


@dataclass(frozen=True)
class Attachment:
    """Uploaded file waiting to be sent with the next user message"""
    url: str
    name: str
    size: int
    kind: AttachmentKind

    def to_content_part(self) -> ContentPart:
        if self.kind == AttachmentKind.IMAGE:
            return ContentPart(type="image_url", url=self.url, name=self.name)
        return ContentPart(type="file", url=self.url, mime_type="application/pdf", name=self.name)


def build_user_content(text: str, attachments: List[Attachment]) -> MessageContent:
    """Plain text when there is nothing attached, structured parts otherwise"""
    if not attachments:
        return text
    parts = []
    if text.strip():
        parts.append(ContentPart(type="text", text=text.strip()))
    parts.extend(attachment.to_content_part() for attachment in attachments)
    return tuple(parts)


@dataclass(frozen=True)
class Conversation:
    """Conversation containing messages and metadata"""
    conversation_id: str
    title: str
    messages: Tuple[Message, ...] = ()
    visibility: Visibility = Visibility.PRIVATE
    branched: bool = False
    owner_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    # Monotonic counter assigned by the system of record, None for local-only state
    version: Optional[int] = None

    @property
    def last_message(self) -> Optional[Message]:
        return self.messages[-1] if self.messages else None


@dataclass(frozen=True)
class Lease:
    """Exclusive claim of one stream session on a (conversation, message index) slot"""
    conversation_id: str
    message_index: int
    generation: int


class SessionState(str, Enum):
    IDLE = "idle"
    AWAITING_FIRST_BYTE = "awaiting_first_byte"
    STREAMING = "streaming"
    RETRYING = "retrying"
    FINALIZED = "finalized"
    STOPPED = "stopped"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    FINALIZING = "finalizing"
    STOPPED = "stopped"


_STATUS_BY_STATE = {
    SessionState.IDLE: SessionStatus.ACTIVE,
    SessionState.AWAITING_FIRST_BYTE: SessionStatus.ACTIVE,
    SessionState.STREAMING: SessionStatus.ACTIVE,
    SessionState.RETRYING: SessionStatus.ACTIVE,
    SessionState.FINALIZED: SessionStatus.FINALIZING,
    SessionState.STOPPED: SessionStatus.STOPPED,
}


@dataclass
class StreamSession:
    """Transient state of one in-flight generation"""
    conversation_id: str
    message_index: int
    lease: Lease
    model_id: str
    accumulated_text: str = ""
    accumulated_reasoning: str = ""
    retry_count: int = 0
    state: SessionState = SessionState.IDLE
    supports_reasoning: bool = False
    last_error: Optional[str] = None
    lease_released: bool = False
    deltas_applied: int = 0
    ttft_ms: Optional[float] = None
    started_at: float = 0.0

    @property
    def status(self) -> SessionStatus:
        return _STATUS_BY_STATE[self.state]

    @property
    def is_terminal(self) -> bool:
        return self.state in (SessionState.FINALIZED, SessionState.STOPPED)
