"""
Collaborator interfaces consumed by the chat service.

The system of record, the streaming gateway and the identity provider live
outside this package; these protocols describe what the core expects of them.
"""

from typing import AsyncIterator, List, Optional, Protocol, Sequence, Union, runtime_checkable

from services.ai_service.models import GenerationRequest
from services.chat_service.models import Conversation, Message, Visibility


@runtime_checkable
class ConversationRepository(Protocol):
    """Authoritative store for conversations and their messages"""

    async def create_conversation(self, title: str, first_user_message: Optional[str] = None) -> str:
        ...

    async def append_or_replace_messages(self, conversation_id: str, messages: Sequence[Message]) -> None:
        ...

    async def truncate_messages(self, conversation_id: str, upto_index_exclusive: int) -> None:
        ...

    async def list_conversations(self) -> List[Conversation]:
        ...

    def watch_conversations(self) -> AsyncIterator[List[Conversation]]:
        ...

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    async def save_temporary_chat(self, messages: Sequence[Message]) -> str:
        ...

    async def delete_conversation(self, conversation_id: str) -> None:
        ...

    async def update_title(self, conversation_id: str, title: str) -> None:
        ...

    async def set_visibility(self, conversation_id: str, visibility: Visibility) -> None:
        ...

    async def branch_conversation(self, conversation_id: str, upto_index: int) -> str:
        ...


@runtime_checkable
class StreamTransport(Protocol):
    """Opens one streamed generation and yields raw response chunks"""

    def stream(self, request: GenerationRequest) -> AsyncIterator[Union[bytes, str]]:
        ...


@runtime_checkable
class CredentialProvider(Protocol):
    """Identity provider session for the current user"""

    @property
    def user_id(self) -> Optional[str]:
        ...

    async def get_token(self) -> Optional[str]:
        ...
