"""
Temporary chat service - a single ephemeral conversation that never reaches the system of record
unless explicitly saved.
"""

import random
import string
import time
from datetime import datetime
from typing import List, Optional

from services.ai_service.model_catalog import DEFAULT_MODEL
from services.chat_service.errors import ChatServiceError, PreconditionError
from services.chat_service.interfaces import ConversationRepository, CredentialProvider, StreamTransport
from services.chat_service.models import Attachment, Conversation, Message, build_user_content
from services.chat_service.streaming_session import StreamingSessionManager
from services.chat_service.transcript_store import TranscriptStore
from infrastructure.config.settings import StreamingConfig
from infrastructure.monitoring.logging_service import get_logger
from infrastructure.resilience.retry_service import RetryPolicy


TEMP_CHAT_TITLE = "Temporary Chat"


def new_temp_chat_id() -> str:
    """temp-<epoch ms>-<7 random base36 chars>"""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"temp-{int(time.time() * 1000)}-{suffix}"


class _EphemeralConversations:
    """Stands in for the system of record inside the temporary context: ids are local, truncation is a no-op"""

    async def create_conversation(self, title: str, first_user_message: Optional[str] = None) -> str:
        return new_temp_chat_id()

    async def truncate_messages(self, conversation_id: str, upto_index_exclusive: int) -> None:
        return None


class TemporaryChatService:
    """
    Service for the ephemeral chat context.

    Holds its own TranscriptStore with at most one conversation; requests are
    flagged temporary and carry no conversation id.
    """

    def __init__(
        self,
        repository: ConversationRepository,
        transport: StreamTransport,
        credentials: CredentialProvider,
        streaming: Optional[StreamingConfig] = None,
        default_model: str = DEFAULT_MODEL,
        sleep=None,
        clock=None,
    ):
        self.logger = get_logger(__name__)
        streaming = streaming or StreamingConfig()

        self.repository = repository
        self.credentials = credentials
        self.default_model = default_model
        self.web_search = False
        self._attachments: List[Attachment] = []

        self.store = TranscriptStore()
        self.manager = StreamingSessionManager(
            self.store,
            _EphemeralConversations(),
            transport,
            credentials,
            update_interval_ms=streaming.temp_update_interval_ms,
            retry_policy=RetryPolicy(streaming.max_retry_attempts, streaming.retry_base_delay),
            is_temporary=True,
            idle_timeout=streaming.stream_idle_timeout,
            sleep=sleep,
            clock=clock,
        )

    @property
    def temp_chat(self) -> Optional[Conversation]:
        return self.store.current_conversation()

    @property
    def is_streaming(self) -> bool:
        return self.store.is_streaming

    def add_attachment(self, attachment: Attachment):
        self._attachments.append(attachment)

    def clear_attachments(self):
        self._attachments = []

    def set_web_search(self, enabled: bool):
        self.web_search = bool(enabled)

    def create_temp_chat(self) -> Conversation:
        """Start a fresh temporary conversation, replacing any previous one"""
        self.clear()
        now = datetime.now()
        conversation = Conversation(
            conversation_id=new_temp_chat_id(),
            title=TEMP_CHAT_TITLE,
            owner_id=self.credentials.user_id,
            created_at=now,
            updated_at=now,
        )
        self.store.upsert_conversation(conversation)
        self.store.set_current_conversation(conversation.conversation_id)
        self.logger.info(f"Created temporary chat {conversation.conversation_id}")
        return conversation

    def _require_temp_chat(self) -> Conversation:
        conversation = self.temp_chat
        if conversation is None:
            raise PreconditionError("No temporary chat")
        return conversation

    async def send(self, prompt: str, model_id: Optional[str] = None) -> str:
        """Send a prompt into the temporary chat, creating it on first use; returns its id"""
        attachments = list(self._attachments)
        if not prompt.strip() and not attachments:
            raise PreconditionError("Cannot send an empty message")

        conversation = self.temp_chat or self.create_temp_chat()
        content = build_user_content(prompt, attachments)
        self._attachments = []
        try:
            return await self.manager.send(
                conversation.conversation_id,
                content,
                model_id or self.default_model,
                web_search=self.web_search,
            )
        except ChatServiceError:
            self._attachments = attachments
            raise

    async def regenerate(self, model_id: Optional[str] = None) -> str:
        conversation = self._require_temp_chat()
        return await self.manager.regenerate(
            conversation.conversation_id, model_id or self.default_model, self.web_search
        )

    async def edit_and_regenerate(self, message_index: int, new_content: str, model_id: Optional[str] = None) -> str:
        conversation = self._require_temp_chat()
        return await self.manager.edit_and_regenerate(
            conversation.conversation_id, message_index, new_content,
            model_id or self.default_model, self.web_search,
        )

    def stop(self) -> bool:
        conversation = self.temp_chat
        if conversation is None:
            return False
        return self.manager.stop(conversation.conversation_id)

    async def save(self) -> str:
        """
        Persist the completed messages of the temporary chat as a regular conversation

        Returns:
            ID assigned by the system of record
        """
        conversation = self.temp_chat
        if conversation is None:
            raise PreconditionError("No temporary chat to save")

        messages: List[Message] = [m for m in conversation.messages if not m.is_streaming]
        if not messages:
            raise PreconditionError("No completed messages to save")

        conversation_id = await self.repository.save_temporary_chat(messages)
        self.logger.info(f"Saved temporary chat {conversation.conversation_id} as {conversation_id}")
        self.clear()
        return conversation_id

    def clear(self):
        """Stop any stream and discard the temporary chat"""
        conversation = self.temp_chat
        if conversation is None:
            return
        self.manager.stop(conversation.conversation_id)
        self.store.remove_conversation(conversation.conversation_id)
