"""
Chat service - the surface the UI layer talks to.

Wires the transcript store, the streaming session manager, the reconciliation
engine and the system of record together, and carries the per-session inputs
(pending attachments, web search toggle, selected model).
"""

import asyncio
from dataclasses import replace
from typing import Any, Callable, List, Optional

from services.ai_service.model_catalog import DEFAULT_MODEL
from services.auth_service.credentials import SessionCredentials
from services.chat_service.conversation_repository import SQLiteConversationRepository
from services.chat_service.errors import ChatServiceError, ConversationNotFoundError, PreconditionError
from services.chat_service.interfaces import ConversationRepository, CredentialProvider, StreamTransport
from services.chat_service.models import Attachment, Conversation, Visibility, build_user_content
from services.chat_service.reconciliation import ReconciliationEngine, SyncService
from services.chat_service.streaming_session import StreamingSessionManager
from services.chat_service.transcript_store import StoreState, TranscriptStore
from infrastructure.config.settings import AppConfig, StreamingConfig, SyncConfig, get_config
from infrastructure.external.http_stream_transport import HttpStreamTransport
from infrastructure.external.openai_gateway import OpenAIGatewayTransport
from infrastructure.monitoring.logging_service import (
    get_error_tracker,
    get_logger,
    initialize_logging,
    log_conversation_event,
)
from infrastructure.resilience.retry_service import RetryPolicy


class ChatService:
    """
    Service for sending prompts and managing the user's conversations.

    Args:
        store: Transcript store rendered by the UI
        repository: System of record
        transport: Streaming collaborator
        credentials: Identity provider session
        streaming: Throttle, retry and watchdog settings
        sync: Reconciliation thresholds
        default_model: Model used when a call does not name one
        persist_completed: Write the finished transcript back to the system of record
            after each generation; needed when the transport does not do it itself
        sleep: Backoff coroutine (injectable for tests)
        clock: Monotonic clock for throttling (injectable for tests)
    """

    def __init__(
        self,
        store: TranscriptStore,
        repository: ConversationRepository,
        transport: StreamTransport,
        credentials: CredentialProvider,
        streaming: Optional[StreamingConfig] = None,
        sync: Optional[SyncConfig] = None,
        default_model: str = DEFAULT_MODEL,
        persist_completed: bool = False,
        sleep=None,
        clock=None,
    ):
        self.logger = get_logger(__name__)
        streaming = streaming or StreamingConfig()
        sync = sync or SyncConfig()

        self.store = store
        self.repository = repository
        self.default_model = default_model
        self.persist_completed = persist_completed
        self.web_search = False
        self._attachments: List[Attachment] = []

        self.manager = StreamingSessionManager(
            store,
            repository,
            transport,
            credentials,
            update_interval_ms=streaming.update_interval_ms,
            retry_policy=RetryPolicy(streaming.max_retry_attempts, streaming.retry_base_delay),
            idle_timeout=streaming.stream_idle_timeout,
            sleep=sleep,
            clock=clock,
        )
        self.reconciler = ReconciliationEngine(
            store,
            content_slack_chars=sync.content_slack_chars,
            local_freshness_seconds=sync.local_freshness_seconds,
        )
        self.sync = SyncService(repository, self.reconciler)

    # ---------------------------------------------------------------- inputs

    @property
    def attachments(self) -> List[Attachment]:
        return list(self._attachments)

    def add_attachment(self, attachment: Attachment):
        self._attachments.append(attachment)
        self.logger.debug(f"Attachment queued: {attachment.name} ({attachment.size} bytes)")

    def clear_attachments(self):
        self._attachments = []

    def set_web_search(self, enabled: bool):
        self.web_search = bool(enabled)

    # ------------------------------------------------------------ generation

    async def send(
        self,
        prompt: str,
        model_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        on_conversation_created: Optional[Callable[[str], None]] = None,
    ) -> str:
        """
        Send a prompt (with any pending attachments) and stream the reply

        Args:
            prompt: User text
            model_id: Model to use (defaults to the service's default model)
            conversation_id: Target conversation, or None to start a new one
            on_conversation_created: Called with the new id before streaming begins

        Returns:
            The conversation id
        """
        attachments = list(self._attachments)
        if not prompt.strip() and not attachments:
            raise PreconditionError("Cannot send an empty message")

        content = build_user_content(prompt, attachments)
        self._attachments = []
        try:
            conversation_id = await self.manager.send(
                conversation_id,
                content,
                model_id or self.default_model,
                on_conversation_created=on_conversation_created,
                web_search=self.web_search,
            )
        except ChatServiceError:
            self._attachments = attachments
            raise

        await self._persist(conversation_id)
        return conversation_id

    async def regenerate(self, conversation_id: str, model_id: Optional[str] = None) -> str:
        """Regenerate the last assistant reply; returns its final content"""
        text = await self.manager.regenerate(conversation_id, model_id or self.default_model, self.web_search)
        await self._persist(conversation_id)
        return text

    async def edit_and_regenerate(self, conversation_id: str, message_index: int, new_content: str,
                                  model_id: Optional[str] = None) -> str:
        """Replace a user message, drop everything after it and regenerate; returns the conversation id"""
        if not new_content.strip():
            raise PreconditionError("Cannot send an empty message")
        await self.manager.edit_and_regenerate(
            conversation_id, message_index, new_content, model_id or self.default_model, self.web_search
        )
        await self._persist(conversation_id)
        return conversation_id

    def stop(self, conversation_id: Optional[str] = None) -> bool:
        """Stop streaming into a conversation (the selected one by default)"""
        conversation_id = conversation_id or self.store.state.current_conversation_id
        if conversation_id is None:
            return False
        return self.manager.stop(conversation_id)

    async def _persist(self, conversation_id: str):
        if not self.persist_completed or self.store.lease_for(conversation_id) is not None:
            return
        conversation = self.store.get_conversation(conversation_id)
        if conversation is None:
            return
        messages = [m for m in conversation.messages if not m.is_streaming]
        try:
            await self.repository.append_or_replace_messages(conversation_id, messages)
        except Exception as e:
            get_error_tracker().track_error(e, "persist_conversation", conversation_id=conversation_id)

    # ------------------------------------------------------------ management

    def _local(self, conversation_id: str) -> Conversation:
        conversation = self.store.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        """Local copy if present, otherwise loaded from the system of record"""
        conversation = self.store.get_conversation(conversation_id)
        if conversation is not None:
            return conversation

        conversation = await self.repository.get_conversation(conversation_id)
        if conversation is not None:
            self.store.upsert_conversation(conversation)
        return conversation

    async def select_conversation(self, conversation_id: Optional[str]):
        if conversation_id is not None and await self.get_conversation(conversation_id) is None:
            raise ConversationNotFoundError(conversation_id)
        self.store.set_current_conversation(conversation_id)

    async def delete_conversation(self, conversation_id: str):
        await self.repository.delete_conversation(conversation_id)
        self.manager.stop(conversation_id)
        self.store.remove_conversation(conversation_id)
        log_conversation_event(self.logger, "deleted", conversation_id)

    async def rename_conversation(self, conversation_id: str, title: str):
        title = title.strip()
        if not title:
            raise PreconditionError("Title cannot be empty")
        conversation = self._local(conversation_id)

        await self.repository.update_title(conversation_id, title)
        self.store.upsert_conversation(replace(conversation, title=title))
        log_conversation_event(self.logger, "renamed", conversation_id, title=title)

    async def set_visibility(self, conversation_id: str, visibility: Visibility):
        visibility = Visibility(visibility)
        conversation = self._local(conversation_id)

        await self.repository.set_visibility(conversation_id, visibility)
        self.store.upsert_conversation(replace(conversation, visibility=visibility))
        log_conversation_event(self.logger, "visibility_changed", conversation_id, visibility=visibility.value)

    async def branch_conversation(self, conversation_id: str, upto_index: int) -> str:
        """
        Start a new conversation from messages [0, upto_index] of an existing one

        Returns:
            ID of the branch, which becomes the selected conversation
        """
        conversation = self._local(conversation_id)
        if not 0 <= upto_index < len(conversation.messages):
            raise PreconditionError(f"Message index {upto_index} is out of range")

        branch_id = await self.repository.branch_conversation(conversation_id, upto_index)
        branch = await self.repository.get_conversation(branch_id)
        if branch is None:
            branch = replace(
                conversation,
                conversation_id=branch_id,
                messages=conversation.messages[:upto_index + 1],
                branched=True,
                visibility=Visibility.PRIVATE,
                version=None,
            )
        self.store.upsert_conversation(branch)
        self.store.set_current_conversation(branch_id)
        log_conversation_event(self.logger, "branched", branch_id, source=conversation_id, upto_index=upto_index)
        return branch_id

    async def refresh(self):
        """Pull and merge one snapshot from the system of record"""
        return await self.sync.refresh()

    def start_sync(self) -> asyncio.Task:
        """Run the snapshot sync loop in the background"""
        return asyncio.create_task(self.sync.run())

    # --------------------------------------------------------- subscriptions

    def subscribe_current_conversation(self, listener: Callable[[Any, Any], None]) -> Callable[[], None]:
        return self.store.subscribe(listener, selector=lambda state: state.current_conversation)

    def subscribe_conversations(self, listener: Callable[[Any, Any], None]) -> Callable[[], None]:
        return self.store.subscribe(listener, selector=lambda state: state.conversations)

    def subscribe_is_streaming(self, listener: Callable[[Any, Any], None]) -> Callable[[], None]:
        return self.store.subscribe(listener, selector=lambda state: state.is_streaming)

    def subscribe_message_streaming(self, conversation_id: str, index: int,
                                    listener: Callable[[Any, Any], None]) -> Callable[[], None]:
        def selector(state: StoreState) -> bool:
            conversation = state.get_conversation(conversation_id)
            if conversation is None or not 0 <= index < len(conversation.messages):
                return False
            return conversation.messages[index].is_streaming

        return self.store.subscribe(listener, selector=selector)


def create_chat_service(config: Optional[AppConfig] = None, user_id: Optional[str] = None,
                        transport: Optional[StreamTransport] = None) -> ChatService:
    """
    Build a chat service from configuration

    Without an explicit transport, a configured gateway API key selects the direct
    gateway (and local persistence of finished transcripts); otherwise requests go
    to the streaming proxy, which persists them itself.
    """
    config = config or get_config()
    initialize_logging()
    credentials = SessionCredentials.from_config(user_id)
    repository = SQLiteConversationRepository(
        db_path=config.storage.db_path,
        user_id=credentials.user_id,
        max_conversations=config.storage.max_conversations,
    )

    persist_completed = False
    if transport is None:
        if config.api.gateway_api_key:
            transport = OpenAIGatewayTransport(api_key=config.api.gateway_api_key)
            persist_completed = True
        else:
            transport = HttpStreamTransport(url=config.api.gateway_url)

    return ChatService(
        TranscriptStore(),
        repository,
        transport,
        credentials,
        streaming=config.streaming,
        sync=config.sync,
        default_model=config.llm.default_model,
        persist_completed=persist_completed,
    )


_chat_service: Optional[ChatService] = None


def get_chat_service() -> ChatService:
    """Get the global chat service instance"""
    global _chat_service
    if _chat_service is None:
        _chat_service = create_chat_service()
    return _chat_service
