"""
Streaming session manager - turns a submitted prompt into an ordered, durable transcript.

One StreamSession drives one generation: it appends the assistant placeholder,
holds the lease on that slot, feeds transport chunks through the decoder,
applies throttled updates to the transcript store, retries with linear backoff
and finally releases the lease. A new send into the same conversation always
supersedes the running session (last send wins).
"""

import asyncio
import time
from contextlib import aclosing
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

from services.ai_service.models import (
    CompleteEvent,
    DeltaEvent,
    ErrorEvent,
    GenerationRequest,
    ReasoningEvent,
    StartEvent,
)
from services.ai_service.stream_decoder import StreamDecoder
from services.chat_service.errors import AuthorizationError, ConversationNotFoundError, PreconditionError
from services.chat_service.interfaces import ConversationRepository, CredentialProvider, StreamTransport
from services.chat_service.models import (
    ASSISTANT,
    USER,
    Conversation,
    Message,
    MessageContent,
    SessionState,
    StreamSession,
    content_to_text,
)
from services.chat_service.transcript_store import TranscriptStore
from infrastructure.monitoring.logging_service import get_logger, log_conversation_event, log_stream_metrics
from infrastructure.resilience.retry_service import RetryPolicy, RetryStatus, TransportError, is_retriable


DEFAULT_TITLE = "New Chat"
STREAM_ENDED_UNEXPECTEDLY = "stream ended unexpectedly"
UNAUTHORIZED_STATUSES = (401, 403)


class AttemptOutcome(str, Enum):
    COMPLETE = "complete"
    ERROR = "error"
    STOPPED = "stopped"


class StreamingSessionManager:
    """
    Orchestrates generations against a TranscriptStore.

    Args:
        store: Transcript store receiving every write
        repository: System of record (conversation creation and truncation)
        transport: Streaming gateway collaborator
        credentials: Identity provider session
        update_interval_ms: Minimum delay between two content flushes
        retry_policy: Attempt budget and backoff
        is_temporary: Requests are flagged as ephemeral and carry no conversation id
        idle_timeout: Seconds without a chunk before an attempt is abandoned, None to wait forever
        sleep: Coroutine used for backoff delays
        clock: Monotonic clock in seconds used for throttling
    """

    def __init__(
        self,
        store: TranscriptStore,
        repository: ConversationRepository,
        transport: StreamTransport,
        credentials: CredentialProvider,
        update_interval_ms: int = 50,
        retry_policy: Optional[RetryPolicy] = None,
        is_temporary: bool = False,
        idle_timeout: Optional[float] = None,
        decoder: Optional[StreamDecoder] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.logger = get_logger(__name__)
        self._store = store
        self._repository = repository
        self._transport = transport
        self._credentials = credentials
        self._update_interval = update_interval_ms / 1000.0
        self._retry_policy = retry_policy or RetryPolicy()
        self._is_temporary = is_temporary
        self._idle_timeout = idle_timeout
        self._decoder = decoder or StreamDecoder()
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.monotonic
        self._sessions: Dict[str, StreamSession] = {}
        self._retry_statuses: Dict[str, RetryStatus] = {}

    @property
    def store(self) -> TranscriptStore:
        return self._store

    def active_session(self, conversation_id: str) -> Optional[StreamSession]:
        session = self._sessions.get(conversation_id)
        if session is None or session.is_terminal:
            return None
        return session

    def get_retry_status(self, conversation_id: str) -> Optional[RetryStatus]:
        return self._retry_statuses.get(conversation_id)

    # ------------------------------------------------------------ operations

    async def send(
        self,
        conversation_id: Optional[str],
        content: MessageContent,
        model_id: str,
        prior_messages: Optional[Sequence[Message]] = None,
        on_conversation_created: Optional[Callable[[str], None]] = None,
        web_search: bool = False,
    ) -> str:
        """
        Append a user message and stream the assistant reply

        Args:
            conversation_id: Target conversation, or None to create one first
            content: Plain text or structured parts
            model_id: Model used for the generation
            prior_messages: History to submit before the new user message; defaults
                to the conversation as currently held by the store
            on_conversation_created: Called with the new id before streaming begins
            web_search: Ask the gateway for supplementary web context

        Returns:
            The conversation id
        """
        token = await self._require_token()

        if conversation_id is None:
            conversation_id = await self._create_conversation(content_to_text(content))
            if on_conversation_created is not None:
                on_conversation_created(conversation_id)
        else:
            self._require_conversation(conversation_id)

        user_message = Message(role=USER, content=content)
        self._store.append_message(conversation_id, user_message)

        if prior_messages is not None:
            history = [m for m in prior_messages if not m.is_streaming] + [user_message]
        else:
            history = self._history(conversation_id)

        await self._generate(conversation_id, history, model_id, token, web_search)
        return conversation_id

    async def regenerate(self, conversation_id: str, model_id: str, web_search: bool = False) -> str:
        """
        Replace the trailing assistant reply with a fresh generation

        Returns:
            The final assistant content
        """
        token = await self._require_token()
        conversation = self._require_conversation(conversation_id)

        messages = list(conversation.messages)
        cut = len(messages) - 1 if messages and messages[-1].role == ASSISTANT else len(messages)
        history = [m for m in messages[:cut] if not m.is_streaming]
        if not history or history[-1].role != USER:
            raise PreconditionError("No user message to regenerate a response for")

        if cut < len(messages):
            await self._repository.truncate_messages(conversation_id, cut)
            self.stop(conversation_id)
            self._store.truncate_messages(conversation_id, cut)

        return await self._generate(conversation_id, history, model_id, token, web_search)

    async def edit_and_regenerate(
        self,
        conversation_id: str,
        message_index: int,
        new_content: MessageContent,
        model_id: str,
        web_search: bool = False,
    ) -> str:
        """
        Truncate at an edited user message and send the new content in its place

        Returns:
            The conversation id
        """
        await self._require_token()
        conversation = self._require_conversation(conversation_id)

        if not 0 <= message_index < len(conversation.messages):
            raise PreconditionError(f"Message index {message_index} is out of range")
        if conversation.messages[message_index].role != USER:
            raise PreconditionError("Only user messages can be edited")

        # The system of record may reject the truncation; nothing local changes until it accepts
        await self._repository.truncate_messages(conversation_id, message_index)
        self.stop(conversation_id)
        self._store.truncate_messages(conversation_id, message_index)
        log_conversation_event(self.logger, "truncated", conversation_id, upto_index=message_index)

        return await self.send(conversation_id, new_content, model_id, web_search=web_search)

    def stop(self, conversation_id: str) -> bool:
        """Stop the running session of a conversation, if any"""
        session = self.active_session(conversation_id)
        if session is None:
            return False
        self._stop_session(session)
        return True

    # --------------------------------------------------------------- helpers

    async def _require_token(self) -> str:
        token = await self._credentials.get_token()
        if not token:
            raise AuthorizationError("Not authenticated")
        return token

    def _require_conversation(self, conversation_id: str) -> Conversation:
        conversation = self._store.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    def _history(self, conversation_id: str) -> List[Message]:
        conversation = self._require_conversation(conversation_id)
        return [m for m in conversation.messages if not m.is_streaming]

    async def _create_conversation(self, first_user_message: str) -> str:
        conversation_id = await self._repository.create_conversation(
            DEFAULT_TITLE, first_user_message=first_user_message
        )
        now = datetime.now()
        self._store.upsert_conversation(Conversation(
            conversation_id=conversation_id,
            title=DEFAULT_TITLE,
            owner_id=self._credentials.user_id,
            created_at=now,
            updated_at=now,
        ))
        self._store.set_current_conversation(conversation_id)
        log_conversation_event(self.logger, "created", conversation_id)
        return conversation_id

    def _owns(self, session: StreamSession) -> bool:
        return session.state != SessionState.STOPPED and self._store.holds_lease(session.lease)

    def _release(self, session: StreamSession) -> None:
        if session.lease_released:
            return
        self._store.release_lease(session.lease)
        session.lease_released = True

    def _stop_session(self, session: StreamSession) -> None:
        if self._store.holds_lease(session.lease):
            self._store.set_message_streaming(session.conversation_id, session.message_index, False)
        session.state = SessionState.STOPPED
        self._release(session)
        self.logger.info(
            f"Stopped stream on {session.conversation_id}[{session.message_index}] "
            f"(lease {session.lease.generation})"
        )

    # ------------------------------------------------------------ generation

    async def _generate(
        self,
        conversation_id: str,
        history: Sequence[Message],
        model_id: str,
        token: str,
        web_search: bool,
    ) -> str:
        if not self._store.append_message(conversation_id, Message(role=ASSISTANT, content="", is_streaming=True)):
            raise ConversationNotFoundError(conversation_id)
        message_index = len(self._require_conversation(conversation_id).messages) - 1

        prior = self.active_session(conversation_id)
        if prior is not None:
            self._stop_session(prior)

        lease, superseded = self._store.acquire_lease(conversation_id, message_index)
        if superseded is not None:
            self.logger.warning(f"Superseded a lease on {conversation_id} held outside this manager")

        session = StreamSession(
            conversation_id=conversation_id,
            message_index=message_index,
            lease=lease,
            model_id=model_id,
            started_at=self._clock(),
        )
        self._sessions[conversation_id] = session

        request = GenerationRequest(
            messages=[m.to_wire() for m in history],
            model_id=model_id,
            auth_token=token,
            web_search=web_search,
            conversation_id=None if self._is_temporary else conversation_id,
            is_temporary=self._is_temporary,
        )

        try:
            return await self._run(session, request)
        finally:
            if not session.is_terminal:
                # Cancelled by the caller
                self._stop_session(session)
            if self._sessions.get(conversation_id) is session:
                del self._sessions[conversation_id]

    async def _run(self, session: StreamSession, request: GenerationRequest) -> str:
        retry_status = RetryStatus()
        retry_status.start_retry(self._retry_policy.max_attempts)
        self._retry_statuses[session.conversation_id] = retry_status
        fresh_attempt = False

        while True:
            if not self._owns(session):
                return session.accumulated_text

            session.state = SessionState.AWAITING_FIRST_BYTE
            try:
                outcome, error = await self._stream_attempt(session, request, fresh_attempt)
            except TransportError as e:
                if e.status_code in UNAUTHORIZED_STATUSES:
                    self._fail_authorization(session, str(e))
                    raise AuthorizationError(str(e)) from e
                outcome, error = AttemptOutcome.ERROR, str(e) or e.__class__.__name__
                self.logger.warning(f"Transport error on {session.conversation_id}: {error}")
            except Exception as e:
                outcome, error = AttemptOutcome.ERROR, str(e) or e.__class__.__name__
                self.logger.warning(
                    f"Stream attempt failed on {session.conversation_id} "
                    f"({e.__class__.__name__}, retriable={is_retriable(e)}): {error}",
                    exc_info=True,
                )

            if outcome == AttemptOutcome.STOPPED or not self._owns(session):
                return session.accumulated_text

            if outcome == AttemptOutcome.COMPLETE:
                retry_status.finish_retry(success=True)
                return self._finalize_success(session)

            session.last_error = error
            session.retry_count += 1
            if self._retry_policy.should_retry(session.retry_count):
                delay = self._retry_policy.delay_for(session.retry_count)
                session.state = SessionState.RETRYING
                retry_status.on_retry_attempt(session.retry_count, error, delay)
                self.logger.warning(
                    f"Retrying stream on {session.conversation_id} in {delay:.1f}s "
                    f"(attempt {session.retry_count + 1}/{self._retry_policy.max_attempts}): {error}"
                )
                await self._sleep(delay)
                fresh_attempt = True
                continue

            retry_status.finish_retry(success=False)
            return self._finalize_failure(session)

    async def _stream_attempt(
        self,
        session: StreamSession,
        request: GenerationRequest,
        fresh_attempt: bool,
    ) -> Tuple[AttemptOutcome, Optional[str]]:
        conversation_id, index = session.conversation_id, session.message_index
        last_flush: Optional[float] = None
        # Content from a failed attempt stays visible until the new attempt produces its own
        reset_text = fresh_attempt
        reset_reasoning = fresh_attempt

        chunks = self._transport.stream(request)
        source = chunks if self._idle_timeout is None else self._guard_idle(chunks)
        try:
            async with aclosing(self._decoder.decode(source)) as events:
                async for event in events:
                    if not self._owns(session):
                        self.logger.debug(f"Discarding {event.type} event from revoked session on {conversation_id}")
                        return AttemptOutcome.STOPPED, None

                    if session.state == SessionState.AWAITING_FIRST_BYTE:
                        session.state = SessionState.STREAMING

                    if isinstance(event, StartEvent):
                        session.supports_reasoning = event.supports_reasoning

                    elif isinstance(event, DeltaEvent):
                        if not event.content:
                            continue
                        if reset_text:
                            session.accumulated_text = ""
                            reset_text = False
                        session.accumulated_text += event.content
                        session.deltas_applied += 1

                        now = self._clock()
                        if session.ttft_ms is None:
                            session.ttft_ms = (now - session.started_at) * 1000
                        if last_flush is None or now - last_flush >= self._update_interval:
                            self._store.patch_message_content(conversation_id, index, session.accumulated_text)
                            last_flush = now

                    elif isinstance(event, ReasoningEvent):
                        if not session.supports_reasoning or not event.content:
                            continue
                        if reset_reasoning:
                            session.accumulated_reasoning = ""
                            self._store.set_message_reasoning(conversation_id, index, None)
                            reset_reasoning = False
                        session.accumulated_reasoning += event.content
                        self._store.append_message_reasoning(conversation_id, index, event.content)

                    elif isinstance(event, CompleteEvent):
                        return AttemptOutcome.COMPLETE, None

                    elif isinstance(event, ErrorEvent):
                        return AttemptOutcome.ERROR, event.error_message
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()

        return AttemptOutcome.ERROR, STREAM_ENDED_UNEXPECTEDLY

    async def _guard_idle(self, chunks: AsyncIterator[Union[bytes, str]]) -> AsyncIterator[Union[bytes, str]]:
        iterator = chunks.__aiter__()
        while True:
            try:
                chunk = await asyncio.wait_for(iterator.__anext__(), timeout=self._idle_timeout)
            except StopAsyncIteration:
                return
            except asyncio.TimeoutError:
                raise TransportError(f"No data received for {self._idle_timeout}s")
            yield chunk

    def _finalize_success(self, session: StreamSession) -> str:
        session.state = SessionState.FINALIZED
        self._store.patch_message_content(session.conversation_id, session.message_index, session.accumulated_text)
        self._store.set_message_streaming(session.conversation_id, session.message_index, False)
        self._release(session)

        log_stream_metrics(
            self.logger,
            session.conversation_id,
            session.model_id,
            ttft_ms=session.ttft_ms,
            deltas=session.deltas_applied,
            attempts=session.retry_count + 1,
        )
        return session.accumulated_text

    def _finalize_failure(self, session: StreamSession) -> str:
        annotation = self._retry_policy.exhausted_message(session.last_error or "Unknown error")
        session.state = SessionState.FINALIZED
        self._store.patch_message_content(session.conversation_id, session.message_index, annotation)
        self._store.set_message_streaming(session.conversation_id, session.message_index, False)
        self._release(session)

        self.logger.error(f"Stream on {session.conversation_id} failed: {annotation}")
        return annotation

    def _fail_authorization(self, session: StreamSession, error: str) -> None:
        if self._owns(session):
            self._store.patch_message_content(
                session.conversation_id, session.message_index, f"Authorization failed: {error}"
            )
        self._stop_session(session)
