"""
Transcript store - observable, in-memory table of conversations rendered by the UI.

Every mutation builds a new immutable StoreState and swaps it in with a single
assignment, then notifies subscribers. Readers never see a half-applied update.
"""

import itertools
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from services.chat_service.models import Conversation, Lease, Message
from infrastructure.monitoring.logging_service import get_logger


Selector = Callable[['StoreState'], Any]
Listener = Callable[[Any, Any], None]


@dataclass(frozen=True)
class StoreState:
    conversations: Tuple[Conversation, ...] = ()
    current_conversation_id: Optional[str] = None
    leases: Dict[str, Lease] = field(default_factory=dict)

    @property
    def is_streaming(self) -> bool:
        return bool(self.leases)

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        for conversation in self.conversations:
            if conversation.conversation_id == conversation_id:
                return conversation
        return None

    @property
    def current_conversation(self) -> Optional[Conversation]:
        if self.current_conversation_id is None:
            return None
        return self.get_conversation(self.current_conversation_id)


@dataclass
class _Subscription:
    listener: Listener
    selector: Optional[Selector]


class TranscriptStore:
    """
    Single source of UI truth for conversations and their ordered messages.

    Also holds the per-conversation stream leases, the only coordination
    primitive between stream sessions and snapshot reconciliation.

    Local message writes clear a conversation's version: the list no longer
    matches any server version until a snapshot with identical messages
    arrives.
    """

    def __init__(self, initial: Optional[StoreState] = None):
        self.logger = get_logger(__name__)
        self._state = initial or StoreState()
        self._subscriptions: List[_Subscription] = []
        self._lease_generations = itertools.count(1)

    # ------------------------------------------------------------------ reads

    @property
    def state(self) -> StoreState:
        return self._state

    @property
    def conversations(self) -> Tuple[Conversation, ...]:
        return self._state.conversations

    @property
    def is_streaming(self) -> bool:
        return self._state.is_streaming

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return self._state.get_conversation(conversation_id)

    def current_conversation(self) -> Optional[Conversation]:
        return self._state.current_conversation

    def lease_for(self, conversation_id: str) -> Optional[Lease]:
        return self._state.leases.get(conversation_id)

    def holds_lease(self, lease: Lease) -> bool:
        return self._state.leases.get(lease.conversation_id) == lease

    # ---------------------------------------------------------- subscriptions

    def subscribe(self, listener: Listener, selector: Optional[Selector] = None) -> Callable[[], None]:
        """
        Register a listener called with (new, old) after each state change

        Args:
            listener: Callback receiving the selected values
            selector: Optional projection of the state; the listener only fires
                when the projected value changes

        Returns:
            A callable that removes the subscription
        """
        subscription = _Subscription(listener=listener, selector=selector)
        self._subscriptions.append(subscription)

        def unsubscribe() -> None:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

        return unsubscribe

    def _commit(self, new_state: StoreState) -> None:
        old_state = self._state
        self._state = new_state

        for subscription in list(self._subscriptions):
            if subscription.selector is None:
                new_value, old_value = new_state, old_state
            else:
                new_value = subscription.selector(new_state)
                old_value = subscription.selector(old_state)
                if new_value == old_value:
                    continue
            try:
                subscription.listener(new_value, old_value)
            except Exception as e:
                self.logger.error(f"Store subscriber failed: {e}", exc_info=True)

    def _update_conversation(self, conversation_id: str,
                             update: Callable[[Conversation], Optional[Conversation]]) -> bool:
        conversations = list(self._state.conversations)
        for position, conversation in enumerate(conversations):
            if conversation.conversation_id == conversation_id:
                updated = update(conversation)
                if updated is None:
                    return False
                conversations[position] = updated
                self._commit(replace(self._state, conversations=tuple(conversations)))
                return True
        return False

    def _update_message(self, conversation_id: str, index: int,
                        update: Callable[[Message], Message]) -> bool:
        def apply(conversation: Conversation) -> Optional[Conversation]:
            if index < 0 or index >= len(conversation.messages):
                return None
            messages = list(conversation.messages)
            messages[index] = update(messages[index])
            return replace(conversation, messages=tuple(messages), version=None)

        return self._update_conversation(conversation_id, apply)

    # -------------------------------------------------------- conversations

    def upsert_conversation(self, conversation: Conversation) -> None:
        """Insert a conversation at the top of the list, or replace it in place by id"""
        conversations = list(self._state.conversations)
        for position, existing in enumerate(conversations):
            if existing.conversation_id == conversation.conversation_id:
                conversations[position] = conversation
                break
        else:
            conversations.insert(0, conversation)
        self._commit(replace(self._state, conversations=tuple(conversations)))

    def remove_conversation(self, conversation_id: str) -> None:
        """Drop a conversation, its lease, and the selection if it pointed there"""
        if self.get_conversation(conversation_id) is None:
            return
        leases = {key: lease for key, lease in self._state.leases.items() if key != conversation_id}
        current = self._state.current_conversation_id
        self._commit(replace(
            self._state,
            conversations=tuple(c for c in self._state.conversations if c.conversation_id != conversation_id),
            current_conversation_id=None if current == conversation_id else current,
            leases=leases,
        ))

    def replace_conversations(self, conversations: Iterable[Conversation],
                              current_conversation_id: Optional[str]) -> None:
        """Swap the whole conversation list and selection in one transition"""
        self._commit(replace(
            self._state,
            conversations=tuple(conversations),
            current_conversation_id=current_conversation_id,
        ))

    def set_current_conversation(self, conversation_id: Optional[str]) -> None:
        if conversation_id == self._state.current_conversation_id:
            return
        self._commit(replace(self._state, current_conversation_id=conversation_id))

    # ------------------------------------------------------------- messages

    def append_message(self, conversation_id: str, message: Message) -> bool:
        """Append to the end; unknown conversation ids are ignored"""
        def apply(conversation: Conversation) -> Conversation:
            return replace(
                conversation,
                messages=conversation.messages + (message,),
                updated_at=datetime.now(),
                version=None,
            )

        appended = self._update_conversation(conversation_id, apply)
        if not appended:
            self.logger.debug(f"append_message ignored for unknown conversation {conversation_id}")
        return appended

    def patch_message_content(self, conversation_id: str, index: int, content: str) -> bool:
        return self._update_message(conversation_id, index, lambda m: replace(m, content=content))

    def append_message_reasoning(self, conversation_id: str, index: int, reasoning_delta: str) -> bool:
        return self._update_message(
            conversation_id, index,
            lambda m: replace(m, reasoning=(m.reasoning or "") + reasoning_delta),
        )

    def set_message_reasoning(self, conversation_id: str, index: int, reasoning: Optional[str]) -> bool:
        return self._update_message(conversation_id, index, lambda m: replace(m, reasoning=reasoning))

    def set_message_streaming(self, conversation_id: str, index: int, flag: bool) -> bool:
        return self._update_message(conversation_id, index, lambda m: replace(m, is_streaming=flag))

    def truncate_messages(self, conversation_id: str, upto_index_exclusive: int) -> bool:
        """Drop every message from upto_index_exclusive onward"""
        upto = max(upto_index_exclusive, 0)

        def apply(conversation: Conversation) -> Conversation:
            return replace(
                conversation,
                messages=conversation.messages[:upto],
                updated_at=datetime.now(),
                version=None,
            )

        return self._update_conversation(conversation_id, apply)

    # --------------------------------------------------------------- leases

    def acquire_lease(self, conversation_id: str, message_index: int) -> Tuple[Lease, Optional[Lease]]:
        """
        Claim a message slot for a stream session

        Returns:
            (new lease, superseded lease or None)
        """
        superseded = self._state.leases.get(conversation_id)
        lease = Lease(
            conversation_id=conversation_id,
            message_index=message_index,
            generation=next(self._lease_generations),
        )
        leases = dict(self._state.leases)
        leases[conversation_id] = lease
        self._commit(replace(self._state, leases=leases))

        if superseded is not None:
            self.logger.debug(f"Lease {superseded.generation} on {conversation_id} superseded by {lease.generation}")
        self.logger.debug(f"Lease {lease.generation} acquired on {conversation_id}[{message_index}]")
        return lease, superseded

    def release_lease(self, lease: Lease) -> bool:
        """Release a lease if, and only if, it is still the one held"""
        if not self.holds_lease(lease):
            return False
        leases = {key: held for key, held in self._state.leases.items() if key != lease.conversation_id}
        self._commit(replace(self._state, leases=leases))
        self.logger.debug(f"Lease {lease.generation} released on {lease.conversation_id}")
        return True
