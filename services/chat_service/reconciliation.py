"""
Reconciliation engine - merges authoritative conversation snapshots into the transcript store.

A snapshot is the full list of the user's conversations as the system of record
sees it. Merging never overwrites a conversation that a stream session holds a
lease on, never resurrects a conversation deleted on the server, and tolerates
replication lag for conversations created locally a moment ago.
"""

import asyncio
from dataclasses import replace
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from services.chat_service.interfaces import ConversationRepository
from services.chat_service.models import Conversation
from services.chat_service.transcript_store import TranscriptStore
from infrastructure.monitoring.logging_service import get_logger


class ReconciliationEngine:
    """
    Applies server snapshots to a TranscriptStore.

    Args:
        store: Store receiving the merged conversation list
        content_slack_chars: Extra characters the server's last message must carry
            before it is considered newer than the local one
        local_freshness_seconds: How long a local-only conversation survives its
            absence from the server snapshot
    """

    def __init__(self, store: TranscriptStore, content_slack_chars: int = 10,
                 local_freshness_seconds: float = 30.0):
        self.logger = get_logger(__name__)
        self.store = store
        self.content_slack_chars = content_slack_chars
        self.local_freshness_seconds = local_freshness_seconds

    def merge(self, snapshot: Sequence[Conversation], now: Optional[datetime] = None) -> Tuple[Conversation, ...]:
        """
        Merge a snapshot and replace the store's conversation list in one transition

        Args:
            snapshot: Authoritative conversations, in display order
            now: Reference time for the freshness window (defaults to the current time)

        Returns:
            The merged conversation list
        """
        now = now or datetime.now()
        state = self.store.state
        server_ids = {conversation.conversation_id for conversation in snapshot}

        retained_local: List[Conversation] = []
        for local in state.conversations:
            if local.conversation_id in server_ids:
                continue
            if self._is_fresh(local, now) or self.store.lease_for(local.conversation_id) is not None:
                retained_local.append(local)
            else:
                self.logger.debug(f"Dropping local-only conversation {local.conversation_id} outside freshness window")

        merged: List[Conversation] = list(retained_local)
        accepted = kept = 0
        for server in snapshot:
            local = state.get_conversation(server.conversation_id)
            if local is None:
                merged.append(server)
            elif self.store.lease_for(server.conversation_id) is not None:
                merged.append(self._take_metadata(local, server))
                kept += 1
            elif self._server_is_newer(local, server):
                merged.append(server)
                accepted += 1
            else:
                merged.append(self._take_metadata(local, server))
                kept += 1

        merged_ids = {conversation.conversation_id for conversation in merged}
        current_id = state.current_conversation_id
        if current_id is not None and current_id not in merged_ids:
            self.logger.info(f"Selected conversation {current_id} disappeared from snapshot, clearing selection")
            current_id = None

        self.store.replace_conversations(merged, current_id)
        self.logger.debug(
            f"Merged snapshot of {len(snapshot)} conversations: "
            f"{accepted} accepted from server, {kept} kept local, {len(retained_local)} local-only retained"
        )
        return tuple(merged)

    def _is_fresh(self, conversation: Conversation, now: datetime) -> bool:
        age = (now - conversation.created_at).total_seconds()
        return age <= self.local_freshness_seconds

    def _server_is_newer(self, local: Conversation, server: Conversation) -> bool:
        """Decide whether the server's message list replaces the local one"""
        # Local writes clear the version, so a set version means the local list is that server version
        if local.version is not None and server.version is not None:
            return server.version > local.version

        if len(server.messages) > len(local.messages):
            return True

        local_last, server_last = local.last_message, server.last_message
        if local_last is None or server_last is None:
            return False
        return (
            local_last.role == server_last.role
            and len(server_last.text) > len(local_last.text) + self.content_slack_chars
            and not local_last.is_streaming
        )

    @staticmethod
    def _take_metadata(local: Conversation, server: Conversation) -> Conversation:
        """Local messages with the server's non-message fields"""
        in_sync = [m.to_wire(include_reasoning=True) for m in local.messages] == \
            [m.to_wire(include_reasoning=True) for m in server.messages]
        return replace(
            server,
            messages=local.messages,
            version=server.version if in_sync else local.version,
        )


class SyncService:
    """Feeds every snapshot published by the system of record into the reconciliation engine"""

    def __init__(self, repository: ConversationRepository, engine: ReconciliationEngine):
        self.logger = get_logger(__name__)
        self.repository = repository
        self.engine = engine
        self.snapshots_applied = 0

    async def run(self) -> None:
        """Apply snapshots until the watch ends or the task is cancelled"""
        self.logger.info("Conversation sync started")
        try:
            async for snapshot in self.repository.watch_conversations():
                self.engine.merge(snapshot)
                self.snapshots_applied += 1
        except asyncio.CancelledError:
            self.logger.info(f"Conversation sync stopped after {self.snapshots_applied} snapshots")
            raise

    async def refresh(self) -> Tuple[Conversation, ...]:
        """Pull one snapshot on demand"""
        snapshot = await self.repository.list_conversations()
        merged = self.engine.merge(snapshot)
        self.snapshots_applied += 1
        return merged
