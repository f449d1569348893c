"""
Conversation repository - local system of record backed by SQLite.

Stores each conversation with its full message list as JSON, keeps a monotonic
version per conversation, and publishes a fresh snapshot of the owner's
conversations to every watcher after each write.
"""

import asyncio
import json
import os
import sqlite3
import uuid
from dataclasses import replace
from datetime import datetime
from typing import AsyncIterator, List, Optional, Sequence, Set

from services.chat_service.errors import ConversationNotFoundError, OwnershipError, PreconditionError
from services.chat_service.models import USER, Conversation, Message, Visibility
from infrastructure.monitoring.logging_service import get_logger, log_execution_time


DEFAULT_TITLE = "New Chat"
SAVED_CHAT_TITLE = "Saved Chat"
TITLE_MAX_LENGTH = 40


def derive_title(first_user_message: Optional[str], fallback: str = DEFAULT_TITLE) -> str:
    """Provisional title: the first non-empty line of the first user message"""
    if not first_user_message:
        return fallback
    for line in first_user_message.splitlines():
        line = line.strip()
        if line:
            return line[:TITLE_MAX_LENGTH].rstrip()
    return fallback


class SQLiteConversationRepository:
    """
    Repository for conversation persistence.

    Every operation is scoped to one owner; writes to a conversation owned by
    someone else raise OwnershipError.
    """

    def __init__(self, db_path: str = "infrastructure/database/conversations.db",
                 user_id: Optional[str] = None, max_conversations: int = 50):
        """
        Initialize the repository

        Args:
            db_path: Path to SQLite database
            user_id: Owner of every conversation created through this instance
            max_conversations: Maximum number of conversations returned in a snapshot
        """
        self.logger = get_logger(__name__)
        self.db_path = db_path
        self.user_id = user_id
        self.max_conversations = max_conversations
        self._watchers: Set[asyncio.Queue] = set()

        self._init_database()

    def _init_database(self):
        """Initialize SQLite database for conversations"""
        os.makedirs(os.path.dirname(self.db_path) if os.path.dirname(self.db_path) else ".", exist_ok=True)

        try:
            conn = sqlite3.connect(self.db_path)
            cursor = conn.cursor()

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS conversations (
                    conversation_id TEXT PRIMARY KEY,
                    owner_id TEXT,
                    title TEXT NOT NULL,
                    visibility TEXT NOT NULL DEFAULT 'private',
                    branched INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 0,
                    messages TEXT NOT NULL DEFAULT '[]'
                )
            ''')
            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_conversations_owner ON conversations (owner_id, updated_at)
            ''')

            conn.commit()
            conn.close()

            self.logger.info("Conversation database initialized successfully")

        except Exception as e:
            self.logger.error(f"Error initializing conversation database: {e}")
            raise

    # ------------------------------------------------------------------ rows

    @staticmethod
    def _row_to_conversation(row) -> Conversation:
        conversation_id, owner_id, title, visibility, branched, created_at, updated_at, version, messages = row
        return Conversation(
            conversation_id=conversation_id,
            title=title,
            messages=tuple(Message.from_wire(data) for data in json.loads(messages)),
            visibility=Visibility(visibility),
            branched=bool(branched),
            owner_id=owner_id,
            created_at=datetime.fromisoformat(created_at),
            updated_at=datetime.fromisoformat(updated_at),
            version=version,
        )

    @staticmethod
    def _serialize_messages(messages: Sequence[Message]) -> str:
        return json.dumps(
            [m.to_wire(include_reasoning=True) for m in messages if not m.is_streaming],
            ensure_ascii=False,
        )

    def _fetch(self, conversation_id: str) -> Optional[Conversation]:
        conn = sqlite3.connect(self.db_path)
        try:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT conversation_id, owner_id, title, visibility, branched,
                       created_at, updated_at, version, messages
                FROM conversations WHERE conversation_id = ?
            ''', (conversation_id,))
            row = cursor.fetchone()
        finally:
            conn.close()
        return self._row_to_conversation(row) if row else None

    def _fetch_owned(self, conversation_id: str) -> Conversation:
        conversation = self._fetch(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        if conversation.owner_id != self.user_id:
            raise OwnershipError(conversation_id)
        return conversation

    def _insert(self, conversation: Conversation) -> None:
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute('''
                INSERT INTO conversations (conversation_id, owner_id, title, visibility, branched,
                                           created_at, updated_at, version, messages)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                conversation.conversation_id,
                conversation.owner_id,
                conversation.title,
                conversation.visibility.value,
                int(conversation.branched),
                conversation.created_at.isoformat(),
                conversation.updated_at.isoformat(),
                conversation.version or 0,
                self._serialize_messages(conversation.messages),
            ))
            conn.commit()
        finally:
            conn.close()

    def _execute(self, sql: str, params: tuple) -> None:
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute(sql, params)
            conn.commit()
        finally:
            conn.close()

    def _write_messages(self, conversation_id: str, messages: Sequence[Message]) -> None:
        self._execute('''
            UPDATE conversations
            SET messages = ?, version = version + 1, updated_at = ?
            WHERE conversation_id = ?
        ''', (self._serialize_messages(messages), datetime.now().isoformat(), conversation_id))

    def _snapshot(self) -> List[Conversation]:
        conn = sqlite3.connect(self.db_path)
        try:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT conversation_id, owner_id, title, visibility, branched,
                       created_at, updated_at, version, messages
                FROM conversations
                WHERE owner_id IS ?
                ORDER BY updated_at DESC
                LIMIT ?
            ''', (self.user_id, self.max_conversations))
            rows = cursor.fetchall()
        finally:
            conn.close()
        return [self._row_to_conversation(row) for row in rows]

    async def _publish(self) -> None:
        if not self._watchers:
            return
        snapshot = await asyncio.to_thread(self._snapshot)
        for queue in list(self._watchers):
            queue.put_nowait(snapshot)

    def _new_conversation(self, title: str, messages: Sequence[Message] = (), branched: bool = False) -> Conversation:
        now = datetime.now()
        return Conversation(
            conversation_id=str(uuid.uuid4()),
            title=title,
            messages=tuple(messages),
            branched=branched,
            owner_id=self.user_id,
            created_at=now,
            updated_at=now,
            version=1 if messages else 0,
        )

    # ------------------------------------------------------------ operations
    #
    # sqlite3 blocks, so every database call runs in a worker thread and only
    # the watcher queues are touched from the event loop.

    async def create_conversation(self, title: str, first_user_message: Optional[str] = None) -> str:
        """
        Create a new conversation

        Args:
            title: Conversation title; the default title is replaced by one derived
                from the first user message
            first_user_message: Text of the message that opens the conversation

        Returns:
            ID of the created conversation
        """
        if title == DEFAULT_TITLE:
            title = derive_title(first_user_message)

        conversation = self._new_conversation(title)
        try:
            await asyncio.to_thread(self._insert, conversation)
        except Exception as e:
            self.logger.error(f"Error creating conversation: {e}")
            raise

        self.logger.info(f"Created new conversation: {conversation.conversation_id}")
        await self._publish()
        return conversation.conversation_id

    async def append_or_replace_messages(self, conversation_id: str, messages: Sequence[Message]) -> None:
        """Replace the stored message list with the given one"""
        def write():
            self._fetch_owned(conversation_id)
            self._write_messages(conversation_id, messages)

        await asyncio.to_thread(write)
        self.logger.debug(f"Stored {len(messages)} messages for conversation {conversation_id}")
        await self._publish()

    async def truncate_messages(self, conversation_id: str, upto_index_exclusive: int) -> None:
        """Drop every stored message from upto_index_exclusive onward"""
        def truncate():
            conversation = self._fetch_owned(conversation_id)
            self._write_messages(conversation_id, conversation.messages[:max(upto_index_exclusive, 0)])

        await asyncio.to_thread(truncate)
        self.logger.info(f"Truncated conversation {conversation_id} at {upto_index_exclusive}")
        await self._publish()

    async def list_conversations(self) -> List[Conversation]:
        """List the owner's conversations, most recently updated first"""
        with log_execution_time(self.logger, "list_conversations", user_id=self.user_id):
            return await asyncio.to_thread(self._snapshot)

    async def watch_conversations(self) -> AsyncIterator[List[Conversation]]:
        """Yield the current snapshot, then a new one after every write"""
        queue: asyncio.Queue = asyncio.Queue()
        self._watchers.add(queue)
        try:
            yield await asyncio.to_thread(self._snapshot)
            while True:
                yield await queue.get()
        finally:
            self._watchers.discard(queue)

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        """Owned or public conversation, None otherwise"""
        conversation = await asyncio.to_thread(self._fetch, conversation_id)
        if conversation is None:
            return None
        if conversation.owner_id != self.user_id and conversation.visibility != Visibility.PUBLIC:
            return None
        return conversation

    async def save_temporary_chat(self, messages: Sequence[Message]) -> str:
        """Persist an ephemeral conversation and return its new id"""
        first_user = next((m for m in messages if m.role == USER), None)
        title = derive_title(first_user.text if first_user else None, fallback=SAVED_CHAT_TITLE)

        conversation = self._new_conversation(title, messages=[m for m in messages if not m.is_streaming])
        await asyncio.to_thread(self._insert, conversation)
        self.logger.info(f"Saved temporary chat as {conversation.conversation_id}")
        await self._publish()
        return conversation.conversation_id

    async def delete_conversation(self, conversation_id: str) -> None:
        def delete():
            self._fetch_owned(conversation_id)
            self._execute('DELETE FROM conversations WHERE conversation_id = ?', (conversation_id,))

        await asyncio.to_thread(delete)
        self.logger.info(f"Deleted conversation {conversation_id}")
        await self._publish()

    async def update_title(self, conversation_id: str, title: str) -> None:
        def rename():
            self._fetch_owned(conversation_id)
            self._execute('''
                UPDATE conversations SET title = ?, updated_at = ? WHERE conversation_id = ?
            ''', (title, datetime.now().isoformat(), conversation_id))

        await asyncio.to_thread(rename)
        await self._publish()

    async def set_visibility(self, conversation_id: str, visibility: Visibility) -> None:
        visibility = Visibility(visibility)

        def share():
            self._fetch_owned(conversation_id)
            self._execute('''
                UPDATE conversations SET visibility = ?, updated_at = ? WHERE conversation_id = ?
            ''', (visibility.value, datetime.now().isoformat(), conversation_id))

        await asyncio.to_thread(share)
        self.logger.info(f"Conversation {conversation_id} is now {visibility.value}")
        await self._publish()

    async def branch_conversation(self, conversation_id: str, upto_index: int) -> str:
        """
        Copy messages [0, upto_index] into a new conversation

        Returns:
            ID of the branch
        """
        def branch() -> Conversation:
            source = self._fetch_owned(conversation_id)
            if not 0 <= upto_index < len(source.messages):
                raise PreconditionError(f"Message index {upto_index} is out of range")

            copy = replace(
                self._new_conversation(source.title, messages=source.messages[:upto_index + 1], branched=True),
                visibility=Visibility.PRIVATE,
            )
            self._insert(copy)
            return copy

        copy = await asyncio.to_thread(branch)
        self.logger.info(f"Branched conversation {conversation_id} at {upto_index} into {copy.conversation_id}")
        await self._publish()
        return copy.conversation_id
