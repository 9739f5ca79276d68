"""
Chat history persistence.

Messages live in their own collection of the active database, keyed by
session. Retrieval is always oldest-first, whatever order the backend
returns them in.
"""

import logging
from typing import Any, Mapping, Optional

from .base import CHAT_HISTORY_COLLECTION, ChatMessage, Database, MessageType, now_ms
from .errors import QueryError
from .filters import QueryFilter, Sort

logger = logging.getLogger("memstore.memory.chat_history")


def _coerce_message(message: ChatMessage | Mapping[str, Any] | str) -> ChatMessage:
    if isinstance(message, ChatMessage):
        return message
    if isinstance(message, str):
        return ChatMessage(content=message)
    return ChatMessage(
        content=message.get("content", ""),
        type=MessageType(message.get("type", MessageType.HUMAN.value)),
        metadata=dict(message.get("metadata") or {}),
        id=message.get("id", ""),
    )


class ChatHistoryStore:
    """
    Per-session chat history on top of a Database.

    Timestamps assigned by one store are strictly increasing, so messages
    added within the same millisecond still come back in insertion order.
    """

    def __init__(
        self,
        database: Database,
        collection: str = CHAT_HISTORY_COLLECTION,
        default_limit: int = 100,
    ):
        self.database = database
        self.collection = collection
        self.default_limit = default_limit
        self._last_timestamp = 0

    def _next_timestamp(self) -> int:
        self._last_timestamp = max(now_ms(), self._last_timestamp + 1)
        return self._last_timestamp

    async def add_chat_message(
        self,
        session_id: str,
        message: ChatMessage | Mapping[str, Any] | str,
    ) -> ChatMessage:
        """
        Append a message to a session.

        Args:
            session_id: Session the message belongs to
            message: A ChatMessage, a dict with content/type/metadata, or plain text

        Returns:
            The stored message with its id, session and timestamp filled in

        Raises:
            ValueError: If session_id is empty or the message type is unknown
            QueryError: If the database write fails
        """
        if not session_id:
            raise ValueError("session_id must not be empty")

        source = _coerce_message(message)
        stored = ChatMessage(
            content=source.content,
            type=source.type,
            session_id=session_id,
            metadata=dict(source.metadata),
            id=source.id or ChatMessage.new_id(),
            timestamp=self._next_timestamp(),
        )

        try:
            await self.database.add_record(self.collection, stored.to_record())
        except Exception as e:
            logger.error(f"Failed to add chat message to session {session_id}: {e}")
            raise QueryError(f"Failed to add chat message: {e}") from e

        logger.debug(f"Added {stored.type.value} message {stored.id} to session {session_id}")
        return stored

    def _to_message(self, record: Mapping[str, Any]) -> ChatMessage:
        try:
            return ChatMessage.from_record(record)
        except ValueError:
            logger.warning(
                f"Chat message {record.get('id')} has unknown type {record.get('type')!r}; treating as system"
            )
            return ChatMessage.from_record({**record, "type": MessageType.SYSTEM.value})

    async def get_chat_history(self, session_id: str, limit: Optional[int] = None) -> list[ChatMessage]:
        """
        Most recent messages of a session, oldest first.

        Returns an empty list if the database read fails.
        """
        if not session_id:
            raise ValueError("session_id must not be empty")

        effective_limit = self.default_limit if limit is None else limit
        try:
            records = await self.database.query_records(
                self.collection,
                QueryFilter().where("sessionId", session_id),
                limit=effective_limit,
                sort=Sort("timestamp", descending=True),
            )
        except Exception as e:
            logger.error(f"Failed to get chat history for session {session_id}: {e}")
            return []

        return [self._to_message(record) for record in reversed(records)]

    async def clear_chat_history(self, session_id: str) -> int:
        """
        Delete every message of a session.

        Returns:
            Number of messages deleted

        Raises:
            QueryError: If the database delete fails
        """
        if not session_id:
            raise ValueError("session_id must not be empty")

        try:
            deleted = await self.database.delete_records(
                self.collection, QueryFilter().where("sessionId", session_id)
            )
        except Exception as e:
            logger.error(f"Failed to clear chat history for session {session_id}: {e}")
            raise QueryError(f"Failed to clear chat history: {e}") from e

        logger.info(f"Cleared {deleted} messages from session {session_id}")
        return deleted
