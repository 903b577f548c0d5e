from typing import Dict, Optional, Protocol
import asyncio

from lorekeeper.domain.errors import ConversationNotFoundError
from lorekeeper.domain.models.memory import Conversation


class ConversationStore(Protocol):
    """Read/write of the conversation fields the lifecycle owns"""

    async def get(self, conversation_id: str) -> Optional[Conversation]: ...

    async def save(self, conversation: Conversation) -> Conversation: ...


class InMemoryConversationStore:
    """Dict-backed conversation store"""

    def __init__(self):
        self.conversations: Dict[str, Conversation] = {}
        self._lock = asyncio.Lock()

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        async with self._lock:
            conversation = self.conversations.get(conversation_id)
            return conversation.model_copy(deep=True) if conversation else None

    async def save(self, conversation: Conversation) -> Conversation:
        async with self._lock:
            self.conversations[conversation.id] = conversation.model_copy(deep=True)
            return conversation

    async def require(self, conversation_id: str) -> Conversation:
        conversation = await self.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(
                f"Conversation {conversation_id} not found",
                {"conversation_id": conversation_id},
            )
        return conversation
