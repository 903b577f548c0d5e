from typing import Any, Dict, List, Optional, Protocol
import asyncio
import structlog
from pydantic import ValidationError

from lorekeeper.domain.errors import ConfigurationError, MemoryNotFoundError
from lorekeeper.domain.models.entry import KnowledgeEntry
from lorekeeper.domain.models.memory import Memory

logger = structlog.get_logger(__name__)


def parse_entry(data: Dict[str, Any]) -> KnowledgeEntry:
    """Load an entry from stored data.

    Broken activation settings are tolerated: the entry is loaded with no
    settings (it will never match) and the anomaly is logged. Anything else
    that fails validation, including negative sticky/cooldown/delay, is a
    configuration error raised here rather than during a turn.
    """

    try:
        return KnowledgeEntry.model_validate(data)
    except ValidationError as e:
        if all(error["loc"] and error["loc"][0] == "activation" for error in e.errors()):
            logger.warning(
                "Malformed activation settings, entry will not match",
                entry_id=data.get("id"),
                errors=e.error_count(),
            )
            return KnowledgeEntry.model_validate({**data, "activation": None})
        raise ConfigurationError(
            f"Invalid knowledge entry {data.get('id')!r}",
            {"errors": e.errors(include_url=False)},
        ) from e


class EntryStore(Protocol):
    """Read access to entries and memories; writes limited to lifecycle fields"""

    async def list_entries(self, user_id: str) -> List[KnowledgeEntry]: ...

    async def get_entry(self, entry_id: str) -> Optional[KnowledgeEntry]: ...

    async def add_entry(self, entry: KnowledgeEntry) -> KnowledgeEntry: ...

    async def list_memories(self, user_id: str, conversation_id: Optional[str] = None) -> List[Memory]: ...

    async def get_memory(self, memory_id: str) -> Optional[Memory]: ...

    async def add_memory(self, memory: Memory) -> Memory: ...

    async def update_memory(self, memory: Memory) -> Memory: ...


class InMemoryEntryStore:
    """Dict-backed entry store"""

    def __init__(self, entries: Optional[List[KnowledgeEntry]] = None, memories: Optional[List[Memory]] = None):
        self.entries: Dict[str, KnowledgeEntry] = {e.id: e for e in entries or []}
        self.memories: Dict[str, Memory] = {m.id: m for m in memories or []}
        self._lock = asyncio.Lock()

    async def list_entries(self, user_id: str) -> List[KnowledgeEntry]:
        async with self._lock:
            return [e for e in self.entries.values() if e.user_id == user_id]

    async def get_entry(self, entry_id: str) -> Optional[KnowledgeEntry]:
        async with self._lock:
            return self.entries.get(entry_id)

    async def add_entry(self, entry: KnowledgeEntry) -> KnowledgeEntry:
        async with self._lock:
            self.entries[entry.id] = entry
            return entry

    async def list_memories(self, user_id: str, conversation_id: Optional[str] = None) -> List[Memory]:
        async with self._lock:
            return [
                m for m in self.memories.values()
                if m.user_id == user_id and (conversation_id is None or m.conversation_id == conversation_id)
            ]

    async def get_memory(self, memory_id: str) -> Optional[Memory]:
        async with self._lock:
            return self.memories.get(memory_id)

    async def add_memory(self, memory: Memory) -> Memory:
        async with self._lock:
            self.memories[memory.id] = memory
            return memory

    async def update_memory(self, memory: Memory) -> Memory:
        async with self._lock:
            if memory.id not in self.memories:
                raise MemoryNotFoundError(f"Memory {memory.id} not found", {"memory_id": memory.id})
            self.memories[memory.id] = memory
            return memory
