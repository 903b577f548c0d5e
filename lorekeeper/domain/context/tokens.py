from typing import Iterable
import math
import re

from langchain_core.messages import BaseMessage

from lorekeeper.domain.models.entry import KnowledgeEntry

# Special tokens added per message by chat formats
MESSAGE_OVERHEAD = 4

_WHITESPACE = re.compile(r"\s+")


def estimate_tokens(text: str, chars_per_token: float = 4.0) -> int:
    """Character-based token estimate; exact counts come from the model provider"""

    if not text:
        return 0
    clean_text = _WHITESPACE.sub(" ", text).strip()
    return math.ceil(len(clean_text) / chars_per_token) + MESSAGE_OVERHEAD


def estimate_messages_tokens(messages: Iterable[BaseMessage], chars_per_token: float = 4.0) -> int:
    total = 0
    for message in messages:
        content = message.content if isinstance(message.content, str) else str(message.content)
        total += estimate_tokens(content, chars_per_token)
    return total


def entry_token_cost(entry: KnowledgeEntry, chars_per_token: float = 4.0) -> int:
    """Tokens an entry consumes when admitted"""

    if entry.budget.token_cost > 0:
        return entry.budget.token_cost
    if entry.token_count > 0:
        return entry.token_count
    return estimate_tokens(entry.content, chars_per_token)
