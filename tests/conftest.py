"""
Shared fixtures for the lorekeeper test suite.

Everything runs against the in-memory stores, the static similarity service
and the in-memory log sink.
"""

import pytest

from lorekeeper.domain.context.context_manager import ActivationEngine
from lorekeeper.domain.context.memory.entry_store import InMemoryEntryStore
from lorekeeper.domain.context.memory.conversation_store import InMemoryConversationStore
from lorekeeper.infrastructure.config.settings import EngineSettings
from lorekeeper.infrastructure.embedding.similarity_client import StaticSimilarityService
from lorekeeper.infrastructure.observability.activation_log import InMemoryLogSink


@pytest.fixture
def settings():
    return EngineSettings(
        log_format="console",
        log_retry_delay=0.0,
        probability_seed=7,
    )


@pytest.fixture
def entry_store():
    return InMemoryEntryStore()


@pytest.fixture
def conversation_store():
    return InMemoryConversationStore()


@pytest.fixture
def log_sink():
    return InMemoryLogSink()


@pytest.fixture
def similarity_service():
    return StaticSimilarityService()


@pytest.fixture
def engine(entry_store, conversation_store, similarity_service, log_sink, settings):
    return ActivationEngine(
        entry_store=entry_store,
        conversation_store=conversation_store,
        similarity_service=similarity_service,
        log_sink=log_sink,
        settings=settings,
    )
