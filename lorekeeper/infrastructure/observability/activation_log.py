from typing import List, Optional, Protocol, Sequence
import asyncio
import random
import structlog

from lorekeeper.domain.models.activation import ActivationLogEntry
from lorekeeper.infrastructure.config.settings import EngineSettings
from lorekeeper.infrastructure.observability.logging import metrics

logger = structlog.get_logger(__name__)


class LogSink(Protocol):
    """Append-only destination for activation records"""

    async def append(self, records: Sequence[ActivationLogEntry]) -> None: ...


class InMemoryLogSink:
    """List-backed sink"""

    def __init__(self):
        self.records: List[ActivationLogEntry] = []

    async def append(self, records: Sequence[ActivationLogEntry]) -> None:
        self.records.extend(records)

    def for_conversation(self, conversation_id: str) -> List[ActivationLogEntry]:
        return [r for r in self.records if r.conversation_id == conversation_id]


class ActivationLogger:
    """
    Buffers activation records and writes them to a sink in the background.

    Records go through one FIFO queue, so a conversation's records reach the
    sink in the order they were enqueued. A sink that keeps failing loses the
    batch after the configured retries; the turn that produced it is never
    affected.
    """

    def __init__(self, sink: LogSink, settings: Optional[EngineSettings] = None):
        settings = settings or EngineSettings()
        self.sink = sink
        self.batch_size = settings.log_batch_size
        self.retry_attempts = settings.log_retry_attempts
        self.retry_delay = settings.log_retry_delay
        self.queue: "asyncio.Queue[ActivationLogEntry]" = asyncio.Queue(maxsize=settings.log_queue_size)
        self.write_task: Optional[asyncio.Task] = None
        self.dropped = 0

    def start(self):
        if self.write_task is None or self.write_task.done():
            self.write_task = asyncio.create_task(self._write_worker())

    def enqueue(self, records: Sequence[ActivationLogEntry]) -> int:
        """Queue records without waiting; returns how many were accepted"""

        accepted = 0
        for record in records:
            try:
                self.queue.put_nowait(record)
                accepted += 1
            except asyncio.QueueFull:
                self.dropped += 1
                metrics.increment_counter("activation_log.dropped")
                logger.error(
                    "Activation log queue full, record dropped",
                    conversation_id=record.conversation_id,
                    entry_id=record.entry_id,
                )
        self.start()
        return accepted

    async def flush(self):
        """Wait until every queued record has been handled"""

        if self.queue.empty():
            return
        self.start()
        await self.queue.join()

    async def close(self):
        await self.flush()
        if self.write_task is not None:
            self.write_task.cancel()
            try:
                await self.write_task
            except asyncio.CancelledError:
                pass
            self.write_task = None

    async def _write_worker(self):
        while True:
            batch = [await self.queue.get()]
            while len(batch) < self.batch_size and not self.queue.empty():
                batch.append(self.queue.get_nowait())
            try:
                await self._write_batch(batch)
            finally:
                for _ in batch:
                    self.queue.task_done()

    async def _write_batch(self, batch: List[ActivationLogEntry]) -> bool:
        for attempt in range(self.retry_attempts):
            try:
                await self.sink.append(batch)
                metrics.increment_counter("activation_log.written", len(batch))
                return True
            except Exception as e:
                logger.warning(
                    "Activation log write failed",
                    attempt=attempt + 1,
                    attempts=self.retry_attempts,
                    records=len(batch),
                    error=str(e),
                )
                if attempt < self.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.retry_delay * (2 ** attempt) + random.uniform(0, self.retry_delay)
                    await asyncio.sleep(delay)

        self.dropped += len(batch)
        metrics.increment_counter("activation_log.dropped", len(batch))
        logger.error("Activation log batch dropped", records=len(batch))
        return False
