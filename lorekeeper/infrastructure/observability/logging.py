import structlog
import logging
import sys
from typing import Dict, Any, List, Optional
from pydantic import BaseModel
from datetime import datetime, timezone
import os

from lorekeeper.infrastructure.config.settings import EngineSettings


def setup_logging(settings: Optional[EngineSettings] = None) -> None:
    """Setup structured logging configuration"""

    settings = settings or EngineSettings()

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper(), logging.INFO)
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=settings.service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add conversation context to all log entries"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

    conversation_id = structlog.contextvars.get_contextvars().get("conversation_id")
    if conversation_id and "conversation_id" not in event_dict:
        event_dict["conversation_id"] = conversation_id

    return event_dict


class EngineLogger:
    """Specialized logger for activation engine events"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_turn_assembled(
        self,
        conversation_id: str,
        message_index: int,
        admitted: int,
        excluded: int,
        total_tokens: int,
        degraded: bool = False
    ):
        self.logger.info(
            "turn_assembled",
            conversation_id=conversation_id,
            message_index=message_index,
            admitted=admitted,
            excluded=excluded,
            total_tokens=total_tokens,
            degraded=degraded
        )

    def log_state_transition(
        self,
        conversation_id: str,
        entry_id: str,
        from_phase: str,
        to_phase: str,
        turn: int
    ):
        """Log activation state machine transitions"""

        self.logger.debug(
            "state_transition",
            conversation_id=conversation_id,
            entry_id=entry_id,
            from_phase=from_phase,
            to_phase=to_phase,
            turn=turn
        )

    def log_consolidation(
        self,
        conversation_id: str,
        memory_id: Optional[str],
        folded_ids: List[str],
        last_message_index: int
    ):
        self.logger.info(
            "memory_consolidated",
            conversation_id=conversation_id,
            memory_id=memory_id,
            folded=len(folded_ids),
            folded_ids=folded_ids,
            last_message_index=last_message_index
        )

    def log_conversion(
        self,
        memory_id: str,
        entry_id: str,
        created: bool
    ):
        self.logger.info(
            "memory_converted_to_lore",
            memory_id=memory_id,
            entry_id=entry_id,
            created=created
        )


engine_logger = EngineLogger("lorekeeper")


class LatencyStats(BaseModel):
    count: int = 0
    total_ms: float = 0.0
    min_ms: Optional[float] = None
    max_ms: float = 0.0

    def add(self, duration_ms: float):
        self.count += 1
        self.total_ms += duration_ms
        self.min_ms = duration_ms if self.min_ms is None else min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)

    @property
    def avg_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0


class MetricsCollector:
    """Process-wide engine counters and latencies, mirrored to debug logs"""

    def __init__(self):
        self.counters: Dict[str, int] = {}
        self.latencies: Dict[str, LatencyStats] = {}

    def record_latency(self, operation: str, duration_ms: float):
        self.latencies.setdefault(operation, LatencyStats()).add(duration_ms)
        engine_logger.logger.debug("metric", metric_type="latency", operation=operation, duration_ms=duration_ms)

    def increment_counter(self, name: str, value: int = 1):
        self.counters[name] = self.counters.get(name, 0) + value
        engine_logger.logger.debug("metric", metric_type="counter", name=name, value=value)

    def counter(self, name: str) -> int:
        return self.counters.get(name, 0)

    def snapshot(self) -> Dict[str, Any]:
        """Counters plus per-operation latency stats (turns, similarity lookups, log writes)"""

        return {
            "counters": dict(self.counters),
            "latency": {
                operation: {
                    "count": stats.count,
                    "avg_ms": stats.avg_ms,
                    "min_ms": stats.min_ms or 0.0,
                    "max_ms": stats.max_ms,
                }
                for operation, stats in self.latencies.items()
            },
        }

    def reset(self):
        self.counters.clear()
        self.latencies.clear()


metrics = MetricsCollector()
