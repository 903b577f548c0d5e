from typing import Dict, List, Optional, Protocol, Sequence, Tuple
import asyncio
import time
import structlog

from lorekeeper.domain.errors import SimilarityServiceError
from lorekeeper.domain.models.activation import VectorHit
from lorekeeper.domain.context.matcher import rank_vector_hits
from lorekeeper.infrastructure.observability.logging import metrics

logger = structlog.get_logger(__name__)


class SimilarityService(Protocol):
    """Embedding/vector index collaborator"""

    async def similar(
        self,
        text: str,
        candidate_entry_ids: Sequence[str],
        threshold: float,
        max_results: int
    ) -> List[Tuple[str, float]]: ...


class SimilarityClient:
    """Bounded-time similarity lookup; failures degrade the turn to keyword matching"""

    def __init__(self, service: Optional[SimilarityService], timeout_seconds: float = 2.0):
        self.service = service
        self.timeout_seconds = timeout_seconds

    async def lookup(
        self,
        text: str,
        candidate_entry_ids: Sequence[str],
        threshold: float,
        max_results: int
    ) -> Tuple[Dict[str, VectorHit], bool]:
        """Return ranked hits and whether the turn is degraded"""

        if not candidate_entry_ids or not text.strip():
            return {}, False
        if self.service is None:
            logger.warning("No similarity service configured, vector entries skipped")
            return {}, True

        start_time = time.time()
        try:
            results = await asyncio.wait_for(
                self.service.similar(text, list(candidate_entry_ids), threshold, max_results),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Similarity lookup timed out",
                timeout_seconds=self.timeout_seconds,
                candidates=len(candidate_entry_ids),
            )
            metrics.increment_counter("similarity.timeout")
            return {}, True
        except SimilarityServiceError as e:
            logger.warning("Similarity service failed", error=str(e), details=e.details)
            metrics.increment_counter("similarity.error")
            return {}, True
        except Exception as e:
            logger.error(
                "Similarity lookup raised",
                error=str(e),
                error_type=type(e).__name__,
                candidates=len(candidate_entry_ids),
            )
            metrics.increment_counter("similarity.error")
            return {}, True

        metrics.record_latency("similarity.lookup", (time.time() - start_time) * 1000)

        allowed = set(candidate_entry_ids)
        return rank_vector_hits([(entry_id, score) for entry_id, score in results if entry_id in allowed]), False


class StaticSimilarityService:
    """Fixed similarity table, for tests and offline runs"""

    def __init__(self, scores: Optional[Dict[str, float]] = None):
        self.scores: Dict[str, float] = dict(scores or {})
        self.calls: List[str] = []

    async def similar(
        self,
        text: str,
        candidate_entry_ids: Sequence[str],
        threshold: float,
        max_results: int
    ) -> List[Tuple[str, float]]:
        self.calls.append(text)
        results = [
            (entry_id, self.scores[entry_id])
            for entry_id in candidate_entry_ids
            if entry_id in self.scores and self.scores[entry_id] >= threshold
        ]
        results.sort(key=lambda item: (-item[1], item[0]))
        return results[:max_results]
