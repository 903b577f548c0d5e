from typing import Literal, Optional
from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from lorekeeper.domain.models.activation import BudgetConfig


class EngineSettings(BaseSettings):
    """Engine configuration, read from LOREKEEPER_* environment variables"""

    model_config = SettingsConfigDict(
        env_prefix="LOREKEEPER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Logging
    service_name: str = "lorekeeper"
    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "json"

    # Budget
    max_context_tokens: int = Field(default=8000, ge=0)
    budget_percentage: float = Field(default=25.0, ge=0.0, le=100.0)
    budget_cap_tokens: int = Field(default=2000, ge=0)
    reserved_for_conversation: int = Field(default=0, ge=0)

    # Scoring
    similarity_weight: float = Field(default=100.0, ge=0.0)
    primary_keyword_weight: float = Field(default=2.0, ge=0.0)
    secondary_keyword_weight: float = Field(default=1.0, ge=0.0)
    constant_score: float = Field(default=100.0, ge=0.0)

    # Tokens
    chars_per_token: float = Field(default=4.0, gt=0.0)

    # Similarity service
    similarity_timeout_seconds: float = Field(default=2.0, gt=0.0)
    vector_query_depth: int = Field(default=2, ge=1, description="Trailing messages used as the vector query")

    # Memory lifecycle
    summarization_token_threshold: int = Field(default=4000, ge=1)
    include_memories: bool = True

    # Activation log
    log_queue_size: int = Field(default=10000, ge=1)
    log_batch_size: int = Field(default=50, ge=1)
    log_retry_attempts: int = Field(default=3, ge=1)
    log_retry_delay: float = Field(default=0.5, ge=0.0)

    # Activation state
    state_idle_ttl_seconds: int = Field(default=3600, ge=0)
    probability_seed: Optional[int] = None

    def budget_config(self) -> BudgetConfig:
        return BudgetConfig(
            max_context_tokens=self.max_context_tokens,
            budget_percentage=self.budget_percentage,
            budget_cap_tokens=self.budget_cap_tokens,
            reserved_for_conversation=self.reserved_for_conversation,
        )


@lru_cache()
def get_settings() -> EngineSettings:
    return EngineSettings()
