"""Orchestrator configuration models and utilities.

This module provides configuration for the orchestration core: context
lifetimes, history caps, agent call timeouts, delegation limits and the
scoring knobs used during agent selection.
"""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator


class OrchestratorSettings(BaseModel):
    """Settings for the orchestration core.

    Attributes:
        context_expiration_seconds: Age after which context, history items and
            entities become eligible for pruning
        max_history_size: Maximum messages retained per conversation
        agent_timeout_seconds: Bounded wait applied to every agent call
        max_delegation_depth: Maximum delegation hops followed for one request
        max_aggregate_agents: Cap on agents consulted when aggregating (None = all)
        confidence_threshold: Ratio the top score must exceed the runner-up by
            to count as a clear winner
        pattern_cache_size: Number of clear-winner selections remembered
        min_candidate_score: Minimum specialization score asked of the registry
        max_workers: Thread pool size used for agent calls
        database_url: SQLAlchemy URL for context snapshots
        auto_persist_history: Persist a conversation snapshot after each
            history append
        log_level: Logging level
        json_logs: Emit JSON logs instead of console output

    Example:
        >>> settings = OrchestratorSettings(max_history_size=5, agent_timeout_seconds=10)
        >>> settings.max_delegation_depth
        5
    """

    model_config = ConfigDict(frozen=True)

    context_expiration_seconds: int = Field(
        default=3600, ge=1, description="Context TTL in seconds"
    )
    max_history_size: int = Field(default=10, ge=1, description="History cap per conversation")
    agent_timeout_seconds: float = Field(
        default=30.0, gt=0, le=600, description="Bounded wait per agent call"
    )
    max_delegation_depth: int = Field(
        default=5, ge=1, le=20, description="Maximum delegation hops per request"
    )
    max_aggregate_agents: Optional[int] = Field(
        default=None, ge=1, description="Agents consulted when aggregating (None=all)"
    )
    confidence_threshold: float = Field(
        default=1.5, ge=1.0, description="Clear-winner ratio for early termination"
    )
    pattern_cache_size: int = Field(
        default=100, ge=0, description="Clear-winner selections remembered (0=disabled)"
    )
    min_candidate_score: float = Field(
        default=0.0, description="Minimum specialization score for candidates"
    )
    max_workers: int = Field(default=4, ge=1, le=64, description="Agent call thread pool size")
    database_url: str = Field(
        default="sqlite:///:memory:", description="SQLAlchemy URL for context snapshots"
    )
    auto_persist_history: bool = Field(
        default=False, description="Persist conversation snapshot on each history append"
    )
    log_level: str = Field(default="INFO", description="Logging level")
    json_logs: bool = Field(default=True, description="Emit JSON logs")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Validate the log level is one the logging module understands.

        Args:
            value: The log level to validate

        Returns:
            The upper-cased level name

        Raises:
            ValueError: If the level is unknown
        """
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level '{value}'")
        return level


def get_default_settings() -> OrchestratorSettings:
    """Get default orchestrator settings.

    Returns:
        OrchestratorSettings with default values
    """
    return OrchestratorSettings()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def load_settings_from_env() -> OrchestratorSettings:
    """Load orchestrator settings from environment variables.

    Automatically loads variables from a .env file if present.

    Reads:
    - SWITCHBOARD_CONTEXT_EXPIRATION_SECONDS
    - SWITCHBOARD_MAX_HISTORY_SIZE
    - SWITCHBOARD_AGENT_TIMEOUT_SECONDS
    - SWITCHBOARD_MAX_DELEGATION_DEPTH
    - SWITCHBOARD_MAX_AGGREGATE_AGENTS (empty = all candidates)
    - SWITCHBOARD_CONFIDENCE_THRESHOLD
    - SWITCHBOARD_PATTERN_CACHE_SIZE
    - SWITCHBOARD_MIN_CANDIDATE_SCORE
    - SWITCHBOARD_MAX_WORKERS
    - SWITCHBOARD_DATABASE_URL
    - SWITCHBOARD_AUTO_PERSIST_HISTORY (true/false)
    - SWITCHBOARD_LOG_LEVEL
    - SWITCHBOARD_JSON_LOGS (true/false)

    Returns:
        OrchestratorSettings loaded from environment

    Example:
        >>> import os
        >>> os.environ["SWITCHBOARD_MAX_HISTORY_SIZE"] = "20"
        >>> load_settings_from_env().max_history_size
        20
    """
    load_dotenv()

    max_aggregate_str = os.getenv("SWITCHBOARD_MAX_AGGREGATE_AGENTS", "").strip()

    return OrchestratorSettings(
        context_expiration_seconds=int(
            os.getenv("SWITCHBOARD_CONTEXT_EXPIRATION_SECONDS", "3600")
        ),
        max_history_size=int(os.getenv("SWITCHBOARD_MAX_HISTORY_SIZE", "10")),
        agent_timeout_seconds=float(os.getenv("SWITCHBOARD_AGENT_TIMEOUT_SECONDS", "30")),
        max_delegation_depth=int(os.getenv("SWITCHBOARD_MAX_DELEGATION_DEPTH", "5")),
        max_aggregate_agents=int(max_aggregate_str) if max_aggregate_str else None,
        confidence_threshold=float(os.getenv("SWITCHBOARD_CONFIDENCE_THRESHOLD", "1.5")),
        pattern_cache_size=int(os.getenv("SWITCHBOARD_PATTERN_CACHE_SIZE", "100")),
        min_candidate_score=float(os.getenv("SWITCHBOARD_MIN_CANDIDATE_SCORE", "0")),
        max_workers=int(os.getenv("SWITCHBOARD_MAX_WORKERS", "4")),
        database_url=os.getenv("SWITCHBOARD_DATABASE_URL", "sqlite:///:memory:"),
        auto_persist_history=_env_bool("SWITCHBOARD_AUTO_PERSIST_HISTORY", "false"),
        log_level=os.getenv("SWITCHBOARD_LOG_LEVEL", "INFO"),
        json_logs=_env_bool("SWITCHBOARD_JSON_LOGS", "true"),
    )
