"""RepoClaw pipeline configuration using pydantic-settings.

Every setting reads from an environment variable with the REPOCLAW_ prefix
(e.g. REPOCLAW_STREAM_POLL_INTERVAL_SECONDS). Mapping and list settings take
JSON, e.g. REPOCLAW_AGENT_ENDPOINTS='{"analyze": "http://agents/analyze"}'.
Nothing is required: with no environment the service runs against the
in-memory key-value store.
"""

from typing import Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.repoclaw.events.emitter import EventSinkType
from src.repoclaw.state.models import AgentType


DEFAULT_AGENT_TIMEOUTS: Dict[AgentType, float] = {
    AgentType.ANALYZE: 30.0,
    AgentType.DOCS: 45.0,
    AgentType.DEMO: 90.0,
    AgentType.PITCH: 45.0,
    AgentType.SUPERVISOR: 180.0,
}


class RepoClawSettings(BaseSettings):
    """Pipeline service configuration from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="REPOCLAW_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # Streaming and storage
    # -------------------------------------------------------------------------
    # Wait between two samples of one stream subscription
    stream_poll_interval_seconds: float = 1.0

    # Bound on every key-value call and per-pipeline lock wait
    store_timeout_seconds: float = 5.0

    # PostgreSQL connection string; the in-memory store is used when unset
    database_url: Optional[str] = None

    # -------------------------------------------------------------------------
    # Stage dispatch
    # -------------------------------------------------------------------------
    # Total attempts per stage, the first dispatch included
    max_stage_attempts: int = 3

    retry_initial_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 10.0
    retry_backoff_multiplier: float = 2.0

    agent_timeouts: Dict[AgentType, float] = Field(
        default_factory=lambda: dict(DEFAULT_AGENT_TIMEOUTS)
    )

    # Stage name -> URL served by the HttpAgentRunner
    agent_endpoints: Dict[AgentType, str] = Field(default_factory=dict)

    # Open approval gates for docs and pull-request artifacts
    require_approval: bool = True

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------
    event_sinks: List[EventSinkType] = Field(
        default_factory=lambda: [EventSinkType.LOGGING, EventSinkType.METRICS]
    )
    log_level: str = "INFO"
    log_json: bool = False

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    # Public base URL used to build stream URLs; relative URLs when empty
    base_url: str = ""
    host: str = "0.0.0.0"
    port: int = 8080

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator(
        "stream_poll_interval_seconds",
        "store_timeout_seconds",
        "retry_initial_delay_seconds",
        "retry_max_delay_seconds",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("intervals and timeouts must be positive")
        return v

    @field_validator("retry_backoff_multiplier")
    @classmethod
    def validate_multiplier(cls, v: float) -> float:
        if v < 1:
            raise ValueError("retry_backoff_multiplier must be at least 1")
        return v

    @field_validator("max_stage_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_stage_attempts must be at least 1")
        return v

    @field_validator("agent_timeouts")
    @classmethod
    def validate_agent_timeouts(cls, v: Dict[AgentType, float]) -> Dict[AgentType, float]:
        """Fill stages missing from an override and reject non-positive values."""
        merged = {**DEFAULT_AGENT_TIMEOUTS, **v}
        for agent, timeout in merged.items():
            if timeout <= 0:
                raise ValueError(f"timeout for {agent.value} must be positive")
        return merged

    @field_validator("agent_endpoints")
    @classmethod
    def validate_agent_endpoints(cls, v: Dict[AgentType, str]) -> Dict[AgentType, str]:
        for agent, url in v.items():
            if not url.startswith(("http://", "https://")):
                raise ValueError(
                    f"endpoint for {agent.value} must start with http:// or https://"
                )
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate that database URL has a PostgreSQL scheme when set."""
        if v is None or not v.strip():
            return None
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError(
                "database_url must start with postgresql:// or postgres://"
            )
        return v

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {v}")
        return level

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    def agent_timeout(self, agent: AgentType) -> float:
        return self.agent_timeouts[agent]


def get_settings() -> RepoClawSettings:
    """Create settings from the environment.

    Raises:
        pydantic.ValidationError: If a variable is set to an invalid value.
    """
    return RepoClawSettings()
