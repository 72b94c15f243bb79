"""Agent runner collaborator interface.

The analysis, docs, demo, pitch and supervisor logic lives outside the
pipeline core. The orchestrator only needs something that takes an
AgentContext and returns an AgentResult; a raised exception or a failed
result both count as a failed attempt.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from pydantic import Field

from src.repoclaw.failures.classifier import error_text
from src.repoclaw.state.models import (
    AgentResult,
    AgentStatus,
    AgentType,
    Artifact,
    Mode,
    RepoMetadata,
    WireModel,
)


class AgentContext(WireModel):
    """Everything a stage needs to run.

    Attributes:
        pipeline_id: The run being processed.
        session_id: The owning session.
        repo_metadata: Repository facts gathered at connect time.
        mode: Optimization mode of the run.
        prompt_modifier: Rendered mode guidance for agent prompts.
        previous_results: Results of the stages that already ran.
        attempt: 1-based dispatch attempt for this stage.
    """

    pipeline_id: str = Field(..., min_length=1)
    session_id: str = Field(..., min_length=1)
    repo_metadata: RepoMetadata
    mode: Mode
    prompt_modifier: str = ""
    previous_results: Dict[AgentType, AgentResult] = Field(default_factory=dict)
    attempt: int = Field(default=1, ge=1)


@runtime_checkable
class AgentRunner(Protocol):
    """Protocol for stage implementations."""

    agent: AgentType

    async def run(self, context: AgentContext) -> AgentResult:
        """Run the stage and return its result."""
        ...


class BaseAgentRunner(ABC):
    """Base class with result helpers for concrete runners."""

    agent: AgentType

    @abstractmethod
    async def run(self, context: AgentContext) -> AgentResult:
        pass

    def success_result(
        self,
        artifacts: List[Artifact],
        metadata: Optional[Dict[str, Any]] = None,
        execution_time: int = 0,
    ) -> AgentResult:
        return AgentResult(
            agent=self.agent,
            status=AgentStatus.COMPLETED,
            artifacts=artifacts,
            execution_time=execution_time,
            metadata=metadata or {},
        )

    def error_result(self, error: Any, execution_time: int = 0) -> AgentResult:
        return AgentResult(
            agent=self.agent,
            status=AgentStatus.FAILED,
            error=error_text(error) or "Unknown error",
            execution_time=execution_time,
        )

