"""Pipeline state machine models.

This module defines the data models for one pipeline run, including:
- PipelineStatus: Enum of pipeline statuses
- AgentType: Enum of stages in their fixed dispatch order
- Artifact, AgentResult, ApprovalGate, PipelineError: records owned by a run
- PipelineState: The authoritative mutable record of one run
- Session: The session record a run is started from
- VALID_TRANSITIONS: Map defining allowed status transitions

The models use Pydantic for validation. Fields are snake_case in Python and
serialize with camelCase aliases, which is the shape clients receive on the
event stream. Timestamps are integer milliseconds since the Unix epoch.
"""

import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


def now_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def generate_id(prefix: str = "") -> str:
    """Generate a unique identifier with an optional prefix.

    Example:
        >>> generate_id("pipe_").startswith("pipe_")
        True
    """
    return f"{prefix}{uuid.uuid4().hex}"


class Mode(str, Enum):
    """Optimization modes selecting which optional stages run."""

    HACKATHON = "hackathon"
    PLACEMENT = "placement"
    REFACTOR = "refactor"


class PipelineStatus(str, Enum):
    """Statuses a pipeline run moves through.

    Status Flow:
        initializing → running → [waiting_approval ⇄ running]
        → completed | failed

    COMPLETED and FAILED are terminal: no transition leaves them.

    Attributes:
        INITIALIZING: Run created, no stage started yet.
        RUNNING: A stage is active; current_agent names it.
        WAITING_APPROVAL: An approval gate is pending; dispatch is halted.
        COMPLETED: The last active stage finished without a pending gate.
        FAILED: A stage failed unrecoverably or a gate was rejected.
    """

    INITIALIZING = "initializing"
    RUNNING = "running"
    WAITING_APPROVAL = "waiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"


class AgentType(str, Enum):
    """Pipeline stages. Declaration order is the fixed dispatch order."""

    ANALYZE = "analyze"
    DOCS = "docs"
    DEMO = "demo"
    PITCH = "pitch"
    SUPERVISOR = "supervisor"


class AgentStatus(str, Enum):
    """Outcome of one stage dispatch."""

    COMPLETED = "completed"
    FAILED = "failed"


class ArtifactType(str, Enum):
    """Kinds of artifacts stages produce."""

    ANALYSIS = "analysis"
    README = "readme"
    API_DOCS = "api-docs"
    DEMO_URL = "demo-url"
    ARCHITECTURE_DIAGRAM = "architecture-diagram"
    PITCH_DECK = "pitch-deck"
    PITCH_SCRIPT = "pitch-script"
    PULL_REQUEST = "pull-request"


class ApprovalGateType(str, Enum):
    DOCS = "docs"
    PULL_REQUEST = "pull-request"


class ApprovalGateStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class WireModel(BaseModel):
    """Base model serializing with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        """Return the JSON-compatible camelCase representation."""
        return self.model_dump(mode="json", by_alias=True)


class Artifact(WireModel):
    """An output object produced by a stage. Immutable once created.

    Attributes:
        id: Unique artifact identifier.
        type: Artifact kind.
        title: Short human-readable title.
        content: The artifact body (markdown, URL, script...).
        preview: Optional short preview shown before the full content.
        metadata: Type-specific payload (diffs, slides, PR details...).
        created_at: Creation time in epoch milliseconds.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: generate_id("art_"), min_length=1)
    type: ArtifactType
    title: str
    content: str
    preview: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: int = Field(default_factory=now_ms, gt=0)


class AgentResult(WireModel):
    """The result a stage dispatch records into agent_results.

    Attributes:
        agent: The stage that produced the result.
        status: Whether the stage completed or failed.
        artifacts: Artifacts generated by the stage, in generation order.
        error: Error message when the stage failed.
        execution_time: Wall time spent in the stage, in milliseconds.
        metadata: Free-form stage metadata.
        attempts: Number of dispatch attempts the stage used.
    """

    model_config = ConfigDict(frozen=True)

    agent: AgentType
    status: AgentStatus
    artifacts: List[Artifact] = Field(default_factory=list)
    error: Optional[str] = None
    execution_time: int = Field(default=0, ge=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    attempts: int = Field(default=1, ge=1)


class ApprovalGate(WireModel):
    """A pause point that needs an external decision.

    A gate is created pending and resolved exactly once, to approved or
    rejected. pipeline_id is a back-reference; the pipeline owns the gate.
    """

    id: str = Field(default_factory=lambda: generate_id("gate_"), min_length=1)
    pipeline_id: str = Field(..., min_length=1)
    type: ApprovalGateType
    status: ApprovalGateStatus = ApprovalGateStatus.PENDING
    artifacts: List[Artifact] = Field(default_factory=list)
    feedback: Optional[str] = None
    created_at: int = Field(default_factory=now_ms, gt=0)
    responded_at: Optional[int] = None

    @model_validator(mode="after")
    def _check_response(self) -> "ApprovalGate":
        if self.status == ApprovalGateStatus.PENDING:
            if self.responded_at is not None:
                raise ValueError("pending gate cannot have responded_at")
        elif self.responded_at is None:
            raise ValueError("resolved gate requires responded_at")
        if self.responded_at is not None and self.responded_at < self.created_at:
            raise ValueError("responded_at must not precede created_at")
        return self


class PipelineError(WireModel):
    """Terminal failure descriptor stored on a failed pipeline.

    Attributes:
        agent: The failing stage, or None for system-level failures.
        message: Proximate cause.
        details: Extended description (stack or context).
        timestamp: When the failure was recorded.
        recoverable: Classifier verdict for the underlying error.
        error_log_id: The ErrorLog entry written before the transition.
        gate_id: The rejected gate, when the failure is a rejection.
    """

    agent: Optional[AgentType] = None
    message: str
    details: str = ""
    timestamp: int = Field(default_factory=now_ms, gt=0)
    recoverable: bool = False
    error_log_id: Optional[str] = None
    gate_id: Optional[str] = None


def empty_agent_results() -> Dict[AgentType, Optional[AgentResult]]:
    """Return an agent_results mapping with every stage present and empty."""
    return {agent: None for agent in AgentType}


TERMINAL_STATUSES = frozenset({PipelineStatus.COMPLETED, PipelineStatus.FAILED})


class PipelineState(WireModel):
    """Complete state of one pipeline run.

    The record is validated on every construction, so a state that breaks
    one of the invariants below can never be written or read:

    - completed_at is set iff status is completed or failed
    - error is set only if status is failed
    - current_agent is set only if status is running
    - agent_results holds exactly the five stage keys

    The revision field is refreshed by every successful store update and
    lets stream consumers detect change without deep comparison.
    """

    id: str = Field(..., min_length=1)
    session_id: str = Field(..., min_length=1)
    mode: Mode
    status: PipelineStatus = PipelineStatus.INITIALIZING
    current_agent: Optional[AgentType] = None
    agent_results: Dict[AgentType, Optional[AgentResult]] = Field(
        default_factory=empty_agent_results
    )
    approval_gates: List[ApprovalGate] = Field(default_factory=list)
    artifacts: List[Artifact] = Field(default_factory=list)
    error: Optional[PipelineError] = None
    started_at: int = Field(default_factory=now_ms, gt=0)
    completed_at: Optional[int] = None
    timestamps: Dict[str, int] = Field(default_factory=dict)
    revision: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def _check_invariants(self) -> "PipelineState":
        terminal = self.status in TERMINAL_STATUSES
        if terminal != (self.completed_at is not None):
            raise ValueError("completed_at must be set iff status is terminal")
        if self.error is not None and self.status != PipelineStatus.FAILED:
            raise ValueError("error may only be set on a failed pipeline")
        if self.current_agent is not None and self.status != PipelineStatus.RUNNING:
            raise ValueError("current_agent may only be set while running")
        if set(self.agent_results) != set(AgentType):
            raise ValueError("agent_results must contain every stage")
        return self

    def evolve(self, **changes: Any) -> "PipelineState":
        """Return a validated copy of this state with fields replaced."""
        data = self.model_dump()
        data.update(changes)
        return PipelineState.model_validate(data)

    def find_gate(self, gate_id: str) -> Optional[ApprovalGate]:
        for gate in self.approval_gates:
            if gate.id == gate_id:
                return gate
        return None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class RepoMetadata(WireModel):
    """Repository facts gathered when the session was connected."""

    owner: str
    name: str
    full_name: str
    default_branch: str = "main"
    is_private: bool = False
    description: Optional[str] = None
    language: Optional[str] = None
    stars: int = 0
    forks: int = 0
    url: str


class Session(WireModel):
    """A client session owning zero or one pipeline run."""

    id: str = Field(..., min_length=1)
    repo_url: str
    repo_metadata: Optional[RepoMetadata] = None
    selected_mode: Optional[Mode] = None
    pipeline_id: Optional[str] = None
    created_at: int = Field(default_factory=now_ms, gt=0)
    expires_at: Optional[int] = None


# Valid status transitions map
#
# Key design decisions:
# - RUNNING → RUNNING is the advance from one stage to the next
# - WAITING_APPROVAL → COMPLETED resolves a gate opened on the last stage
# - COMPLETED and FAILED are terminal (no outgoing transitions)
VALID_TRANSITIONS: Dict[PipelineStatus, List[PipelineStatus]] = {
    PipelineStatus.INITIALIZING: [
        PipelineStatus.RUNNING,
        PipelineStatus.FAILED,
    ],
    PipelineStatus.RUNNING: [
        PipelineStatus.RUNNING,
        PipelineStatus.WAITING_APPROVAL,
        PipelineStatus.COMPLETED,
        PipelineStatus.FAILED,
    ],
    PipelineStatus.WAITING_APPROVAL: [
        PipelineStatus.RUNNING,
        PipelineStatus.COMPLETED,
        PipelineStatus.FAILED,
    ],
    PipelineStatus.COMPLETED: [],
    PipelineStatus.FAILED: [],
}


# Artifact types whose generation opens an approval gate, and the gate type
# they open. A pull request outranks docs when a stage produces both.
APPROVAL_ARTIFACT_TYPES: Dict[ArtifactType, ApprovalGateType] = {
    ArtifactType.README: ApprovalGateType.DOCS,
    ArtifactType.API_DOCS: ApprovalGateType.DOCS,
    ArtifactType.PULL_REQUEST: ApprovalGateType.PULL_REQUEST,
}


def is_valid_transition(
    from_status: PipelineStatus, to_status: PipelineStatus
) -> bool:
    """Check if a status transition is valid.

    Example:
        >>> is_valid_transition(PipelineStatus.INITIALIZING, PipelineStatus.RUNNING)
        True
        >>> is_valid_transition(PipelineStatus.COMPLETED, PipelineStatus.RUNNING)
        False
    """
    return to_status in VALID_TRANSITIONS.get(from_status, [])


def is_terminal_status(status: PipelineStatus) -> bool:
    """Check if a status is terminal (has no outgoing transitions)."""
    return len(VALID_TRANSITIONS.get(status, [])) == 0


def approval_gate_type_for(artifacts: List[Artifact]) -> Optional[ApprovalGateType]:
    """Return the gate type the given artifacts require, if any."""
    gate_types = {
        APPROVAL_ARTIFACT_TYPES[artifact.type]
        for artifact in artifacts
        if artifact.type in APPROVAL_ARTIFACT_TYPES
    }
    if ApprovalGateType.PULL_REQUEST in gate_types:
        return ApprovalGateType.PULL_REQUEST
    if ApprovalGateType.DOCS in gate_types:
        return ApprovalGateType.DOCS
    return None
