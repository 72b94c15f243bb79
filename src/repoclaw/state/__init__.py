"""Pipeline state records and persistence.

Runs progress initializing → running ⇄ waiting_approval → completed | failed.
Records live in a key-value store; every read-modify-write on one key is
serialized and bounded by a timeout.

The state machine lives in src.repoclaw.state.machine and is imported from
there directly.
"""

from src.repoclaw.state.kv import (
    APPROVAL_GATE_PREFIX,
    ERROR_LOG_PREFIX,
    PIPELINE_PREFIX,
    SESSION_PREFIX,
    InMemoryKeyValueStore,
    KeyValueStore,
)
from src.repoclaw.state.models import (
    TERMINAL_STATUSES,
    VALID_TRANSITIONS,
    AgentResult,
    AgentStatus,
    AgentType,
    ApprovalDecision,
    ApprovalGate,
    ApprovalGateStatus,
    ApprovalGateType,
    Artifact,
    ArtifactType,
    Mode,
    PipelineError,
    PipelineState,
    PipelineStatus,
    RepoMetadata,
    Session,
    is_terminal_status,
    is_valid_transition,
)
from src.repoclaw.state.repository import DatabaseError, PostgresKeyValueStore
from src.repoclaw.state.store import (
    BoundedStore,
    PipelineStateStore,
    SessionStore,
)

__all__ = [
    # Models
    "AgentResult",
    "AgentStatus",
    "AgentType",
    "ApprovalDecision",
    "ApprovalGate",
    "ApprovalGateStatus",
    "ApprovalGateType",
    "Artifact",
    "ArtifactType",
    "Mode",
    "PipelineError",
    "PipelineState",
    "PipelineStatus",
    "RepoMetadata",
    "Session",
    "TERMINAL_STATUSES",
    "VALID_TRANSITIONS",
    "is_terminal_status",
    "is_valid_transition",
    # Key-value backends
    "KeyValueStore",
    "InMemoryKeyValueStore",
    "PostgresKeyValueStore",
    "DatabaseError",
    "PIPELINE_PREFIX",
    "SESSION_PREFIX",
    "APPROVAL_GATE_PREFIX",
    "ERROR_LOG_PREFIX",
    # Stores
    "BoundedStore",
    "PipelineStateStore",
    "SessionStore",
]
