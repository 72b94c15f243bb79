"""Pipeline event models.

This module defines the event envelope shared by the client stream and the
observability sinks:
- EventType: Enum of all event types
- PipelineEvent: {type, data, timestamp} with text/event-stream encoding

The stream publisher emits pipeline_started, agent_progress,
pipeline_completed, pipeline_failed and error directly to clients. The
remaining types describe finer-grained lifecycle steps; the orchestrator
sends them to the configured EventEmitter sinks (logs, metrics).
"""

import json
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from src.repoclaw.state.models import now_ms


class EventType(str, Enum):
    """Types of pipeline events.

    Attributes:
        PIPELINE_STARTED: A subscription opened, or a run was scheduled.
        AGENT_STARTED: A stage was dispatched.
        AGENT_PROGRESS: Full state projection, sent on every stream tick.
        AGENT_COMPLETED: A stage returned a completed result.
        AGENT_FAILED: A stage attempt failed.
        ARTIFACT_GENERATED: A stage produced an artifact.
        APPROVAL_REQUIRED: An approval gate was opened.
        PIPELINE_COMPLETED: The run completed. Always last on a stream.
        PIPELINE_FAILED: The run failed. Always last on a stream.
        ERROR: A stream sample could not be read.
    """

    PIPELINE_STARTED = "pipeline_started"
    AGENT_STARTED = "agent_started"
    AGENT_PROGRESS = "agent_progress"
    AGENT_COMPLETED = "agent_completed"
    AGENT_FAILED = "agent_failed"
    ARTIFACT_GENERATED = "artifact_generated"
    APPROVAL_REQUIRED = "approval_required"
    PIPELINE_COMPLETED = "pipeline_completed"
    PIPELINE_FAILED = "pipeline_failed"
    ERROR = "error"


TERMINAL_EVENT_TYPES = frozenset(
    {EventType.PIPELINE_COMPLETED, EventType.PIPELINE_FAILED}
)


class PipelineEvent(BaseModel):
    """One discrete pipeline event. Transient, never persisted.

    Attributes:
        type: The event type.
        data: Payload shaped per type, camelCase keys.
        timestamp: Positive epoch milliseconds.

    Example:
        >>> event = PipelineEvent(
        ...     type=EventType.PIPELINE_STARTED,
        ...     data={"pipelineId": "pipe_1", "mode": "hackathon"},
        ...     timestamp=1700000000000,
        ... )
        >>> event.to_sse().startswith('data: {"type": "pipeline_started"')
        True
    """

    type: EventType
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: int = Field(default_factory=now_ms, gt=0)

    @property
    def pipeline_id(self) -> Optional[str]:
        return self.data.get("pipelineId")

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES

    def to_wire(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "data": self.data,
            "timestamp": self.timestamp,
        }

    def to_sse(self) -> str:
        """Encode the event as one text/event-stream message."""
        return f"data: {json.dumps(self.to_wire())}\n\n"

    def to_log_dict(self) -> Dict[str, Any]:
        """Flatten the event for structured logging.

        Payload keys are prefixed so they cannot clash with LogRecord
        attributes.
        """
        flattened = {
            "event_type": self.type.value,
            "timestamp_ms": self.timestamp,
        }
        for key, value in self.data.items():
            flattened[f"event_{key}"] = value
        return flattened


def pipeline_event(
    event_type: EventType,
    pipeline_id: str,
    timestamp: Optional[int] = None,
    **data: Any,
) -> PipelineEvent:
    """Build an event whose payload carries pipelineId first."""
    payload = {"pipelineId": pipeline_id, **data}
    if timestamp is None:
        return PipelineEvent(type=event_type, data=payload)
    return PipelineEvent(type=event_type, data=payload, timestamp=timestamp)
