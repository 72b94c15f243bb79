"""Pipeline state machine implementation.

This module implements the PipelineStateMachine class that moves a pipeline
run through its statuses with validation and timestamp recording.

Each transition is a pure function from the current snapshot to the next
one. The machine runs those functions as mutators inside
PipelineStateStore.update, so validation and write happen under the same
per-id lock and two writers can never interleave. The Approval Gate Manager
composes the same functions into its own mutators.
"""

import logging
from typing import Dict, Optional

from src.repoclaw.exceptions import InvalidTransitionError, PipelineValidationError
from src.repoclaw.modes import is_valid_mode, next_stage
from src.repoclaw.state.models import (
    AgentResult,
    AgentStatus,
    AgentType,
    ApprovalDecision,
    ApprovalGate,
    ApprovalGateStatus,
    Mode,
    PipelineError,
    PipelineState,
    PipelineStatus,
    is_valid_transition,
    now_ms,
)
from src.repoclaw.state.store import PipelineStateStore


logger = logging.getLogger(__name__)


def _stamp(timestamps: Dict[str, int], key: str, at: int) -> Dict[str, int]:
    """Return a copy of timestamps with key recorded; existing keys are kept."""
    updated = dict(timestamps)
    updated.setdefault(key, at)
    return updated


def require_transition(
    state: PipelineState, to_status: PipelineStatus, operation: str
) -> None:
    """Raise InvalidTransitionError unless state may move to to_status."""
    if is_valid_transition(state.status, to_status):
        return

    logger.warning(
        "Invalid state transition attempted",
        extra={
            "pipeline_id": state.id,
            "operation": operation,
            "from_status": state.status.value,
            "to_status": to_status.value,
        },
    )
    raise InvalidTransitionError(
        f"Cannot {operation} pipeline {state.id}: invalid transition from "
        f"{state.status.value} to {to_status.value}",
        from_status=state.status.value,
        to_status=to_status.value,
    )


def _require_active_stage(state: PipelineState, agent: AgentType, operation: str) -> None:
    if state.status != PipelineStatus.RUNNING or state.current_agent != agent:
        logger.warning(
            "Stage operation against inactive stage",
            extra={
                "pipeline_id": state.id,
                "operation": operation,
                "agent": agent.value,
                "status": state.status.value,
            },
        )
        raise InvalidTransitionError(
            f"Cannot {operation} for {agent.value}: pipeline {state.id} is "
            f"{state.status.value} with current agent "
            f"{state.current_agent.value if state.current_agent else None}",
            from_status=state.status.value,
        )


def advance_state(state: PipelineState, at: Optional[int] = None) -> PipelineState:
    """Move to the next active stage, or complete the run if none remain.

    Valid from running (stage advance) and waiting_approval (approved gate).
    """
    at = at or now_ms()
    upcoming = next_stage(state)

    if upcoming is None:
        require_transition(state, PipelineStatus.COMPLETED, "complete")
        return state.evolve(
            status=PipelineStatus.COMPLETED,
            current_agent=None,
            completed_at=max(at, state.started_at),
            timestamps=_stamp(state.timestamps, "completed", at),
        )

    require_transition(state, PipelineStatus.RUNNING, "advance")
    return state.evolve(
        status=PipelineStatus.RUNNING,
        current_agent=upcoming,
    )


def fail_state(
    state: PipelineState,
    error: PipelineError,
    result: Optional[AgentResult] = None,
    at: Optional[int] = None,
) -> PipelineState:
    """Move any non-terminal run to failed with its terminal cause.

    A failed stage result is recorded into agent_results first, unless that
    stage already holds a result.
    """
    at = at or now_ms()
    require_transition(state, PipelineStatus.FAILED, "fail")

    agent_results = dict(state.agent_results)
    if result is not None and agent_results.get(result.agent) is None:
        agent_results[result.agent] = result

    return state.evolve(
        status=PipelineStatus.FAILED,
        current_agent=None,
        agent_results=agent_results,
        error=error,
        completed_at=max(at, state.started_at),
        timestamps=_stamp(state.timestamps, "failed", at),
    )


def open_gate_state(state: PipelineState, gate: ApprovalGate) -> PipelineState:
    """Append a pending gate and suspend dispatch."""
    require_transition(state, PipelineStatus.WAITING_APPROVAL, "open gate on")

    return state.evolve(
        status=PipelineStatus.WAITING_APPROVAL,
        current_agent=None,
        approval_gates=[*state.approval_gates, gate],
        timestamps=_stamp(state.timestamps, f"gate_{gate.id}_opened", gate.created_at),
    )


def resolve_gate_state(
    state: PipelineState,
    gate_id: str,
    decision: ApprovalDecision,
    feedback: Optional[str],
    at: Optional[int] = None,
) -> PipelineState:
    """Resolve a pending gate in place; the status change is left to the caller."""
    gate = state.find_gate(gate_id)
    if gate is None:
        raise PipelineValidationError(
            f"Gate {gate_id} does not belong to pipeline {state.id}"
        )

    at = max(at or now_ms(), gate.created_at)
    resolved = ApprovalGate.model_validate(
        {
            **gate.model_dump(),
            "status": ApprovalGateStatus(decision.value),
            "feedback": feedback,
            "responded_at": at,
        }
    )
    gates = [resolved if g.id == gate_id else g for g in state.approval_gates]
    return state.evolve(
        approval_gates=gates,
        timestamps=_stamp(state.timestamps, f"gate_{gate_id}_{decision.value}", at),
    )


class PipelineStateMachine:
    """State machine for pipeline runs.

    The state machine enforces the following invariants:
    - Only transitions in VALID_TRANSITIONS are allowed
    - completed and failed are terminal
    - agent_results entries are filled at most once and never overwritten
    - artifacts and approval_gates are append-only
    - timestamps keys are append-only

    Attributes:
        store: The PipelineState store.

    Example:
        >>> machine = PipelineStateMachine(PipelineStateStore(kv))
        >>> state = await machine.create("pipe_1", "session_1", Mode.HACKATHON)
        >>> state = await machine.begin_stage("pipe_1", AgentType.ANALYZE)
        >>> state.current_agent
        <AgentType.ANALYZE: 'analyze'>
    """

    def __init__(self, store: PipelineStateStore):
        self.store = store

    async def create(self, pipeline_id: str, session_id: str, mode: Mode) -> PipelineState:
        """Create a new run in the initializing status.

        Raises:
            PipelineValidationError: If an id is empty or mode is unknown.
            AlreadyExistsError: If pipeline_id is already stored.
        """
        if not pipeline_id:
            raise PipelineValidationError("pipeline_id cannot be empty")
        if not session_id:
            raise PipelineValidationError("session_id cannot be empty")
        if not is_valid_mode(mode):
            raise PipelineValidationError(f"Unknown mode: {mode}")

        now = now_ms()
        state = PipelineState(
            id=pipeline_id,
            session_id=session_id,
            mode=Mode(mode),
            status=PipelineStatus.INITIALIZING,
            started_at=now,
            timestamps={"initialized": now},
        )

        logger.info(
            "Creating pipeline state",
            extra={
                "pipeline_id": pipeline_id,
                "session_id": session_id,
                "mode": state.mode.value,
            },
        )
        return await self.store.create(state)

    async def get(self, pipeline_id: str) -> PipelineState:
        return await self.store.get(pipeline_id)

    async def begin_stage(self, pipeline_id: str, agent: AgentType) -> PipelineState:
        """Mark agent as the active stage.

        From initializing this is the first transition to running. When the
        run is already running with agent current (after an advance or an
        approved gate) it only records the start time.
        """

        def mutate(state: PipelineState) -> PipelineState:
            if state.agent_results.get(agent) is not None:
                raise InvalidTransitionError(
                    f"Stage {agent.value} of pipeline {state.id} already has a result",
                    from_status=state.status.value,
                )

            # initializing -> running is the only entry; otherwise agent must
            # already be the current stage
            if state.status != PipelineStatus.INITIALIZING:
                _require_active_stage(state, agent, "begin stage")
            elif agent != next_stage(state):
                raise InvalidTransitionError(
                    f"Pipeline {state.id} must start with "
                    f"{next_stage(state).value}, not {agent.value}",
                    from_status=state.status.value,
                    to_status=PipelineStatus.RUNNING.value,
                )

            return state.evolve(
                status=PipelineStatus.RUNNING,
                current_agent=agent,
                timestamps=_stamp(state.timestamps, f"{agent.value}_started", now_ms()),
            )

        updated = await self.store.update(pipeline_id, mutate)
        logger.info(
            "Stage started",
            extra={"pipeline_id": pipeline_id, "agent": agent.value},
        )
        return updated

    async def record_result(
        self,
        pipeline_id: str,
        agent: AgentType,
        result: AgentResult,
        advance: bool = True,
    ) -> PipelineState:
        """Fill agent_results[agent] and append its artifacts.

        Args:
            pipeline_id: The run to update.
            agent: The active stage.
            result: The completed stage result.
            advance: Move to the next active stage (or complete) in the same
                update. Pass False when an approval gate follows.

        Raises:
            InvalidTransitionError: If agent is not the active stage or its
                result was already recorded.
        """
        if result.agent != agent:
            raise PipelineValidationError(
                f"Result for {result.agent.value} recorded against {agent.value}"
            )

        def mutate(state: PipelineState) -> PipelineState:
            _require_active_stage(state, agent, "record result")
            if state.agent_results.get(agent) is not None:
                raise InvalidTransitionError(
                    f"Stage {agent.value} of pipeline {state.id} already has a result",
                    from_status=state.status.value,
                )

            now = now_ms()
            agent_results = dict(state.agent_results)
            agent_results[agent] = result
            recorded = state.evolve(
                agent_results=agent_results,
                artifacts=[*state.artifacts, *result.artifacts],
                timestamps=_stamp(state.timestamps, f"{agent.value}_completed", now),
            )
            return advance_state(recorded, now) if advance else recorded

        updated = await self.store.update(pipeline_id, mutate)
        logger.info(
            "Stage result recorded",
            extra={
                "pipeline_id": pipeline_id,
                "agent": agent.value,
                "artifacts": len(result.artifacts),
                "status": updated.status.value,
            },
        )
        return updated

    async def record_retry(
        self, pipeline_id: str, agent: AgentType, attempt: int
    ) -> PipelineState:
        """Record that agent is about to be dispatched again."""

        def mutate(state: PipelineState) -> PipelineState:
            _require_active_stage(state, agent, "retry stage")
            return state.evolve(
                timestamps=_stamp(
                    state.timestamps, f"{agent.value}_retry_{attempt}", now_ms()
                ),
            )

        return await self.store.update(pipeline_id, mutate)

    async def fail(
        self,
        pipeline_id: str,
        error: PipelineError,
        result: Optional[AgentResult] = None,
    ) -> PipelineState:
        """Transition the run to failed.

        Raises:
            InvalidTransitionError: If the run is already terminal.
        """
        if result is not None and result.status != AgentStatus.FAILED:
            raise PipelineValidationError("Only a failed result may accompany a failure")

        updated = await self.store.update(
            pipeline_id, lambda state: fail_state(state, error, result)
        )
        logger.info(
            "Pipeline failed",
            extra={
                "pipeline_id": pipeline_id,
                "agent": error.agent.value if error.agent else None,
                "error": error.message,
            },
        )
        return updated
