"""Approval gate protocol.

A gate pauses a run after a stage produced output that needs a human
decision. While a gate is pending the pipeline sits in waiting_approval and
nothing dispatches; there is no thread blocked on the decision. respond()
resolves the gate and moves the pipeline in the same store update, which is
what keeps a response from racing a stage completion or a second response.

There is no built-in deadline. An external expiry policy can call respond()
with a synthetic rejection.
"""

import logging
from typing import NamedTuple, Optional, Sequence, Union

from src.repoclaw.exceptions import (
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    PipelineValidationError,
)
from src.repoclaw.failures.log import ErrorLogStore
from src.repoclaw.state.machine import (
    advance_state,
    fail_state,
    open_gate_state,
    resolve_gate_state,
)
from src.repoclaw.state.models import (
    ApprovalDecision,
    ApprovalGate,
    ApprovalGateStatus,
    ApprovalGateType,
    Artifact,
    PipelineError,
    PipelineState,
    PipelineStatus,
    now_ms,
)
from src.repoclaw.state.store import PipelineStateStore


logger = logging.getLogger(__name__)


class OpenedGate(NamedTuple):
    """A new pending gate and the waiting_approval state that lists it."""

    gate: ApprovalGate
    pipeline: PipelineState


class GateResolution(NamedTuple):
    """A resolved gate together with the pipeline state it produced."""

    gate: ApprovalGate
    pipeline: PipelineState


def _coerce_decision(decision: Union[ApprovalDecision, str]) -> ApprovalDecision:
    try:
        return ApprovalDecision(decision)
    except ValueError as e:
        raise PipelineValidationError(f"Unknown approval decision: {decision}") from e


class ApprovalGateManager:
    """Opens and resolves approval gates.

    Attributes:
        store: The PipelineState store.
        error_log: Where rejections are recorded before the run fails.
    """

    def __init__(self, store: PipelineStateStore, error_log: ErrorLogStore):
        self.store = store
        self.error_log = error_log

    async def open_gate(
        self,
        pipeline_id: str,
        gate_type: ApprovalGateType,
        artifacts: Sequence[Artifact],
    ) -> OpenedGate:
        """Append a pending gate and move the run to waiting_approval.

        Returns:
            The gate and the state written with it. Dispatch ends on this
            snapshot; a response may already have moved the run on.

        Raises:
            InvalidTransitionError: If the pipeline is not running.
        """
        gate = ApprovalGate(
            pipeline_id=pipeline_id,
            type=ApprovalGateType(gate_type),
            artifacts=list(artifacts),
        )

        # Indexed before the pipeline lists the gate.
        await self.store.index_gate(gate.id, pipeline_id)
        state = await self.store.update(
            pipeline_id, lambda current: open_gate_state(current, gate)
        )

        logger.info(
            "Approval gate opened",
            extra={
                "pipeline_id": pipeline_id,
                "gate_id": gate.id,
                "gate_type": gate.type.value,
                "artifacts": len(gate.artifacts),
            },
        )
        return OpenedGate(gate, state)

    async def respond(
        self,
        gate_id: str,
        decision: Union[ApprovalDecision, str],
        feedback: Optional[str] = None,
    ) -> GateResolution:
        """Resolve a pending gate.

        Approval moves the run to the next active stage, or completes it
        when none remain. Rejection writes an error log entry and then
        fails the run with an error naming the gate.

        Raises:
            PipelineValidationError: If decision is not approved/rejected.
            NotFoundError: If the gate does not exist.
            InvalidStateError: If the gate is no longer pending.
        """
        decision = _coerce_decision(decision)
        pipeline_id = await self.store.pipeline_for_gate(gate_id)

        async def mutate(state: PipelineState) -> PipelineState:
            gate = state.find_gate(gate_id)
            if gate is None:
                raise NotFoundError("gate", gate_id)
            if gate.status != ApprovalGateStatus.PENDING:
                logger.warning(
                    "Duplicate approval response",
                    extra={
                        "pipeline_id": pipeline_id,
                        "gate_id": gate_id,
                        "gate_status": gate.status.value,
                    },
                )
                raise InvalidStateError(gate_id, gate.status.value)
            if state.status != PipelineStatus.WAITING_APPROVAL:
                raise InvalidTransitionError(
                    f"Pipeline {pipeline_id} is {state.status.value}, not waiting for approval",
                    from_status=state.status.value,
                )

            now = now_ms()
            resolved = resolve_gate_state(state, gate_id, decision, feedback, now)
            if decision == ApprovalDecision.APPROVED:
                return advance_state(resolved, now)

            details = feedback or "No feedback provided"
            error_log_id = await self.error_log.log_system_error(
                pipeline_id,
                f"Approval gate {gate_id} rejected",
                details=details,
                recoverable=False,
            )
            error = PipelineError(
                message=f"Approval gate {gate_id} ({gate.type.value}) was rejected",
                details=details,
                timestamp=now,
                recoverable=False,
                error_log_id=error_log_id,
                gate_id=gate_id,
            )
            return fail_state(resolved, error, at=now)

        updated = await self.store.update(pipeline_id, mutate)
        gate = updated.find_gate(gate_id)

        logger.info(
            "Approval gate resolved",
            extra={
                "pipeline_id": pipeline_id,
                "gate_id": gate_id,
                "decision": decision.value,
                "status": updated.status.value,
            },
        )
        return GateResolution(gate=gate, pipeline=updated)

