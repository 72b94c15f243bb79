"""Pipeline orchestrator driving runs through their stages.

start_pipeline creates the run and schedules run_pipeline as a background
task. run_pipeline dispatches the active stages of the run's mode in the
fixed order analyze → docs → demo → pitch → supervisor and stops as soon as
the run is no longer initializing or running: either a gate was opened or
the run reached a terminal status. An approved gate schedules run_pipeline
again; nothing waits on the gate in the meantime.

Failure policy per stage:
- every failed attempt is written to the error log first
- a recoverable failure (per the error classifier) is retried with
  exponential backoff, up to max_stage_attempts attempts in total
- an unrecoverable failure, or the last failed attempt, records a failed
  result and moves the run to failed

The orchestrator delegates all state changes to the state machine and the
approval gate manager, and reports lifecycle steps to the event emitter.

Source:
- src/repoclaw/state/machine.py (PipelineStateMachine)
- src/repoclaw/approval.py (ApprovalGateManager)
- src/repoclaw/failures/log.py (ErrorLogStore)
- src/repoclaw/agents/base.py (AgentRunner)
- src/repoclaw/events/emitter.py (EventEmitter)
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Set, Union

from src.repoclaw.agents.base import AgentContext, AgentRunner
from src.repoclaw.approval import ApprovalGateManager, GateResolution
from src.repoclaw.config import RepoClawSettings
from src.repoclaw.events.emitter import EventEmitter
from src.repoclaw.events.models import EventType, PipelineEvent, pipeline_event
from src.repoclaw.exceptions import (
    AgentFailure,
    FatalAgentFailure,
    InvalidTransitionError,
    PipelineValidationError,
    RecoverableAgentFailure,
)
from src.repoclaw.failures.classifier import classify, describe_failure, error_text
from src.repoclaw.failures.log import ErrorLogStore
from src.repoclaw.modes import get_prompt_modifier, is_valid_mode, next_stage
from src.repoclaw.state.machine import PipelineStateMachine
from src.repoclaw.state.models import (
    APPROVAL_ARTIFACT_TYPES,
    AgentResult,
    AgentStatus,
    AgentType,
    ApprovalDecision,
    Mode,
    PipelineError,
    PipelineState,
    PipelineStatus,
    Session,
    approval_gate_type_for,
    generate_id,
    now_ms,
)
from src.repoclaw.state.store import SessionStore


logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]

_DISPATCHABLE = (PipelineStatus.INITIALIZING, PipelineStatus.RUNNING)


class PipelineOrchestrator:
    """Orchestrates pipeline runs from start to terminal status.

    Accepts all dependencies via constructor injection.

    Attributes:
        state_machine: Performs every pipeline state transition.
        sessions: Session lookup and update.
        approvals: Opens and resolves approval gates.
        error_log: Records every stage failure before it takes effect.
        runners: The agent runner for each stage.
        event_emitter: Emits lifecycle events for observability.
        settings: Retry, timeout and approval configuration.
    """

    def __init__(
        self,
        state_machine: PipelineStateMachine,
        sessions: SessionStore,
        approvals: ApprovalGateManager,
        error_log: ErrorLogStore,
        runners: Mapping[AgentType, AgentRunner],
        event_emitter: EventEmitter,
        settings: Optional[RepoClawSettings] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.state_machine = state_machine
        self.sessions = sessions
        self.approvals = approvals
        self.error_log = error_log
        self.runners = dict(runners)
        self.event_emitter = event_emitter
        self.settings = settings or RepoClawSettings()
        self._sleep = sleep
        self._tasks: Set[asyncio.Task] = set()
        # newest dispatch task per pipeline
        self._dispatching: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    async def create_pipeline(
        self, session_id: str, mode: Union[Mode, str]
    ) -> PipelineState:
        """Create a run for a session without scheduling it.

        Raises:
            PipelineValidationError: If mode is unknown, session_id is empty
                or the session has no repository metadata.
            NotFoundError: If the session does not exist.
        """
        if not is_valid_mode(mode):
            raise PipelineValidationError(
                f"Invalid mode: {mode}. Must be one of "
                f"{', '.join(m.value for m in Mode)}"
            )
        if not session_id:
            raise PipelineValidationError("session_id is required")

        mode = Mode(mode)
        session = await self.sessions.get(session_id)
        if session.repo_metadata is None:
            raise PipelineValidationError(
                f"Session {session_id} has no repository metadata"
            )

        state = await self.state_machine.create(
            generate_id("pipe_"), session_id, mode
        )
        await self.sessions.update(
            session_id, selected_mode=mode, pipeline_id=state.id
        )

        await self._safe_emit(
            pipeline_event(
                EventType.PIPELINE_STARTED,
                state.id,
                sessionId=session_id,
                mode=mode.value,
            )
        )
        return state

    async def start_pipeline(self, session_id: str, mode: Union[Mode, str]) -> str:
        """Create a run and schedule its dispatch. Returns the pipeline id."""
        state = await self.create_pipeline(session_id, mode)
        self.schedule(state.id)

        logger.info(
            "Pipeline scheduled",
            extra={"pipeline_id": state.id, "mode": state.mode.value},
        )
        return state.id

    async def respond_to_approval(
        self,
        gate_id: str,
        decision: Union[ApprovalDecision, str],
        feedback: Optional[str] = None,
    ) -> GateResolution:
        """Resolve a gate and resume or finish the run it paused."""
        resolution = await self.approvals.respond(gate_id, decision, feedback)
        state = resolution.pipeline

        if state.status == PipelineStatus.RUNNING:
            self.schedule(state.id)
        elif state.is_terminal:
            await self._emit_terminal(state)
        return resolution

    def schedule(self, pipeline_id: str) -> asyncio.Task:
        """Run run_pipeline for pipeline_id as a background task.

        Tasks for one pipeline run one after another: a new task waits for
        the previous one to finish and then reads the state afresh, so a
        run never has two stages in flight.
        """
        previous = self._dispatching.get(pipeline_id)
        task = asyncio.create_task(
            self._run_guarded(pipeline_id, previous), name=f"pipeline-{pipeline_id}"
        )
        self._dispatching[pipeline_id] = task
        self._tasks.add(task)

        def forget(done: asyncio.Task) -> None:
            self._tasks.discard(done)
            if self._dispatching.get(pipeline_id) is done:
                del self._dispatching[pipeline_id]

        task.add_done_callback(forget)
        return task

    async def join(self) -> None:
        """Wait until no dispatch task is left, including ones scheduled meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel outstanding dispatch tasks."""
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def run_pipeline(self, pipeline_id: str) -> PipelineState:
        """Dispatch stages until a gate opens or the run is terminal.

        Returns:
            The state the run was left in.
        """
        state = await self.state_machine.get(pipeline_id)
        if state.status not in _DISPATCHABLE:
            return state

        session = await self.sessions.get(state.session_id)

        while state.status in _DISPATCHABLE:
            agent = state.current_agent or next_stage(state)
            if agent is None:
                break
            state = await self._run_stage(state, session, agent)

        if state.is_terminal:
            await self._emit_terminal(state)
        return state

    async def _run_guarded(
        self, pipeline_id: str, previous: Optional[asyncio.Task] = None
    ) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        try:
            await self.run_pipeline(pipeline_id)
        except InvalidTransitionError as e:
            logger.warning(
                "Pipeline dispatch stopped by a concurrent transition",
                extra={"pipeline_id": pipeline_id, "error": e.message},
            )
        except Exception as e:
            logger.exception(
                "Pipeline dispatch crashed",
                extra={"pipeline_id": pipeline_id},
            )
            await self._fail_system(pipeline_id, e)

    async def _run_stage(
        self, state: PipelineState, session: Session, agent: AgentType
    ) -> PipelineState:
        pipeline_id = state.id
        state = await self.state_machine.begin_stage(pipeline_id, agent)
        await self._emit(EventType.AGENT_STARTED, pipeline_id, agent=agent.value)

        max_attempts = self.settings.max_stage_attempts
        delay = self.settings.retry_initial_delay_seconds

        attempt = 0
        while True:
            attempt += 1
            started = time.monotonic()
            try:
                result = await self._dispatch(
                    agent, self._build_context(state, session, agent, attempt), attempt
                )
            except AgentFailure as failure:
                elapsed_ms = int((time.monotonic() - started) * 1000)
                error_log_id = await self.error_log.log_agent_error(
                    pipeline_id, agent, failure, recoverable=failure.recoverable
                )
                await self._emit(
                    EventType.AGENT_FAILED,
                    pipeline_id,
                    agent=agent.value,
                    attempt=attempt,
                    error=failure.message,
                    recoverable=failure.recoverable,
                    executionTime=elapsed_ms,
                )

                if not failure.recoverable or attempt >= max_attempts:
                    return await self._fail_stage(
                        pipeline_id, agent, failure, error_log_id, attempt, elapsed_ms
                    )

                logger.warning(
                    "Stage failed, retrying",
                    extra={
                        "pipeline_id": pipeline_id,
                        "agent": agent.value,
                        "attempt": attempt,
                        "delay": delay,
                    },
                )
                await self.state_machine.record_retry(pipeline_id, agent, attempt + 1)
                await self._sleep(delay)
                delay = min(
                    delay * self.settings.retry_backoff_multiplier,
                    self.settings.retry_max_delay_seconds,
                )
                continue

            elapsed_ms = int((time.monotonic() - started) * 1000)
            return await self._complete_stage(pipeline_id, agent, result, attempt, elapsed_ms)

    async def _dispatch(
        self, agent: AgentType, context: AgentContext, attempt: int
    ) -> AgentResult:
        """Run one attempt and turn every failure into a classified AgentFailure."""
        runner = self.runners.get(agent)
        if runner is None:
            raise FatalAgentFailure(
                agent.value, f"No runner configured for {agent.value}", attempts=attempt
            )

        timeout = self.settings.agent_timeout(agent)
        try:
            result = await asyncio.wait_for(runner.run(context), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise RecoverableAgentFailure(
                agent.value,
                f"Agent {agent.value} exceeded its {timeout:g}s timeout",
                attempts=attempt,
            ) from e
        except Exception as e:
            text = error_text(e) or type(e).__name__
            failure_type = RecoverableAgentFailure if classify(text) else FatalAgentFailure
            raise failure_type(agent.value, text, attempts=attempt) from e

        if result.status == AgentStatus.FAILED:
            text = result.error or f"Agent {agent.value} reported a failure"
            failure_type = RecoverableAgentFailure if classify(text) else FatalAgentFailure
            raise failure_type(agent.value, text, attempts=attempt)

        if result.agent != agent:
            raise FatalAgentFailure(
                agent.value,
                f"Runner for {agent.value} returned a result for {result.agent.value}",
                attempts=attempt,
            )
        return result

    def _build_context(
        self,
        state: PipelineState,
        session: Session,
        agent: AgentType,
        attempt: int,
    ) -> AgentContext:
        return AgentContext(
            pipeline_id=state.id,
            session_id=state.session_id,
            repo_metadata=session.repo_metadata,
            mode=state.mode,
            prompt_modifier=get_prompt_modifier(state.mode),
            previous_results={
                stage: result
                for stage, result in state.agent_results.items()
                if result is not None and stage != agent
            },
            attempt=attempt,
        )

    async def _complete_stage(
        self,
        pipeline_id: str,
        agent: AgentType,
        result: AgentResult,
        attempt: int,
        elapsed_ms: int,
    ) -> PipelineState:
        result = result.model_copy(
            update={
                "attempts": attempt,
                "execution_time": result.execution_time or elapsed_ms,
            }
        )
        await self._emit(
            EventType.AGENT_COMPLETED,
            pipeline_id,
            agent=agent.value,
            attempts=attempt,
            artifacts=len(result.artifacts),
            executionTime=result.execution_time,
        )

        gate_type = (
            approval_gate_type_for(result.artifacts)
            if self.settings.require_approval
            else None
        )
        state = await self.state_machine.record_result(
            pipeline_id, agent, result, advance=gate_type is None
        )

        for artifact in result.artifacts:
            await self._emit(
                EventType.ARTIFACT_GENERATED,
                pipeline_id,
                agent=agent.value,
                artifactId=artifact.id,
                artifactType=artifact.type.value,
                title=artifact.title,
            )

        if gate_type is None:
            return state

        gated = [a for a in result.artifacts if a.type in APPROVAL_ARTIFACT_TYPES]
        opened = await self.approvals.open_gate(pipeline_id, gate_type, gated)
        await self._emit(
            EventType.APPROVAL_REQUIRED,
            pipeline_id,
            agent=agent.value,
            gateId=opened.gate.id,
            gateType=gate_type.value,
            artifactIds=[a.id for a in gated],
        )
        # Not re-read: a response may already have resumed the run under
        # another dispatch task.
        return opened.pipeline

    async def _fail_stage(
        self,
        pipeline_id: str,
        agent: AgentType,
        failure: AgentFailure,
        error_log_id: str,
        attempts: int,
        elapsed_ms: int,
    ) -> PipelineState:
        if failure.recoverable:
            details = f"Stage {agent.value} still failing after {attempts} attempts"
        else:
            details = f"Stage {agent.value} failed with an unrecoverable error"

        failed_result = AgentResult(
            agent=agent,
            status=AgentStatus.FAILED,
            error=failure.message,
            execution_time=elapsed_ms,
            attempts=attempts,
        )
        error = PipelineError(
            agent=agent,
            message=failure.message,
            details=details,
            recoverable=failure.recoverable,
            error_log_id=error_log_id,
        )
        return await self.state_machine.fail(pipeline_id, error, result=failed_result)

    async def _fail_system(self, pipeline_id: str, exc: Exception) -> None:
        """Fail a run whose dispatch crashed outside any stage."""
        try:
            state = await self.state_machine.get(pipeline_id)
            if state.is_terminal:
                return

            description = describe_failure(exc)
            recoverable = classify(exc)
            error_log_id = await self.error_log.log(
                pipeline_id,
                None,
                f"Pipeline dispatch failed: {description.message}",
                description.details,
                recoverable,
                stack=description.stack,
            )
            state = await self.state_machine.fail(
                pipeline_id,
                PipelineError(
                    message=f"Pipeline dispatch failed: {description.message}",
                    details=description.details,
                    recoverable=recoverable,
                    error_log_id=error_log_id,
                ),
            )
            await self._emit_terminal(state)
        except Exception:
            logger.exception(
                "Failed to transition to failed status",
                extra={"pipeline_id": pipeline_id},
            )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def _emit_terminal(self, state: PipelineState) -> None:
        duration_ms = max(0, (state.completed_at or now_ms()) - state.started_at)
        if state.status == PipelineStatus.COMPLETED:
            await self._emit(
                EventType.PIPELINE_COMPLETED,
                state.id,
                mode=state.mode.value,
                artifacts=len(state.artifacts),
                durationMs=duration_ms,
            )
        else:
            await self._emit(
                EventType.PIPELINE_FAILED,
                state.id,
                mode=state.mode.value,
                error=state.error.message if state.error else None,
                durationMs=duration_ms,
            )

    async def _emit(self, event_type: EventType, pipeline_id: str, **data: Any) -> None:
        await self._safe_emit(pipeline_event(event_type, pipeline_id, **data))

    async def _safe_emit(self, event: PipelineEvent) -> None:
        """Emit an event; sink failures are logged and dropped."""
        try:
            await self.event_emitter.emit(event)
        except Exception:
            logger.exception(
                "Failed to emit pipeline event",
                extra={
                    "event_type": event.type.value,
                    "pipeline_id": event.pipeline_id,
                },
            )
