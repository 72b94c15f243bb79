"""Unit tests for the PipelineOrchestrator.

The orchestrator runs against real in-memory stores. Agent runners, the
event emitter and the retry sleep are mocks, so every scenario is
deterministic and no test waits on a real backoff.
"""

import asyncio
from typing import Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.repoclaw.approval import ApprovalGateManager
from src.repoclaw.config import RepoClawSettings
from src.repoclaw.events.models import EventType
from src.repoclaw.exceptions import NotFoundError, PipelineValidationError
from src.repoclaw.failures.log import ErrorLogStore
from src.repoclaw.orchestrator import PipelineOrchestrator
from src.repoclaw.state.kv import InMemoryKeyValueStore
from src.repoclaw.state.machine import PipelineStateMachine
from src.repoclaw.state.models import (
    AgentResult,
    AgentStatus,
    AgentType,
    ApprovalDecision,
    ApprovalGateStatus,
    ApprovalGateType,
    Artifact,
    ArtifactType,
    Mode,
    PipelineStatus,
    RepoMetadata,
    Session,
)
from src.repoclaw.state.store import PipelineStateStore, SessionStore


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


STAGE_ARTIFACTS: Dict[AgentType, List[ArtifactType]] = {
    AgentType.ANALYZE: [ArtifactType.ANALYSIS],
    AgentType.DOCS: [ArtifactType.README],
    AgentType.DEMO: [ArtifactType.DEMO_URL],
    AgentType.PITCH: [ArtifactType.PITCH_DECK, ArtifactType.PITCH_SCRIPT],
    AgentType.SUPERVISOR: [ArtifactType.ANALYSIS],
}


def _make_result(agent: AgentType, types: Optional[List[ArtifactType]] = None) -> AgentResult:
    types = STAGE_ARTIFACTS[agent] if types is None else types
    return AgentResult(
        agent=agent,
        status=AgentStatus.COMPLETED,
        artifacts=[
            Artifact(type=t, title=f"{agent.value} {t.value}", content="body") for t in types
        ],
    )


def _make_runner(agent: AgentType, **run_kwargs) -> MagicMock:
    runner = MagicMock()
    runner.agent = agent
    if not run_kwargs:
        run_kwargs = {"return_value": _make_result(agent)}
    runner.run = AsyncMock(**run_kwargs)
    return runner


def _make_session(session_id: str = "sess_1", with_metadata: bool = True) -> Session:
    metadata = RepoMetadata(
        owner="octo",
        name="widgets",
        full_name="octo/widgets",
        url="https://github.com/octo/widgets",
    )
    return Session(
        id=session_id,
        repo_url="https://github.com/octo/widgets",
        repo_metadata=metadata if with_metadata else None,
    )


class Deps:
    """Real stores plus mocked collaborators."""

    def __init__(self, **settings_overrides) -> None:
        kv = InMemoryKeyValueStore()
        self.pipelines = PipelineStateStore(kv)
        self.sessions = SessionStore(kv)
        self.error_log = ErrorLogStore(kv)
        self.machine = PipelineStateMachine(self.pipelines)
        self.runners = {agent: _make_runner(agent) for agent in AgentType}
        self.event_emitter = MagicMock()
        self.event_emitter.emit = AsyncMock()
        self.sleep = AsyncMock()
        self.settings = RepoClawSettings(
            retry_initial_delay_seconds=0.5,
            retry_max_delay_seconds=0.8,
            retry_backoff_multiplier=2.0,
            **settings_overrides,
        )

    def orchestrator(self) -> PipelineOrchestrator:
        return PipelineOrchestrator(
            state_machine=self.machine,
            sessions=self.sessions,
            approvals=ApprovalGateManager(self.pipelines, self.error_log),
            error_log=self.error_log,
            runners=self.runners,
            event_emitter=self.event_emitter,
            settings=self.settings,
            sleep=self.sleep,
        )

    def emitted(self) -> List[EventType]:
        return [c.args[0].type for c in self.event_emitter.emit.call_args_list]


async def _started(deps: Deps, mode: Mode = Mode.HACKATHON):
    await deps.sessions.create(_make_session())
    orchestrator = deps.orchestrator()
    state = await orchestrator.create_pipeline("sess_1", mode)
    return orchestrator, state


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


def test_create_pipeline_starts_initializing_and_links_session():
    async def run_test():
        deps = Deps()
        orchestrator, state = await _started(deps)

        assert state.status == PipelineStatus.INITIALIZING
        assert state.mode == Mode.HACKATHON
        assert all(result is None for result in state.agent_results.values())

        session = await deps.sessions.get("sess_1")
        assert session.pipeline_id == state.id
        assert session.selected_mode == Mode.HACKATHON
        assert deps.emitted() == [EventType.PIPELINE_STARTED]

    asyncio.run(run_test())


def test_create_pipeline_rejects_unknown_mode():
    async def run_test():
        deps = Deps()
        await deps.sessions.create(_make_session())
        with pytest.raises(PipelineValidationError):
            await deps.orchestrator().create_pipeline("sess_1", "speedrun")

    asyncio.run(run_test())


def test_create_pipeline_requires_existing_session_with_metadata():
    async def run_test():
        deps = Deps()
        orchestrator = deps.orchestrator()
        with pytest.raises(NotFoundError):
            await orchestrator.create_pipeline("sess_missing", Mode.HACKATHON)

        await deps.sessions.create(_make_session("sess_bare", with_metadata=False))
        with pytest.raises(PipelineValidationError):
            await orchestrator.create_pipeline("sess_bare", Mode.HACKATHON)

    asyncio.run(run_test())


# ---------------------------------------------------------------------------
# Happy paths
# ---------------------------------------------------------------------------


def test_run_without_approval_completes_every_stage():
    async def run_test():
        deps = Deps(require_approval=False)
        orchestrator, state = await _started(deps)

        final = await orchestrator.run_pipeline(state.id)

        assert final.status == PipelineStatus.COMPLETED
        assert all(
            final.agent_results[agent].status == AgentStatus.COMPLETED for agent in AgentType
        )
        assert [a.type for a in final.artifacts] == [
            t for agent in AgentType for t in STAGE_ARTIFACTS[agent]
        ]
        assert deps.emitted()[-1] == EventType.PIPELINE_COMPLETED
        deps.sleep.assert_not_called()

    asyncio.run(run_test())


def test_agents_receive_mode_guidance_and_previous_results():
    async def run_test():
        deps = Deps(require_approval=False)
        orchestrator, state = await _started(deps)

        await orchestrator.run_pipeline(state.id)

        analyze_context = deps.runners[AgentType.ANALYZE].run.call_args.args[0]
        docs_context = deps.runners[AgentType.DOCS].run.call_args.args[0]
        assert analyze_context.prompt_modifier.startswith("Mode: HACKATHON")
        assert analyze_context.previous_results == {}
        assert analyze_context.repo_metadata.full_name == "octo/widgets"
        assert set(docs_context.previous_results) == {AgentType.ANALYZE}

    asyncio.run(run_test())


def test_docs_output_opens_gate_after_analyze_advances():
    async def run_test():
        deps = Deps()
        orchestrator, state = await _started(deps)

        paused = await orchestrator.run_pipeline(state.id)

        assert paused.status == PipelineStatus.WAITING_APPROVAL
        assert paused.current_agent is None
        assert paused.agent_results[AgentType.ANALYZE] is not None
        assert paused.agent_results[AgentType.DOCS] is not None
        assert paused.agent_results[AgentType.DEMO] is None
        assert len(paused.approval_gates) == 1

        gate = paused.approval_gates[0]
        assert gate.type == ApprovalGateType.DOCS
        assert gate.status == ApprovalGateStatus.PENDING
        assert [a.type for a in gate.artifacts] == [ArtifactType.README]
        assert EventType.APPROVAL_REQUIRED in deps.emitted()
        deps.runners[AgentType.DEMO].run.assert_not_called()

    asyncio.run(run_test())


def test_approved_gate_resumes_dispatch():
    async def run_test():
        deps = Deps()
        orchestrator, state = await _started(deps)
        paused = await orchestrator.run_pipeline(state.id)

        resolution = await orchestrator.respond_to_approval(
            paused.approval_gates[0].id, ApprovalDecision.APPROVED
        )
        assert resolution.pipeline.status == PipelineStatus.RUNNING
        assert resolution.pipeline.current_agent == AgentType.DEMO

        await orchestrator.join()
        final = await deps.machine.get(state.id)
        assert final.status == PipelineStatus.COMPLETED
        deps.runners[AgentType.SUPERVISOR].run.assert_called_once()

    asyncio.run(run_test())


def test_approval_while_gate_event_is_emitted_dispatches_next_stage_once():
    async def run_test():
        deps = Deps()
        await deps.sessions.create(_make_session())
        orchestrator = deps.orchestrator()

        async def approve_on_gate(event):
            if event.type == EventType.APPROVAL_REQUIRED:
                await orchestrator.respond_to_approval(event.data["gateId"], "approved")

        deps.event_emitter.emit = AsyncMock(side_effect=approve_on_gate)

        pipeline_id = await orchestrator.start_pipeline("sess_1", Mode.HACKATHON)
        await orchestrator.join()

        final = await deps.machine.get(pipeline_id)
        assert final.status == PipelineStatus.COMPLETED
        assert [g.status for g in final.approval_gates] == [ApprovalGateStatus.APPROVED]
        for agent in AgentType:
            deps.runners[agent].run.assert_called_once()
        assert deps.emitted().count(EventType.PIPELINE_COMPLETED) == 1

    asyncio.run(run_test())


def test_overlapping_schedules_dispatch_each_stage_once():
    async def run_test():
        deps = Deps(require_approval=False)
        orchestrator, state = await _started(deps)

        first = orchestrator.schedule(state.id)
        second = orchestrator.schedule(state.id)
        await orchestrator.join()

        assert first.done() and second.done()
        final = await deps.machine.get(state.id)
        assert final.status == PipelineStatus.COMPLETED
        for agent in AgentType:
            deps.runners[agent].run.assert_called_once()
        assert deps.emitted().count(EventType.PIPELINE_COMPLETED) == 1

    asyncio.run(run_test())


def test_rejected_gate_fails_run_with_gate_id():
    async def run_test():
        deps = Deps()
        orchestrator, state = await _started(deps)
        paused = await orchestrator.run_pipeline(state.id)
        gate_id = paused.approval_gates[0].id

        resolution = await orchestrator.respond_to_approval(
            gate_id, ApprovalDecision.REJECTED, "too short"
        )

        assert resolution.pipeline.status == PipelineStatus.FAILED
        assert resolution.pipeline.error.gate_id == gate_id
        assert deps.emitted()[-1] == EventType.PIPELINE_FAILED
        deps.runners[AgentType.DEMO].run.assert_not_called()

    asyncio.run(run_test())


def test_refactor_skips_demo_and_pitch():
    async def run_test():
        deps = Deps(require_approval=False)
        orchestrator, state = await _started(deps, Mode.REFACTOR)

        final = await orchestrator.run_pipeline(state.id)

        assert final.status == PipelineStatus.COMPLETED
        assert final.agent_results[AgentType.DEMO] is None
        assert final.agent_results[AgentType.PITCH] is None
        assert final.agent_results[AgentType.SUPERVISOR] is not None
        deps.runners[AgentType.DEMO].run.assert_not_called()
        deps.runners[AgentType.PITCH].run.assert_not_called()

    asyncio.run(run_test())


def test_start_pipeline_schedules_dispatch():
    async def run_test():
        deps = Deps(require_approval=False)
        await deps.sessions.create(_make_session())
        orchestrator = deps.orchestrator()

        pipeline_id = await orchestrator.start_pipeline("sess_1", "placement")
        await orchestrator.join()

        final = await deps.machine.get(pipeline_id)
        assert final.status == PipelineStatus.COMPLETED
        assert final.mode == Mode.PLACEMENT

    asyncio.run(run_test())


# ---------------------------------------------------------------------------
# Failures and retries
# ---------------------------------------------------------------------------


def test_recoverable_failure_is_retried():
    async def run_test():
        deps = Deps(require_approval=False)
        deps.runners[AgentType.ANALYZE] = _make_runner(
            AgentType.ANALYZE,
            side_effect=[RuntimeError("network timeout"), _make_result(AgentType.ANALYZE)],
        )
        orchestrator, state = await _started(deps)

        final = await orchestrator.run_pipeline(state.id)

        assert final.status == PipelineStatus.COMPLETED
        assert final.agent_results[AgentType.ANALYZE].attempts == 2
        assert "analyze_retry_2" in final.timestamps
        deps.sleep.assert_called_once_with(0.5)

        entries = await deps.error_log.list_for_pipeline(state.id)
        assert len(entries) == 1
        assert entries[0].recoverable is True
        assert entries[0].agent == AgentType.ANALYZE

        retry_context = deps.runners[AgentType.ANALYZE].run.call_args_list[1].args[0]
        assert retry_context.attempt == 2

    asyncio.run(run_test())


def test_run_stays_running_while_a_retry_is_pending():
    async def run_test():
        deps = Deps(require_approval=False)
        deps.runners[AgentType.ANALYZE] = _make_runner(
            AgentType.ANALYZE,
            side_effect=[RuntimeError("network timeout"), _make_result(AgentType.ANALYZE)],
        )
        orchestrator, state = await _started(deps)
        during_backoff = []

        async def observe(delay):
            during_backoff.append(await deps.pipelines.get(state.id))

        deps.sleep.side_effect = observe

        final = await orchestrator.run_pipeline(state.id)

        assert len(during_backoff) == 1
        waiting = during_backoff[0]
        assert waiting.status == PipelineStatus.RUNNING
        assert waiting.current_agent == AgentType.ANALYZE
        assert waiting.error is None
        assert waiting.agent_results[AgentType.ANALYZE] is None
        assert final.status == PipelineStatus.COMPLETED

    asyncio.run(run_test())


def test_fatal_failure_fails_run_without_retry():
    async def run_test():
        deps = Deps()
        deps.runners[AgentType.ANALYZE] = _make_runner(
            AgentType.ANALYZE, side_effect=ValueError("repository is empty")
        )
        orchestrator, state = await _started(deps)

        final = await orchestrator.run_pipeline(state.id)

        assert final.status == PipelineStatus.FAILED
        assert final.error.agent == AgentType.ANALYZE
        assert final.error.message == "repository is empty"
        assert final.error.recoverable is False
        assert final.agent_results[AgentType.ANALYZE].status == AgentStatus.FAILED
        deps.runners[AgentType.ANALYZE].run.assert_called_once()
        deps.runners[AgentType.DOCS].run.assert_not_called()
        deps.sleep.assert_not_called()

        entries = await deps.error_log.list_for_pipeline(state.id)
        assert [entry.id for entry in entries] == [final.error.error_log_id]

    asyncio.run(run_test())


def test_retries_are_bounded_with_backoff():
    async def run_test():
        deps = Deps(max_stage_attempts=3)
        deps.runners[AgentType.ANALYZE] = _make_runner(
            AgentType.ANALYZE, side_effect=RuntimeError("network unreachable")
        )
        orchestrator, state = await _started(deps)

        final = await orchestrator.run_pipeline(state.id)

        assert final.status == PipelineStatus.FAILED
        assert final.error.recoverable is True
        assert final.agent_results[AgentType.ANALYZE].attempts == 3
        assert deps.runners[AgentType.ANALYZE].run.call_count == 3
        assert [c.args[0] for c in deps.sleep.call_args_list] == [0.5, 0.8]
        assert len(await deps.error_log.list_for_pipeline(state.id)) == 3

    asyncio.run(run_test())


def test_failed_result_is_classified_by_its_error():
    async def run_test():
        deps = Deps(require_approval=False)
        deps.runners[AgentType.DEMO] = _make_runner(
            AgentType.DEMO,
            side_effect=[
                AgentResult(
                    agent=AgentType.DEMO, status=AgentStatus.FAILED, error="rate limit hit"
                ),
                _make_result(AgentType.DEMO),
            ],
        )
        orchestrator, state = await _started(deps)

        final = await orchestrator.run_pipeline(state.id)

        assert final.status == PipelineStatus.COMPLETED
        assert deps.runners[AgentType.DEMO].run.call_count == 2

    asyncio.run(run_test())


def test_agent_timeout_is_recoverable():
    async def run_test():
        async def hang(context):
            await asyncio.sleep(3600)

        deps = Deps(max_stage_attempts=1, agent_timeouts={AgentType.ANALYZE: 0.01})
        deps.runners[AgentType.ANALYZE] = _make_runner(AgentType.ANALYZE, side_effect=hang)
        orchestrator, state = await _started(deps)

        final = await orchestrator.run_pipeline(state.id)

        assert final.status == PipelineStatus.FAILED
        assert "timeout" in final.error.message
        assert final.error.recoverable is True

    asyncio.run(run_test())


def test_missing_runner_is_fatal():
    async def run_test():
        deps = Deps()
        del deps.runners[AgentType.ANALYZE]
        orchestrator, state = await _started(deps)

        final = await orchestrator.run_pipeline(state.id)

        assert final.status == PipelineStatus.FAILED
        assert final.error.recoverable is False
        assert "No runner configured" in final.error.message

    asyncio.run(run_test())


def test_emitter_failure_does_not_crash_pipeline():
    async def run_test():
        deps = Deps(require_approval=False)
        deps.event_emitter.emit.side_effect = RuntimeError("sink down")
        orchestrator, state = await _started(deps)

        final = await orchestrator.run_pipeline(state.id)

        assert final.status == PipelineStatus.COMPLETED

    asyncio.run(run_test())


def test_terminal_run_is_not_dispatched_again():
    async def run_test():
        deps = Deps(require_approval=False)
        orchestrator, state = await _started(deps)
        await orchestrator.run_pipeline(state.id)
        calls = deps.runners[AgentType.ANALYZE].run.call_count

        again = await orchestrator.run_pipeline(state.id)

        assert again.status == PipelineStatus.COMPLETED
        assert deps.runners[AgentType.ANALYZE].run.call_count == calls

    asyncio.run(run_test())
