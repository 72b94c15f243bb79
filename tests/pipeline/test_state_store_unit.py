"""Unit tests for the pipeline and session stores.

Covers per-id write serialization, revision bookkeeping, timeouts on hung
backends and error normalization.
"""

import asyncio
from typing import Any, Dict, Optional

import pytest

from src.repoclaw.exceptions import (
    AlreadyExistsError,
    NotFoundError,
    PipelineValidationError,
    StoreError,
    StoreTimeoutError,
)
from src.repoclaw.state.kv import InMemoryKeyValueStore
from src.repoclaw.state.models import Mode, PipelineState, Session
from src.repoclaw.state.store import PipelineStateStore, SessionStore


def _state(pipeline_id: str = "pipe_1") -> PipelineState:
    return PipelineState(id=pipeline_id, session_id="sess_1", mode=Mode.HACKATHON)


class HangingKeyValueStore(InMemoryKeyValueStore):
    """Backend whose reads never return."""

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        await asyncio.sleep(3600)
        return None


class BrokenKeyValueStore(InMemoryKeyValueStore):
    """Backend whose reads fail with a driver error."""

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        raise ConnectionResetError("connection reset by peer")


# ---------------------------------------------------------------------------
# PipelineStateStore
# ---------------------------------------------------------------------------


def test_create_and_get_round_trip():
    async def run_test():
        store = PipelineStateStore(InMemoryKeyValueStore())
        state = _state()
        await store.create(state)

        assert await store.get("pipe_1") == state

    asyncio.run(run_test())


def test_create_twice_raises_already_exists():
    async def run_test():
        store = PipelineStateStore(InMemoryKeyValueStore())
        await store.create(_state())
        with pytest.raises(AlreadyExistsError):
            await store.create(_state())

    asyncio.run(run_test())


def test_get_missing_and_empty_ids():
    async def run_test():
        store = PipelineStateStore(InMemoryKeyValueStore())
        with pytest.raises(NotFoundError):
            await store.get("pipe_missing")
        with pytest.raises(PipelineValidationError):
            await store.get("")

    asyncio.run(run_test())


def test_update_increments_revision():
    async def run_test():
        store = PipelineStateStore(InMemoryKeyValueStore())
        await store.create(_state())

        updated = await store.update(
            "pipe_1", lambda s: s.evolve(timestamps={**s.timestamps, "touched": 1})
        )

        assert updated.revision == 2
        assert (await store.get("pipe_1")).timestamps == {"touched": 1}

    asyncio.run(run_test())


def test_concurrent_updates_never_lose_writes():
    async def run_test():
        store = PipelineStateStore(InMemoryKeyValueStore())
        await store.create(_state())

        def writer(index: int):
            async def mutate(state: PipelineState) -> PipelineState:
                # yield mid read-modify-write to invite interleaving
                await asyncio.sleep(0)
                return state.evolve(
                    timestamps={**state.timestamps, f"writer_{index}": index}
                )

            return store.update("pipe_1", mutate)

        await asyncio.gather(*(writer(i) for i in range(25)))

        final = await store.get("pipe_1")
        assert final.revision == 26
        assert set(final.timestamps) == {f"writer_{i}" for i in range(25)}

    asyncio.run(run_test())


def test_updates_to_different_ids_do_not_contend():
    async def run_test():
        store = PipelineStateStore(InMemoryKeyValueStore(), timeout_seconds=1.0)
        await store.create(_state("pipe_a"))
        await store.create(_state("pipe_b"))
        holding = asyncio.Event()
        release = asyncio.Event()

        async def slow(state: PipelineState) -> PipelineState:
            holding.set()
            await release.wait()
            return state

        blocked = asyncio.create_task(store.update("pipe_a", slow))
        await holding.wait()

        other = await store.update("pipe_b", lambda s: s)
        assert other.revision == 2
        assert not blocked.done()

        release.set()
        assert (await blocked).revision == 2

    asyncio.run(run_test())


def test_failed_mutator_writes_nothing():
    async def run_test():
        store = PipelineStateStore(InMemoryKeyValueStore())
        await store.create(_state())

        def explode(state: PipelineState) -> PipelineState:
            raise ValueError("mutator failed")

        with pytest.raises(ValueError):
            await store.update("pipe_1", explode)

        assert (await store.get("pipe_1")).revision == 1
        # the lock was released
        assert (await store.update("pipe_1", lambda s: s)).revision == 2

    asyncio.run(run_test())


def test_mutator_cannot_change_id():
    async def run_test():
        store = PipelineStateStore(InMemoryKeyValueStore())
        await store.create(_state())

        with pytest.raises(PipelineValidationError):
            await store.update("pipe_1", lambda s: s.evolve(id="pipe_other"))

    asyncio.run(run_test())


def test_hung_backend_times_out():
    async def run_test():
        store = PipelineStateStore(HangingKeyValueStore(), timeout_seconds=0.05)
        with pytest.raises(StoreTimeoutError):
            await store.get("pipe_1")

    asyncio.run(run_test())


def test_lock_wait_is_bounded():
    async def run_test():
        store = PipelineStateStore(InMemoryKeyValueStore(), timeout_seconds=0.05)
        await store.create(_state())
        holding = asyncio.Event()
        release = asyncio.Event()

        async def hold(state: PipelineState) -> PipelineState:
            holding.set()
            await release.wait()
            return state

        holder = asyncio.create_task(store.update("pipe_1", hold))
        await holding.wait()

        with pytest.raises(StoreTimeoutError):
            await store.update("pipe_1", lambda s: s)

        release.set()
        await holder

    asyncio.run(run_test())


def test_backend_errors_are_wrapped():
    async def run_test():
        store = PipelineStateStore(BrokenKeyValueStore())
        with pytest.raises(StoreError) as exc_info:
            await store.get("pipe_1")

        assert isinstance(exc_info.value.original_error, ConnectionResetError)
        assert not isinstance(exc_info.value, StoreTimeoutError)

    asyncio.run(run_test())


def test_non_positive_timeout_rejected():
    with pytest.raises(ValueError):
        PipelineStateStore(InMemoryKeyValueStore(), timeout_seconds=0)


def test_gate_index():
    async def run_test():
        store = PipelineStateStore(InMemoryKeyValueStore())
        await store.index_gate("gate_1", "pipe_1")

        assert await store.pipeline_for_gate("gate_1") == "pipe_1"
        with pytest.raises(NotFoundError):
            await store.pipeline_for_gate("gate_missing")

    asyncio.run(run_test())


# ---------------------------------------------------------------------------
# SessionStore
# ---------------------------------------------------------------------------


def test_session_update_links_pipeline():
    async def run_test():
        sessions = SessionStore(InMemoryKeyValueStore())
        await sessions.create(Session(id="sess_1", repo_url="https://github.com/octo/widgets"))

        updated = await sessions.update(
            "sess_1", selected_mode=Mode.REFACTOR, pipeline_id="pipe_1"
        )

        assert updated.selected_mode == Mode.REFACTOR
        assert (await sessions.get("sess_1")).pipeline_id == "pipe_1"

    asyncio.run(run_test())


def test_session_find_returns_none_when_missing():
    async def run_test():
        sessions = SessionStore(InMemoryKeyValueStore())
        assert await sessions.find("sess_missing") is None
        with pytest.raises(NotFoundError):
            await sessions.get("sess_missing")

    asyncio.run(run_test())
