"""Pipeline and session stores on top of the key-value collaborator.

PipelineStateStore is the sole shared mutable resource for a pipeline id.
Writes to one id are serialized with a per-id asyncio.Lock, so the two
writers that can race on a run (stage completion and approval response)
never lose an update. Different ids never contend. Reads take no lock:
each read decodes one complete record, and PipelineState validation rejects
any record that breaks the state invariants.

Every key-value call and every lock wait is bounded by the store timeout,
so callers see StoreTimeoutError instead of hanging.
"""

import asyncio
import inspect
import logging
import weakref
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar, Union

from src.repoclaw.exceptions import (
    AlreadyExistsError,
    NotFoundError,
    PipelineValidationError,
    StoreError,
    StoreTimeoutError,
)
from src.repoclaw.state.kv import (
    APPROVAL_GATE_PREFIX,
    PIPELINE_PREFIX,
    SESSION_PREFIX,
    KeyValueStore,
)
from src.repoclaw.state.models import PipelineState, Session


logger = logging.getLogger(__name__)

T = TypeVar("T")

StateMutator = Callable[
    [PipelineState], Union[PipelineState, Awaitable[PipelineState]]
]

DEFAULT_STORE_TIMEOUT_SECONDS = 5.0


class BoundedStore:
    """Base for stores whose backend calls are bounded by a timeout."""

    def __init__(
        self,
        kv: KeyValueStore,
        timeout_seconds: float = DEFAULT_STORE_TIMEOUT_SECONDS,
    ):
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self.kv = kv
        self.timeout_seconds = timeout_seconds
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        """Await a backend call, bounding it and normalizing its errors."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            logger.warning(
                "Key-value call timed out",
                extra={"operation": operation, "timeout": self.timeout_seconds},
            )
            raise StoreTimeoutError(
                f"Key-value {operation} exceeded its {self.timeout_seconds}s timeout",
                original_error=e,
            ) from e
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(
                f"Key-value {operation} failed: {e}",
                original_error=e,
            ) from e

    @asynccontextmanager
    async def _locked(self, key: str) -> AsyncIterator[None]:
        """Hold the write lock for key for the duration of the block."""
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise StoreTimeoutError(
                f"Timed out waiting for the write lock on {key}",
                original_error=e,
            ) from e
        try:
            yield
        finally:
            lock.release()


class PipelineStateStore(BoundedStore):
    """Authoritative store for PipelineState records.

    Example:
        >>> store = PipelineStateStore(InMemoryKeyValueStore())
        >>> await store.create(state)
        >>> updated = await store.update(
        ...     state.id,
        ...     lambda current: current.evolve(timestamps={"x": 1}),
        ... )
        >>> updated.revision
        2
    """

    @staticmethod
    def _key(pipeline_id: str) -> str:
        return f"{PIPELINE_PREFIX}{pipeline_id}"

    async def create(self, state: PipelineState) -> PipelineState:
        """Persist a new pipeline state.

        Raises:
            AlreadyExistsError: If a pipeline with the same id exists.
        """
        stored = await self._call(
            "insert", self.kv.set_if_absent(self._key(state.id), state.to_wire())
        )
        if not stored:
            raise AlreadyExistsError("pipeline", state.id)

        logger.info(
            "Created pipeline state",
            extra={"pipeline_id": state.id, "status": state.status.value},
        )
        return state

    async def get(self, pipeline_id: str) -> PipelineState:
        """Return the current snapshot of a pipeline.

        Raises:
            PipelineValidationError: If pipeline_id is empty.
            NotFoundError: If the pipeline does not exist.
        """
        if not pipeline_id:
            raise PipelineValidationError("pipeline_id is required")

        raw = await self._call("read", self.kv.get(self._key(pipeline_id)))
        if raw is None:
            raise NotFoundError("pipeline", pipeline_id)
        return PipelineState.model_validate(raw)

    async def update(self, pipeline_id: str, mutator: StateMutator) -> PipelineState:
        """Apply mutator to the current state and persist the result.

        The mutator receives the current snapshot and must return the full
        next state. It may be a coroutine function. Updates to the same id
        run one at a time; if the mutator raises, nothing is written.

        Returns:
            The persisted state, with its revision incremented.
        """
        async with self._locked(self._key(pipeline_id)):
            current = await self.get(pipeline_id)

            result = mutator(current)
            if inspect.isawaitable(result):
                result = await result

            if result.id != pipeline_id:
                raise PipelineValidationError(
                    f"Mutator changed pipeline id from {pipeline_id} to {result.id}"
                )

            updated = result.evolve(revision=current.revision + 1)
            await self._call("write", self.kv.set(self._key(pipeline_id), updated.to_wire()))

        logger.debug(
            "Updated pipeline state",
            extra={
                "pipeline_id": pipeline_id,
                "status": updated.status.value,
                "revision": updated.revision,
            },
        )
        return updated

    async def index_gate(self, gate_id: str, pipeline_id: str) -> None:
        """Record which pipeline owns an approval gate."""
        await self._call(
            "write",
            self.kv.set(
                f"{APPROVAL_GATE_PREFIX}{gate_id}",
                {"gateId": gate_id, "pipelineId": pipeline_id},
            ),
        )

    async def pipeline_for_gate(self, gate_id: str) -> str:
        """Return the id of the pipeline owning a gate.

        Raises:
            NotFoundError: If no gate with that id was ever opened.
        """
        if not gate_id:
            raise PipelineValidationError("gate_id is required")

        raw = await self._call("read", self.kv.get(f"{APPROVAL_GATE_PREFIX}{gate_id}"))
        if raw is None:
            raise NotFoundError("gate", gate_id)
        return raw["pipelineId"]


class SessionStore(BoundedStore):
    """Store for Session records."""

    @staticmethod
    def _key(session_id: str) -> str:
        return f"{SESSION_PREFIX}{session_id}"

    async def create(self, session: Session) -> Session:
        stored = await self._call(
            "insert", self.kv.set_if_absent(self._key(session.id), session.to_wire())
        )
        if not stored:
            raise AlreadyExistsError("session", session.id)
        return session

    async def get(self, session_id: str) -> Session:
        if not session_id:
            raise PipelineValidationError("session_id is required")

        raw = await self._call("read", self.kv.get(self._key(session_id)))
        if raw is None:
            raise NotFoundError("session", session_id)
        return Session.model_validate(raw)

    async def update(self, session_id: str, **changes: Any) -> Session:
        async with self._locked(self._key(session_id)):
            session = await self.get(session_id)
            updated = session.model_copy(update=changes)
            updated = Session.model_validate(updated.model_dump())
            await self._call("write", self.kv.set(self._key(session_id), updated.to_wire()))
        return updated

    async def find(self, session_id: str) -> Optional[Session]:
        try:
            return await self.get(session_id)
        except NotFoundError:
            return None
