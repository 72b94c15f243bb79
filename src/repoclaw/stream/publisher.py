"""Per-subscription event stream over sampled pipeline state.

Each subscription is an independent async generator that samples the
PipelineState store at a fixed interval. It emits:

1. pipeline_started, immediately on subscription
2. agent_progress with the full projection, on every tick whether or not
   anything changed
3. exactly one pipeline_completed or pipeline_failed once the sampled status
   is terminal, after which the generator returns

A read failure emits an error event. If the pipeline record is gone the
stream ends; a store failure or a malformed record is retried on the
next tick.

Within one subscription event timestamps never decrease and the terminal
event is always last. Closing the generator or cancelling the task that
iterates it stops sampling at once.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError

from src.repoclaw.events.metrics import PipelineMetrics
from src.repoclaw.events.models import EventType, PipelineEvent, pipeline_event
from src.repoclaw.exceptions import NotFoundError, StoreError, StreamTransportError
from src.repoclaw.state.models import PipelineState, PipelineStatus, now_ms
from src.repoclaw.state.store import PipelineStateStore


logger = logging.getLogger(__name__)

DisconnectCheck = Callable[[], Awaitable[bool]]

DEFAULT_POLL_INTERVAL_SECONDS = 1.0


class _SubscriptionClock:
    """Hands out epoch-millisecond timestamps that never decrease."""

    def __init__(self) -> None:
        self._last = 0

    def now(self) -> int:
        self._last = max(now_ms(), self._last)
        return self._last


def started_payload(state: PipelineState) -> Dict[str, Any]:
    return {
        "id": state.id,
        "mode": state.mode.value,
        "status": state.status.value,
    }


def progress_payload(state: PipelineState) -> Dict[str, Any]:
    wire = state.to_wire()
    return {
        "status": wire["status"],
        "currentAgent": wire["currentAgent"],
        "agentResults": wire["agentResults"],
        "artifacts": wire["artifacts"],
        "approvalGates": wire["approvalGates"],
        "revision": wire["revision"],
    }


def terminal_payload(state: PipelineState) -> Dict[str, Any]:
    wire = state.to_wire()
    return {
        "status": wire["status"],
        "artifacts": wire["artifacts"],
        "error": wire["error"],
    }


class StreamPublisher:
    """Opens event streams for pipeline runs.

    Attributes:
        store: The PipelineState store, read only.
        poll_interval_seconds: Wait between samples.
        metrics: Optional metrics; the active stream gauge is moved when set.

    Example:
        >>> publisher = StreamPublisher(store, poll_interval_seconds=1.0)
        >>> events = await publisher.open_stream("pipe_123")
        >>> async for event in events:
        ...     send(event.to_sse())
    """

    def __init__(
        self,
        store: PipelineStateStore,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        metrics: Optional[PipelineMetrics] = None,
    ):
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be positive")
        self.store = store
        self.poll_interval_seconds = poll_interval_seconds
        self.metrics = metrics

    async def open_stream(
        self,
        pipeline_id: str,
        is_disconnected: Optional[DisconnectCheck] = None,
    ) -> AsyncIterator[PipelineEvent]:
        """Subscribe to a pipeline.

        Args:
            pipeline_id: The run to observe.
            is_disconnected: Optional coroutine function returning True once
                the consumer has gone away. Checked around every wait.

        Returns:
            An async iterator of events for this subscription only.

        Raises:
            PipelineValidationError: If pipeline_id is empty.
            NotFoundError: If the pipeline does not exist right now.
        """
        initial = await self.store.get(pipeline_id)
        return self._events(initial, is_disconnected)

    async def _sample(self, pipeline_id: str) -> PipelineState:
        try:
            return await self.store.get(pipeline_id)
        except NotFoundError as e:
            raise StreamTransportError(pipeline_id, str(e), closes_stream=True) from e
        except StoreError as e:
            raise StreamTransportError(pipeline_id, str(e), closes_stream=False) from e
        except ValidationError as e:
            raise StreamTransportError(
                pipeline_id,
                f"Pipeline record is malformed: {e.error_count()} validation errors",
                closes_stream=False,
            ) from e

    @staticmethod
    async def _gone(is_disconnected: Optional[DisconnectCheck]) -> bool:
        return is_disconnected is not None and await is_disconnected()

    async def _events(
        self,
        initial: PipelineState,
        is_disconnected: Optional[DisconnectCheck],
    ) -> AsyncIterator[PipelineEvent]:
        pipeline_id = initial.id
        clock = _SubscriptionClock()
        ticks = 0
        outcome = "disconnected"

        if self.metrics is not None:
            self.metrics.stream_opened()
        logger.info("Stream opened", extra={"pipeline_id": pipeline_id})

        try:
            yield pipeline_event(
                EventType.PIPELINE_STARTED,
                pipeline_id,
                timestamp=clock.now(),
                **started_payload(initial),
            )

            while True:
                if await self._gone(is_disconnected):
                    return
                await asyncio.sleep(self.poll_interval_seconds)
                if await self._gone(is_disconnected):
                    return
                ticks += 1

                try:
                    state = await self._sample(pipeline_id)
                except StreamTransportError as e:
                    logger.warning(
                        "Stream sample failed",
                        extra={
                            "pipeline_id": pipeline_id,
                            "error": e.message,
                            "closes_stream": e.closes_stream,
                        },
                    )
                    yield pipeline_event(
                        EventType.ERROR,
                        pipeline_id,
                        timestamp=clock.now(),
                        message=e.message,
                        recoverable=not e.closes_stream,
                    )
                    if e.closes_stream:
                        outcome = "pipeline_missing"
                        return
                    continue

                yield pipeline_event(
                    EventType.AGENT_PROGRESS,
                    pipeline_id,
                    timestamp=clock.now(),
                    **progress_payload(state),
                )

                if state.is_terminal:
                    terminal_type = (
                        EventType.PIPELINE_COMPLETED
                        if state.status == PipelineStatus.COMPLETED
                        else EventType.PIPELINE_FAILED
                    )
                    outcome = state.status.value
                    yield pipeline_event(
                        terminal_type,
                        pipeline_id,
                        timestamp=clock.now(),
                        **terminal_payload(state),
                    )
                    return
        finally:
            if self.metrics is not None:
                self.metrics.stream_closed()
            logger.info(
                "Stream closed",
                extra={"pipeline_id": pipeline_id, "ticks": ticks, "outcome": outcome},
            )
