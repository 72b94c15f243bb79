"""Sinks for orchestrator lifecycle events.

The orchestrator reports stage starts, completions, failures and opened
approval gates here. These sinks feed operators (logs, Prometheus), never
the client stream: subscribers only see what the stream publisher samples
from the state store.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Union

from src.repoclaw.events.models import EventType, PipelineEvent

if TYPE_CHECKING:
    from src.repoclaw.events.metrics import PipelineMetrics


logger = logging.getLogger(__name__)


class EventSinkType(str, Enum):
    """Sink names accepted in REPOCLAW_EVENT_SINKS."""

    LOGGING = "logging"
    METRICS = "metrics"


# Lifecycle events not listed here are logged at INFO.
EVENT_LOG_LEVELS: Dict[EventType, int] = {
    EventType.ERROR: logging.ERROR,
    EventType.AGENT_FAILED: logging.ERROR,
    EventType.PIPELINE_FAILED: logging.ERROR,
    EventType.APPROVAL_REQUIRED: logging.WARNING,
}


class EventEmitter(ABC):
    """Receiver of orchestrator lifecycle events.

    emit() is awaited inline by the dispatch loop, so implementations
    should return quickly. The orchestrator swallows and logs whatever
    they raise.
    """

    @abstractmethod
    async def emit(self, event: PipelineEvent) -> None:
        ...

    async def close(self) -> None:
        """Release sink resources at shutdown."""


class LoggingEventEmitter(EventEmitter):
    """Writes each lifecycle event as one log record.

    The payload travels in the record's extra fields (see
    PipelineEvent.to_log_dict), so JSON log formatters pick it up as-is.
    """

    def __init__(self, logger_name: Optional[str] = None):
        self._logger = logging.getLogger(logger_name) if logger_name else logger

    async def emit(self, event: PipelineEvent) -> None:
        self._logger.log(
            EVENT_LOG_LEVELS.get(event.type, logging.INFO),
            "%s [pipeline=%s]",
            event.type.value,
            event.pipeline_id,
            extra=event.to_log_dict(),
        )


class CompositeEventEmitter(EventEmitter):
    """Fans one event out to several sinks.

    A sink that raises is logged and skipped; the others still get the
    event.
    """

    def __init__(self, emitters: Sequence[EventEmitter] = ()):
        self._sinks: List[EventEmitter] = list(emitters)

    @property
    def emitters(self) -> List[EventEmitter]:
        return list(self._sinks)

    async def emit(self, event: PipelineEvent) -> None:
        for sink in self._sinks:
            try:
                await sink.emit(event)
            except Exception as exc:
                logger.error(
                    "Event sink %s dropped %s for pipeline %s: %s",
                    type(sink).__name__,
                    event.type.value,
                    event.pipeline_id,
                    exc,
                    extra={"sink": type(sink).__name__, "pipeline_id": event.pipeline_id},
                )

    async def close(self) -> None:
        for sink in self._sinks:
            try:
                await sink.close()
            except Exception as exc:
                logger.warning("Event sink %s did not close cleanly: %s", type(sink).__name__, exc)


class NullEventEmitter(EventEmitter):
    """Drops every event. Used by tests and by callers that opt out."""

    async def emit(self, event: PipelineEvent) -> None:
        return None


def create_event_emitter(
    sink_types: Optional[Sequence[Union[EventSinkType, str]]] = None,
    logger_name: Optional[str] = None,
    metrics: Optional["PipelineMetrics"] = None,
) -> EventEmitter:
    """Build the emitter for a list of sink names.

    Unknown names are skipped with a warning. With no usable name the
    result is a LoggingEventEmitter; with one it is that sink itself,
    otherwise a CompositeEventEmitter over all of them.

    Args:
        sink_types: Sink names or EventSinkType members.
        logger_name: Logger for the logging sink.
        metrics: Metrics for the metrics sink; the process-wide instance
            when None.
    """
    sinks: List[EventEmitter] = []

    for name in sink_types or ():
        try:
            sink_type = EventSinkType(name)
        except ValueError:
            logger.warning("Ignoring unknown event sink %r", name)
            continue

        if sink_type is EventSinkType.LOGGING:
            sinks.append(LoggingEventEmitter(logger_name=logger_name))
        else:
            # metrics.py imports EventEmitter from this module
            from src.repoclaw.events.metrics import MetricsEventEmitter

            sinks.append(MetricsEventEmitter(metrics=metrics))

    if not sinks:
        return LoggingEventEmitter(logger_name=logger_name)
    if len(sinks) == 1:
        return sinks[0]
    return CompositeEventEmitter(sinks)
