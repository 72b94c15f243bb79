"""Prometheus metrics for pipeline observability.

Metrics are exposed at the `/metrics` endpoint in Prometheus format.

Metrics Defined:
- repoclaw_pipelines_started_total: Counter of runs scheduled, by mode
- repoclaw_pipelines_finished_total: Counter of terminal runs, by mode/result
- repoclaw_pipeline_duration_seconds: Histogram of run wall time
- repoclaw_agent_runs_total: Counter of stage attempts, by agent/result
- repoclaw_agent_duration_seconds: Histogram of stage execution time
- repoclaw_approval_gates_opened_total: Counter of gates, by gate type
- repoclaw_active_streams: Gauge of open stream subscriptions

The MetricsEventEmitter updates the counters from lifecycle events. The
stream publisher moves the active stream gauge directly.
"""

import logging
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from src.repoclaw.events.emitter import EventEmitter
from src.repoclaw.events.models import EventType, PipelineEvent


logger = logging.getLogger(__name__)


# Stage timeouts top out at three minutes; whole runs can take much longer
AGENT_DURATION_BUCKETS = (0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 90.0, 180.0)
PIPELINE_DURATION_BUCKETS = (
    10.0,
    30.0,
    60.0,
    120.0,
    300.0,
    600.0,
    1800.0,
    3600.0,
)


class PipelineMetrics:
    """Container for all pipeline Prometheus metrics.

    Supports custom registries for testing.

    Example:
        >>> metrics = PipelineMetrics(registry=CollectorRegistry())
        >>> metrics.record_agent_run("analyze", success=True, duration_seconds=2.5)
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.pipelines_started_total = Counter(
            "repoclaw_pipelines_started_total",
            "Total number of pipeline runs scheduled",
            labelnames=["mode"],
            registry=self.registry,
        )

        self.pipelines_finished_total = Counter(
            "repoclaw_pipelines_finished_total",
            "Total number of pipeline runs that reached a terminal status",
            labelnames=["mode", "result"],
            registry=self.registry,
        )

        self.pipeline_duration_seconds = Histogram(
            "repoclaw_pipeline_duration_seconds",
            "Wall time from pipeline start to terminal status in seconds",
            labelnames=["mode"],
            buckets=PIPELINE_DURATION_BUCKETS,
            registry=self.registry,
        )

        self.agent_runs_total = Counter(
            "repoclaw_agent_runs_total",
            "Total number of stage dispatch attempts",
            labelnames=["agent", "result"],
            registry=self.registry,
        )

        self.agent_duration_seconds = Histogram(
            "repoclaw_agent_duration_seconds",
            "Stage execution time in seconds",
            labelnames=["agent"],
            buckets=AGENT_DURATION_BUCKETS,
            registry=self.registry,
        )

        self.approval_gates_opened_total = Counter(
            "repoclaw_approval_gates_opened_total",
            "Total number of approval gates opened",
            labelnames=["gate_type"],
            registry=self.registry,
        )

        self.active_streams = Gauge(
            "repoclaw_active_streams",
            "Number of open pipeline stream subscriptions",
            registry=self.registry,
        )

    def record_pipeline_started(self, mode: str) -> None:
        self.pipelines_started_total.labels(mode=mode).inc()

    def record_pipeline_finished(
        self,
        mode: str,
        success: bool,
        duration_seconds: Optional[float] = None,
    ) -> None:
        result = "completed" if success else "failed"
        self.pipelines_finished_total.labels(mode=mode, result=result).inc()
        if duration_seconds is not None:
            self.pipeline_duration_seconds.labels(mode=mode).observe(duration_seconds)

    def record_agent_run(
        self,
        agent: str,
        success: bool,
        duration_seconds: Optional[float] = None,
    ) -> None:
        result = "completed" if success else "failed"
        self.agent_runs_total.labels(agent=agent, result=result).inc()
        if duration_seconds is not None:
            self.agent_duration_seconds.labels(agent=agent).observe(duration_seconds)

    def record_gate_opened(self, gate_type: str) -> None:
        self.approval_gates_opened_total.labels(gate_type=gate_type).inc()

    def stream_opened(self) -> None:
        self.active_streams.inc()

    def stream_closed(self) -> None:
        self.active_streams.dec()


_default_metrics: Optional[PipelineMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> PipelineMetrics:
    """Get the global metrics instance, or a new one for a custom registry."""
    global _default_metrics

    if registry is not None:
        return PipelineMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = PipelineMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Generate Prometheus text output for the /metrics endpoint."""
    return generate_latest(registry or REGISTRY)


def _seconds(milliseconds: Optional[float]) -> Optional[float]:
    return None if milliseconds is None else float(milliseconds) / 1000.0


class MetricsEventEmitter(EventEmitter):
    """Event emitter that updates Prometheus metrics.

    Handles:
    - PIPELINE_STARTED: pipelines_started_total
    - AGENT_COMPLETED / AGENT_FAILED: agent_runs_total, agent_duration_seconds
    - APPROVAL_REQUIRED: approval_gates_opened_total
    - PIPELINE_COMPLETED / PIPELINE_FAILED: pipelines_finished_total,
      pipeline_duration_seconds
    """

    def __init__(
        self,
        metrics: Optional[PipelineMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self._metrics = metrics if metrics is not None else get_metrics(registry)

    @property
    def metrics(self) -> PipelineMetrics:
        return self._metrics

    async def emit(self, event: PipelineEvent) -> None:
        data = event.data
        try:
            if event.type == EventType.PIPELINE_STARTED:
                self._metrics.record_pipeline_started(data.get("mode", "unknown"))
            elif event.type in (EventType.AGENT_COMPLETED, EventType.AGENT_FAILED):
                self._metrics.record_agent_run(
                    agent=data.get("agent", "unknown"),
                    success=event.type == EventType.AGENT_COMPLETED,
                    duration_seconds=_seconds(data.get("executionTime")),
                )
            elif event.type == EventType.APPROVAL_REQUIRED:
                self._metrics.record_gate_opened(data.get("gateType", "unknown"))
            elif event.type in (
                EventType.PIPELINE_COMPLETED,
                EventType.PIPELINE_FAILED,
            ):
                self._metrics.record_pipeline_finished(
                    mode=data.get("mode", "unknown"),
                    success=event.type == EventType.PIPELINE_COMPLETED,
                    duration_seconds=_seconds(data.get("durationMs")),
                )
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.type.value,
                str(e),
                extra={
                    "event_type": event.type.value,
                    "pipeline_id": event.pipeline_id,
                },
            )
