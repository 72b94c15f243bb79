"""FastAPI application entry point for the RepoClaw pipeline service.

Routes:
- POST /api/pipeline/start: create a run for a session and schedule it
- GET /api/pipeline/stream?pipelineId=: text/event-stream of a run
- POST /api/approval/respond: approve or reject a pending gate
- GET /api/pipeline/{pipeline_id}: current state snapshot
- GET /api/pipeline/{pipeline_id}/errors: error log entries, newest first
- GET /health, GET /ready, GET /metrics

Sessions are written to the key-value store by the session collaborator;
this service only reads and links them.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Optional

import structlog
from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse

from src.repoclaw.agents.base import AgentRunner
from src.repoclaw.agents.http import HttpAgentRunner
from src.repoclaw.approval import ApprovalGateManager
from src.repoclaw.config import RepoClawSettings, get_settings
from src.repoclaw.events.emitter import EventEmitter, create_event_emitter
from src.repoclaw.events.metrics import (
    PipelineMetrics,
    generate_metrics_output,
    get_metrics,
)
from src.repoclaw.exceptions import (
    AlreadyExistsError,
    InvalidTransitionError,
    NotFoundError,
    PipelineValidationError,
    RepoClawError,
    StoreError,
)
from src.repoclaw.failures.log import ErrorLogStore, format_error_for_display
from src.repoclaw.orchestrator import PipelineOrchestrator
from src.repoclaw.schemas import (
    ApprovalRespondRequest,
    ApprovalRespondResponse,
    ErrorLogEntry,
    ErrorLogListResponse,
    ErrorResponse,
    StartPipelineRequest,
    StartPipelineResponse,
)
from src.repoclaw.state.kv import InMemoryKeyValueStore, KeyValueStore
from src.repoclaw.state.machine import PipelineStateMachine
from src.repoclaw.state.models import AgentType, ApprovalDecision
from src.repoclaw.state.repository import PostgresKeyValueStore
from src.repoclaw.state.store import PipelineStateStore, SessionStore
from src.repoclaw.stream.publisher import StreamPublisher


logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything the routes need, wired once at startup."""

    settings: RepoClawSettings
    kv: KeyValueStore
    pipelines: PipelineStateStore
    sessions: SessionStore
    error_log: ErrorLogStore
    orchestrator: PipelineOrchestrator
    publisher: StreamPublisher
    event_emitter: EventEmitter
    runners: Dict[AgentType, AgentRunner]
    metrics: PipelineMetrics


# Global instance, initialized during lifespan startup
services: Optional[Services] = None


def configure_logging(cfg: RepoClawSettings) -> None:
    """Configure stdlib logging and structlog from settings."""
    logging.basicConfig(
        level=getattr(logging, cfg.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    renderer = (
        structlog.processors.JSONRenderer()
        if cfg.log_json
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _redact_secret(value: str, visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters."""
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(cfg: RepoClawSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("Pipeline configuration:")
    logger.info(f"  Stream Poll Interval: {cfg.stream_poll_interval_seconds}s")
    logger.info(f"  Store Timeout: {cfg.store_timeout_seconds}s")
    logger.info(
        f"  Database URL: "
        f"{_redact_secret(cfg.database_url, 13) if cfg.database_url else '(in-memory)'}"
    )
    logger.info(f"  Max Stage Attempts: {cfg.max_stage_attempts}")
    logger.info(
        f"  Retry Backoff: {cfg.retry_initial_delay_seconds}s x"
        f"{cfg.retry_backoff_multiplier} (max {cfg.retry_max_delay_seconds}s)"
    )
    for agent in AgentType:
        endpoint = cfg.agent_endpoints.get(agent, "(not configured)")
        logger.info(
            f"  Agent {agent.value}: timeout {cfg.agent_timeout(agent)}s, endpoint {endpoint}"
        )
    logger.info(f"  Require Approval: {cfg.require_approval}")
    logger.info(f"  Event Sinks: {', '.join(s.value for s in cfg.event_sinks)}")
    logger.info(f"  Host: {cfg.host}")
    logger.info(f"  Port: {cfg.port}")


def _build_runners(cfg: RepoClawSettings) -> Dict[AgentType, AgentRunner]:
    return {
        agent: HttpAgentRunner(agent, endpoint, timeout_seconds=cfg.agent_timeout(agent))
        for agent, endpoint in cfg.agent_endpoints.items()
    }


def build_services(
    cfg: RepoClawSettings,
    kv: KeyValueStore,
    runners: Optional[Dict[AgentType, AgentRunner]] = None,
    metrics: Optional[PipelineMetrics] = None,
    event_emitter: Optional[EventEmitter] = None,
) -> Services:
    """Wire all pipeline dependencies around a key-value store."""
    metrics = metrics or get_metrics()
    runners = runners if runners is not None else _build_runners(cfg)
    event_emitter = event_emitter or create_event_emitter(
        cfg.event_sinks, metrics=metrics
    )

    pipelines = PipelineStateStore(kv, timeout_seconds=cfg.store_timeout_seconds)
    sessions = SessionStore(kv, timeout_seconds=cfg.store_timeout_seconds)
    error_log = ErrorLogStore(kv, timeout_seconds=cfg.store_timeout_seconds)
    state_machine = PipelineStateMachine(pipelines)

    orchestrator = PipelineOrchestrator(
        state_machine=state_machine,
        sessions=sessions,
        approvals=ApprovalGateManager(pipelines, error_log),
        error_log=error_log,
        runners=runners,
        event_emitter=event_emitter,
        settings=cfg,
    )
    publisher = StreamPublisher(
        pipelines,
        poll_interval_seconds=cfg.stream_poll_interval_seconds,
        metrics=metrics,
    )

    return Services(
        settings=cfg,
        kv=kv,
        pipelines=pipelines,
        sessions=sessions,
        error_log=error_log,
        orchestrator=orchestrator,
        publisher=publisher,
        event_emitter=event_emitter,
        runners=runners,
        metrics=metrics,
    )


async def _create_key_value_store(cfg: RepoClawSettings) -> KeyValueStore:
    if not cfg.database_url:
        logger.warning("No database configured, using the in-memory key-value store")
        return InMemoryKeyValueStore()

    kv = PostgresKeyValueStore(cfg.database_url)
    await kv.connect()
    await kv.ensure_schema()
    return kv


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown."""
    global services

    cfg = get_settings()
    configure_logging(cfg)
    logger.info("RepoClaw pipeline starting up...")
    _log_configuration(cfg)

    kv = await _create_key_value_store(cfg)
    services = build_services(cfg, kv)

    logger.info("RepoClaw pipeline started successfully")

    yield

    logger.info("RepoClaw pipeline shutting down...")

    await services.orchestrator.shutdown()
    await services.event_emitter.close()
    for runner in services.runners.values():
        if isinstance(runner, HttpAgentRunner):
            await runner.close()
    if isinstance(kv, PostgresKeyValueStore):
        await kv.disconnect()
    services = None

    logger.info("RepoClaw pipeline shutdown complete")


app = FastAPI(
    title="RepoClaw Pipeline",
    description="Multi-agent repository pipeline with streaming progress and approval gates",
    version="1.0.0",
    lifespan=lifespan,
)


def _error(status_code: int, exc: RepoClawError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=exc.message).to_wire(),
    )


@app.exception_handler(PipelineValidationError)
async def handle_validation_error(request: Request, exc: PipelineValidationError):
    return _error(400, exc)


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content=ErrorResponse(
            error="Invalid request body",
            details={
                "errors": [
                    {"loc": [str(part) for part in e["loc"]], "msg": e["msg"]}
                    for e in exc.errors()
                ]
            },
        ).to_wire(),
    )


@app.exception_handler(NotFoundError)
async def handle_not_found(request: Request, exc: NotFoundError):
    return _error(404, exc)


@app.exception_handler(AlreadyExistsError)
async def handle_already_exists(request: Request, exc: AlreadyExistsError):
    return _error(409, exc)


@app.exception_handler(InvalidTransitionError)
async def handle_invalid_transition(request: Request, exc: InvalidTransitionError):
    return _error(409, exc)


@app.exception_handler(StoreError)
async def handle_store_error(request: Request, exc: StoreError):
    logger.error("Key-value store failure", extra={"error": exc.message})
    return _error(503, exc)


def _services() -> Services:
    if services is None:
        raise StoreError("Pipeline service not initialized")
    return services


@app.get("/health")
async def health():
    """Liveness probe endpoint."""
    return {"status": "healthy"}


@app.get("/ready")
async def ready():
    """Readiness probe endpoint; pings the key-value store."""
    if services is None:
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "dependencies": {"store": "uninitialized"}},
        )

    try:
        reachable = await asyncio.wait_for(
            services.kv.ping(), timeout=services.settings.store_timeout_seconds
        )
    except asyncio.TimeoutError:
        logger.warning("Key-value store ping timed out")
        reachable = False
    store_status = "healthy" if reachable else "unhealthy"
    body = {
        "status": "ready" if store_status == "healthy" else "not_ready",
        "dependencies": {"store": store_status},
    }
    return JSONResponse(status_code=200 if store_status == "healthy" else 503, content=body)


@app.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    """Prometheus metrics endpoint."""
    registry = services.metrics.registry if services is not None else None
    return PlainTextResponse(generate_metrics_output(registry).decode("utf-8"))


@app.post("/api/pipeline/start")
async def start_pipeline(body: StartPipelineRequest):
    svc = _services()
    pipeline_id = await svc.orchestrator.start_pipeline(body.session_id, body.mode)
    stream_url = f"{svc.settings.base_url}/api/pipeline/stream?pipelineId={pipeline_id}"
    return StartPipelineResponse(pipeline_id=pipeline_id, stream_url=stream_url).to_wire()


@app.get("/api/pipeline/stream")
async def stream_pipeline(
    request: Request,
    pipeline_id: Optional[str] = Query(default=None, alias="pipelineId"),
):
    if not pipeline_id:
        raise PipelineValidationError("pipelineId is required")

    events = await _services().publisher.open_stream(
        pipeline_id, is_disconnected=request.is_disconnected
    )

    async def body() -> AsyncIterator[str]:
        try:
            async for event in events:
                yield event.to_sse()
        finally:
            await events.aclose()

    return StreamingResponse(
        body(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@app.post("/api/approval/respond")
async def respond_to_approval(body: ApprovalRespondRequest):
    decision = ApprovalDecision.APPROVED if body.approved else ApprovalDecision.REJECTED
    resolution = await _services().orchestrator.respond_to_approval(
        body.gate_id, decision, body.feedback
    )
    return ApprovalRespondResponse(
        gate=resolution.gate,
        pipeline_status=resolution.pipeline.status,
    ).to_wire()


@app.get("/api/pipeline/{pipeline_id}")
async def get_pipeline(pipeline_id: str):
    state = await _services().pipelines.get(pipeline_id)
    return state.to_wire()


@app.get("/api/pipeline/{pipeline_id}/errors")
async def get_pipeline_errors(pipeline_id: str):
    svc = _services()
    # 404 for unknown pipelines rather than an empty list
    await svc.pipelines.get(pipeline_id)
    entries = await svc.error_log.list_for_pipeline(pipeline_id)
    return ErrorLogListResponse(
        pipeline_id=pipeline_id,
        errors=[
            ErrorLogEntry(entry=entry, formatted=format_error_for_display(entry))
            for entry in entries
        ],
    ).to_wire()


if __name__ == "__main__":
    import uvicorn

    dev_settings = get_settings()
    uvicorn.run(
        "src.repoclaw.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
        reload=True,
    )
