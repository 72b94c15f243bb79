"""Unit tests for the HTTP control surface.

Services are wired by hand around an in-memory store and installed on the
module, so the lifespan (and with it Postgres) is never started.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from src.repoclaw import main
from src.repoclaw.config import RepoClawSettings
from src.repoclaw.events.emitter import NullEventEmitter
from src.repoclaw.state.kv import InMemoryKeyValueStore
from src.repoclaw.state.models import (
    AgentResult,
    AgentStatus,
    AgentType,
    ApprovalGateType,
    Artifact,
    ArtifactType,
    Mode,
    RepoMetadata,
    Session,
)


def _runners():
    runners = {}
    for agent in AgentType:
        runner = MagicMock()
        runner.agent = agent
        runner.run = AsyncMock(
            return_value=AgentResult(agent=agent, status=AgentStatus.COMPLETED)
        )
        runners[agent] = runner
    return runners


@pytest.fixture
def services(metrics):
    settings = RepoClawSettings(
        base_url="https://repoclaw.dev",
        stream_poll_interval_seconds=0.01,
    )
    built = main.build_services(
        settings,
        InMemoryKeyValueStore(),
        runners=_runners(),
        metrics=metrics,
        event_emitter=NullEventEmitter(),
    )
    main.services = built
    yield built
    main.services = None


@pytest.fixture
def client(services):
    return TestClient(main.app)


def _seed_session(services, session_id: str = "sess_1") -> None:
    session = Session(
        id=session_id,
        repo_url="https://github.com/octo/widgets",
        repo_metadata=RepoMetadata(
            owner="octo",
            name="widgets",
            full_name="octo/widgets",
            url="https://github.com/octo/widgets",
        ),
    )
    asyncio.run(services.sessions.create(session))


def _seed_gate(services) -> str:
    """Create a run paused on a docs gate. Returns the gate id."""

    async def seed():
        machine = services.orchestrator.state_machine
        await machine.create("pipe_1", "sess_1", Mode.HACKATHON)
        await machine.begin_stage("pipe_1", AgentType.ANALYZE)
        readme = Artifact(type=ArtifactType.README, title="README", content="# Widgets")
        await machine.record_result(
            "pipe_1",
            AgentType.ANALYZE,
            AgentResult(agent=AgentType.ANALYZE, status=AgentStatus.COMPLETED, artifacts=[readme]),
            advance=False,
        )
        opened = await services.orchestrator.approvals.open_gate(
            "pipe_1", ApprovalGateType.DOCS, [readme]
        )
        return opened.gate.id

    return asyncio.run(seed())


def _sse_events(body: str):
    return [
        json.loads(line[len("data: "):])
        for line in body.splitlines()
        if line.startswith("data: ")
    ]


# ---------------------------------------------------------------------------
# Pipeline start and lookup
# ---------------------------------------------------------------------------


def test_start_pipeline_returns_id_and_stream_url(client, services):
    _seed_session(services)

    response = client.post(
        "/api/pipeline/start", json={"sessionId": "sess_1", "mode": "hackathon"}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["pipelineId"].startswith("pipe_")
    assert body["streamUrl"] == (
        f"https://repoclaw.dev/api/pipeline/stream?pipelineId={body['pipelineId']}"
    )

    state = client.get(f"/api/pipeline/{body['pipelineId']}")
    assert state.status_code == 200
    assert state.json()["mode"] == "hackathon"
    assert state.json()["sessionId"] == "sess_1"


def test_start_pipeline_rejects_bad_mode(client, services):
    _seed_session(services)

    response = client.post(
        "/api/pipeline/start", json={"sessionId": "sess_1", "mode": "speedrun"}
    )

    assert response.status_code == 400
    assert "Invalid mode" in response.json()["error"]


def test_start_pipeline_requires_body_fields(client):
    response = client.post("/api/pipeline/start", json={"mode": "hackathon"})

    assert response.status_code == 400


def test_start_pipeline_for_unknown_session(client):
    response = client.post(
        "/api/pipeline/start", json={"sessionId": "sess_missing", "mode": "refactor"}
    )

    assert response.status_code == 404


def test_unknown_pipeline_is_not_found(client):
    assert client.get("/api/pipeline/pipe_missing").status_code == 404
    assert client.get("/api/pipeline/pipe_missing/errors").status_code == 404


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


def test_stream_requires_pipeline_id(client):
    assert client.get("/api/pipeline/stream").status_code == 400


def test_stream_of_unknown_pipeline(client):
    assert client.get("/api/pipeline/stream?pipelineId=pipe_missing").status_code == 404


def test_stream_of_failed_pipeline(client, services):
    gate_id = _seed_gate(services)
    client.post("/api/approval/respond", json={"gateId": gate_id, "approved": False})

    response = client.get("/api/pipeline/stream?pipelineId=pipe_1")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    events = _sse_events(response.text)
    assert [e["type"] for e in events] == [
        "pipeline_started",
        "agent_progress",
        "pipeline_failed",
    ]
    assert events[-1]["data"]["error"]["gateId"] == gate_id


# ---------------------------------------------------------------------------
# Approval
# ---------------------------------------------------------------------------


def test_reject_gate_and_read_error_log(client, services):
    gate_id = _seed_gate(services)

    response = client.post(
        "/api/approval/respond",
        json={"gateId": gate_id, "approved": False, "feedback": "needs examples"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["pipelineStatus"] == "failed"
    assert body["gate"]["status"] == "rejected"
    assert body["gate"]["feedback"] == "needs examples"

    errors = client.get("/api/pipeline/pipe_1/errors").json()
    assert errors["pipelineId"] == "pipe_1"
    assert len(errors["errors"]) == 1
    assert errors["errors"][0]["entry"]["details"] == "needs examples"
    assert "SYSTEM - Fatal" in errors["errors"][0]["formatted"]


def test_second_response_conflicts(client, services):
    gate_id = _seed_gate(services)
    client.post("/api/approval/respond", json={"gateId": gate_id, "approved": False})

    response = client.post(
        "/api/approval/respond", json={"gateId": gate_id, "approved": True}
    )

    assert response.status_code == 409
    assert "already rejected" in response.json()["error"]


def test_unknown_gate(client):
    response = client.post(
        "/api/approval/respond", json={"gateId": "gate_missing", "approved": True}
    )

    assert response.status_code == 404


# ---------------------------------------------------------------------------
# Health, readiness, metrics
# ---------------------------------------------------------------------------


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}


def test_ready_with_reachable_store(client):
    response = client.get("/ready")

    assert response.status_code == 200
    assert response.json()["dependencies"]["store"] == "healthy"


def test_ready_with_unreachable_store(client, services):
    services.kv.ping = AsyncMock(return_value=False)

    response = client.get("/ready")

    assert response.status_code == 503
    assert response.json()["status"] == "not_ready"


def test_ready_when_store_ping_hangs(client, services):
    async def hang():
        await asyncio.sleep(10)
        return True

    services.settings = services.settings.model_copy(update={"store_timeout_seconds": 0.05})
    services.kv.ping = hang

    response = client.get("/ready")

    assert response.status_code == 503
    assert response.json()["dependencies"]["store"] == "unhealthy"


def test_metrics_endpoint(client):
    response = client.get("/metrics")

    assert response.status_code == 200
    assert "repoclaw_active_streams" in response.text


def test_uninitialized_service_is_unavailable():
    main.services = None
    client = TestClient(main.app)

    assert client.get("/ready").status_code == 503
    response = client.post(
        "/api/pipeline/start", json={"sessionId": "sess_1", "mode": "hackathon"}
    )
    assert response.status_code == 503
