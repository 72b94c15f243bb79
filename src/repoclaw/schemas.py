"""Request and response bodies for the HTTP control surface."""

from typing import Any, Dict, List, Optional

from src.repoclaw.failures.log import ErrorLog
from src.repoclaw.state.models import ApprovalGate, PipelineStatus, WireModel


class StartPipelineRequest(WireModel):
    """Body of POST /api/pipeline/start. mode is checked by the orchestrator."""

    session_id: str
    mode: str


class StartPipelineResponse(WireModel):
    pipeline_id: str
    stream_url: str


class ApprovalRespondRequest(WireModel):
    """Body of POST /api/approval/respond."""

    gate_id: str
    approved: bool
    feedback: Optional[str] = None


class ApprovalRespondResponse(WireModel):
    success: bool = True
    gate: ApprovalGate
    pipeline_status: PipelineStatus


class ErrorLogEntry(WireModel):
    """An error log entry with its human-readable rendering."""

    entry: ErrorLog
    formatted: str


class ErrorLogListResponse(WireModel):
    pipeline_id: str
    errors: List[ErrorLogEntry]


class ErrorResponse(WireModel):
    error: str
    details: Optional[Dict[str, Any]] = None
