"""Append-only error log keyed by pipeline.

Every component that meets a failure writes an entry here before acting on
it, so an entry exists whenever a failed pipeline carries an error. Entries
are never deduplicated: identical inputs produce distinct entries with
distinct ids.
"""

from datetime import datetime, timezone
from typing import Any, List, Optional

import structlog
from pydantic import ConfigDict, Field

from src.repoclaw.exceptions import NotFoundError, PipelineValidationError
from src.repoclaw.failures.classifier import classify, describe_failure
from src.repoclaw.state.kv import ERROR_LOG_PREFIX
from src.repoclaw.state.models import AgentType, WireModel, generate_id, now_ms
from src.repoclaw.state.store import BoundedStore


logger = structlog.get_logger()


class ErrorLog(WireModel):
    """One immutable error log entry.

    Attributes:
        id: Unique entry id, fresh on every write.
        pipeline_id: The pipeline the failure belongs to.
        agent: The failing stage, or None for a system-level failure.
        message: Proximate cause.
        details: Extended description.
        timestamp: Write time in epoch milliseconds.
        recoverable: Classifier verdict.
        stack: Formatted traceback, when one was available.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: generate_id("err_"), min_length=1)
    pipeline_id: str = Field(..., min_length=1)
    agent: Optional[AgentType] = None
    message: str
    details: str = ""
    timestamp: int = Field(default_factory=now_ms, gt=0)
    recoverable: bool
    stack: Optional[str] = None


class ErrorLogStore(BoundedStore):
    """Error log persisted as one append-only list per pipeline."""

    @staticmethod
    def _key(pipeline_id: str) -> str:
        return f"{ERROR_LOG_PREFIX}{pipeline_id}"

    async def log(
        self,
        pipeline_id: str,
        agent: Optional[AgentType],
        message: str,
        details: str,
        recoverable: bool,
        stack: Optional[str] = None,
    ) -> str:
        """Append an entry and return its id."""
        if not pipeline_id:
            raise PipelineValidationError("pipeline_id is required")

        entry = ErrorLog(
            pipeline_id=pipeline_id,
            agent=agent,
            message=message,
            details=details,
            recoverable=recoverable,
            stack=stack,
        )
        await self._call("append", self.kv.append(self._key(pipeline_id), entry.to_wire()))

        logger.error(
            "Pipeline error logged",
            error_id=entry.id,
            pipeline_id=pipeline_id,
            agent=agent.value if agent else "system",
            message=message,
            recoverable=recoverable,
        )
        return entry.id

    async def log_agent_error(
        self,
        pipeline_id: str,
        agent: AgentType,
        error: Any,
        recoverable: Optional[bool] = None,
    ) -> str:
        """Log a stage failure; the verdict defaults to the classifier's."""
        description = describe_failure(error)
        return await self.log(
            pipeline_id,
            agent,
            description.message,
            description.details,
            classify(error) if recoverable is None else recoverable,
            stack=description.stack,
        )

    async def log_system_error(
        self,
        pipeline_id: str,
        message: str,
        details: str = "",
        recoverable: bool = False,
    ) -> str:
        return await self.log(pipeline_id, None, message, details, recoverable)

    async def list_for_pipeline(self, pipeline_id: str) -> List[ErrorLog]:
        """Return every entry for a pipeline, newest first."""
        raw_entries = await self._call("read", self.kv.list_range(self._key(pipeline_id)))
        entries = [ErrorLog.model_validate(raw) for raw in raw_entries]
        # append order breaks ties between entries written in the same millisecond
        return [
            entry
            for _, entry in sorted(
                enumerate(entries),
                key=lambda pair: (pair[1].timestamp, pair[0]),
                reverse=True,
            )
        ]

    async def get(self, pipeline_id: str, error_id: str) -> ErrorLog:
        for entry in await self.list_for_pipeline(pipeline_id):
            if entry.id == error_id:
                return entry
        raise NotFoundError("error log", error_id)


def format_error_for_display(entry: ErrorLog) -> str:
    """Render an entry for humans.

    Example:
        [2026-01-01T12:00:00+00:00] ANALYZE - Recoverable
        Message: network timeout
        Details: RuntimeError: network timeout
    """
    agent_name = entry.agent.value.upper() if entry.agent else "SYSTEM"
    when = datetime.fromtimestamp(entry.timestamp / 1000, tz=timezone.utc)
    verdict = "Recoverable" if entry.recoverable else "Fatal"
    return (
        f"[{when.isoformat(timespec='seconds')}] {agent_name} - {verdict}\n"
        f"Message: {entry.message}\n"
        f"Details: {entry.details}"
    )
