"""Exception taxonomy for the RepoClaw pipeline core.

Every error raised by the core derives from RepoClawError so the HTTP layer
can map whole families to status codes:

- PipelineValidationError: malformed input, rejected before any mutation
- NotFoundError: referenced pipeline, gate, or session is absent
- AlreadyExistsError: a record with the same id is already stored
- InvalidTransitionError / InvalidStateError: operation against an
  incompatible pipeline or gate status
- StoreError / StoreTimeoutError: the key-value backend failed or hung
- AgentFailure (Recoverable / Fatal): a stage failure with its verdict
- StreamTransportError: a sampling read failed during streaming
"""

from typing import Optional


class RepoClawError(Exception):
    """Base class for all pipeline core errors.

    Attributes:
        message: Human-readable error description.
    """

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class PipelineValidationError(RepoClawError):
    """Raised when a core operation receives malformed input."""


class NotFoundError(RepoClawError):
    """Raised when a referenced record does not exist.

    Attributes:
        kind: Record kind ("pipeline", "gate", "session").
        identifier: The id that was looked up.
    """

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind.capitalize()} not found: {identifier}")


class AlreadyExistsError(RepoClawError):
    """Raised when creating a record whose id is already stored."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind.capitalize()} already exists: {identifier}")


class InvalidTransitionError(RepoClawError):
    """Raised when an operation is not legal for the current status.

    Attributes:
        from_status: The status the record was in, when known.
        to_status: The status the operation tried to reach, when known.
    """

    def __init__(
        self,
        message: Optional[str] = None,
        from_status: Optional[str] = None,
        to_status: Optional[str] = None,
    ):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            message or f"Invalid transition from {from_status} to {to_status}"
        )


class InvalidStateError(InvalidTransitionError):
    """Raised when responding to an approval gate that is no longer pending."""

    def __init__(self, gate_id: str, status: str):
        self.gate_id = gate_id
        super().__init__(
            f"Approval gate {gate_id} is already {status}",
            from_status=status,
        )


class StoreError(RepoClawError):
    """Raised when the key-value backend fails.

    Attributes:
        original_error: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        original_error: Optional[BaseException] = None,
    ):
        self.original_error = original_error
        super().__init__(message)


class StoreTimeoutError(StoreError):
    """Raised when a key-value call does not finish within its timeout."""


class AgentFailure(RepoClawError):
    """A failed stage dispatch carrying its recoverability verdict.

    Attributes:
        agent: The stage that failed.
        recoverable: Verdict from the error classifier.
        attempts: Number of dispatch attempts made for the stage.
    """

    recoverable = False

    def __init__(self, agent: str, message: str, attempts: int = 1):
        self.agent = agent
        self.attempts = attempts
        super().__init__(message)


class RecoverableAgentFailure(AgentFailure):
    """Transient stage failure, eligible for a bounded retry."""

    recoverable = True


class FatalAgentFailure(AgentFailure):
    """Unrecoverable stage failure or exhausted retries."""


class StreamTransportError(RepoClawError):
    """Raised when a stream sample cannot be read.

    Attributes:
        pipeline_id: The pipeline being streamed.
        closes_stream: True when the pipeline record no longer exists.
    """

    def __init__(self, pipeline_id: str, message: str, closes_stream: bool):
        self.pipeline_id = pipeline_id
        self.closes_stream = closes_stream
        super().__init__(message)
