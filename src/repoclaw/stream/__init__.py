"""Server-sent event streaming of pipeline progress."""

from src.repoclaw.stream.publisher import StreamPublisher

__all__ = ["StreamPublisher"]
