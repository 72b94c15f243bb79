"""Key-value store collaborator interface.

Pipeline, session, and error-log records are persisted against an opaque
key-value store. Retention and expiry belong to the store's operator, not
to the pipeline core.

Key layout:
- pipeline:{id}       one record per pipeline run
- session:{id}        one record per session
- approval:{gate_id}  gate id → owning pipeline id
- errors:{pipeline}   append-only list of error log entries
"""

import json
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable


PIPELINE_PREFIX = "pipeline:"
SESSION_PREFIX = "session:"
APPROVAL_GATE_PREFIX = "approval:"
ERROR_LOG_PREFIX = "errors:"


@runtime_checkable
class KeyValueStore(Protocol):
    """Protocol for the key-value backend.

    Values are JSON-compatible dictionaries. Implementations must return
    an independent copy from every read so callers can never observe a
    write in progress.
    """

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the record stored at key, or None."""
        ...

    async def set(self, key: str, value: Dict[str, Any]) -> None:
        """Store a record at key, replacing any previous value."""
        ...

    async def set_if_absent(self, key: str, value: Dict[str, Any]) -> bool:
        """Store a record only if key is free. Returns True if stored."""
        ...

    async def delete(self, key: str) -> bool:
        """Delete the record at key. Returns True if something was deleted."""
        ...

    async def append(self, key: str, value: Dict[str, Any]) -> None:
        """Append a record to the list stored at key."""
        ...

    async def list_range(self, key: str) -> List[Dict[str, Any]]:
        """Return every record of the list at key, in append order."""
        ...

    async def ping(self) -> bool:
        """Return True if the backend is reachable."""
        ...


class InMemoryKeyValueStore:
    """In-process KeyValueStore for local development and tests.

    Records are held as JSON text, so every read decodes a fresh copy and
    a reader can never share objects with a concurrent writer.
    """

    def __init__(self) -> None:
        self._records: Dict[str, str] = {}
        self._lists: Dict[str, List[str]] = {}

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        raw = self._records.get(key)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Dict[str, Any]) -> None:
        self._records[key] = json.dumps(value)

    async def set_if_absent(self, key: str, value: Dict[str, Any]) -> bool:
        if key in self._records:
            return False
        self._records[key] = json.dumps(value)
        return True

    async def delete(self, key: str) -> bool:
        return self._records.pop(key, None) is not None

    async def append(self, key: str, value: Dict[str, Any]) -> None:
        self._lists.setdefault(key, []).append(json.dumps(value))

    async def list_range(self, key: str) -> List[Dict[str, Any]]:
        return [json.loads(raw) for raw in self._lists.get(key, [])]

    async def ping(self) -> bool:
        return True

    def clear(self) -> None:
        """Drop every record and list."""
        self._records.clear()
        self._lists.clear()
