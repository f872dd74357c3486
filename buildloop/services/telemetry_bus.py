"""
TelemetryBus - runtime console telemetry per project.

The sandbox that runs generated code is the producer: every console
emission (log/info/warn/error) is pushed into the project's buffer.
The Error-Feedback Monitor is the consumer while a run is verifying.

The buffer is cleared in the same step that commits a new
Modification, so errors from the previous generation are never
attributed to the new one.

Producers must call in from the event loop thread.
"""

import asyncio
import threading
from typing import Any, Dict, List, Optional

from buildloop.core.config import settings
from buildloop.core.logging_config import logger
from buildloop.schemas.project import ConsoleLevel, ConsoleMessage


class TelemetryBuffer:
    """
    Ordered console telemetry for one project.

    Keeps the most recent entries only and wakes any waiter on each
    new entry.
    """

    def __init__(self, project_id: str, max_entries: Optional[int] = None):
        self.project_id = project_id
        self.max_entries = max_entries or settings.TELEMETRY_MAX_ENTRIES
        self._lock = threading.Lock()
        self._entries: List[ConsoleMessage] = []
        self._activity = asyncio.Event()

    def emit(self, message: ConsoleMessage) -> None:
        """Add a telemetry entry to the buffer"""
        with self._lock:
            self._entries.append(message)
            # Trim if over limit
            if len(self._entries) > self.max_entries:
                self._entries = self._entries[-self.max_entries:]
        self._activity.set()

        preview = " ".join(str(p) for p in message.payload)[:100]
        logger.debug(f"[TelemetryBus:{self.project_id}] {message.level.value}: {preview}")

    def add(self, level: Any, *payload: Any) -> ConsoleMessage:
        """Convenience wrapper: add(level, *payload)"""
        message = ConsoleMessage(level=ConsoleLevel(level), payload=list(payload))
        self.emit(message)
        return message

    def entries(self) -> List[ConsoleMessage]:
        with self._lock:
            return list(self._entries)

    def errors(self) -> List[ConsoleMessage]:
        with self._lock:
            return [e for e in self._entries if e.is_error]

    @property
    def has_errors(self) -> bool:
        with self._lock:
            return any(e.is_error for e in self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries = []
            self._activity.clear()

    def drain(self) -> List[ConsoleMessage]:
        """Return every entry and empty the buffer"""
        with self._lock:
            entries, self._entries = self._entries, []
            self._activity.clear()
        return entries

    def reset_activity(self) -> None:
        self._activity.clear()

    async def wait_for_activity(self) -> None:
        """Block until an entry is emitted after the last reset"""
        await self._activity.wait()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def to_dict(self) -> Dict[str, Any]:
        entries = self.entries()
        return {
            "project_id": self.project_id,
            "total": len(entries),
            "errors": sum(1 for e in entries if e.is_error),
            "entries": [e.model_dump(mode="json") for e in entries],
        }


class TelemetryRegistry:
    """TelemetryBuffer instances for all projects"""

    def __init__(self, max_entries: Optional[int] = None):
        self.max_entries = max_entries
        self._buffers: Dict[str, TelemetryBuffer] = {}
        self._lock = threading.Lock()

    def get_buffer(self, project_id: str) -> TelemetryBuffer:
        """Get or create the buffer for a project"""
        with self._lock:
            if project_id not in self._buffers:
                self._buffers[project_id] = TelemetryBuffer(project_id, self.max_entries)
                logger.debug(f"[TelemetryRegistry] Created buffer for project {project_id}")
            return self._buffers[project_id]

    def remove_buffer(self, project_id: str) -> None:
        with self._lock:
            if self._buffers.pop(project_id, None) is not None:
                logger.debug(f"[TelemetryRegistry] Removed buffer for project {project_id}")

    def list_projects(self) -> List[str]:
        with self._lock:
            return list(self._buffers.keys())
