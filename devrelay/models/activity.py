"""Activity log — audit trail for sessions, dispatch decisions and agent runs.

Every routing decision, fallback, preview registration and agent step emits
an ActivityEvent. The ActivityLog keeps them in memory AND appends them to
<activity_dir>/<correlation_id>.jsonl so a trace can be inspected after the
process that produced it has gone away.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, Field

from devrelay.config import settings

logger = structlog.get_logger().bind(component="models.activity")

# Oldest events are dropped past this many to keep a long-lived server bounded
MAX_EVENTS_IN_MEMORY = 10_000


class ActivityEvent(BaseModel):
    """A single auditable event."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str = Field(
        description="Session id or agent run id the event belongs to"
    )
    event_type: str = Field(
        description="Type: session_created, session_evicted, dispatch, fallback, "
        "preview_registered, agent_start, agent_step, agent_complete"
    )
    source: str = Field(description="Component that emitted this event (e.g., 'routing.router')")
    payload: dict[str, Any] = Field(default_factory=dict)
    error: str = Field(default="", description="Error message if this is an error event")
    duration_ms: float = Field(default=0.0)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ActivityTrace(BaseModel):
    """All events sharing one correlation id, in order."""

    correlation_id: str
    events: list[ActivityEvent] = Field(default_factory=list)
    sources: list[str] = Field(default_factory=list)
    total_duration_ms: float = 0.0
    success: bool = True
    started_at: datetime | None = None
    completed_at: datetime | None = None


class ActivityLog:
    """In-memory event store with optional JSONL persistence."""

    def __init__(self, activity_dir: Path | None = None, persist: bool = True) -> None:
        self._events: list[ActivityEvent] = []
        self._dir = activity_dir or settings.activity_dir
        self._persist = persist

    def emit(self, event: ActivityEvent) -> None:
        """Store in memory and append to the trace file."""
        self._events.append(event)
        if len(self._events) > MAX_EVENTS_IN_MEMORY:
            del self._events[: len(self._events) - MAX_EVENTS_IN_MEMORY]
        if self._persist:
            self._write_to_file(event)

    def record(
        self,
        correlation_id: str,
        event_type: str,
        source: str,
        error: str = "",
        duration_ms: float = 0.0,
        **payload: Any,
    ) -> ActivityEvent:
        event = ActivityEvent(
            correlation_id=correlation_id,
            event_type=event_type,
            source=source,
            payload=payload,
            error=error,
            duration_ms=duration_ms,
        )
        self.emit(event)
        return event

    def _write_to_file(self, event: ActivityEvent) -> None:
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            trace_file = self._dir / f"{event.correlation_id}.jsonl"
            with trace_file.open("a", encoding="utf-8") as f:
                f.write(event.model_dump_json() + "\n")
        except OSError as exc:
            # Auditing must never fail the request that produced the event
            logger.warning("activity_write_failed", error=str(exc))

    def get_trace(self, correlation_id: str) -> ActivityTrace:
        """Assemble a trace — checks memory first, then disk."""
        events = [e for e in self._events if e.correlation_id == correlation_id]
        if not events:
            events = self._load_from_file(correlation_id)

        events.sort(key=lambda e: e.timestamp)
        trace = ActivityTrace(
            correlation_id=correlation_id,
            events=events,
            sources=sorted({e.source for e in events}),
        )
        if events:
            trace.started_at = events[0].timestamp
            trace.completed_at = events[-1].timestamp
            total = (trace.completed_at - trace.started_at).total_seconds() * 1000
            trace.total_duration_ms = round(total, 2)
            trace.success = not any(e.error for e in events)
        return trace

    def _load_from_file(self, correlation_id: str) -> list[ActivityEvent]:
        trace_file = self._dir / f"{correlation_id}.jsonl"
        if not trace_file.exists():
            return []
        events = []
        try:
            with trace_file.open("r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if line:
                        events.append(ActivityEvent.model_validate_json(line))
        except (OSError, ValueError) as exc:
            logger.warning("activity_read_failed", correlation_id=correlation_id, error=str(exc))
        return events

    def events_of(self, event_type: str) -> list[ActivityEvent]:
        return [e for e in self._events if e.event_type == event_type]

    def clear(self) -> None:
        """Clear in-memory events (does not delete files)."""
        self._events.clear()

    @property
    def event_count(self) -> int:
        return len(self._events)
