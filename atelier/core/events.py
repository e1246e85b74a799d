"""Event stream between the agent loop and whoever is watching it.

The orchestrator and the step executor are producers; the web layer (or a
test) is the consumer.  Events travel through an :class:`EventChannel`, a
bounded FIFO: when the consumer falls behind, ``put`` blocks the producer
instead of dropping events, so ordering and completeness are preserved.

Event kinds:
  text         — narration or a streamed text delta from the model
  tool-call    — a tool invocation started
  tool-result  — a tool invocation finished (status completed / error)
  done         — the run is over; emitted exactly once per run
"""

from __future__ import annotations

import queue
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterator

from atelier.core.config import get_settings
from atelier.core.logging import get_logger

logger = get_logger("core.events")


class EventKind(str, Enum):
    TEXT = "text"
    TOOL_CALL = "tool-call"
    TOOL_RESULT = "tool-result"
    DONE = "done"


class ToolStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class ToolCallInfo:
    """Transient description of one tool invocation; never persisted."""
    id: str
    name: str
    args: dict = field(default_factory=dict)
    result: Any = None
    status: ToolStatus = ToolStatus.RUNNING

    def to_dict(self) -> dict:
        data = {"id": self.id, "name": self.name, "status": self.status.value}
        if self.status == ToolStatus.RUNNING:
            data["args"] = self.args
        else:
            data["result"] = self.result
        return data


@dataclass
class StreamEvent:
    """A single event emitted during a run."""
    kind: EventKind
    content: str = ""
    tool_call: ToolCallInfo | None = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict:
        if self.kind == EventKind.TEXT:
            return {"type": self.kind.value, "content": self.content}
        if self.kind in (EventKind.TOOL_CALL, EventKind.TOOL_RESULT) and self.tool_call is not None:
            return {"type": self.kind.value, "toolCall": self.tool_call.to_dict()}
        return {"type": self.kind.value}


class EventChannel:
    """Bounded, ordered, single-consumer event queue with a replay history."""

    def __init__(self, maxsize: int | None = None, history_size: int | None = None):
        settings = get_settings()
        self._queue: queue.Queue[StreamEvent] = queue.Queue(
            maxsize=settings.event_queue_size if maxsize is None else maxsize
        )
        self._history: deque[StreamEvent] = deque(
            maxlen=settings.event_history_size if history_size is None else history_size
        )
        self._listeners: list[Callable[[StreamEvent], Any]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        """True once the ``done`` event has been emitted."""
        return self._closed

    def subscribe(self, listener: Callable[[StreamEvent], Any]) -> None:
        """Register a synchronous listener, called in emission order."""
        self._listeners.append(listener)

    def put(self, event: StreamEvent) -> None:
        """Publish an event. Blocks while the queue is full."""
        if self._closed:
            logger.warning("EVENT dropped after done | %s", event.kind.value)
            return
        self._history.append(event)
        logger.debug("EVENT | %s | %s", event.kind.value, event.content[:80])
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as exc:
                logger.warning("Event listener error: %s", exc)
        self._queue.put(event)
        if event.kind == EventKind.DONE:
            self._closed = True

    def get(self, timeout: float | None = None) -> StreamEvent:
        """Pop the next event, waiting up to *timeout* seconds."""
        return self._queue.get(timeout=timeout)

    def __iter__(self) -> Iterator[StreamEvent]:
        """Consume events in order until (and including) ``done``."""
        while True:
            event = self._queue.get()
            yield event
            if event.kind == EventKind.DONE:
                return

    def drain(self) -> list[StreamEvent]:
        """Pop every event currently queued without waiting."""
        events: list[StreamEvent] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def history(self, limit: int = 200) -> list[dict]:
        """Return recent events as dicts."""
        items = list(self._history)
        return [e.to_dict() for e in items[-limit:]]

    # ── Convenience emitters ─────────────────────────────────────────────

    def text(self, content: str) -> None:
        self.put(StreamEvent(kind=EventKind.TEXT, content=content))

    def tool_call(self, call_id: str, name: str, args: dict) -> None:
        self.put(StreamEvent(
            kind=EventKind.TOOL_CALL,
            tool_call=ToolCallInfo(id=call_id, name=name, args=args),
        ))

    def tool_result(self, call_id: str, name: str, result: Any, ok: bool = True) -> None:
        self.put(StreamEvent(
            kind=EventKind.TOOL_RESULT,
            tool_call=ToolCallInfo(
                id=call_id,
                name=name,
                result=result,
                status=ToolStatus.COMPLETED if ok else ToolStatus.ERROR,
            ),
        ))

    def done(self) -> None:
        self.put(StreamEvent(kind=EventKind.DONE))
