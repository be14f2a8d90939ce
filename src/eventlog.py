# Turn events: types, validation, the synchronous event bus and the two file
# sinks (JSON Lines structured log + human-readable story log).
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from itertools import count
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Tuple

LOGGER = logging.getLogger("chaos_saga.events")


class EventType(str, Enum):
    """Event categories streamed to the caller for one turn."""

    TURN_START = "turn_start"
    NARRATIVE = "narrative"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    STATE_UPDATE = "state_update"
    SYSTEM = "system"
    DONE = "done"
    ERROR = "error"


# payload keys each event type must carry; state_update needs one of state/delta
_REQUIRED: Dict[EventType, Tuple[str, ...]] = {
    EventType.NARRATIVE: ("patch",),
    EventType.TOOL_CALL: ("tool", "status"),
    EventType.TOOL_RESULT: ("tool", "status"),
    EventType.DONE: ("narrative",),
    EventType.ERROR: ("message",),
}


def _prune(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _prune(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [_prune(v) for v in value if v is not None]
    return value


@dataclass
class Event:
    """One entry of a turn's event stream.

    `sequence` and `timestamp` stay empty until the bus publishes the event.
    """

    event_type: EventType
    player: Optional[str] = None
    turn: Optional[int] = None
    step: Optional[int] = None
    data: Dict[str, Any] = field(default_factory=dict)
    sequence: Optional[int] = None
    timestamp: Optional[datetime] = None

    def __post_init__(self) -> None:
        try:
            self.event_type = EventType(self.event_type)
        except ValueError as exc:
            raise ValueError(f"Unsupported event type: {self.event_type}") from exc
        if not isinstance(self.data or {}, dict):
            raise TypeError("Event.data must be a dict")
        self.data = _prune(self.data or {})

    @property
    def event_id(self) -> str:
        return f"EVT-{self.sequence or 0:06d}"

    def stamp(self, sequence: int) -> None:
        self.sequence = sequence
        self.timestamp = datetime.now(timezone.utc)

    def missing_fields(self) -> List[str]:
        if self.event_type is EventType.STATE_UPDATE:
            return [] if ("state" in self.data or "delta" in self.data) else ["state (or delta)"]
        return [k for k in _REQUIRED.get(self.event_type, ()) if k not in self.data]

    def to_dict(self) -> Dict[str, Any]:
        if self.sequence is None or self.timestamp is None:
            raise RuntimeError("Event must be published before it is serialised")
        head = {
            "event_id": self.event_id,
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "player": self.player,
            "turn": self.turn,
            "step": self.step,
        }
        out = {k: v for k, v in head.items() if v is not None}
        out.update(self.data)
        return out


EventHandler = Callable[[Event], None]


class EventBus:
    """Synchronous fan-out; every published event gets the next sequence number."""

    def __init__(self) -> None:
        self._handlers: List[EventHandler] = []
        self._seq = count(1)

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def publish(self, event: Event) -> Event:
        missing = event.missing_fields()
        if missing:
            raise ValueError(f"Event '{event.event_type.value}' missing required fields: {', '.join(missing)}")
        event.stamp(next(self._seq))
        failed: List[Exception] = []
        for handler in tuple(self._handlers):
            try:
                handler(event)
            except Exception as exc:
                LOGGER.error("event handler %r failed on %s: %s", handler, event.event_id, exc)
                failed.append(exc)
        if failed:
            raise RuntimeError(f"{len(failed)} event handler(s) failed") from failed[0]
        return event


class _FileSink:
    """Append-only text file shared by the bus callbacks."""

    def __init__(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        # a lone surrogate from the model is written escaped instead of raising
        self._file = path.open("a", encoding="utf-8", errors="backslashreplace")
        self._lock = Lock()

    def _write(self, line: str) -> None:
        with self._lock:
            self._file.write(line + "\n")
            self._file.flush()

    def close(self) -> None:
        with self._lock:
            if not self._file.closed:
                self._file.close()


class StructuredLogger(_FileSink):
    """Every event as one JSON line."""

    def handle(self, event: Event) -> None:
        self._write(json.dumps(event.to_dict(), ensure_ascii=False))


class StoryLogger(_FileSink):
    """Final narratives and failed tool calls, one readable line each.

    Streaming patches are skipped.
    """

    def handle(self, event: Event) -> None:
        text = _story_text(event)
        if text is None:
            return
        when = event.timestamp.isoformat() if event.timestamp else ""
        self._write(f"[{event.event_id}] {when} {event.player or 'system'}: {text}")


def _story_text(event: Event) -> Optional[str]:
    data = event.data
    if event.event_type is EventType.DONE:
        text = str(data.get("narrative", ""))
        return text + " [截断]" if data.get("truncated") else text
    if event.event_type is EventType.TOOL_RESULT and data.get("status") == "failure":
        return f"（{data.get('tool')} 失败：{data.get('error', '')}）"
    return None


@dataclass
class LoggingContext:
    bus: EventBus
    structured: StructuredLogger
    story: StoryLogger

    def close(self) -> None:
        self.structured.close()
        self.story.close()


def create_logging_context(base_path: Optional[Path] = None) -> LoggingContext:
    """Bus wired to `logs/run_events.jsonl` and `logs/run_story.log` under base_path."""
    logs = (base_path or Path(__file__).resolve().parents[1]) / "logs"
    ctx = LoggingContext(
        bus=EventBus(),
        structured=StructuredLogger(logs / "run_events.jsonl"),
        story=StoryLogger(logs / "run_story.log"),
    )
    ctx.bus.subscribe(ctx.structured.handle)
    ctx.bus.subscribe(ctx.story.handle)
    return ctx
