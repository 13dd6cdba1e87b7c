from __future__ import annotations

import json
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator

from platformdirs import user_data_dir

APP_NAME = "pytoolcall"


def _events_dir() -> Path:
    return Path(user_data_dir(APP_NAME)) / "events"


@dataclass
class Event:
    ts: float
    type: str
    data: dict[str, Any]

    def to_line(self) -> str:
        return json.dumps({"ts": self.ts, "type": self.type, "data": self.data}, ensure_ascii=False, default=str)

    @staticmethod
    def from_line(line: str) -> "Event | None":
        try:
            obj = json.loads(line)
            return Event(ts=float(obj.get("ts", 0.0)), type=str(obj["type"]), data=obj.get("data") or {})
        except (json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError):
            return None


@dataclass
class EventStore:
    """Append-only JSONL record of one run: model requests, tool calls, server status.

    Appends can arrive from several discovery threads at once. Readers skip
    lines that do not parse.
    """

    session_id: str
    path: Path
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @staticmethod
    def open(session_id: str, directory: Path | None = None) -> "EventStore":
        d = directory or _events_dir()
        d.mkdir(parents=True, exist_ok=True)
        return EventStore(session_id=session_id, path=d / f"{session_id}.jsonl")

    def append(self, event_type: str, data: dict[str, Any]) -> None:
        line = Event(ts=time.time(), type=event_type, data=data).to_line()
        with self._lock, self.path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")

    def iter_events(self) -> Iterator[Event]:
        if not self.path.exists():
            return
        with self.path.open(encoding="utf-8", errors="replace") as f:
            for line in f:
                if not line.strip():
                    continue
                ev = Event.from_line(line)
                if ev is not None:
                    yield ev

    def tail(self, limit: int) -> list[Event]:
        """Last `limit` events; everything when limit <= 0."""
        if limit <= 0:
            return list(self.iter_events())
        return list(deque(self.iter_events(), maxlen=limit))
