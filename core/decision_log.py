"""
Per-bot decision log.

Append-only record of completed cycles, read newest-first. Price-tick
closures and manual closes are event entries tagged by ``kind``. The same
capped window feeds the operator view and the next cycle's prompt history.
"""

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

MIN_WINDOW = 5
MAX_WINDOW = 50
DEFAULT_MAX_ENTRIES = 50

# Entry kinds. Only CYCLE entries carry decisions; the rest are events.
CYCLE = "cycle"
PRICE_TICK = "price_tick"
MANUAL_CLOSE = "manual_close"


@dataclass(frozen=True)
class DecisionLogEntry:
    timestamp: datetime
    prompt_sent: str
    decisions: List[Dict[str, Any]]
    notes: List[str]
    execution_success: bool
    transcript: List[Dict[str, Any]] = field(default_factory=list)
    kind: str = CYCLE

    @property
    def is_event(self) -> bool:
        return self.kind != CYCLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "prompt_sent": self.prompt_sent,
            "decisions": list(self.decisions),
            "notes": list(self.notes),
            "execution_success": self.execution_success,
            "transcript": list(self.transcript),
            "kind": self.kind,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DecisionLogEntry":
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            prompt_sent=data.get("prompt_sent", ""),
            decisions=list(data.get("decisions", [])),
            notes=list(data.get("notes", [])),
            execution_success=bool(data.get("execution_success", False)),
            transcript=list(data.get("transcript", [])),
            kind=data.get("kind", CYCLE),
        )


def clamp_window(n: int) -> int:
    return max(MIN_WINDOW, min(MAX_WINDOW, int(n)))


class DecisionLog:
    """Bounded, thread-safe, newest-first decision history."""

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES):
        self.max_entries = max(MIN_WINDOW, int(max_entries))
        self._entries: Deque[DecisionLogEntry] = deque(maxlen=self.max_entries)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, entry: DecisionLogEntry) -> None:
        with self._lock:
            self._entries.appendleft(entry)

    def record(self, prompt_sent: str, decisions: List[Dict[str, Any]], notes: List[str],
               execution_success: bool, transcript: Optional[List[Dict[str, Any]]] = None,
               timestamp: Optional[datetime] = None, kind: str = CYCLE) -> DecisionLogEntry:
        entry = DecisionLogEntry(
            timestamp=timestamp or datetime.now(timezone.utc),
            prompt_sent=prompt_sent,
            decisions=list(decisions),
            notes=list(notes),
            execution_success=execution_success,
            transcript=list(transcript or []),
            kind=kind,
        )
        self.append(entry)
        return entry

    def recent(self, n: int = MIN_WINDOW) -> List[DecisionLogEntry]:
        """Newest first; ``n`` is clamped to [5, 50]."""
        with self._lock:
            return list(self._entries)[:clamp_window(n)]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def to_list(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [e.to_dict() for e in self._entries]

    @classmethod
    def from_list(cls, rows: List[Dict[str, Any]], max_entries: int = DEFAULT_MAX_ENTRIES) -> "DecisionLog":
        log = cls(max_entries=max_entries)
        # rows are newest first; keep that order
        for row in rows[:log.max_entries]:
            log._entries.append(DecisionLogEntry.from_dict(row))
        return log
