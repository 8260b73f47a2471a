"""Structured diagnostic events emitted by the fusion core."""

import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiagnosticEvent:
    """One recovery, drop or notable state change."""
    kind: str
    message: str
    t_ns: int
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "kind": self.kind,
            "message": self.message,
            "t_ns": self.t_ns,
            "data": dict(self.data),
        }


class DiagnosticLog:
    """Bounded log of diagnostic events with per-kind totals.

    Totals keep counting after old events fall out of the buffer.
    """

    def __init__(self, size: int = 200):
        self._events: Deque[DiagnosticEvent] = deque(maxlen=size)
        self._counts: Counter = Counter()

    def record(self, kind: str, message: str, t_ns: int = 0, **data) -> DiagnosticEvent:
        """Store an event and return it."""
        event = DiagnosticEvent(kind=kind, message=message, t_ns=t_ns, data=data)
        self._events.append(event)
        self._counts[kind] += 1
        return event

    def recent(self, kind: Optional[str] = None) -> List[DiagnosticEvent]:
        """Buffered events, oldest first, optionally of a single kind."""
        if kind is None:
            return list(self._events)
        return [e for e in self._events if e.kind == kind]

    def counts(self) -> Dict[str, int]:
        return dict(self._counts)

    def clear(self) -> None:
        self._events.clear()
        self._counts.clear()

    def __len__(self) -> int:
        return len(self._events)
