"""
Run-scoped event capture
========================
Console and network observations are appended to an EventLedger that is
created once per run and handed to every component that needs evidence.

Readers never iterate the live store. They take a marker before a test
(`mark()`) and snapshot what arrived after it (`since(marker)`), so a signal
from one test cannot be attributed to another.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Tuple, Callable, Any


@dataclass(frozen=True)
class ConsoleEvent:
    """A console message or uncaught page error"""
    kind: str            # error, warning, pageerror, dialog
    text: str
    url: str = ""
    role: str = ""
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class NetworkCapture:
    """One observed request/response pair"""
    url: str
    method: str
    status: int = 0
    headers: Dict[str, str] = field(default_factory=dict)
    content_type: str = ""
    post_data: Optional[str] = None
    role: str = ""
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class EventLedger:
    """
    Append-only event log with sequence-number markers.

    With a capacity, the oldest entries are evicted once the cap is reached;
    sequence numbers keep growing so markers stay valid after eviction.
    """

    def __init__(self, capacity: Optional[int] = None):
        self._lock = threading.Lock()
        self._entries: deque = deque(maxlen=capacity)
        self._next_seq = 0
        self.capacity = capacity

    def append(self, event) -> int:
        with self._lock:
            seq = self._next_seq
            self._entries.append((seq, event))
            self._next_seq += 1
            return seq

    def mark(self) -> int:
        """Marker for "everything appended from now on"."""
        with self._lock:
            return self._next_seq

    def since(self, marker: int, predicate: Callable = None) -> Tuple:
        with self._lock:
            snapshot = [e for seq, e in self._entries if seq >= marker]
        if predicate:
            snapshot = [e for e in snapshot if predicate(e)]
        return tuple(snapshot)

    def tail(self, n: int, predicate: Callable = None) -> Tuple:
        if n <= 0:
            return ()
        with self._lock:
            snapshot = [e for _, e in self._entries]
        if predicate:
            snapshot = [e for e in snapshot if predicate(e)]
        return tuple(snapshot[-n:])

    def snapshot(self) -> Tuple:
        with self._lock:
            return tuple(e for _, e in self._entries)

    @property
    def total_appended(self) -> int:
        with self._lock:
            return self._next_seq

    @property
    def evicted(self) -> int:
        with self._lock:
            return self._next_seq - len(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def for_role(role: str) -> Callable:
    """Predicate selecting events recorded for one role"""
    return lambda e: e.role == role


def is_error(event: ConsoleEvent) -> bool:
    return event.kind in ("error", "pageerror")
