"""In-process message bus with bounded per-subscriber queues."""

from __future__ import annotations

import itertools
import threading
from collections import deque
from concurrent.futures import CancelledError
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterator


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


@dataclass
class Attachment:
    type: str = ""
    url: str = ""
    data: bytes = b""


@dataclass
class ToolCall:
    id: str = ""
    name: str = ""
    arguments: str = ""


@dataclass
class Envelope:
    """One message travelling across the bus."""

    id: str = ""
    client_id: str = ""
    thread_id: str = ""
    role: Role | str = ""
    text: str = ""
    attachments: list[Attachment] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str = ""
    source_protocol: str = ""
    meta: dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


INBOUND_KEY = "__inbound__"
DEFAULT_REPLY_PREFIX = "__reply__"

_reply_prefix_lock = threading.Lock()
_reply_prefix = DEFAULT_REPLY_PREFIX


class BackpressureError(Exception):
    """At least one subscriber queue is full."""

    def __init__(self, message: str = "bus backpressure: subscriber queue full") -> None:
        super().__init__(message)


def set_reply_prefix(prefix: str) -> None:
    """Set the prefix of reply keys; a blank prefix restores the default."""
    global _reply_prefix
    clean = (prefix or "").strip() or DEFAULT_REPLY_PREFIX
    with _reply_prefix_lock:
        _reply_prefix = clean


def reply_key(protocol: str) -> str:
    """Return the bus key replies for a protocol are published on."""
    with _reply_prefix_lock:
        prefix = _reply_prefix
    return f"{prefix}:{protocol}"


class Subscription:
    """A bounded queue receiving every envelope published on one key."""

    def __init__(self, key: str, capacity: int, bus: LocalBus, sub_id: int) -> None:
        self.key = key
        self.capacity = capacity
        self._bus = bus
        self._id = sub_id
        self._items: deque[Envelope] = deque()
        self._closed = False
        self._acked = 0
        self._cond = threading.Condition()

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    @property
    def acked(self) -> int:
        """Number of envelopes acknowledged so far."""
        with self._cond:
            return self._acked

    def _is_full(self) -> bool:
        with self._cond:
            return len(self._items) >= self.capacity

    def _offer(self, env: Envelope) -> bool:
        with self._cond:
            if self._closed or len(self._items) >= self.capacity:
                return False
            self._items.append(env)
            self._cond.notify()
            return True

    def _shutdown(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def get(self, timeout: float | None = None) -> Envelope | None:
        """Take the next envelope, or None once closed and drained.

        Raises TimeoutError when nothing arrives within ``timeout`` seconds.
        """
        with self._cond:
            ready = self._cond.wait_for(lambda: self._items or self._closed, timeout)
            if not ready:
                raise TimeoutError(f"no envelope on {self.key!r} within {timeout}s")
            if self._items:
                return self._items.popleft()
            return None

    def ack(self, env: Envelope) -> None:
        """Acknowledge an envelope; local delivery only counts acknowledgements."""
        if env is None:
            return
        with self._cond:
            self._acked += 1

    def close(self) -> None:
        """Detach from the bus and stop receiving."""
        self._bus._remove_subscriber(self.key, self._id)
        self._shutdown()

    def __iter__(self) -> Iterator[Envelope]:
        while (env := self.get()) is not None:
            yield env


class LocalBus:
    """Fan-out bus: every subscriber of a key gets every envelope on it."""

    def __init__(self, buf_size: int) -> None:
        self._buf_size = buf_size if buf_size > 0 else 1
        self._lock = threading.Lock()
        self._topics: dict[str, dict[int, Subscription]] = {}
        self._ids = itertools.count(1)

    def publish(self, key: str, env: Envelope | None, cancel: threading.Event | None = None) -> None:
        """Deliver ``env`` to every subscriber of ``key``.

        Nothing is delivered if any subscriber queue is full
        (BackpressureError) or ``cancel`` is already set (CancelledError).
        """
        if env is None:
            return
        if cancel is not None and cancel.is_set():
            raise CancelledError("publish cancelled")
        with self._lock:
            subs = list(self._topics.get(key, {}).values())
            if any(sub._is_full() for sub in subs):
                raise BackpressureError()
            for sub in subs:
                if not sub._offer(env):
                    raise BackpressureError()

    def subscribe(self, key: str) -> Subscription:
        """Start receiving envelopes published on ``key``."""
        return self.subscribe_queue(key)

    def subscribe_queue(self, key: str) -> Subscription:
        """Create a new independent subscription on ``key``."""
        with self._lock:
            sub = Subscription(key, self._buf_size, self, next(self._ids))
            self._topics.setdefault(key, {})[sub._id] = sub
        return sub

    def subscriber_count(self, key: str) -> int:
        with self._lock:
            return len(self._topics.get(key, {}))

    def unsubscribe(self, key: str) -> None:
        """Close and drop every subscription on ``key``."""
        with self._lock:
            subs = self._topics.pop(key, {})
        for sub in subs.values():
            sub._shutdown()

    def _remove_subscriber(self, key: str, sub_id: int) -> None:
        with self._lock:
            subs = self._topics.get(key)
            if subs is None:
                return
            subs.pop(sub_id, None)
            if not subs:
                del self._topics[key]