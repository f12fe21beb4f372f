"""Room-scoped fan-out of outbound events.

Game code never talks to the socket server directly. It hands frames to the
dispatcher while holding a game's lock; frames are queued per connection and
only delivered by ``flush()``, which callers run after releasing the lock.
One flush runs at a time, so each connection sees frames in the order they
were queued.
"""

import threading
from collections import deque
from typing import Deque, Dict, Iterable, List, Optional, Set

STATE = 0
CHATTER = 1

COALESCED_EVENTS = frozenset({'answer-count', 'proposal-updated'})


class Frame:
    __slots__ = ('event', 'payload', 'priority')

    def __init__(self, event: str, payload: dict, priority: int = STATE):
        self.event = event
        self.payload = payload
        self.priority = priority

    def __repr__(self):
        return f"Frame({self.event!r})"


class BroadcastDispatcher:
    def __init__(self, transport, timers, logger, coalesce_ms: int = 20, queue_limit: int = 256):
        self.transport = transport
        self.timers = timers
        self.logger = logger
        self.coalesce_sec = max(0, coalesce_ms) / 1000.0
        self.queue_limit = queue_limit
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._connections: Set[str] = set()
        self._conn_room: Dict[str, str] = {}
        self._rooms: Dict[str, Set[str]] = {}
        self._queues: Dict[str, Deque[Frame]] = {}
        self._pending: Dict[str, Dict[str, dict]] = {}
        self._overflowed: Set[str] = set()

    @staticmethod
    def room_name(pin: str) -> str:
        return f"game-{pin}"

    # ---- membership ----

    def connect(self, conn: str) -> None:
        with self._lock:
            self._connections.add(conn)

    def disconnect(self, conn: str) -> None:
        with self._lock:
            self._connections.discard(conn)
            room = self._conn_room.pop(conn, None)
            if room is not None:
                self._rooms.get(room, set()).discard(conn)
            self._queues.pop(conn, None)
            self._overflowed.discard(conn)

    def join(self, pin: str, conn: str) -> None:
        room = self.room_name(pin)
        with self._lock:
            previous = self._conn_room.get(conn)
            if previous is not None and previous != room:
                self._rooms.get(previous, set()).discard(conn)
            self._conn_room[conn] = room
            self._rooms.setdefault(room, set()).add(conn)

    def leave(self, pin: str, conn: str) -> None:
        room = self.room_name(pin)
        with self._lock:
            self._rooms.get(room, set()).discard(conn)
            if self._conn_room.get(conn) == room:
                del self._conn_room[conn]

    def close_room(self, pin: str) -> List[str]:
        """Forget a room; queued frames for its members are still delivered."""
        room = self.room_name(pin)
        self.timers.cancel(('coalesce', pin))
        with self._lock:
            self._materialize_locked(pin)
            members = self._rooms.pop(room, set())
            for conn in members:
                if self._conn_room.get(conn) == room:
                    del self._conn_room[conn]
        return sorted(members)

    def members(self, pin: str) -> List[str]:
        with self._lock:
            return sorted(self._rooms.get(self.room_name(pin), set()))

    def room_of(self, conn: str) -> Optional[str]:
        with self._lock:
            return self._conn_room.get(conn)

    def rooms(self) -> List[str]:
        with self._lock:
            return [r for r, m in self._rooms.items() if m]

    # ---- sending ----

    def send_to_room(self, pin: str, event: str, payload: dict, priority: int = STATE,
                     exclude: Optional[str] = None) -> None:
        with self._lock:
            self._materialize_locked(pin)
            for conn in self._rooms.get(self.room_name(pin), ()):
                if conn != exclude:
                    self._enqueue_locked(conn, Frame(event, payload, priority))

    def send_to_conn(self, conn: str, event: str, payload: dict, priority: int = STATE) -> None:
        with self._lock:
            self._enqueue_locked(conn, Frame(event, payload, priority))

    def send_to_conns(self, conns: Iterable[str], event: str, payload: dict) -> None:
        with self._lock:
            for conn in conns:
                self._enqueue_locked(conn, Frame(event, payload))

    def send_to_idle(self, event: str, payload: dict, exclude: Optional[str] = None) -> None:
        """Send to connections that are not in any game room."""
        with self._lock:
            for conn in self._connections:
                if conn != exclude and conn not in self._conn_room:
                    self._enqueue_locked(conn, Frame(event, payload))

    def coalesce(self, pin: str, event: str, payload: dict) -> None:
        """Queue a state delta that may be replaced by a newer one within the window."""
        if self.coalesce_sec <= 0:
            self.send_to_room(pin, event, payload)
            return
        with self._lock:
            room_pending = self._pending.setdefault(pin, {})
            first = not room_pending
            room_pending[event] = payload
        if first:
            self.timers.schedule(('coalesce', pin), self.coalesce_sec, lambda: self._release(pin))

    def _release(self, pin: str) -> None:
        with self._lock:
            self._materialize_locked(pin)
        self.flush()

    def _materialize_locked(self, pin: str) -> None:
        room_pending = self._pending.pop(pin, None)
        if not room_pending:
            return
        self.timers.cancel(('coalesce', pin))
        members = self._rooms.get(self.room_name(pin), ())
        for event, payload in room_pending.items():
            for conn in members:
                self._enqueue_locked(conn, Frame(event, payload))

    def _enqueue_locked(self, conn: str, frame: Frame) -> None:
        if conn in self._overflowed:
            return
        queue = self._queues.setdefault(conn, deque())
        if len(queue) >= self.queue_limit:
            victim = next((f for f in queue if f.priority == CHATTER), None)
            if victim is not None:
                queue.remove(victim)
            elif frame.priority == CHATTER:
                return
            else:
                # A state frame cannot be delivered; the connection is dropped.
                self._overflowed.add(conn)
                queue.clear()
                return
        queue.append(frame)

    def flush(self) -> int:
        sent = 0
        with self._flush_lock:
            with self._lock:
                batch = [(conn, list(q)) for conn, q in self._queues.items() if q]
                self._queues = {}
                dropped = list(self._overflowed)
                self._overflowed.clear()
            for conn, frames in batch:
                for frame in frames:
                    try:
                        self.transport.emit(frame.event, frame.payload, to=conn)
                        sent += 1
                    except Exception:
                        self.logger.exception(f"[broadcast-error] conn={conn} event={frame.event}")
            for conn in dropped:
                self.logger.warning(f"[broadcast-overflow] conn={conn} dropped")
                try:
                    self.transport.disconnect(conn)
                except Exception:
                    self.logger.exception(f"[broadcast-error] conn={conn} disconnect failed")
        return sent

    def flush_all(self) -> int:
        with self._lock:
            for pin in list(self._pending):
                self._materialize_locked(pin)
        return self.flush()

    def stats(self) -> dict:
        with self._lock:
            return {
                'connections': len(self._connections),
                'rooms': len([r for r in self._rooms.values() if r]),
                'queuedFrames': sum(len(q) for q in self._queues.values()),
                'queues': len(self._queues),
            }
