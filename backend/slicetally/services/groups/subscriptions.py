"""Live push channels per group.

Channels are push-only sinks and must never block: the SSE channel buffers
into a bounded queue and the Socket.IO channel hands the payload to the
Socket.IO server. Deliveries for one group are serialized by a per-group
publish lock, and each channel drops projections that are not newer than the
last one it accepted, so every subscriber sees versions in increasing order.
"""

import itertools
import logging
import queue
import threading
from typing import Dict, Optional

from slicetally.models import normalize_code


class ChannelClosed(Exception):
    """Raised when sending to, or reading from, a closed channel."""


_CLOSED = object()


class Channel:
    def __init__(self):
        self.last_version = -1
        self.closed = False

    def send(self, projection) -> bool:
        """Deliver ``projection``. Returns False when it was stale and skipped."""
        if self.closed:
            raise ChannelClosed()
        version = int(projection.get('version', 0))
        if version <= self.last_version:
            return False
        self.last_version = version
        self._deliver(projection)
        return True

    def _deliver(self, projection):
        raise NotImplementedError

    def close(self):
        self.closed = True


class QueueChannel(Channel):
    """Bounded buffer drained by a streaming HTTP response."""

    def __init__(self, maxsize=32):
        super().__init__()
        self._queue = queue.Queue(maxsize=max(1, maxsize))

    def _put(self, item):
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except queue.Full:
                # Every projection is a full snapshot, so the oldest one is expendable
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    pass

    def _deliver(self, projection):
        self._put(projection)

    def get(self, timeout=None):
        """Next projection, or None if ``timeout`` elapsed first."""
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            raise ChannelClosed()
        return item

    def close(self):
        if not self.closed:
            super().close()
            self._put(_CLOSED)


class SocketIOChannel(Channel):
    """Emits projections to a single Socket.IO session."""

    def __init__(self, socketio, sid, namespace='/ws', event='group_state'):
        super().__init__()
        self.socketio = socketio
        self.sid = sid
        self.namespace = namespace
        self.event = event

    def _deliver(self, projection):
        self.socketio.emit(self.event, projection, to=self.sid, namespace=self.namespace)


class Subscription:
    __slots__ = ('id', 'code', 'channel', 'participant_id')

    def __init__(self, id, code, channel, participant_id=None):
        self.id = id
        self.code = code
        self.channel = channel
        self.participant_id = participant_id

    def __repr__(self):
        return f"<Subscription {self.id} code={self.code} participant={self.participant_id}>"


class SubscriptionRegistry:
    def __init__(self, logger=None):
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._subs: Dict[str, Dict[int, Subscription]] = {}
        self._publish_locks: Dict[str, threading.RLock] = {}
        self._ids = itertools.count(1)

    def _publish_lock(self, code):
        with self._lock:
            lock = self._publish_locks.get(code)
            if lock is None:
                lock = self._publish_locks[code] = threading.RLock()
            return lock

    def subscribe(self, code, channel, initial=None, participant_id=None) -> Subscription:
        """Register ``channel`` for ``code`` and push ``initial`` to it first.

        ``initial`` may be a projection or a callable returning one; a
        callable is evaluated under the publish lock, so no publish can slip
        between the snapshot and the registration. Errors from ``initial``
        propagate and leave nothing registered.
        """
        code = normalize_code(code)
        sub = Subscription(next(self._ids), code, channel, participant_id)
        with self._publish_lock(code):
            if initial is not None:
                projection = initial() if callable(initial) else initial
                channel.send(projection)
            with self._lock:
                self._subs.setdefault(code, {})[sub.id] = sub
                total = len(self._subs[code])
        self.logger.info(f"[subscribe] code={code} sub={sub.id} participant={participant_id} total={total}")
        return sub

    def unsubscribe(self, sub: Subscription) -> bool:
        with self._lock:
            subs = self._subs.get(sub.code)
            removed = subs is not None and subs.pop(sub.id, None) is not None
            if subs is not None and not subs:
                del self._subs[sub.code]
        sub.channel.close()
        if removed:
            self.logger.info(f"[unsubscribe] code={sub.code} sub={sub.id}")
        return removed

    def publish(self, code, projection) -> int:
        """Deliver to every channel of ``code``. Failing channels are dropped."""
        code = normalize_code(code)
        delivered = 0
        dead = []
        with self._publish_lock(code):
            with self._lock:
                subs = list(self._subs.get(code, {}).values())
            for sub in subs:
                try:
                    if sub.channel.send(projection):
                        delivered += 1
                except Exception as exc:
                    self.logger.warning(f"[channel-drop] code={code} sub={sub.id} error={exc!r}")
                    dead.append(sub)
        for sub in dead:
            self.unsubscribe(sub)
        return delivered

    def subscriber_count(self, code: Optional[str] = None) -> int:
        with self._lock:
            if code is None:
                return sum(len(s) for s in self._subs.values())
            return len(self._subs.get(normalize_code(code), {}))

    def has_participant(self, code, participant_id) -> bool:
        """True while any live subscription of ``code`` belongs to ``participant_id``."""
        with self._lock:
            return any(
                s.participant_id == participant_id
                for s in self._subs.get(normalize_code(code), {}).values()
            )

    def close_all(self) -> None:
        with self._lock:
            subs = [s for group in self._subs.values() for s in group.values()]
            self._subs.clear()
        for sub in subs:
            sub.channel.close()
