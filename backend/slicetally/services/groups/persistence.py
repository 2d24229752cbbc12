"""Debounced JSON snapshots of the group store.

Durability is advisory: the in-memory store is authoritative while the
process runs. Write failures are logged and never reach the caller that
triggered them, and a missing or corrupt file at startup means an empty
store.
"""

import json
import logging
import os
import tempfile
import threading
import time

from slicetally.errors import Internal
from slicetally.services.groups.store import GroupChange


def empty_state():
    return {'groups': {}}


def _start_thread(fn):
    thread = threading.Thread(target=fn, name='snapshot-writer', daemon=True)
    thread.start()
    return thread


class SnapshotWriter:
    def __init__(self, path, snapshot, debounce_ms=250, start_task=None, logger=None):
        self.path = path
        self.snapshot = snapshot
        self.debounce = max(0, int(debounce_ms)) / 1000.0
        self.start_task = start_task or _start_thread
        self.logger = logger or logging.getLogger(__name__)
        self.writes = 0
        self.failures = 0
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        # True while a writer task is alive; at most one at a time
        self._pending = False
        # Monotonic time of the oldest trigger not yet covered by a write
        self._requested_at = None
        self._idle = threading.Event()
        self._idle.set()

    @property
    def enabled(self):
        return bool(self.path)

    def on_change(self, change: GroupChange) -> None:
        self.schedule_snapshot()

    def schedule_snapshot(self) -> None:
        """Request a write. Calls inside the debounce window coalesce into one.

        The window opens at the first unwritten trigger and is never extended,
        so sustained traffic still produces a write every `debounce` seconds.
        """
        if not self.enabled:
            return
        with self._lock:
            if self._requested_at is None:
                self._requested_at = time.monotonic()
            if self._pending:
                return
            self._pending = True
            self._idle.clear()
        try:
            self.start_task(self._run)
        except Exception:
            self.logger.exception('[persist-error] could not start snapshot writer')
            with self._lock:
                self._pending = False
                self._idle.set()

    def _run(self):
        while True:
            with self._lock:
                requested = self._requested_at
                if requested is None:
                    self._pending = False
                    self._idle.set()
                    return
                remaining = requested + self.debounce - time.monotonic()
                if remaining <= 0:
                    self._requested_at = None
            if remaining > 0:
                time.sleep(remaining)
                continue
            self._write()

    def _write(self) -> bool:
        with self._write_lock:
            try:
                document = self.snapshot()
                directory = os.path.dirname(os.path.abspath(self.path))
                os.makedirs(directory, exist_ok=True)
                fd, tmp_path = tempfile.mkstemp(prefix='.snapshot-', suffix='.json', dir=directory)
                try:
                    with os.fdopen(fd, 'w', encoding='utf-8') as fh:
                        json.dump(document, fh, indent=2)
                    os.replace(tmp_path, self.path)
                except BaseException:
                    if os.path.exists(tmp_path):
                        os.unlink(tmp_path)
                    raise
            except Exception as exc:
                self.failures += 1
                err = Internal(f"snapshot write to {self.path} failed: {exc}")
                self.logger.error(f"[persist-error] {err.message}", exc_info=True)
                return False
            self.writes += 1
        self.logger.info(f"[persist-write] groups={len(document.get('groups', {}))} path={self.path}")
        return True

    def flush(self) -> bool:
        """Write synchronously now, absorbing any pending request."""
        if not self.enabled:
            return False
        with self._lock:
            self._requested_at = None
        return self._write()

    def wait_idle(self, timeout=None) -> bool:
        return self._idle.wait(timeout)

    def load_on_startup(self) -> dict:
        if not self.enabled:
            return empty_state()
        try:
            with open(self.path, encoding='utf-8') as fh:
                document = json.load(fh)
        except FileNotFoundError:
            self.logger.info(f"[persist-load] no snapshot at {self.path}, starting empty")
            return empty_state()
        except (OSError, ValueError) as exc:
            self.logger.warning(f"[persist-load] unreadable snapshot {self.path}: {exc}; starting empty")
            return empty_state()
        if not isinstance(document, dict) or not isinstance(document.get('groups'), dict):
            self.logger.warning(f"[persist-load] malformed snapshot {self.path}; starting empty")
            return empty_state()
        return document
