"""
Deferred and recurring task runner.

Every pending task is addressed by a ``(kind, entity_id)`` key. Scheduling a
key that is already pending replaces the old handle, and all of an entity's
tasks can be dropped at once when it reaches a terminal state. Tasks run in
a daemon ``threading.Timer`` inside the Flask application context.
"""
import logging
import threading
from typing import Callable, Dict, Hashable, Tuple

logger = logging.getLogger(__name__)


class Scheduler:

    def __init__(self, app=None):
        self.app = app
        self._handles: Dict[Hashable, threading.Timer] = {}
        self._lock = threading.Lock()
        self._stopped = False

    def init_app(self, app):
        self.app = app

    def schedule(self, key: Tuple[str, str], delay: float, fn: Callable, *args):
        """Run ``fn(*args)`` once after ``delay`` seconds."""
        timer = threading.Timer(delay, self._run, args=(key, fn, args))
        timer.daemon = True

        with self._lock:
            if self._stopped:
                return
            previous = self._handles.pop(key, None)
            if previous is not None:
                previous.cancel()
            self._handles[key] = timer
        timer.start()

    def every(self, key: Tuple[str, str], interval: float, fn: Callable):
        """Run ``fn()`` every ``interval`` seconds until cancelled."""
        def tick():
            try:
                fn()
            finally:
                self.schedule(key, interval, tick)

        self.schedule(key, interval, tick)

    def cancel(self, key) -> bool:
        with self._lock:
            timer = self._handles.pop(key, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def cancel_entity(self, entity_id: str) -> int:
        """Drop every pending task that belongs to ``entity_id``."""
        with self._lock:
            keys = [k for k in self._handles if isinstance(k, tuple) and k[1] == entity_id]
            timers = [self._handles.pop(k) for k in keys]
        for timer in timers:
            timer.cancel()
        if timers:
            logger.debug(f"Cancelled {len(timers)} pending task(s) for {entity_id}")
        return len(timers)

    def pending(self, key) -> bool:
        with self._lock:
            return key in self._handles

    def stop(self):
        with self._lock:
            self._stopped = True
            timers = list(self._handles.values())
            self._handles.clear()
        for timer in timers:
            timer.cancel()

    def _run(self, key, fn: Callable, args: tuple):
        with self._lock:
            if self._handles.get(key) is threading.current_thread():
                del self._handles[key]

        try:
            with self.app.app_context():
                fn(*args)
        except Exception as e:
            logger.exception(f"Scheduled task {key} failed: {e}")
