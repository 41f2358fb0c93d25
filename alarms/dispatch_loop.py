from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from threading import Event as ThreadEvent, Lock, Thread, current_thread
from typing import Callable, Deque, Optional, Union

from .event import Event

logger = logging.getLogger(__name__)


class EventFunction(Enum):
    # Existing events: act only if due.
    HANDLE = "handle"
    # Existing events: act even if not due. New events: execute once.
    TRIGGER = "trigger"
    # Existing events: remove without executing. New events: discard.
    CANCEL = "cancel"
    # New events: add to the calendar.
    INSERT = "insert"


@dataclass
class QueueEntry:
    function: EventFunction
    event: Optional[Event] = None
    event_id: Optional[str] = None

    @property
    def is_new(self) -> bool:
        return self.event_id is None


@dataclass
class Continuation:
    """Work resumed on the loop after an external completion, e.g. a command exit."""

    callback: Callable[[], None]
    description: str = ""


QueueItem = Union[QueueEntry, Continuation]


class DispatchLoop:
    """Serialized FIFO work queue.

    Only one drain pass is active at a time. Work posted while a pass is
    running is appended and handled by that same pass, never run inline.
    """

    def __init__(
        self,
        process_entry: Callable[[QueueEntry], None],
        before_drain: Optional[Callable[[], None]] = None,
        after_drain: Optional[Callable[[], None]] = None,
        idle_timeout: float = 1.0,
    ):
        self.process_entry = process_entry
        self.before_drain = before_drain
        self.after_drain = after_drain
        self.idle_timeout = idle_timeout
        self._queue: Deque[QueueItem] = deque()
        self._lock = Lock()
        self._draining = False
        self._enabled = True
        self._wakeup = ThreadEvent()
        self._stop_event = ThreadEvent()
        self._thread: Optional[Thread] = None

    @property
    def draining(self) -> bool:
        with self._lock:
            return self._draining

    def pending_count(self) -> int:
        with self._lock:
            return len(self._queue)

    def post(self, item: QueueItem) -> None:
        with self._lock:
            self._queue.append(item)
        self._wakeup.set()

    def disable(self) -> None:
        """Refuse all further processing; queued work is dropped."""
        with self._lock:
            self._enabled = False
            dropped = len(self._queue)
            self._queue.clear()
        if dropped:
            logger.warning("Dispatch loop disabled, dropped %s queued items", dropped)

    def drain(self) -> bool:
        """Process queued work until none remains.

        Returns False without doing anything if a pass is already active.
        """
        with self._lock:
            if self._draining or not self._enabled:
                return False
            self._draining = True
        finished = False
        try:
            while True:
                self._run_hook(self.before_drain)
                while True:
                    item = self._pop()
                    if item is None:
                        break
                    self._process(item)
                self._run_hook(self.after_drain)
                with self._lock:
                    if not self._queue or not self._enabled:
                        self._draining = False
                        finished = True
                        return True
        finally:
            if not finished:
                with self._lock:
                    self._draining = False

    def _pop(self) -> Optional[QueueItem]:
        with self._lock:
            if not self._enabled or not self._queue:
                return None
            return self._queue.popleft()

    def _process(self, item: QueueItem) -> None:
        try:
            if isinstance(item, Continuation):
                logger.debug("Running continuation %s", item.description or item.callback)
                item.callback()
            else:
                self.process_entry(item)
        except Exception:
            logger.error("Failed to process queued item %r", item, exc_info=True)

    @staticmethod
    def _run_hook(hook: Optional[Callable[[], None]]) -> None:
        if hook is None:
            return
        try:
            hook()
        except Exception:
            logger.error("Dispatch loop hook failed", exc_info=True)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = Thread(target=self.run_forever, name="alarm-dispatch", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop_event.set()
        self._wakeup.set()
        thread = self._thread
        self._thread = None
        if thread is not None and thread.is_alive() and thread is not current_thread():
            thread.join(timeout=timeout)

    @property
    def in_loop_thread(self) -> bool:
        return self._thread is not None and current_thread() is self._thread

    def run_forever(self) -> None:
        while not self._stop_event.is_set():
            self._wakeup.wait(self.idle_timeout)
            self._wakeup.clear()
            if self._stop_event.is_set():
                break
            self.drain()
