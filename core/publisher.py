# core/publisher.py
# Last-value publisher with explicit unsubscribe handles, plus per-frame coalescing.
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Generic, List, Optional, TypeVar

T = TypeVar("T")

Callback = Callable[[T], None]
Unsubscribe = Callable[[], None]

_LOG = logging.getLogger(__name__)


class Publisher(Generic[T]):
    """
    Holds one cached value and a slot arena of subscriber callbacks.

    - subscribe() replays the cached value immediately, so late subscribers
      are never left without one.
    - The returned handle frees the slot by index; calling it twice is a no-op.
    - Values are replaced wholesale; publish() never mutates the previous value.
    - Replay and publish are serialized, so a subscriber never receives a
      stale value after a newer one.
    """

    def __init__(self, initial: T, name: str = "publisher"):
        self.name = name
        self._value: T = initial
        self._slots: List[Optional[Callback]] = []
        self._free: List[int] = []
        self._lock = threading.Lock()
        # Re-entrant: a subscriber may publish again from inside its callback.
        self._delivery = threading.RLock()

    def current(self) -> T:
        return self._value

    def subscribe(self, fn: Callback) -> Unsubscribe:
        with self._delivery:
            with self._lock:
                if self._free:
                    idx = self._free.pop()
                    self._slots[idx] = fn
                else:
                    idx = len(self._slots)
                    self._slots.append(fn)
            self._deliver(fn, self._value)

        released = threading.Event()

        def unsubscribe() -> None:
            if released.is_set():
                return
            released.set()
            with self._lock:
                self._slots[idx] = None
                self._free.append(idx)

        return unsubscribe

    def publish(self, value: T) -> None:
        with self._delivery:
            with self._lock:
                self._value = value
                targets = [fn for fn in self._slots if fn is not None]
            for fn in targets:
                self._deliver(fn, value)

    def subscriber_count(self) -> int:
        with self._lock:
            return sum(1 for fn in self._slots if fn is not None)

    def _deliver(self, fn: Callback, value: T) -> None:
        # Keep producers flowing; a broken consumer only loses its own update.
        try:
            fn(value)
        except Exception:
            _LOG.exception("Subscriber of %s raised", self.name)


class FrameCoalescer(Generic[T]):
    """
    Last-value-wins hand-off between a fast producer and the animation frame.

    offer() may be called at any rate; flush() publishes at most one value per
    call (the newest), superseded values are dropped and counted.
    """

    def __init__(self, publisher: Publisher[T]):
        self._publisher = publisher
        self._pending: Optional[T] = None
        self._has_pending = False
        self._lock = threading.Lock()
        self.dropped = 0

    def offer(self, value: T) -> None:
        with self._lock:
            if self._has_pending:
                self.dropped += 1
                _LOG.debug("Superseded frame dropped on %s", self._publisher.name)
            self._pending = value
            self._has_pending = True

    def flush(self) -> bool:
        with self._lock:
            if not self._has_pending:
                return False
            value = self._pending
            self._pending = None
            self._has_pending = False
        self._publisher.publish(value)
        return True

    def clear(self) -> None:
        with self._lock:
            self._pending = None
            self._has_pending = False


class FrameClock:
    """
    Background ticker that calls `tick` at a steady rate (the animation frame).
    Paced like a fixture worker: measure work time, sleep the remainder.
    """

    def __init__(self, tick: Callable[[], object], fps: float = 60.0, name: str = "FrameClock"):
        self._tick_fn = tick
        self._period = 1.0 / float(max(1.0, fps))
        self._name = name
        self._run_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._run_event.set()
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()

    def stop(self, join: bool = True) -> None:
        self._run_event.clear()
        if join and self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while self._run_event.is_set():
            t0 = time.monotonic()
            try:
                self._tick_fn()
            except Exception:
                _LOG.exception("%s tick failed", self._name)
            dt = time.monotonic() - t0
            time.sleep(max(0.0, self._period - dt))
