"""
Viewport state and debounced re-clustering.

A burst of pan/zoom events must produce exactly one cluster query, using the
viewport as it stood after the last event. ``Debouncer`` is the cancellable
timer that enforces this; ``ViewportController`` owns one and the latest
viewport state.
"""
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, Tuple

from config import VIEWPORT_DEBOUNCE_MS


@dataclass(frozen=True)
class BoundingBox:
    west: float
    south: float
    east: float
    north: float

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return (self.west, self.south, self.east, self.north)

    def contains(self, other: 'BoundingBox') -> bool:
        return (self.west <= other.west and self.south <= other.south and
                self.east >= other.east and self.north >= other.north)

    @property
    def center(self) -> Tuple[float, float]:
        """(lat, lon) of the box centre."""
        return ((self.south + self.north) / 2, (self.west + self.east) / 2)


@dataclass(frozen=True)
class ViewportState:
    bbox: BoundingBox
    zoom: int

    def to_dict(self) -> dict:
        return {
            'bounds': {'west': self.bbox.west, 'south': self.bbox.south,
                       'east': self.bbox.east, 'north': self.bbox.north},
            'zoom': self.zoom,
        }


class TimerHandle(Protocol):
    def cancel(self) -> Any: ...


class Scheduler(Protocol):
    """Anything that can run a callback later; an asyncio event loop qualifies."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class TimerScheduler:
    """Scheduler backed by daemon ``threading.Timer`` threads."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> threading.Timer:
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        timer.start()
        return timer


class Debouncer:
    """
    Single-owner cancellable timer: each call cancels the pending run and
    schedules a new one ``delay`` seconds out. Only the last call in a burst
    reaches ``callback``.
    """

    def __init__(self, delay: float, callback: Callable[[], None], scheduler: Scheduler):
        self.delay = delay
        self._callback = callback
        self._scheduler = scheduler
        self._lock = threading.Lock()
        self._pending: Optional[TimerHandle] = None
        self._generation = 0

    @property
    def pending(self) -> bool:
        return self._pending is not None

    def __call__(self) -> None:
        with self._lock:
            if self._pending is not None:
                self._pending.cancel()
            self._generation += 1
            generation = self._generation
            self._pending = self._scheduler.call_later(self.delay, lambda: self._fire(generation))

    def cancel(self) -> None:
        with self._lock:
            if self._pending is not None:
                self._pending.cancel()
            self._pending = None
            self._generation += 1

    def _fire(self, generation: int) -> None:
        with self._lock:
            # A timer thread can start just as it is cancelled
            if generation != self._generation:
                return
            self._pending = None
        self._callback()


class ViewportController:
    """Tracks the latest viewport and triggers ``on_change`` once per burst of events."""

    def __init__(self, on_change: Callable[[ViewportState], None],
                 scheduler: Optional[Scheduler] = None,
                 debounce_ms: int = VIEWPORT_DEBOUNCE_MS):
        self._on_change = on_change
        self._state: Optional[ViewportState] = None
        self._debouncer = Debouncer(debounce_ms / 1000.0, self._render, scheduler or TimerScheduler())

    @property
    def state(self) -> Optional[ViewportState]:
        return self._state

    @property
    def pending(self) -> bool:
        return self._debouncer.pending

    def viewport_changed(self, bbox: BoundingBox, zoom: int) -> None:
        self._state = ViewportState(bbox=bbox, zoom=int(zoom))
        self._debouncer()

    def refresh(self) -> None:
        """Render the latest viewport now, dropping any pending debounced render."""
        self._debouncer.cancel()
        self._render()

    def _render(self) -> None:
        state = self._state
        if state is not None:
            self._on_change(state)
