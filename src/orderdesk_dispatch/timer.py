from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from orderdesk_dispatch.schemas import Order

logger = logging.getLogger("orderdesk_dispatch.timer")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def processing_seconds(
    started_at: datetime | None,
    completed_at: datetime | None = None,
    *,
    now: datetime | None = None,
) -> int:
    """Whole seconds between ``started_at`` and ``completed_at`` (or now).

    Returns 0 for orders that never started. Clock skew that would yield a
    negative duration is clamped to 0.
    """
    if started_at is None:
        return 0
    end = completed_at if completed_at is not None else (now or utc_now())
    elapsed = (_as_utc(end) - _as_utc(started_at)) // timedelta(seconds=1)
    return max(0, elapsed)


def order_processing_seconds(order: Order, *, now: datetime | None = None) -> int:
    return processing_seconds(order.started_at, order.completed_at, now=now)


def format_duration(seconds: int | None) -> str:
    if not seconds:
        return "0s"
    hours, remainder = divmod(int(seconds), 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


class ProcessingClock:
    """Ticking elapsed-time value for one open order.

    While the order has ``started_at`` and no ``completed_at`` the value is
    recomputed once per ``tick_seconds``; :meth:`freeze` pins it to the
    completion time and stops the ticker.
    """

    def __init__(
        self,
        order: Order,
        *,
        clock: Clock = utc_now,
        on_tick: Callable[[int], None] | None = None,
        tick_seconds: float = 1.0,
    ) -> None:
        self._order_id = order.id
        self._started_at = order.started_at
        self._completed_at = order.completed_at
        self._clock = clock
        self._on_tick = on_tick
        self._tick_seconds = tick_seconds
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._value = self._compute()

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def is_open(self) -> bool:
        with self._lock:
            return self._started_at is not None and self._completed_at is None

    def tick(self) -> int:
        with self._lock:
            self._value = self._compute()
            value = self._value
        if self._on_tick is not None:
            self._on_tick(value)
        return value

    def start(self) -> None:
        if not self.is_open or self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run,
            name=f"processing-clock-{self._order_id}",
            daemon=True,
        )
        self._thread.start()

    def freeze(self, completed_at: datetime) -> int:
        with self._lock:
            self._completed_at = completed_at
            self._value = self._compute()
            value = self._value
        self.stop()
        logger.debug("processing clock for order %s frozen at %ss", self._order_id, value)
        return value

    def stop(self) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self._tick_seconds * 2)
        self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self._tick_seconds):
            if not self.is_open:
                return
            self.tick()

    def _compute(self) -> int:
        return processing_seconds(self._started_at, self._completed_at, now=self._clock())
