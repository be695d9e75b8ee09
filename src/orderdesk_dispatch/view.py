"""Client-side order view.

State is kept in two layers: the confirmed snapshot from the last poll and a
set of optimistic deltas keyed by order id. A delta overlays the snapshot
until a later snapshot confirms it, it expires, or the write behind it fails
and it is reverted.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from orderdesk_dispatch.schemas import Order, OrderPage, OrderStatsPerUser, OrderStatus, Pagination

logger = logging.getLogger("orderdesk_dispatch.view")


@dataclass(frozen=True)
class _OptimisticDelta:
    order: Order
    previous: Order | None
    expires_at: float
    written: bool = False


def _confirms(snapshot: Order, expected: Order) -> bool:
    return (
        snapshot.status == expected.status
        and snapshot.assigned_user_id == expected.assigned_user_id
        and (snapshot.started_at is None) == (expected.started_at is None)
        and (snapshot.completed_at is None) == (expected.completed_at is None)
    )


class OrderView:
    def __init__(self, *, ttl_seconds: float = 30.0, monotonic: Callable[[], float] = time.monotonic) -> None:
        self._ttl_seconds = ttl_seconds
        self._monotonic = monotonic
        self._lock = threading.RLock()
        self._order_ids: list[str] = []
        self._confirmed: dict[str, Order] = {}
        self._pagination = Pagination()
        self._deltas: dict[str, _OptimisticDelta] = {}
        self._stats: OrderStatsPerUser | None = None

    def orders(self) -> list[Order]:
        with self._lock:
            self._expire_deltas()
            return [self._visible(order_id) for order_id in self._order_ids]

    def get(self, order_id: str) -> Order | None:
        with self._lock:
            self._expire_deltas()
            delta = self._deltas.get(order_id)
            if delta is not None:
                return delta.order
            return self._confirmed.get(order_id)

    def confirmed(self, order_id: str) -> Order | None:
        with self._lock:
            return self._confirmed.get(order_id)

    @property
    def pagination(self) -> Pagination:
        with self._lock:
            return self._pagination

    @property
    def stats(self) -> OrderStatsPerUser | None:
        with self._lock:
            return self._stats

    def pending_delta_ids(self) -> list[str]:
        with self._lock:
            self._expire_deltas()
            return list(self._deltas)

    def replace_snapshot(self, page: OrderPage) -> None:
        """Install a poll result as the new confirmed layer."""
        with self._lock:
            self._order_ids = [order.id for order in page.data]
            self._confirmed = {order.id: order for order in page.data}
            self._pagination = page.pagination
            self._settle_deltas()

    def append_page(self, page: OrderPage) -> None:
        with self._lock:
            for order in page.data:
                if order.id not in self._confirmed:
                    self._order_ids.append(order.id)
                self._confirmed[order.id] = order
            self._pagination = page.pagination
            self._settle_deltas()

    def set_stats(self, stats: OrderStatsPerUser | None) -> None:
        with self._lock:
            self._stats = stats

    def apply_optimistic(self, order: Order, *, previous: Order | None) -> None:
        with self._lock:
            self._deltas[order.id] = _OptimisticDelta(
                order=order,
                previous=previous,
                expires_at=self._monotonic() + self._ttl_seconds,
            )

    def mark_written(self, order: Order) -> None:
        """Record the server's answer for a delta whose write succeeded."""
        with self._lock:
            delta = self._deltas.get(order.id)
            previous = delta.previous if delta is not None else None
            self._deltas[order.id] = _OptimisticDelta(
                order=order,
                previous=previous,
                expires_at=self._monotonic() + self._ttl_seconds,
                written=True,
            )

    def revert(self, order_id: str) -> Order | None:
        """Drop the delta for ``order_id``; returns the order now visible."""
        with self._lock:
            self._deltas.pop(order_id, None)
            return self._confirmed.get(order_id)

    def average_processing_seconds(self) -> int | None:
        durations = [
            order.estimated_completion_time
            for order in self.orders()
            if order.status == OrderStatus.DELIVERED and order.estimated_completion_time is not None
        ]
        if not durations:
            return None
        return sum(durations) // len(durations)

    def _visible(self, order_id: str) -> Order:
        delta = self._deltas.get(order_id)
        if delta is not None:
            return delta.order
        return self._confirmed[order_id]

    def _settle_deltas(self) -> None:
        now = self._monotonic()
        for order_id, delta in list(self._deltas.items()):
            snapshot = self._confirmed.get(order_id)
            if snapshot is not None and delta.written and _confirms(snapshot, delta.order):
                del self._deltas[order_id]
            elif delta.expires_at <= now:
                logger.info("optimistic change for order %s expired unconfirmed", order_id)
                del self._deltas[order_id]

    def _expire_deltas(self) -> None:
        now = self._monotonic()
        for order_id, delta in list(self._deltas.items()):
            if delta.expires_at <= now:
                del self._deltas[order_id]
