from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from datetime import datetime

from orderdesk_dispatch.capacity import WorkerCapacityTracker
from orderdesk_dispatch.config import DispatchSettings
from orderdesk_dispatch.dispatch import DispatchCoordinator
from orderdesk_dispatch.errors import NotFoundError
from orderdesk_dispatch.poller import PollScope, SyncPoller
from orderdesk_dispatch.remote_client import HttpOrderBackend, OrderBackend
from orderdesk_dispatch.schemas import (
    ActingIdentity,
    Order,
    OrderPage,
    OrderStatus,
    OrderViewRead,
    ProcessingTimeRead,
    Worker,
)
from orderdesk_dispatch.store import InMemoryOrderStore
from orderdesk_dispatch.timer import ProcessingClock, format_duration, order_processing_seconds, utc_now
from orderdesk_dispatch.view import OrderView

logger = logging.getLogger("orderdesk_dispatch.console")


class DispatchConsole:
    """Wires the view, worker roster, coordinator and poller for one session."""

    def __init__(
        self,
        backend: OrderBackend,
        *,
        settings: DispatchSettings | None = None,
        workers: Iterable[Worker] = (),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings or DispatchSettings()
        self.backend = backend
        self._clock = clock
        self.view = OrderView(ttl_seconds=self.settings.optimistic_ttl_seconds)
        self.tracker = WorkerCapacityTracker(
            workers,
            default_cap=self.settings.default_max_concurrent_orders,
            clock=clock,
        )
        self.coordinator = DispatchCoordinator(
            backend,
            self.tracker,
            self.view,
            permission_mode=self.settings.permission_mode,
            clock=clock,
        )
        self.poller = SyncPoller(
            backend,
            self.view,
            interval_seconds=self.settings.poll_interval_seconds,
            on_applied=self._refresh_clocks,
        )
        self._clocks: dict[str, ProcessingClock] = {}
        self._clocks_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: DispatchSettings) -> "DispatchConsole":
        if settings.api_base_url:
            backend: OrderBackend = HttpOrderBackend.from_settings(settings)
        else:
            logger.warning("ORDERDESK_API_BASE_URL not set, using in-memory order store")
            backend = InMemoryOrderStore()
        return cls(backend, settings=settings)

    def get_order(self, order_id: str) -> Order:
        order = self.view.get(order_id)
        if order is None:
            raise NotFoundError(f"order {order_id} not found")
        return order

    def read_view(self) -> OrderViewRead:
        return OrderViewRead(
            orders=self.view.orders(),
            pagination=self.view.pagination,
            pending_deltas=len(self.view.pending_delta_ids()),
            average_processing_seconds=self.view.average_processing_seconds(),
        )

    def register_workers(self, workers: Iterable[Worker]) -> list[Worker]:
        self.tracker.replace_roster(workers)
        return self.tracker.list_workers()

    def assign(self, order_id: str, worker_id: str, actor: ActingIdentity) -> Order:
        saved = self.coordinator.assign(self.get_order(order_id), worker_id, actor)
        self._drop_clock(saved.id)
        self.watch(saved.id)
        return saved

    def assign_to_self(self, order_id: str, actor: ActingIdentity) -> Order:
        saved = self.coordinator.assign_to_self(self.get_order(order_id), actor)
        self._drop_clock(saved.id)
        self.watch(saved.id)
        return saved

    def unassign(self, order_id: str, actor: ActingIdentity) -> Order:
        saved = self.coordinator.unassign(self.get_order(order_id), actor)
        self._drop_clock(order_id)
        return saved

    def update_status(self, order_id: str, status: OrderStatus, actor: ActingIdentity) -> Order:
        saved = self.coordinator.update_status(self.get_order(order_id), status, actor)
        self._sync_clock(saved)
        return saved

    def set_scope(self, scope: PollScope) -> int:
        return self.poller.set_scope(scope)

    def processing_time(self, order_id: str) -> ProcessingTimeRead:
        order = self.get_order(order_id)
        with self._clocks_lock:
            clock = self._clocks.get(order_id)
        seconds = clock.value if clock is not None else order_processing_seconds(order, now=self._clock())
        return ProcessingTimeRead(
            order_id=order_id,
            seconds=seconds,
            display=format_duration(seconds),
            running=clock is not None and clock.running,
        )

    def watch(self, order_id: str) -> ProcessingClock:
        order = self.get_order(order_id)
        with self._clocks_lock:
            clock = self._clocks.get(order_id)
            if clock is None:
                clock = ProcessingClock(order, clock=self._clock)
                self._clocks[order_id] = clock
        clock.start()
        return clock

    def start(self) -> None:
        self.poller.start()

    def shutdown(self) -> None:
        self.poller.dispose()
        with self._clocks_lock:
            clocks = list(self._clocks.values())
            self._clocks.clear()
        for clock in clocks:
            clock.stop()

    def _sync_clock(self, order: Order) -> None:
        with self._clocks_lock:
            clock = self._clocks.get(order.id)
        if clock is None:
            return
        if order.completed_at is not None:
            clock.freeze(order.completed_at)
        elif order.started_at is None:
            self._drop_clock(order.id)

    def _drop_clock(self, order_id: str) -> None:
        with self._clocks_lock:
            clock = self._clocks.pop(order_id, None)
        if clock is not None:
            clock.stop()

    def _refresh_clocks(self, page: OrderPage) -> None:
        for order in page.data:
            self._sync_clock(order)
