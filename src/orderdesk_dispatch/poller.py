from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

from orderdesk_dispatch.config import DEFAULT_POLL_INTERVAL_SECONDS
from orderdesk_dispatch.remote_client import OrderBackend
from orderdesk_dispatch.schemas import OrderFilter, OrderPage, OrderStatus, OrderTab
from orderdesk_dispatch.view import OrderView

logger = logging.getLogger("orderdesk_dispatch.poller")


@dataclass(frozen=True)
class PollScope:
    """What the console is currently looking at."""

    tab: OrderStatus | OrderTab = OrderTab.ALL
    worker_id: str | None = None
    search_term: str | None = None

    def order_filter(self, page: int = 1) -> OrderFilter:
        status = self.tab if isinstance(self.tab, OrderStatus) else None
        return OrderFilter(status=status, page=page, search_term=self.search_term)

    @property
    def assigned_only(self) -> bool:
        return self.tab == OrderTab.ASSIGNED


class SyncPoller:
    """Re-reads the authoritative order set on a fixed interval.

    Each scope change bumps a generation counter and restarts the interval.
    A poll result is applied only if its generation is still current and no
    newer request has already been applied, so a slow read for a stale filter
    can never overwrite the view.
    """

    def __init__(
        self,
        backend: OrderBackend,
        view: OrderView,
        *,
        interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        on_applied: Callable[[OrderPage], None] | None = None,
    ) -> None:
        self._backend = backend
        self._view = view
        self._interval_seconds = interval_seconds
        self._on_applied = on_applied
        self._lock = threading.Lock()
        self._scope = PollScope()
        self._generation = 0
        self._request_seq = 0
        self._applied_seq = 0
        self._stop: threading.Event | None = None
        self._thread: threading.Thread | None = None

    @property
    def scope(self) -> PollScope:
        with self._lock:
            return self._scope

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    @property
    def running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def set_scope(self, scope: PollScope, *, restart: bool = True) -> int:
        was_running = self.running
        self.stop()
        with self._lock:
            self._scope = scope
            self._generation += 1
            generation = self._generation
        logger.info(
            "poll scope changed",
            extra={"structured": {"tab": scope.tab.value, "worker_id": scope.worker_id, "generation": generation}},
        )
        if restart and was_running:
            self.start()
        return generation

    def start(self) -> None:
        if self.running:
            return
        stop = threading.Event()
        with self._lock:
            generation = self._generation
        self._stop = stop
        self._thread = threading.Thread(
            target=self._run,
            args=(stop, generation),
            name=f"order-sync-poller-{generation}",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        stop, thread = self._stop, self._thread
        self._stop = None
        self._thread = None
        if stop is not None:
            stop.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)

    def dispose(self) -> None:
        self.stop()
        with self._lock:
            # Results still in flight belong to no scope any more.
            self._generation += 1

    def poll_once(self) -> bool:
        """Run one synchronization tick; returns whether the result was applied."""
        with self._lock:
            scope = self._scope
            generation = self._generation
            self._request_seq += 1
            request_seq = self._request_seq

        order_filter = scope.order_filter()
        if scope.assigned_only:
            page = self._backend.get_assigned_orders(order_filter)
        else:
            page = self._backend.get_orders(order_filter)
        stats = None
        if scope.worker_id:
            stats = self._backend.get_order_stats_per_assigned_user(scope.worker_id)

        with self._lock:
            if generation != self._generation or request_seq < self._applied_seq:
                logger.debug("discarding poll result for stale scope (generation %s)", generation)
                return False
            self._applied_seq = request_seq
            self._view.replace_snapshot(page)
            self._view.set_stats(stats)

        if self._on_applied is not None:
            self._on_applied(page)
        return True

    def load_page(self, page: int) -> bool:
        """Fetch one page for the current scope; page 1 resets the collection."""
        with self._lock:
            scope = self._scope
            generation = self._generation

        order_filter = scope.order_filter(page=page)
        if scope.assigned_only:
            result = self._backend.get_assigned_orders(order_filter)
        else:
            result = self._backend.get_orders(order_filter)

        with self._lock:
            if generation != self._generation:
                return False
            if page == 1:
                self._view.replace_snapshot(result)
            else:
                self._view.append_page(result)
        return True

    def load_more(self) -> bool:
        pagination = self._view.pagination
        if not pagination.has_next:
            return False
        return self.load_page(pagination.current_page + 1)

    def _run(self, stop: threading.Event, generation: int) -> None:
        self._tick(generation)
        while not stop.wait(self._interval_seconds):
            self._tick(generation)

    def _tick(self, generation: int) -> None:
        if generation != self.generation:
            return
        try:
            self.poll_once()
        except Exception as exc:  # noqa: BLE001
            logger.warning("order poll failed: %s", exc, exc_info=True)
