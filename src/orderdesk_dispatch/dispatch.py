from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from orderdesk_dispatch.capacity import WorkerCapacityTracker
from orderdesk_dispatch.errors import (
    AlreadyTerminalError,
    DispatchError,
    NotAuthenticatedError,
    NotFoundError,
    RemoteWriteFailedError,
)
from orderdesk_dispatch.lifecycle import LifecycleStateMachine, cleared_assignment_fields, is_terminal
from orderdesk_dispatch.permissions import require_permissions
from orderdesk_dispatch.remote_client import OrderBackend
from orderdesk_dispatch.schemas import (
    ActingIdentity,
    Order,
    OrderStatus,
    OrderStatusWrite,
    PermissionKey,
    PermissionMode,
    Worker,
)
from orderdesk_dispatch.timer import utc_now
from orderdesk_dispatch.view import OrderView

logger = logging.getLogger("orderdesk_dispatch.dispatch")

OP_ASSIGN = "assign"
OP_ASSIGN_SELF = "assign-to-self"
OP_UNASSIGN = "unassign"
OP_STATUS_UPDATE = "status-update"


@dataclass(frozen=True)
class _SlotChange:
    """A local change to one worker's active count made by an operation."""

    before: Worker
    after: Worker

    @property
    def worker_id(self) -> str:
        return self.after.id

    @property
    def delta(self) -> int:
        return self.after.active_order_count - self.before.active_order_count


class _WriteLedger:
    """Remote writes issued by one operation, with how to undo each of them."""

    def __init__(self, operation: str) -> None:
        self._operation = operation
        self._compensations: list[tuple[str, Callable[[], object]]] = []

    def record(self, description: str, compensation: Callable[[], object]) -> None:
        self._compensations.append((description, compensation))

    def compensate(self) -> None:
        for description, compensation in reversed(self._compensations):
            try:
                compensation()
            except DispatchError as exc:
                logger.error(
                    "%s: could not undo %s: %s",
                    self._operation,
                    description,
                    exc,
                    extra={"structured": {"operation": self._operation, "step": description}},
                )
        self._compensations.clear()


class DispatchCoordinator:
    """Permission-gated assign / unassign / status-update operations.

    Each operation checks permissions and capacity locally, applies an
    optimistic change to the view, issues the remote writes and rolls all of
    it back if a write fails. Operations on the same order are serialized.
    """

    def __init__(
        self,
        backend: OrderBackend,
        tracker: WorkerCapacityTracker,
        view: OrderView,
        *,
        state_machine: LifecycleStateMachine | None = None,
        permission_mode: PermissionMode = PermissionMode.FIRST_ROLE,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._backend = backend
        self._tracker = tracker
        self._view = view
        self._state_machine = state_machine or LifecycleStateMachine()
        self._permission_mode = permission_mode
        self._clock = clock
        self._order_locks: dict[str, threading.Lock] = {}
        self._order_locks_guard = threading.Lock()

    def assign(self, order: Order, worker_id: str, actor: ActingIdentity, *, operation: str = OP_ASSIGN) -> Order:
        require_permissions(actor, [PermissionKey.ORDER_ASSIGN], operation=operation, mode=self._permission_mode)
        if not worker_id:
            raise NotFoundError("no worker selected", operation=operation)

        with self._order_lock(order.id):
            order = self._current(order)
            if is_terminal(order.status):
                raise AlreadyTerminalError(f"order {order.id} is already {order.status.value}", operation=operation)
            if order.assigned_user_id == worker_id:
                return order

            reserved = _SlotChange(*self._tracker.try_reserve(worker_id, operation=operation))
            slot_changes = [reserved]
            if order.assigned_user_id and order.assigned_user_id in self._tracker:
                slot_changes.append(_SlotChange(*self._tracker.release(order.assigned_user_id)))

            now = self._clock()
            updated = order.model_copy(
                update={
                    "status": OrderStatus.PROCESSING if order.status == OrderStatus.PENDING else order.status,
                    "assigned_user_id": reserved.after.id,
                    "assigned_user_name": reserved.after.name,
                    "assigned_at": now,
                    "started_at": now,
                }
            )
            saved = self._write_assignment(order, updated, slot_changes, operation)

        logger.info(
            "order %s assigned to worker %s",
            order.id,
            worker_id,
            extra={"structured": {"operation": operation, "order_id": order.id, "worker_id": worker_id}},
        )
        return saved

    def assign_to_self(self, order: Order, actor: ActingIdentity) -> Order:
        if not actor.id:
            raise NotAuthenticatedError("sign in to take orders", operation=OP_ASSIGN_SELF)
        return self.assign(order, actor.id, actor, operation=OP_ASSIGN_SELF)

    def unassign(self, order: Order, actor: ActingIdentity) -> Order:
        operation = OP_UNASSIGN
        require_permissions(actor, [PermissionKey.ORDER_UNASSIGN], operation=operation, mode=self._permission_mode)

        with self._order_lock(order.id):
            order = self._current(order)
            worker_id = order.assigned_user_id
            if not worker_id:
                return order
            self._state_machine.ensure_mutable(order, operation=operation)

            slot_changes: list[_SlotChange] = []
            if is_terminal(order.status):
                logger.debug("order %s is %s, worker count left as is", order.id, order.status.value)
            elif worker_id in self._tracker:
                slot_changes.append(_SlotChange(*self._tracker.release(worker_id)))
            else:
                logger.warning("order %s is assigned to unknown worker %s", order.id, worker_id)

            updated = order.model_copy(update=cleared_assignment_fields())
            saved = self._write_assignment(order, updated, slot_changes, operation)

        logger.info(
            "order %s unassigned from worker %s",
            order.id,
            worker_id,
            extra={"structured": {"operation": operation, "order_id": order.id, "worker_id": worker_id}},
        )
        return saved

    def update_status(self, order: Order, new_status: OrderStatus, actor: ActingIdentity) -> Order:
        operation = OP_STATUS_UPDATE
        required = [PermissionKey.ORDER_PROCESS]
        if new_status == OrderStatus.CANCELLED:
            required.append(PermissionKey.ORDER_CANCEL)
        require_permissions(actor, required, operation=operation, mode=self._permission_mode)

        with self._order_lock(order.id):
            order = self._current(order)
            plan = self._state_machine.plan(order, new_status, now=self._clock(), operation=operation)
            updated = plan.apply(order)
            slot_changes: list[_SlotChange] = []
            if plan.released_worker_id and plan.released_worker_id in self._tracker:
                slot_changes.append(_SlotChange(*self._tracker.release(plan.released_worker_id)))

            self._view.apply_optimistic(updated, previous=order)
            ledger = _WriteLedger(operation)
            saved = updated
            try:
                if plan.needs_record_write:
                    saved = self._backend.update_order(updated)
                    ledger.record(f"order {order.id} write", lambda: self._backend.update_order(order))
                self._backend.update_order_status(OrderStatusWrite(order_id=order.id, status=new_status))
                ledger.record(
                    f"order {order.id} status write",
                    lambda: self._backend.update_order_status(
                        OrderStatusWrite(order_id=order.id, status=order.status)
                    ),
                )
                self._write_workers(slot_changes, ledger)
            except DispatchError as exc:
                self._roll_back(order, slot_changes, ledger)
                raise self._remote_failure(exc, operation) from exc

            saved = saved.model_copy(update={"status": new_status})
            self._view.mark_written(saved)

        logger.info(
            "order %s moved from %s to %s",
            order.id,
            plan.from_status.value,
            new_status.value,
            extra={"structured": {"operation": operation, "order_id": order.id, "status": new_status.value}},
        )
        return saved

    def _write_assignment(
        self,
        order: Order,
        updated: Order,
        slot_changes: list[_SlotChange],
        operation: str,
    ) -> Order:
        self._view.apply_optimistic(updated, previous=order)
        ledger = _WriteLedger(operation)
        try:
            saved = self._backend.update_order(updated)
            ledger.record(f"order {order.id} write", lambda: self._backend.update_order(order))
            self._write_workers(slot_changes, ledger)
        except DispatchError as exc:
            self._roll_back(order, slot_changes, ledger)
            raise self._remote_failure(exc, operation) from exc
        self._view.mark_written(saved)
        return saved

    def _write_workers(self, slot_changes: list[_SlotChange], ledger: _WriteLedger) -> None:
        for change in slot_changes:
            current = self._tracker.get(change.worker_id)
            self._backend.update_user(current)
            ledger.record(
                f"worker {change.worker_id} write",
                lambda worker_id=change.worker_id: self._backend.update_user(self._tracker.get(worker_id)),
            )

    def _roll_back(self, order: Order, slot_changes: list[_SlotChange], ledger: _WriteLedger) -> None:
        # Counts first: worker compensations post the tracker's current record.
        for change in slot_changes:
            self._tracker.adjust(change.worker_id, -change.delta)
        ledger.compensate()
        self._view.revert(order.id)

    def _current(self, order: Order) -> Order:
        current = self._view.get(order.id)
        return current if current is not None else order

    def _order_lock(self, order_id: str) -> threading.Lock:
        with self._order_locks_guard:
            lock = self._order_locks.get(order_id)
            if lock is None:
                lock = threading.Lock()
                self._order_locks[order_id] = lock
            return lock

    @staticmethod
    def _remote_failure(exc: DispatchError, operation: str) -> DispatchError:
        logger.warning("%s failed: %s", operation, exc.detail)
        if isinstance(exc, NotFoundError):
            return NotFoundError(exc.detail, operation=operation)
        return RemoteWriteFailedError(exc.detail, operation=operation)
