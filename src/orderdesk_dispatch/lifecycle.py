"""Order lifecycle state machine.

The table below lists the transitions the console offers for each status.
Outside of strict mode the machine is permissive: the only transitions it
refuses on current-state grounds are moves out of ``delivered`` and no-op
moves to the same status.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from orderdesk_dispatch.errors import AlreadyTerminalError, ConflictError, ValidationError
from orderdesk_dispatch.schemas import Order, OrderStatus
from orderdesk_dispatch.timer import processing_seconds, utc_now

TERMINAL_STATUSES: frozenset[OrderStatus] = frozenset(
    {
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
        OrderStatus.REFUNDED,
        OrderStatus.RETURNED,
        OrderStatus.REJECTED,
    }
)

# Only these refuse every further change; other terminal statuses stay permissive.
LOCKED_STATUSES: frozenset[OrderStatus] = frozenset({OrderStatus.DELIVERED})

TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset(
        {
            OrderStatus.PROCESSING,
            OrderStatus.CANCELLED,
            OrderStatus.SCHEDULED,
            OrderStatus.CONFIRMED,
            OrderStatus.ON_HOLD,
            OrderStatus.AWAITING_PAYMENT,
            OrderStatus.REJECTED,
        }
    ),
    OrderStatus.CONFIRMED: frozenset(
        {OrderStatus.PROCESSING, OrderStatus.SCHEDULED, OrderStatus.ON_HOLD, OrderStatus.CANCELLED}
    ),
    OrderStatus.SCHEDULED: frozenset({OrderStatus.PROCESSING, OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.AWAITING_PAYMENT: frozenset(
        {OrderStatus.CONFIRMED, OrderStatus.PAYMENT_FAILED, OrderStatus.CANCELLED}
    ),
    OrderStatus.PAYMENT_FAILED: frozenset({OrderStatus.AWAITING_PAYMENT, OrderStatus.CANCELLED}),
    OrderStatus.AWAITING_FULFILLMENT: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.ON_HOLD: frozenset({OrderStatus.PENDING, OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset(
        {
            OrderStatus.SHIPPED,
            OrderStatus.DELIVERED,
            OrderStatus.CANCELLED,
            OrderStatus.PREPARING,
            OrderStatus.READY_FOR_PICKUP,
            OrderStatus.ON_HOLD,
            OrderStatus.COMPLETED,
        }
    ),
    OrderStatus.PREPARING: frozenset(
        {
            OrderStatus.READY_FOR_PICKUP,
            OrderStatus.SHIPPED,
            OrderStatus.OUT_FOR_DELIVERY,
            OrderStatus.DELIVERED,
            OrderStatus.CANCELLED,
        }
    ),
    OrderStatus.READY_FOR_PICKUP: frozenset(
        {OrderStatus.DELIVERED, OrderStatus.COMPLETED, OrderStatus.CANCELLED}
    ),
    OrderStatus.SHIPPED: frozenset(
        {
            OrderStatus.DELIVERED,
            OrderStatus.CANCELLED,
            OrderStatus.OUT_FOR_DELIVERY,
            OrderStatus.PARTIALLY_DELIVERED,
        }
    ),
    OrderStatus.OUT_FOR_DELIVERY: frozenset(
        {
            OrderStatus.DELIVERED,
            OrderStatus.PARTIALLY_DELIVERED,
            OrderStatus.CANCELLED,
            OrderStatus.RETURNED,
        }
    ),
    OrderStatus.PARTIALLY_DELIVERED: frozenset(
        {OrderStatus.DELIVERED, OrderStatus.RETURNED, OrderStatus.REFUNDED}
    ),
    OrderStatus.COMPLETED: frozenset({OrderStatus.DELIVERED, OrderStatus.REFUNDED, OrderStatus.RETURNED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REJECTED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
    OrderStatus.RETURNED: frozenset(),
}


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATUSES


def allowed_next_statuses(status: OrderStatus) -> frozenset[OrderStatus]:
    return TRANSITIONS[status]


@dataclass(frozen=True)
class TransitionPlan:
    """Everything a status change has to write, computed before any write."""

    order_id: str
    from_status: OrderStatus
    to_status: OrderStatus
    completed_at: datetime | None = None
    estimated_completion_time: int | None = None
    released_worker_id: str | None = None
    clears_assignment: bool = False

    @property
    def needs_record_write(self) -> bool:
        return self.completed_at is not None or self.clears_assignment

    def apply(self, order: Order) -> Order:
        update: dict[str, object] = {"status": self.to_status}
        if self.completed_at is not None:
            update["completed_at"] = self.completed_at
            update["estimated_completion_time"] = self.estimated_completion_time
        if self.clears_assignment:
            update.update(cleared_assignment_fields())
        return order.model_copy(update=update)


def cleared_assignment_fields() -> dict[str, object]:
    return {
        "assigned_user_id": None,
        "assigned_user_name": None,
        "assigned_at": None,
        "started_at": None,
        "processing_time": None,
        "estimated_completion_time": None,
    }


class LifecycleStateMachine:
    def __init__(self, *, strict: bool = False) -> None:
        self._strict = strict

    def ensure_mutable(self, order: Order, *, operation: str) -> None:
        if order.status in LOCKED_STATUSES:
            raise AlreadyTerminalError(
                f"order {order.id} is already {order.status.value}",
                operation=operation,
            )

    def plan(
        self,
        order: Order,
        new_status: OrderStatus,
        *,
        now: datetime | None = None,
        operation: str = "status-update",
    ) -> TransitionPlan:
        self.ensure_mutable(order, operation=operation)
        if new_status == order.status:
            raise ConflictError(f"order {order.id} is already {new_status.value}", operation=operation)
        if self._strict and new_status not in TRANSITIONS[order.status]:
            raise ConflictError(
                f"order {order.id} cannot move from {order.status.value} to {new_status.value}",
                operation=operation,
            )

        moment = now or utc_now()
        released_worker_id = None
        if is_terminal(new_status) and not is_terminal(order.status) and order.is_assigned:
            released_worker_id = order.assigned_user_id

        if new_status == OrderStatus.DELIVERED:
            if order.started_at is None:
                raise ValidationError(
                    f"order {order.id} has no start time and cannot be delivered",
                    operation=operation,
                )
            return TransitionPlan(
                order_id=order.id,
                from_status=order.status,
                to_status=new_status,
                completed_at=moment,
                estimated_completion_time=processing_seconds(order.started_at, moment),
                released_worker_id=released_worker_id,
            )

        return TransitionPlan(
            order_id=order.id,
            from_status=order.status,
            to_status=new_status,
            released_worker_id=released_worker_id,
            clears_assignment=is_terminal(new_status) and order.is_assigned,
        )
