from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class _WireModel(BaseModel):
    # Remote records are camelCase and carry fields this engine does not own
    # (items, branch, customer...); keep them so full-record upserts round-trip.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SCHEDULED = "scheduled"
    AWAITING_PAYMENT = "awaiting_payment"
    PAYMENT_FAILED = "payment_failed"
    AWAITING_FULFILLMENT = "awaiting_fulfillment"
    ON_HOLD = "on_hold"
    PROCESSING = "processing"
    PREPARING = "preparing"
    READY_FOR_PICKUP = "ready_for_pickup"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    PARTIALLY_DELIVERED = "partially_delivered"
    COMPLETED = "completed"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    REFUNDED = "refunded"
    RETURNED = "returned"


class OrderPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class OrderSource(str, Enum):
    CHATBOT = "chatbot"
    WEBSITE = "website"
    MOBILE_APP = "mobile_app"
    API = "api"


class OrderTab(str, Enum):
    """Console tabs; the pseudo tabs carry no status filter of their own."""

    ALL = "all"
    NEW = "new"
    ASSIGNED = "assigned"


class PermissionKey(str, Enum):
    ORDER_CREATE = "order.create"
    ORDER_PROCESS = "order.process"
    ORDER_ASSIGN = "order.asign"
    ORDER_UNASSIGN = "order.unasign"
    ORDER_CANCEL = "order.cancel"
    ORDER_VIEW = "order.view"


class PermissionMode(str, Enum):
    FIRST_ROLE = "first_role"
    UNION = "union"


class Order(_WireModel):
    id: str = Field(min_length=1)
    order_number: str = ""
    status: OrderStatus = OrderStatus.PENDING
    priority: OrderPriority = OrderPriority.MEDIUM
    source: OrderSource | None = None
    assigned_user_id: str | None = None
    assigned_user_name: str | None = None
    assigned_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    estimated_completion_time: int | None = None
    processing_time: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_assigned(self) -> bool:
        return bool(self.assigned_user_id)


class Worker(_WireModel):
    id: str = Field(min_length=1)
    name: str = ""
    is_active: bool = True
    max_concurrent_orders: int | None = Field(default=None, gt=0)
    active_order_count: int = Field(default=0, ge=0)
    last_active: datetime | None = None


class Permission(_WireModel):
    key: str = Field(min_length=1)
    id: str | None = None
    description: str = ""


class Role(_WireModel):
    name: str = Field(min_length=1)
    id: str | None = None
    description: str = ""
    permissions: list[Permission] | None = None

    @property
    def permission_keys(self) -> list[str]:
        return [permission.key for permission in self.permissions or []]


class ActingIdentity(_WireModel):
    id: str | None = None
    name: str = ""
    roles: list[Role] = Field(default_factory=list)


class Pagination(_WireModel):
    current_page: int = 1
    total_pages: int = 1
    total_items: int = 0
    page_size: int | None = None

    @property
    def has_next(self) -> bool:
        return self.current_page < self.total_pages


class OrderFilter(BaseModel):
    status: OrderStatus | None = None
    page: int = Field(default=1, ge=1)
    search_term: str | None = None

    @model_validator(mode="after")
    def normalize_search(self) -> "OrderFilter":
        if self.search_term is not None:
            trimmed = self.search_term.strip()
            self.search_term = trimmed or None
        return self


class OrderPage(_WireModel):
    data: list[Order] = Field(default_factory=list)
    pagination: Pagination = Field(default_factory=Pagination)


class StatusCount(_WireModel):
    status: OrderStatus
    count: int = Field(ge=0)


class OrderStatsPerUser(_WireModel):
    status_counts: list[StatusCount] = Field(default_factory=list)
    assigned_to_user: int | None = None
    all_orders: int | None = None


class OrderStatusWrite(_WireModel):
    order_id: str = Field(min_length=1)
    status: OrderStatus


class AssignRequest(BaseModel):
    worker_id: str = Field(min_length=1)
    actor: ActingIdentity


class ActorRequest(BaseModel):
    actor: ActingIdentity


class StatusUpdateRequest(BaseModel):
    status: OrderStatus
    actor: ActingIdentity


class PollerFilterRequest(BaseModel):
    tab: OrderStatus | OrderTab = OrderTab.ALL
    worker_id: str | None = None
    search_term: str | None = None


class ProcessingTimeRead(BaseModel):
    order_id: str
    seconds: int
    display: str
    running: bool


class OrderViewRead(BaseModel):
    orders: list[Order] = Field(default_factory=list)
    pagination: Pagination = Field(default_factory=Pagination)
    pending_deltas: int = 0
    average_processing_seconds: int | None = None
