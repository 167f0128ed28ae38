# stringing_tracker/models.py

from sqlmodel import SQLModel, Field
from pydantic import EmailStr, field_validator
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4


def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def new_id() -> str:
    return uuid4().hex


class Role(str, Enum):
    CUSTOMER = "CUSTOMER"
    PROVIDER = "PROVIDER"

class Principal(SQLModel):
    subject: str
    role: Role = Role.CUSTOMER


# -------------------- Customers --------------------

class CustomerCreate(SQLModel):
    name: str
    email: EmailStr
    phone: str

class Customer(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = Field(nullable=False)
    email: str = Field(index=True, nullable=False)
    phone: str = Field(nullable=False)
    auth_subject_id: str = Field(index=True, unique=True, nullable=False)

class CustomerUpdate(SQLModel):
    name: str|None = None
    email: EmailStr|None = None
    phone: str|None = None

    @field_validator("name", "email", "phone")
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError("may be omitted but not set to null")
        return value


# -------------------- Orders --------------------

class OrderStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    STRINGING = "stringing"
    QUALITY_CHECK = "quality_check"
    COMPLETED = "completed"
    READY_FOR_PICKUP = "ready_for_pickup"


# status -> (percent complete, label)
STATUS_PROGRESS: dict[OrderStatus, tuple[int, str]] = {
    OrderStatus.PENDING: (0, "Order received"),
    OrderStatus.IN_PROGRESS: (20, "In progress"),
    OrderStatus.STRINGING: (50, "Stringing"),
    OrderStatus.QUALITY_CHECK: (70, "Quality check"),
    OrderStatus.COMPLETED: (90, "Completed"),
    OrderStatus.READY_FOR_PICKUP: (100, "Ready for pickup"),
}

STATUS_SEQUENCE: list[OrderStatus] = list(OrderStatus)


class OrderCreate(SQLModel):
    customer_id: str
    racket: str
    string_type: str
    tension: str
    estimated_delivery: datetime|None = None
    note: str|None = None

class Orders(OrderCreate, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    customer_id: str = Field(index=True, nullable=False)
    status: OrderStatus = Field(default=OrderStatus.PENDING, nullable=False)
    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    updated_at: datetime|None = Field(default=None)

class OrderRead(SQLModel):
    id: str
    customer_id: str
    racket: str
    string_type: str
    tension: str
    status: OrderStatus
    created_at: datetime
    estimated_delivery: datetime|None
    note: str|None
    updated_at: datetime|None

class OrderUpdate(SQLModel):
    note: str|None = None

class OrderStatusUpdate(SQLModel):
    status: OrderStatus

class OrderProgress(SQLModel):
    order_id: str
    status: OrderStatus
    label: str
    stage: int
    total_stages: int
    percent_complete: int


def percent_complete(status: OrderStatus) -> int:
    return STATUS_PROGRESS[status][0]

def progress_for(order: Orders) -> OrderProgress:
    """Derived view of an order's status, as shown to the customer."""
    percent, label = STATUS_PROGRESS[order.status]
    return OrderProgress(
        order_id=order.id,
        status=order.status,
        label=label,
        stage=STATUS_SEQUENCE.index(order.status) + 1,
        total_stages=len(STATUS_SEQUENCE),
        percent_complete=percent,
    )


class StatusUpdateOutcome(str, Enum):
    UPDATED = "updated"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    INVALID_TRANSITION = "invalid_transition"
    WRITE_FAILED = "write_failed"
    NOTIFY_FAILED = "notify_failed"

class StatusUpdateResult(SQLModel):
    success: bool
    outcome: StatusUpdateOutcome
    message: str
    notified: bool = False
    order_id: str
    status: OrderStatus|None = None


# -------------------- Payments --------------------

class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"

class PaymentCreate(SQLModel):
    order_id: str
    amount: float = Field(ge=0)
    payment_method: str
    status: PaymentStatus = PaymentStatus.PENDING

class Payment(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    order_id: str = Field(index=True, nullable=False)
    customer_id: str = Field(index=True, nullable=False)
    amount: float = Field(nullable=False)
    status: PaymentStatus = Field(default=PaymentStatus.PENDING, nullable=False)
    payment_method: str = Field(nullable=False)
    paid_at: datetime = Field(default_factory=utcnow, nullable=False)

class PaymentStatusUpdate(SQLModel):
    status: PaymentStatus


# -------------------- Notifications --------------------

class NotificationChannel(str, Enum):
    PUSH = "push"
    IN_APP = "in_app"
    EMAIL = "email"
    SMS = "sms"
    EVENT = "event"

class NotificationLog(SQLModel, table=True):
    id: int|None = Field(default=None, primary_key=True)
    order_id: str = Field(index=True)
    customer_id: str = Field(index=True)
    channel: NotificationChannel
    recipient: str
    message: str
    status: str
    timestamp: datetime = Field(default_factory=utcnow)
