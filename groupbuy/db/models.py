from typing import List, Optional
from datetime import datetime
from decimal import Decimal
from sqlalchemy import (
    String,
    Boolean,
    Integer,
    Numeric,
    Text,
    ForeignKey,
    Enum,
    Index,
    CheckConstraint,
    UniqueConstraint,
    DateTime,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
import enum

from groupbuy.db.custom_types import GUID, new_guid
from groupbuy.utils.datetime_utils import naive_utc_now


class Base(DeclarativeBase):
    pass


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


# Enums
class UserRole(enum.Enum):
    USER = "user"
    ADMIN = "admin"


class GeneralOrderStatus(enum.Enum):
    SCHEDULED = "scheduled"
    OPEN = "open"
    CLOSED = "closed"


class QueueStatus(enum.Enum):
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class CronRunStatus(enum.Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class SystemCommand(enum.Enum):
    """Fan-out notifications a queue entry can request instead of a direct send."""

    ORDER_OPENED = "GENERAL_ORDER_OPENED"
    REMINDER_1H = "GENERAL_ORDER_REMINDER_1H"
    REMINDER_10M = "GENERAL_ORDER_REMINDER_10M"
    ORDER_CLOSED = "GENERAL_ORDER_CLOSED"
    GENERAL_ORDER_SUMMARY = "GENERAL_ORDER_SUMMARY"
    SUPPLIER_REPORT = "SUPPLIER_REPORT"
    # Addressed to one participant; the variant is their participant order id
    ORDER_CONFIRMATION = "USER_ORDER_CONFIRMATION"


# Base model with common audit fields
class AuditMixin:
    """Mixin for common audit fields"""

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, onupdate=naive_utc_now
    )


# Models
class User(Base, AuditMixin):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(GUID, primary_key=True, default=new_guid)
    email: Mapped[Optional[str]] = mapped_column(String(320), unique=True)
    phone: Mapped[Optional[str]] = mapped_column(String(32))
    full_name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, values_callable=_enum_values),
        default=UserRole.USER,
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Relationships
    orders: Mapped[List["ParticipantOrder"]] = relationship(back_populates="user")

    __table_args__ = (
        Index("idx_users_role", "role"),
        Index("idx_users_is_active", "is_active"),
    )


class GeneralOrder(Base, AuditMixin):
    __tablename__ = "general_orders"

    id: Mapped[str] = mapped_column(GUID, primary_key=True, default=new_guid)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    opening_time: Mapped[Optional[datetime]] = mapped_column(DateTime)
    deadline: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[GeneralOrderStatus] = mapped_column(
        Enum(GeneralOrderStatus, values_callable=_enum_values),
        default=GeneralOrderStatus.SCHEDULED,
        nullable=False,
    )
    # Weak reference to the admin who created the order
    created_by: Mapped[Optional[str]] = mapped_column(GUID)
    opened_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Idempotency flags; each one is claimed with a conditioned update together
    # with the queue insert it guards
    opening_email_sent: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    reminder_1h_sent: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    reminder_10m_sent: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    closure_email_sent: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    # Relationships
    participant_orders: Mapped[List["ParticipantOrder"]] = relationship(
        back_populates="general_order"
    )

    __table_args__ = (
        CheckConstraint(
            "opening_time IS NULL OR opening_time < deadline",
            name="ck_general_orders_opening_before_deadline",
        ),
        Index("idx_general_orders_status_opening", "status", "opening_time"),
        Index("idx_general_orders_status_deadline", "status", "deadline"),
    )


class Product(Base, AuditMixin):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(GUID, primary_key=True, default=new_guid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0, nullable=False)
    supplier_name: Mapped[Optional[str]] = mapped_column(String(255))
    supplier_contact: Mapped[Optional[str]] = mapped_column(String(255))


class ParticipantOrder(Base, AuditMixin):
    """A participant's order (their line items) inside one general order."""

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(GUID, primary_key=True, default=new_guid)
    user_id: Mapped[str] = mapped_column(
        GUID, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    general_order_id: Mapped[str] = mapped_column(
        GUID, ForeignKey("general_orders.id", ondelete="CASCADE"), nullable=False
    )
    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=0, nullable=False
    )

    # Relationships
    user: Mapped["User"] = relationship(back_populates="orders")
    general_order: Mapped["GeneralOrder"] = relationship(
        back_populates="participant_orders"
    )
    items: Mapped[List["OrderItem"]] = relationship(
        back_populates="order", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("idx_orders_general_order_id", "general_order_id"),
        Index("idx_orders_user_id", "user_id"),
    )


class OrderItem(Base, AuditMixin):
    __tablename__ = "order_items"

    id: Mapped[str] = mapped_column(GUID, primary_key=True, default=new_guid)
    order_id: Mapped[str] = mapped_column(
        GUID, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    product_id: Mapped[str] = mapped_column(
        GUID, ForeignKey("products.id", ondelete="NO ACTION"), nullable=False
    )
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), default=0, nullable=False
    )
    total_price: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=0, nullable=False
    )

    # Relationships
    order: Mapped["ParticipantOrder"] = relationship(back_populates="items")
    product: Mapped["Product"] = relationship()

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        Index("idx_order_items_order_id", "order_id"),
    )


class ShopStatus(Base):
    """Singleton row mirroring which general order (if any) the storefront shows."""

    __tablename__ = "shop_status"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    is_open: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Weak reference, not a foreign key: the order may be deleted
    current_general_order_id: Mapped[Optional[str]] = mapped_column(GUID)
    message: Mapped[str] = mapped_column(Text, default="", nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, onupdate=naive_utc_now
    )

    __table_args__ = (CheckConstraint("id = 1", name="ck_shop_status_singleton"),)


class MessageTemplate(Base, AuditMixin):
    __tablename__ = "message_templates"

    id: Mapped[str] = mapped_column(GUID, primary_key=True, default=new_guid)
    code: Mapped[str] = mapped_column(String(100), nullable=False)
    subject_template: Mapped[str] = mapped_column(String(500), nullable=False)
    body_template: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        UniqueConstraint("code", name="uq_message_templates_code"),
        Index("idx_message_templates_code_active", "code", "is_active"),
    )


class NotificationQueueEntry(Base):
    __tablename__ = "notification_queue"

    id: Mapped[str] = mapped_column(GUID, primary_key=True, default=new_guid)
    # Either a real address or a SYSTEM_* sentinel
    recipient: Mapped[str] = mapped_column(String(320), nullable=False)
    subject: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Structured form of a system notification; recipient/body keep the legacy
    # "COMMAND:orderId[:variant]" encoding for older readers
    system_command: Mapped[Optional[SystemCommand]] = mapped_column(
        Enum(SystemCommand, values_callable=_enum_values)
    )
    # Weak reference, entries outlive deleted orders
    general_order_id: Mapped[Optional[str]] = mapped_column(GUID)
    command_variant: Mapped[Optional[str]] = mapped_column(String(50))

    template_code: Mapped[Optional[str]] = mapped_column(String(100))
    # JSON stored as Text - serialize/deserialize in application
    template_data: Mapped[Optional[str]] = mapped_column(Text)

    status: Mapped[QueueStatus] = mapped_column(
        Enum(QueueStatus, values_callable=_enum_values),
        default=QueueStatus.PENDING,
        nullable=False,
    )
    priority: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, nullable=False
    )
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    error_code: Mapped[Optional[str]] = mapped_column(String(100))

    @property
    def is_system(self) -> bool:
        # Older producers addressed confirmations to the participant directly
        return (
            self.system_command is not None
            or self.recipient.startswith("SYSTEM_")
            or (self.body or "").startswith("USER_ORDER_CONFIRMATION:")
        )

    __table_args__ = (
        CheckConstraint(
            "attempts >= 0 AND attempts <= max_attempts",
            name="ck_notif_queue_attempts_bounded",
        ),
        CheckConstraint("max_attempts >= 1", name="ck_notif_queue_max_attempts"),
        Index(
            "idx_notif_queue_pending",
            "status",
            "priority",
            "created_at",
        ),
        Index("idx_notif_queue_general_order", "general_order_id"),
        Index("idx_notif_queue_error_code", "error_code"),
    )


class CronRun(Base):
    __tablename__ = "cron_runs"

    id: Mapped[str] = mapped_column(GUID, primary_key=True, default=new_guid)
    job_name: Mapped[str] = mapped_column(String(100), nullable=False)
    request_id: Mapped[Optional[str]] = mapped_column(String(64))
    status: Mapped[CronRunStatus] = mapped_column(
        Enum(CronRunStatus, values_callable=_enum_values),
        default=CronRunStatus.RUNNING,
        nullable=False,
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, nullable=False
    )
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    # JSON stored as Text - serialize/deserialize in application
    counters: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("idx_cron_runs_job_started", "job_name", "started_at"),
        Index("idx_cron_runs_status", "status"),
    )
