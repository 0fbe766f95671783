import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)

from course_payments.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Provider(str, enum.Enum):
    PAYSTACK = "PAYSTACK"
    STRIPE = "STRIPE"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class WebhookEventStatus(str, enum.Enum):
    RECEIVED = "RECEIVED"
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"


class EnrollmentStatus(str, enum.Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    DROPPED = "DROPPED"
    SUSPENDED = "SUSPENDED"


class DiscountType(str, enum.Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("provider", "provider_reference", name="uq_payments_provider_reference"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    course_id = Column(String(64), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)          # major units, after discount
    original_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    provider = Column(Enum(Provider, native_enum=False, length=16), nullable=False)
    provider_reference = Column(String(255), nullable=False)
    status = Column(
        Enum(PaymentStatus, native_enum=False, length=16),
        nullable=False,
        default=PaymentStatus.PENDING,
        index=True,
    )
    coupon_code = Column(String(50))
    failure_reason = Column(Text)
    # raw provider payloads, audit only; never branched on
    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    succeeded_at = Column(DateTime(timezone=True))
    refunded_at = Column(DateTime(timezone=True))


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_hash = Column(String(64), nullable=False, unique=True)
    provider = Column(Enum(Provider, native_enum=False, length=16), nullable=False)
    event_type = Column(String(100))
    provider_reference = Column(String(255), index=True)
    raw_payload = Column(Text, nullable=False)
    status = Column(
        Enum(WebhookEventStatus, native_enum=False, length=16),
        nullable=False,
        default=WebhookEventStatus.RECEIVED,
    )
    error = Column(Text)
    attempts = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    processed_at = Column(DateTime(timezone=True))


class Enrollment(Base):
    __tablename__ = "enrollments"
    __table_args__ = (
        UniqueConstraint("user_id", "course_id", name="uq_enrollments_user_course"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False)
    course_id = Column(String(64), nullable=False)
    payment_id = Column(String(36), ForeignKey("payments.id"), nullable=False)
    status = Column(
        Enum(EnrollmentStatus, native_enum=False, length=16),
        nullable=False,
        default=EnrollmentStatus.IN_PROGRESS,
    )
    enrolled_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Coupon(Base):
    __tablename__ = "coupons"

    id = Column(String(36), primary_key=True, default=new_id)
    code = Column(String(50), nullable=False, unique=True, index=True)
    description = Column(String(255))
    discount_type = Column(Enum(DiscountType, native_enum=False, length=16), nullable=False)
    discount_value = Column(Numeric(10, 2), nullable=False)
    minimum_amount = Column(Numeric(10, 2))
    maximum_discount = Column(Numeric(10, 2))
    usage_limit = Column(Integer)
    usage_count = Column(Integer, nullable=False, default=0)
    valid_from = Column(DateTime(timezone=True), nullable=False)
    valid_to = Column(DateTime(timezone=True), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    course_id = Column(String(64))
    applicable_to_all = Column(Boolean, nullable=False, default=False)


# Read-only mirrors of tables owned by the identity and catalog services.

class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    email = Column(String(255))


class Course(Base):
    __tablename__ = "courses"

    id = Column(String(64), primary_key=True)
    title = Column(String(255), nullable=False)
    is_published = Column(Boolean, nullable=False, default=True)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
