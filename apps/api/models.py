from sqlalchemy import Column, Integer, Boolean, CheckConstraint, DateTime, ForeignKey, Text, Index, UniqueConstraint, Uuid, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.types import TypeDecorator
from core.database import Base
import uuid
from dataclasses import dataclass
from typing import Optional, Set
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime column.

    Values are stored in UTC and always come back timezone-aware, including on
    backends (SQLite) that drop tzinfo.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


ROLES = ("user", "trainer", "admin")


@dataclass(frozen=True)
class SubscriptionRecord:
    """Embedded subscription record carried on the user."""
    plan_id: Optional[str]
    status: str
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool
    external_subscription_id: Optional[str]


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(Text, unique=True, nullable=False)  # lowercased + trimmed
    password_hash = Column(Text, nullable=False)

    first_name = Column(Text, nullable=False)
    last_name = Column(Text, nullable=False)
    phone = Column(Text, nullable=True)
    dob = Column(Text, nullable=True)  # ISO date as entered by the member
    gender = Column(Text, nullable=True)
    activity_status = Column(Text, nullable=True)
    goals = Column(Text, nullable=True)
    reason = Column(Text, nullable=True)

    role = Column(Text, default="user", nullable=False)  # 'user', 'trainer', 'admin'

    # --- EMAIL VERIFICATION ---
    is_email_verified = Column(Boolean, default=False, nullable=False)
    email_verification_otp = Column(Text, nullable=True)
    email_verification_expires_at = Column(UTCDateTime, nullable=True)

    # --- PASSWORD RESET (token stored hashed only) ---
    password_reset_token_hash = Column(Text, nullable=True, index=True)
    password_reset_expires_at = Column(UTCDateTime, nullable=True)

    # --- ACCOUNT SAFETY ---
    failed_login_attempts = Column(Integer, default=0, nullable=False)
    lockout_until = Column(UTCDateTime, nullable=True)
    # Bumped on password change / revoke-all / role change. Never decreases.
    token_version = Column(Integer, default=0, nullable=False)

    # --- PAYMENTS / ENTITLEMENTS ---
    payment_customer_id = Column(Text, nullable=True, unique=True)

    # Embedded active subscription (all null when the member never subscribed)
    subscription_plan_id = Column(Text, nullable=True)
    subscription_status = Column(Text, nullable=True)  # incomplete|active|past_due|canceled|trialing
    subscription_period_start = Column(UTCDateTime, nullable=True)
    subscription_period_end = Column(UTCDateTime, nullable=True)
    subscription_cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    subscription_external_id = Column(Text, nullable=True, index=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    program_entries = relationship(
        "UserProgram",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="UserProgram.purchased_at",
    )

    __table_args__ = (
        CheckConstraint("failed_login_attempts >= 0", name="ck_users_failed_attempts_nonneg"),
        CheckConstraint("role IN ('user', 'trainer', 'admin')", name="ck_users_role"),
        CheckConstraint(
            "subscription_period_end IS NULL OR subscription_period_start IS NULL "
            "OR subscription_period_end >= subscription_period_start",
            name="ck_users_subscription_period",
        ),
        Index("ix_users_subscription_status", "subscription_status"),
    )

    @property
    def purchased_program_slugs(self) -> Set[str]:
        return {entry.program_slug for entry in self.program_entries}

    @property
    def active_subscription(self) -> Optional[SubscriptionRecord]:
        if not self.subscription_status:
            return None
        return SubscriptionRecord(
            plan_id=self.subscription_plan_id,
            status=self.subscription_status,
            current_period_start=self.subscription_period_start,
            current_period_end=self.subscription_period_end,
            cancel_at_period_end=bool(self.subscription_cancel_at_period_end),
            external_subscription_id=self.subscription_external_id,
        )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class UserProgram(Base):
    """
    Purchased-program ledger (one row per user and program slug).

    Insert-only from application code paths.
    """

    __tablename__ = "user_programs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    program_slug = Column(Text, nullable=False)
    source = Column(Text, nullable=False, default="purchase")  # purchase | admin_grant
    purchased_at = Column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "program_slug", name="uq_user_programs_user_slug"),
    )


class Program(Base):
    """Program catalog entry sold as a one-off purchase."""

    __tablename__ = "programs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    slug = Column(Text, unique=True, nullable=False)
    title = Column(Text, nullable=False)
    author = Column(Text, nullable=True)
    description = Column(Text, nullable=False, default="")
    difficulty = Column(Text, nullable=False, default="beginner")  # beginner|intermediate|advanced
    duration = Column(Text, nullable=True)
    price_id = Column(Text, nullable=True)  # payment provider price id
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)


class ProcessedPaymentEvent(Base):
    """
    Processed payment-provider events (idempotency guard).

    The provider retries webhook deliveries; storing event ids makes webhook
    handling safe. Rows expire after PROCESSED_EVENT_TTL_DAYS.
    """

    __tablename__ = "processed_payment_events"

    event_id = Column(Text, primary_key=True)  # provider event id (e.g., evt_*)
    event_type = Column(Text, nullable=False)
    outcome = Column(Text, nullable=False)  # applied | dropped | ignored | unmatched
    user_id = Column(Uuid(as_uuid=True), nullable=True)
    received_at = Column(UTCDateTime, default=utcnow, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False, index=True)

    __table_args__ = (
        Index("ix_processed_payment_events_event_type", "event_type"),
    )


class AdminAuditEvent(Base):
    """
    Append-only audit log for admin actions.

    Non-negotiable invariants:
    - write-only from the application (no update/delete in code paths)
    - bounded payload (no secrets; minimal PII)
    """

    __tablename__ = "admin_audit_events"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False, index=True)

    actor_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    action = Column(Text, nullable=False, index=True)  # e.g., user.role_change | user.unlock
    target_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True, index=True)

    ip_address = Column(Text, nullable=True)
    user_agent = Column(Text, nullable=True)

    payload = Column(JSON, nullable=False, default=dict)
