"""
Entitlement engine.

Owns three things:
- the access decision (``has_access``) for subscription features, purchased
  programs and admin features
- the subscription state machine driven by payment-provider events, local
  cancel/resume and the periodic reconciler
- checkout creation and the program-purchase ledger

Access policy:
- subscription_feature: status in {active, trialing} and the period has not ended
- program(slug): slug is in the user's purchased set; subscriptions are irrelevant
- admin_feature: role is admin
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationFailedError
from models import Program, SubscriptionRecord, User, utcnow
from services import identity_store

logger = logging.getLogger(__name__)


class SubscriptionStatus(str, enum.Enum):
    INCOMPLETE = "incomplete"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    TRIALING = "trialing"


GRANTING_STATUSES = frozenset({SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value})
KNOWN_STATUSES = frozenset(s.value for s in SubscriptionStatus)


@dataclass(frozen=True)
class Target:
    kind: str
    slug: Optional[str] = None

    @classmethod
    def subscription_feature(cls) -> "Target":
        return cls("subscription_feature")

    @classmethod
    def program(cls, slug: str) -> "Target":
        return cls("program", slug)

    @classmethod
    def admin_feature(cls) -> "Target":
        return cls("admin_feature")


def has_access(user: User, target: Target, now: Optional[datetime] = None) -> bool:
    if target.kind == "subscription_feature":
        record = user.active_subscription
        if record is None or record.status not in GRANTING_STATUSES:
            return False
        if record.current_period_end is None:
            return False
        return record.current_period_end >= (now or utcnow())
    if target.kind == "program":
        return target.slug in user.purchased_program_slugs
    if target.kind == "admin_feature":
        return user.role == "admin"
    raise ValueError(f"Unknown entitlement target: {target.kind}")


# --- Plans ---

@dataclass(frozen=True)
class Plan:
    plan_id: str
    label: str
    months: int
    price_id: Optional[str]


def list_plans() -> List[Plan]:
    return [
        Plan("1-month", "1 month", 1, settings.STRIPE_PRICE_1_MONTH),
        Plan("3-month", "3 months", 3, settings.STRIPE_PRICE_3_MONTH),
        Plan("6-month", "6 months", 6, settings.STRIPE_PRICE_6_MONTH),
        Plan("12-month", "12 months", 12, settings.STRIPE_PRICE_12_MONTH),
    ]


def get_plan(plan_id: str) -> Optional[Plan]:
    for plan in list_plans():
        if plan.plan_id == plan_id:
            return plan
    return None


def plan_for_price(price_id: Optional[str]) -> Optional[str]:
    if not price_id:
        return None
    for plan in list_plans():
        if plan.price_id and plan.price_id == price_id:
            return plan.plan_id
    return None


# --- State machine ---

# Provider-event triggers, named after the provider's event vocabulary.
SUBSCRIPTION_CREATED = "subscription.created"
SUBSCRIPTION_UPDATED = "subscription.updated"
SUBSCRIPTION_DELETED = "subscription.deleted"
PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
PAYMENT_FAILED = "invoice.payment_failed"
CHECKOUT_COMPLETED = "checkout.completed"

_FAILED_PAYMENT_STATUS = {
    None: SubscriptionStatus.INCOMPLETE.value,
    SubscriptionStatus.INCOMPLETE.value: SubscriptionStatus.INCOMPLETE.value,
    SubscriptionStatus.ACTIVE.value: SubscriptionStatus.PAST_DUE.value,
    SubscriptionStatus.TRIALING.value: SubscriptionStatus.PAST_DUE.value,
    SubscriptionStatus.PAST_DUE.value: SubscriptionStatus.PAST_DUE.value,
}


def next_status(current: Optional[str], trigger: str, provider_status: Optional[str] = None) -> Optional[str]:
    """
    Status after ``trigger`` or None when the trigger does not apply from ``current``.

    A canceled subscription is terminal for provider events: a renewed
    membership arrives as a new subscription id.
    """
    if trigger == SUBSCRIPTION_DELETED:
        return SubscriptionStatus.CANCELED.value
    if trigger == CHECKOUT_COMPLETED:
        return SubscriptionStatus.INCOMPLETE.value if current is None else None
    if current == SubscriptionStatus.CANCELED.value and trigger != SUBSCRIPTION_CREATED:
        return None
    if trigger == SUBSCRIPTION_CREATED:
        return provider_status if provider_status in KNOWN_STATUSES else SubscriptionStatus.INCOMPLETE.value
    if trigger == SUBSCRIPTION_UPDATED:
        return provider_status if provider_status in KNOWN_STATUSES else current
    if trigger == PAYMENT_SUCCEEDED:
        return SubscriptionStatus.ACTIVE.value
    if trigger == PAYMENT_FAILED:
        return _FAILED_PAYMENT_STATUS.get(current)
    raise ValueError(f"Unknown subscription trigger: {trigger}")


def is_stale(current: Optional[SubscriptionRecord], incoming: SubscriptionRecord) -> bool:
    """
    Out-of-order guard: an event whose period starts before the stored one is
    dropped. Events without period data apply only to the stored subscription.
    """
    if current is None:
        return False
    if incoming.current_period_start is None:
        return bool(
            current.external_subscription_id
            and incoming.external_subscription_id
            and current.external_subscription_id != incoming.external_subscription_id
        )
    if current.current_period_start is None:
        return False
    if incoming.current_period_start < current.current_period_start:
        return True
    if (
        incoming.current_period_start == current.current_period_start
        and incoming.current_period_end is not None
        and current.current_period_end is not None
        and incoming.current_period_end < current.current_period_end
    ):
        return True
    return False


def transition(
    current: Optional[SubscriptionRecord],
    trigger: str,
    incoming: SubscriptionRecord,
) -> Optional[SubscriptionRecord]:
    """
    Merge an event into the stored record.

    ``incoming`` carries whatever the event knows (status for subscription
    events, period, ids); missing pieces are taken from ``current``. Returns
    None when the event must be acknowledged but dropped.
    """
    if is_stale(current, incoming):
        return None
    status = next_status(current.status if current else None, trigger, incoming.status or None)
    if status is None:
        return None

    carries_subscription = trigger in (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED)
    cancel_flag = incoming.cancel_at_period_end if carries_subscription else bool(current and current.cancel_at_period_end)
    if status == SubscriptionStatus.CANCELED.value:
        cancel_flag = False

    start = incoming.current_period_start or (current.current_period_start if current else None)
    end = incoming.current_period_end or (current.current_period_end if current else None)
    if start is not None and end is not None and end < start:
        end = start

    return SubscriptionRecord(
        plan_id=incoming.plan_id or (current.plan_id if current else None),
        status=status,
        current_period_start=start,
        current_period_end=end,
        cancel_at_period_end=cancel_flag,
        external_subscription_id=incoming.external_subscription_id
        or (current.external_subscription_id if current else None),
    )


def apply_subscription_event(
    db: Session,
    user: User,
    trigger: str,
    incoming: SubscriptionRecord,
) -> bool:
    """Apply an event to the user's record. Returns False when it was dropped."""
    current = user.active_subscription
    new_record = transition(current, trigger, incoming)
    if new_record is None:
        logger.info(
            f"Dropped {trigger} for user {user.id}",
            extra={"extra_fields": {"user_id": str(user.id), "trigger": trigger}},
        )
        return False
    applied = identity_store.set_subscription(db, user.id, new_record)
    if applied:
        logger.info(
            f"Subscription {trigger}: {current.status if current else None} -> {new_record.status}",
            extra={"extra_fields": {"user_id": str(user.id), "status": new_record.status}},
        )
    return applied


# --- Checkout ---

def _ensure_customer(db: Session, user: User, gateway) -> str:
    if user.payment_customer_id:
        return user.payment_customer_id
    customer_id = gateway.ensure_customer(user)
    identity_store.set_payment_customer_id(db, user.id, customer_id)
    db.commit()
    db.refresh(user)
    return user.payment_customer_id


def create_subscription_checkout(db: Session, user: User, plan_id: str, gateway) -> str:
    plan = get_plan(plan_id)
    if plan is None:
        raise ValidationFailedError("Unknown plan", errors=[{"field": "plan", "allowed": [p.plan_id for p in list_plans()]}])
    if has_access(user, Target.subscription_feature()):
        raise ConflictError("You already have an active subscription", error_code="already_subscribed")

    customer_id = _ensure_customer(db, user, gateway)
    return gateway.create_subscription_checkout(customer_id=customer_id, user=user, plan=plan)


def list_marketplace(db: Session) -> List[Program]:
    return list(
        db.execute(select(Program).where(Program.is_active.is_(True)).order_by(Program.title)).scalars()
    )


def list_owned_programs(db: Session, user: User) -> List[Program]:
    slugs = user.purchased_program_slugs
    if not slugs:
        return []
    return list(db.execute(select(Program).where(Program.slug.in_(slugs)).order_by(Program.title)).scalars())


def create_program_checkout(db: Session, user: User, program_id: UUID, gateway) -> str:
    program = db.get(Program, program_id)
    if program is None or not program.is_active:
        raise NotFoundError("Program")
    if has_access(user, Target.program(program.slug)):
        raise ConflictError("You already own this program", error_code="already_purchased")
    if not program.price_id:
        raise NotFoundError("Program price")

    customer_id = _ensure_customer(db, user, gateway)
    return gateway.create_program_checkout(customer_id=customer_id, user=user, program=program)


def grant_program(db: Session, user_id: UUID, slug: str, *, source: str = "purchase") -> bool:
    program = db.execute(select(Program).where(Program.slug == slug)).scalar_one_or_none()
    if program is None:
        raise NotFoundError("Program")
    added = identity_store.add_purchased_program(db, user_id, slug, source=source)
    if added:
        logger.info(
            f"Program {slug} granted to {user_id}",
            extra={"extra_fields": {"user_id": str(user_id), "program": slug, "source": source}},
        )
    return added


# --- Cancel / resume ---

def _owned_subscription(db: Session, caller: User, ext_id: str) -> User:
    owner = identity_store.find_by_external_subscription_id(db, ext_id)
    if owner is None:
        raise NotFoundError("Subscription")
    if owner.id != caller.id and caller.role != "admin":
        raise ForbiddenError("You can only manage your own subscription")
    return owner


def cancel_subscription(db: Session, caller: User, ext_id: str, *, at_period_end: bool, gateway) -> SubscriptionRecord:
    owner = _owned_subscription(db, caller, ext_id)
    record = owner.active_subscription
    if record.status == SubscriptionStatus.CANCELED.value:
        raise ConflictError("Subscription is already canceled", error_code="already_canceled")

    gateway.cancel_subscription(ext_id, at_period_end=at_period_end)

    if at_period_end:
        new_record = replace(record, cancel_at_period_end=True)
    else:
        new_record = replace(record, status=SubscriptionStatus.CANCELED.value, cancel_at_period_end=False)
    identity_store.set_subscription(db, owner.id, new_record, only_if_not_older=False)
    db.commit()
    logger.info(
        f"Subscription {ext_id} cancel requested (at_period_end={at_period_end})",
        extra={"extra_fields": {"user_id": str(owner.id), "by": str(caller.id)}},
    )
    return new_record


def resume_subscription(db: Session, caller: User, ext_id: str, *, gateway) -> SubscriptionRecord:
    owner = _owned_subscription(db, caller, ext_id)
    record = owner.active_subscription
    if record.current_period_end is None or record.current_period_end < utcnow():
        raise ConflictError("The subscription period has ended", error_code="subscription_period_ended")

    gateway.resume_subscription(ext_id)

    new_record = replace(record, status=SubscriptionStatus.ACTIVE.value, cancel_at_period_end=False)
    identity_store.set_subscription(db, owner.id, new_record, only_if_not_older=False)
    db.commit()
    logger.info(
        f"Subscription {ext_id} resumed",
        extra={"extra_fields": {"user_id": str(owner.id), "by": str(caller.id)}},
    )
    return new_record


# --- Reconciliation ---

def reconcile_subscriptions(db: Session, now: Optional[datetime] = None) -> Dict[str, int]:
    """
    Close subscriptions the provider may not have told us about:
    - cancel-at-period-end records whose period is over
    - past_due records whose period ended more than PAST_DUE_GRACE_DAYS ago
    """
    now = now or utcnow()
    grace_cutoff = now - timedelta(days=settings.PAST_DUE_GRACE_DAYS)

    candidates = db.execute(
        select(User).where(
            or_(
                and_(
                    User.subscription_cancel_at_period_end.is_(True),
                    User.subscription_status.in_(
                        [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value,
                         SubscriptionStatus.TRIALING.value]
                    ),
                    User.subscription_period_end < now,
                ),
                and_(
                    User.subscription_status == SubscriptionStatus.PAST_DUE.value,
                    User.subscription_period_end < grace_cutoff,
                ),
            )
        )
    ).scalars().all()

    counts = {"expired": 0, "past_due_canceled": 0}
    for user in candidates:
        record = user.active_subscription
        reason = "expired" if record.cancel_at_period_end else "past_due_canceled"
        new_record = replace(record, status=SubscriptionStatus.CANCELED.value, cancel_at_period_end=False)
        if identity_store.set_subscription(db, user.id, new_record, only_if_not_older=False):
            counts[reason] += 1
            logger.info(
                f"Subscription for {user.id} canceled by reconciler ({reason})",
                extra={"extra_fields": {"user_id": str(user.id), "reason": reason}},
            )
    db.commit()
    return counts


def subscription_projection(record: Optional[SubscriptionRecord]) -> Optional[Dict[str, Any]]:
    if record is None:
        return None
    return {
        "planId": record.plan_id,
        "status": record.status,
        "currentPeriodStart": record.current_period_start.isoformat() if record.current_period_start else None,
        "currentPeriodEnd": record.current_period_end.isoformat() if record.current_period_end else None,
        "cancelAtPeriodEnd": record.cancel_at_period_end,
        "externalSubscriptionId": record.external_subscription_id,
    }
