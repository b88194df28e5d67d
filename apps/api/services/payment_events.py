"""
Payment-event consumer.

Processes verified provider events idempotently: the event id is recorded in
``processed_payment_events`` in the same transaction as the state change, so
a replayed delivery finds the id and changes nothing. If the commit fails the
caller answers 5xx and the provider retries the whole event.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Dict, Optional, Tuple
from uuid import UUID

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import InvalidRequestError
from models import ProcessedPaymentEvent, SubscriptionRecord, User, utcnow
from services import entitlements, identity_store

logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENTS = {
    "customer.subscription.created": entitlements.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": entitlements.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": entitlements.SUBSCRIPTION_DELETED,
}
INVOICE_EVENTS = {
    "invoice.payment_succeeded": entitlements.PAYMENT_SUCCEEDED,
    "invoice.paid": entitlements.PAYMENT_SUCCEEDED,
    "invoice.payment_failed": entitlements.PAYMENT_FAILED,
}
CHECKOUT_COMPLETED = "checkout.session.completed"

OUTCOME_APPLIED = "applied"
OUTCOME_DROPPED = "dropped"
OUTCOME_IGNORED = "ignored"
OUTCOME_UNMATCHED = "unmatched"


def _ts(value: Any) -> Optional[datetime]:
    try:
        if value is None:
            return None
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _str(value: Any) -> Optional[str]:
    # Expanded objects arrive as dicts with an id.
    if isinstance(value, dict):
        value = value.get("id")
    return str(value) if value else None


def _item_period(obj: Dict[str, Any]) -> Tuple[Optional[int], Optional[int]]:
    """
    Stripe API compatibility:
    - Older API versions: `subscription.current_period_start/end` (top-level)
    - Newer API versions: billing period fields live on `subscription.items.data[*]`
    """
    start, end = obj.get("current_period_start"), obj.get("current_period_end")
    if start is not None and end is not None:
        return start, end

    data = ((obj.get("items") or {}).get("data")) or []
    starts = [it.get("current_period_start") for it in data if it.get("current_period_start") is not None]
    ends = [it.get("current_period_end") for it in data if it.get("current_period_end") is not None]
    return (min(starts) if starts else start), (max(ends) if ends else end)


def _derive_cancel_at_period_end(obj: Dict[str, Any], current_period_end_ts: Optional[int]) -> bool:
    if bool(obj.get("cancel_at_period_end", False)):
        return True
    # Newer Stripe API uses `cancel_at` timestamps for scheduled cancellation.
    cancel_at = obj.get("cancel_at")
    if cancel_at is None:
        return False
    if current_period_end_ts is None:
        return True
    return int(cancel_at) == int(current_period_end_ts)


def _first_price_id(obj: Dict[str, Any]) -> Optional[str]:
    data = ((obj.get("items") or {}).get("data")) or []
    for item in data:
        price = item.get("price") or {}
        if price.get("id"):
            return str(price["id"])
    return None


def subscription_record_from_object(obj: Dict[str, Any]) -> SubscriptionRecord:
    start_ts, end_ts = _item_period(obj)
    metadata = obj.get("metadata") or {}
    return SubscriptionRecord(
        plan_id=metadata.get("planId") or entitlements.plan_for_price(_first_price_id(obj)),
        status=str(obj.get("status") or ""),
        current_period_start=_ts(start_ts),
        current_period_end=_ts(end_ts),
        cancel_at_period_end=_derive_cancel_at_period_end(obj, end_ts),
        external_subscription_id=_str(obj.get("id")),
    )


def _invoice_subscription_id(obj: Dict[str, Any]) -> Optional[str]:
    sub = _str(obj.get("subscription"))
    if sub:
        return sub
    # Newer API versions nest it under parent.subscription_details.
    details = ((obj.get("parent") or {}).get("subscription_details")) or {}
    return _str(details.get("subscription"))


def subscription_record_from_invoice(obj: Dict[str, Any]) -> SubscriptionRecord:
    """The subscription period an invoice pays for is on its subscription line."""
    start_ts = end_ts = None
    price_id = None
    for line in ((obj.get("lines") or {}).get("data")) or []:
        period = line.get("period") or {}
        if period.get("start") is not None and (start_ts is None or period["start"] < start_ts):
            start_ts = period["start"]
        if period.get("end") is not None and (end_ts is None or period["end"] > end_ts):
            end_ts = period["end"]
        price_id = price_id or _str((line.get("price") or {}).get("id"))

    if start_ts is None or end_ts is None:
        start_ts, end_ts = obj.get("period_start"), obj.get("period_end")

    return SubscriptionRecord(
        plan_id=entitlements.plan_for_price(price_id),
        status="",
        current_period_start=_ts(start_ts),
        current_period_end=_ts(end_ts),
        cancel_at_period_end=False,
        external_subscription_id=_invoice_subscription_id(obj),
    )


def _find_user(db: Session, *, customer_id: Optional[str], subscription_id: Optional[str],
               user_ref: Optional[str] = None) -> Optional[User]:
    user = identity_store.find_by_payment_customer_id(db, customer_id) if customer_id else None
    if user is None and subscription_id:
        user = identity_store.find_by_external_subscription_id(db, subscription_id)
    if user is None and user_ref:
        try:
            user = identity_store.find_by_id(db, UUID(user_ref))
        except ValueError:
            user = None
    return user


def _handle_subscription(db: Session, trigger: str, obj: Dict[str, Any]) -> Tuple[str, Optional[User]]:
    customer_id = _str(obj.get("customer"))
    incoming = subscription_record_from_object(obj)
    user = _find_user(
        db,
        customer_id=customer_id,
        subscription_id=incoming.external_subscription_id,
        user_ref=(obj.get("metadata") or {}).get("userId"),
    )
    if user is None:
        return OUTCOME_UNMATCHED, None
    if customer_id and not user.payment_customer_id:
        identity_store.set_payment_customer_id(db, user.id, customer_id)
    applied = entitlements.apply_subscription_event(db, user, trigger, incoming)
    return (OUTCOME_APPLIED if applied else OUTCOME_DROPPED), user


def _handle_invoice(db: Session, trigger: str, obj: Dict[str, Any]) -> Tuple[str, Optional[User]]:
    incoming = subscription_record_from_invoice(obj)
    if not incoming.external_subscription_id:
        # One-off payment invoices carry no subscription state.
        return OUTCOME_IGNORED, None
    user = _find_user(db, customer_id=_str(obj.get("customer")), subscription_id=incoming.external_subscription_id)
    if user is None:
        return OUTCOME_UNMATCHED, None
    applied = entitlements.apply_subscription_event(db, user, trigger, incoming)
    return (OUTCOME_APPLIED if applied else OUTCOME_DROPPED), user


def _handle_checkout_completed(db: Session, obj: Dict[str, Any]) -> Tuple[str, Optional[User]]:
    metadata = obj.get("metadata") or {}
    customer_id = _str(obj.get("customer"))
    user = _find_user(
        db,
        customer_id=customer_id,
        subscription_id=None,
        user_ref=metadata.get("userId") or obj.get("client_reference_id"),
    )
    if user is None:
        return OUTCOME_UNMATCHED, None

    if customer_id and not user.payment_customer_id:
        identity_store.set_payment_customer_id(db, user.id, customer_id)

    mode = obj.get("mode")
    if mode == "payment":
        slug = metadata.get("programSlug")
        if not slug or obj.get("payment_status") not in (None, "paid", "no_payment_required"):
            return OUTCOME_IGNORED, user
        identity_store.add_purchased_program(db, user.id, slug, source="purchase")
        return OUTCOME_APPLIED, user

    if mode == "subscription":
        incoming = SubscriptionRecord(
            plan_id=metadata.get("planId"),
            status="",
            current_period_start=None,
            current_period_end=None,
            cancel_at_period_end=False,
            external_subscription_id=_str(obj.get("subscription")),
        )
        applied = entitlements.apply_subscription_event(db, user, entitlements.CHECKOUT_COMPLETED, incoming)
        return (OUTCOME_APPLIED if applied else OUTCOME_DROPPED), user

    return OUTCOME_IGNORED, user


def process_payment_event(db: Session, *, event: Dict[str, Any]) -> Dict[str, Any]:
    """
    Idempotently apply a verified provider event.

    Returns a small result dict; ``duplicate`` is set when the event id was
    already processed.
    """
    event_id = str(event.get("id") or "")
    event_type = str(event.get("type") or "")
    obj = (event.get("data") or {}).get("object")
    if not event_id or not event_type or not isinstance(obj, dict):
        raise InvalidRequestError("Malformed payment event")

    existing = db.get(ProcessedPaymentEvent, event_id)
    if existing is not None:
        return {"eventId": event_id, "duplicate": True, "outcome": existing.outcome}

    now = utcnow()
    record = ProcessedPaymentEvent(
        event_id=event_id,
        event_type=event_type,
        outcome=OUTCOME_IGNORED,
        received_at=now,
        expires_at=now + timedelta(days=settings.PROCESSED_EVENT_TTL_DAYS),
    )
    savepoint = db.begin_nested()
    db.add(record)
    try:
        savepoint.commit()
    except IntegrityError:
        # A concurrent delivery of the same event won the insert.
        savepoint.rollback()
        db.rollback()
        return {"eventId": event_id, "duplicate": True}

    user: Optional[User] = None
    if event_type in SUBSCRIPTION_EVENTS:
        outcome, user = _handle_subscription(db, SUBSCRIPTION_EVENTS[event_type], obj)
    elif event_type in INVOICE_EVENTS:
        outcome, user = _handle_invoice(db, INVOICE_EVENTS[event_type], obj)
    elif event_type == CHECKOUT_COMPLETED:
        outcome, user = _handle_checkout_completed(db, obj)
    else:
        outcome = OUTCOME_IGNORED
        logger.warning(
            f"Ignoring unhandled payment event type {event_type}",
            extra={"extra_fields": {"event_id": event_id, "event_type": event_type}},
        )

    record.outcome = outcome
    record.user_id = user.id if user is not None else None
    db.commit()

    log = logger.warning if outcome == OUTCOME_UNMATCHED else logger.info
    log(
        f"Payment event {event_type} {outcome}",
        extra={"extra_fields": {
            "event_id": event_id,
            "event_type": event_type,
            "outcome": outcome,
            "user_id": str(user.id) if user is not None else None,
        }},
    )
    return {"eventId": event_id, "duplicate": False, "outcome": outcome}


def purge_processed_events(db: Session, now: Optional[datetime] = None) -> int:
    """Delete processed-event rows past their retention window."""
    result = db.execute(
        delete(ProcessedPaymentEvent).where(ProcessedPaymentEvent.expires_at < (now or utcnow()))
    )
    db.commit()
    return int(result.rowcount or 0)
