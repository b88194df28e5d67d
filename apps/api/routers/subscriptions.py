"""
Subscription endpoints: hosted checkout, current state, cancel and resume.

Subscription state itself only changes through payment events (see
routers/webhooks.py) and the explicit cancel/resume calls here.
"""
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from core.auth import get_current_user
from core.database import get_db
from core.request_guards import valid_subscription_id
from models import User
from schemas import CancelSubscriptionRequest, SubscriptionCreateRequest, envelope
from services import entitlements
from services.entitlements import Target, has_access, subscription_projection
from services.payment_gateway import get_payment_gateway

router = APIRouter(prefix="/api/v1/subscriptions", tags=["subscriptions"])


@router.get("/plans")
def list_plans():
    return envelope([
        {"planId": plan.plan_id, "label": plan.label, "months": plan.months, "available": bool(plan.price_id)}
        for plan in entitlements.list_plans()
    ])


@router.post("/create")
def create_subscription(
    body: SubscriptionCreateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway=Depends(get_payment_gateway),
):
    url = entitlements.create_subscription_checkout(db, current_user, body.plan, gateway)
    return envelope({"checkoutUrl": url})


@router.get("/user/current")
def current_subscription(current_user: User = Depends(get_current_user)):
    return envelope({
        "subscription": subscription_projection(current_user.active_subscription),
        "hasAccess": has_access(current_user, Target.subscription_feature()),
    })


@router.delete("/{ext_id}/cancel")
def cancel_subscription(
    body: Optional[CancelSubscriptionRequest] = None,
    subscription_id: str = Depends(valid_subscription_id),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway=Depends(get_payment_gateway),
):
    at_period_end = body.at_period_end if body is not None else True
    record = entitlements.cancel_subscription(db, current_user, subscription_id, at_period_end=at_period_end, gateway=gateway)
    return envelope(subscription_projection(record))


@router.post("/{ext_id}/resume")
def resume_subscription(
    subscription_id: str = Depends(valid_subscription_id),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway=Depends(get_payment_gateway),
):
    record = entitlements.resume_subscription(db, current_user, subscription_id, gateway=gateway)
    return envelope(subscription_projection(record))
