from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Optional

import stripe

from core.config import settings
from core.exceptions import InvalidRequestError, UpstreamUnavailableError, WebhookSignatureError
from core.retry import call_with_retry

logger = logging.getLogger(__name__)

# Transient provider failures worth retrying; anything else is a request bug.
RETRYABLE_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError)


@dataclass(frozen=True)
class StripeConfig:
    secret_key: str
    checkout_success_url: str
    checkout_cancel_url: str


def _get_stripe_config() -> StripeConfig:
    """
    Load Stripe config from Settings.

    Fail closed: if configuration is missing, payment endpoints do not proceed.
    """
    base = settings.WEB_APP_BASE_URL.rstrip("/")
    success_url = settings.STRIPE_CHECKOUT_SUCCESS_URL or f"{base}/subscriptions?checkout=success"
    cancel_url = settings.STRIPE_CHECKOUT_CANCEL_URL or f"{base}/subscriptions?checkout=cancel"

    if not settings.STRIPE_SECRET_KEY:
        logger.error("Stripe not configured (missing: STRIPE_SECRET_KEY)")
        raise UpstreamUnavailableError("Payments are not available right now")

    return StripeConfig(
        secret_key=str(settings.STRIPE_SECRET_KEY),
        checkout_success_url=str(success_url),
        checkout_cancel_url=str(cancel_url),
    )


class StripeService:
    """Payment collaborator: customers, hosted checkout, cancel/resume."""

    def __init__(self) -> None:
        cfg = _get_stripe_config()
        stripe.api_key = cfg.secret_key
        stripe.default_http_client = stripe.RequestsClient(timeout=settings.PAYMENT_TIMEOUT_S)
        # Retries are ours (bounded, jittered); the SDK must not add its own.
        stripe.max_network_retries = 0
        self.cfg = cfg

    def _call(self, label: str, fn):
        try:
            return call_with_retry(fn, retry_on=RETRYABLE_ERRORS, label=f"stripe.{label}")
        except stripe.StripeError as e:
            logger.error(
                f"Stripe {label} failed: {type(e).__name__}",
                extra={"extra_fields": {"stripe_error": str(e), "request_id": getattr(e, "request_id", None)}},
            )
            raise UpstreamUnavailableError() from e

    def ensure_customer(self, user) -> str:
        customer = self._call(
            "customer.create",
            lambda: stripe.Customer.create(
                email=user.email,
                name=user.full_name,
                metadata={"userId": str(user.id)},
            ),
        )
        return str(customer.id)

    def create_subscription_checkout(self, *, customer_id: str, user, plan) -> str:
        if not plan.price_id:
            logger.error(f"No Stripe price configured for plan {plan.plan_id}")
            raise UpstreamUnavailableError("This plan is not available right now")

        metadata = {"userId": str(user.id), "planId": plan.plan_id}
        params: Dict[str, Any] = {
            "mode": "subscription",
            "customer": customer_id,
            "success_url": self.cfg.checkout_success_url,
            "cancel_url": self.cfg.checkout_cancel_url,
            "line_items": [{"price": plan.price_id, "quantity": 1}],
            "client_reference_id": str(user.id),
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
        }
        session = self._call("checkout.create", lambda: stripe.checkout.Session.create(**params))
        return str(session.url)

    def create_program_checkout(self, *, customer_id: str, user, program) -> str:
        params: Dict[str, Any] = {
            "mode": "payment",
            "customer": customer_id,
            "success_url": self.cfg.checkout_success_url,
            "cancel_url": self.cfg.checkout_cancel_url,
            "line_items": [{"price": program.price_id, "quantity": 1}],
            "client_reference_id": str(user.id),
            "metadata": {"userId": str(user.id), "programSlug": program.slug},
        }
        session = self._call("checkout.create", lambda: stripe.checkout.Session.create(**params))
        return str(session.url)

    def cancel_subscription(self, subscription_id: str, *, at_period_end: bool) -> None:
        if at_period_end:
            self._call(
                "subscription.modify",
                lambda: stripe.Subscription.modify(subscription_id, cancel_at_period_end=True),
            )
        else:
            self._call("subscription.cancel", lambda: stripe.Subscription.cancel(subscription_id))

    def resume_subscription(self, subscription_id: str) -> None:
        self._call(
            "subscription.modify",
            lambda: stripe.Subscription.modify(subscription_id, cancel_at_period_end=False),
        )


@lru_cache
def get_payment_gateway() -> StripeService:
    """FastAPI dependency; one client per process. Tests override it with a fake."""
    return StripeService()


def verify_webhook(payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
    """
    Verify the ``Stripe-Signature`` header (``t=...,v1=...`` HMAC-SHA256 over
    ``"{t}.{payload}"``) and return the decoded event.
    """
    secret = settings.STRIPE_WEBHOOK_SECRET
    if not secret:
        raise RuntimeError("Stripe webhook secret not configured")
    if not sig_header:
        raise WebhookSignatureError("Missing Stripe-Signature header")

    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"),
            sig_header,
            secret,
            tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_S,
        )
    except (stripe.SignatureVerificationError, UnicodeDecodeError):
        raise WebhookSignatureError()

    try:
        event = json.loads(payload)
    except ValueError:
        raise InvalidRequestError("Webhook payload is not valid JSON")
    if not isinstance(event, dict):
        raise InvalidRequestError("Webhook payload is not an event object")
    return event
