"""
Entitlement engine tests: access decisions, the subscription state machine,
checkout creation, cancel/resume and the program catalog.
"""
from datetime import timedelta
from uuid import uuid4

import pytest

from core.auth import require_active_subscription
from core.exceptions import ForbiddenError, NotFoundError
from models import SubscriptionRecord, User, UserProgram, utcnow
from services import entitlements, identity_store
from services.entitlements import (
    CHECKOUT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_SUCCEEDED,
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_UPDATED,
    Target,
    has_access,
    is_stale,
    next_status,
    plan_for_price,
    transition,
)

from conftest import error_code


def _subscription_fields(status="active", days_left=20, ext_id="sub_123", cancel=False):
    now = utcnow()
    return dict(
        subscription_plan_id="1-month",
        subscription_status=status,
        subscription_period_start=now + timedelta(days=days_left - 30),
        subscription_period_end=now + timedelta(days=days_left),
        subscription_cancel_at_period_end=cancel,
        subscription_external_id=ext_id,
    )


def _record(status="active", start_offset=0, ext_id="sub_123", cancel=False, with_period=True):
    start = utcnow() + timedelta(days=start_offset) if with_period else None
    return SubscriptionRecord(
        plan_id="1-month",
        status=status,
        current_period_start=start,
        current_period_end=start + timedelta(days=30) if with_period else None,
        cancel_at_period_end=cancel,
        external_subscription_id=ext_id,
    )


class TestHasAccess:

    def test_subscription_feature_requires_granting_status(self):
        for status, expected in [
            ("active", True), ("trialing", True), ("incomplete", False), ("past_due", False), ("canceled", False),
        ]:
            user = User(role="user", **_subscription_fields(status=status))
            assert has_access(user, Target.subscription_feature()) is expected, status

    def test_subscription_feature_requires_unexpired_period(self):
        user = User(role="user", **_subscription_fields(days_left=-1))
        assert has_access(user, Target.subscription_feature()) is False

    def test_no_subscription(self):
        assert has_access(User(role="user"), Target.subscription_feature()) is False

    def test_program_access_ignores_subscription(self):
        user = User(role="user", **_subscription_fields(status="canceled", days_left=-10))
        user.program_entries.append(UserProgram(program_slug="back-program"))
        assert has_access(user, Target.program("back-program")) is True
        assert has_access(user, Target.program("mobility")) is False

    def test_active_subscription_does_not_grant_programs(self):
        user = User(role="user", **_subscription_fields())
        assert has_access(user, Target.program("back-program")) is False

    def test_admin_feature(self):
        assert has_access(User(role="admin"), Target.admin_feature()) is True
        assert has_access(User(role="trainer"), Target.admin_feature()) is False

    def test_unknown_target(self):
        with pytest.raises(ValueError):
            has_access(User(role="user"), Target("coupon"))


class TestStateMachine:

    @pytest.mark.parametrize("current, trigger, provider_status, expected", [
        (None, SUBSCRIPTION_CREATED, "incomplete", "incomplete"),
        (None, SUBSCRIPTION_CREATED, "unpaid", "incomplete"),
        ("incomplete", PAYMENT_SUCCEEDED, None, "active"),
        ("active", PAYMENT_SUCCEEDED, None, "active"),
        ("active", PAYMENT_FAILED, None, "past_due"),
        ("past_due", PAYMENT_SUCCEEDED, None, "active"),
        ("active", SUBSCRIPTION_DELETED, None, "canceled"),
        ("past_due", SUBSCRIPTION_DELETED, None, "canceled"),
        ("active", SUBSCRIPTION_UPDATED, "trialing", "trialing"),
        ("active", SUBSCRIPTION_UPDATED, "unpaid", "active"),
        (None, CHECKOUT_COMPLETED, None, "incomplete"),
        ("active", CHECKOUT_COMPLETED, None, None),
        ("canceled", PAYMENT_SUCCEEDED, None, None),
        ("canceled", PAYMENT_FAILED, None, None),
        ("canceled", SUBSCRIPTION_CREATED, "active", "active"),
    ])
    def test_next_status(self, current, trigger, provider_status, expected):
        assert next_status(current, trigger, provider_status) == expected

    def test_unknown_trigger(self):
        with pytest.raises(ValueError):
            next_status("active", "subscription.paused")

    def test_older_period_is_stale(self):
        assert is_stale(_record(start_offset=0), _record(start_offset=-30)) is True
        assert is_stale(_record(start_offset=0), _record(start_offset=0)) is False
        assert is_stale(_record(start_offset=0), _record(start_offset=30)) is False
        assert is_stale(None, _record(start_offset=-300)) is False

    def test_event_without_period_needs_matching_subscription(self):
        current = _record()
        assert is_stale(current, _record(with_period=False)) is False
        assert is_stale(current, _record(with_period=False, ext_id="sub_other")) is True

    def test_payment_extends_period_and_keeps_cancel_flag(self):
        current = _record(start_offset=-30, cancel=True)
        incoming = SubscriptionRecord(None, "", current.current_period_end, current.current_period_end + timedelta(days=30), False, "sub_123")
        merged = transition(current, PAYMENT_SUCCEEDED, incoming)
        assert merged.status == "active"
        assert merged.current_period_end == incoming.current_period_end
        assert merged.cancel_at_period_end is True
        assert merged.plan_id == "1-month"

    def test_deleted_clears_cancel_flag(self):
        merged = transition(_record(cancel=True), SUBSCRIPTION_DELETED, _record(with_period=False, cancel=True))
        assert merged.status == "canceled"
        assert merged.cancel_at_period_end is False
        assert merged.current_period_end is not None

    def test_stale_event_is_dropped(self):
        assert transition(_record(start_offset=0), PAYMENT_FAILED, _record(start_offset=-30, status="")) is None


class TestPlans:

    def test_plan_for_price(self):
        assert plan_for_price("price_3m") == "3-month"
        assert plan_for_price("price_unknown") is None
        assert plan_for_price(None) is None

    def test_list_plans_endpoint(self, client):
        response = client.get("/api/v1/subscriptions/plans")
        assert response.status_code == 200
        plans = response.json()["data"]
        assert [p["planId"] for p in plans] == ["1-month", "3-month", "6-month", "12-month"]
        assert all(p["available"] for p in plans)


class TestSubscriptionCheckout:

    def test_create_checkout(self, client, db_session, make_user, auth_headers, gateway):
        user = make_user()
        response = client.post(
            "/api/v1/subscriptions/create", headers=auth_headers(user), json={"plan": "3-month", "paymentMethodId": "pm_1"}
        )
        assert response.status_code == 200
        assert response.json()["data"] == {"checkoutUrl": "https://checkout.test/subscription/3-month"}

        customer_id = f"cus_{user.id.hex[:12]}"
        assert gateway.calls == [("ensure_customer", str(user.id)), ("subscription_checkout", customer_id, "3-month")]
        db_session.refresh(user)
        assert user.payment_customer_id == customer_id

    def test_existing_customer_is_reused(self, client, make_user, auth_headers, gateway):
        user = make_user(payment_customer_id="cus_existing")
        client.post("/api/v1/subscriptions/create", headers=auth_headers(user), json={"plan": "1-month"})
        assert gateway.calls == [("subscription_checkout", "cus_existing", "1-month")]

    def test_unknown_plan(self, client, make_user, auth_headers, gateway):
        user = make_user()
        response = client.post("/api/v1/subscriptions/create", headers=auth_headers(user), json={"plan": "2-month"})
        assert response.status_code == 400
        assert error_code(response) == "validation_failed"
        assert gateway.calls == []

    def test_already_subscribed(self, client, make_user, auth_headers, gateway):
        user = make_user(**_subscription_fields())
        response = client.post("/api/v1/subscriptions/create", headers=auth_headers(user), json={"plan": "1-month"})
        assert response.status_code == 409
        assert error_code(response) == "already_subscribed"

    def test_requires_bearer(self, client, gateway):
        response = client.post("/api/v1/subscriptions/create", json={"plan": "1-month"})
        assert response.status_code == 401


class TestCurrentSubscription:

    def test_without_subscription(self, client, make_user, auth_headers):
        user = make_user()
        data = client.get("/api/v1/subscriptions/user/current", headers=auth_headers(user)).json()["data"]
        assert data == {"subscription": None, "hasAccess": False}

    def test_with_subscription(self, client, make_user, auth_headers):
        user = make_user(**_subscription_fields())
        data = client.get("/api/v1/subscriptions/user/current", headers=auth_headers(user)).json()["data"]
        assert data["hasAccess"] is True
        assert data["subscription"]["status"] == "active"
        assert data["subscription"]["externalSubscriptionId"] == "sub_123"
        assert data["subscription"]["cancelAtPeriodEnd"] is False


class TestCancelResume:

    def test_cancel_at_period_end_by_default(self, client, db_session, make_user, auth_headers, gateway):
        user = make_user(**_subscription_fields())
        response = client.delete("/api/v1/subscriptions/sub_123/cancel", headers=auth_headers(user))
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "active"
        assert data["cancelAtPeriodEnd"] is True
        assert gateway.calls == [("cancel", "sub_123", True)]

        db_session.refresh(user)
        assert user.subscription_cancel_at_period_end is True
        assert has_access(user, Target.subscription_feature()) is True

    def test_immediate_cancel(self, client, db_session, make_user, auth_headers, gateway):
        user = make_user(**_subscription_fields())
        response = client.request(
            "DELETE", "/api/v1/subscriptions/sub_123/cancel", headers=auth_headers(user), json={"atPeriodEnd": False}
        )
        assert response.json()["data"]["status"] == "canceled"
        assert gateway.calls == [("cancel", "sub_123", False)]
        db_session.refresh(user)
        assert has_access(user, Target.subscription_feature()) is False

    def test_already_canceled(self, client, make_user, auth_headers, gateway):
        user = make_user(**_subscription_fields(status="canceled"))
        response = client.delete("/api/v1/subscriptions/sub_123/cancel", headers=auth_headers(user))
        assert response.status_code == 409
        assert error_code(response) == "already_canceled"
        assert gateway.calls == []

    def test_only_owner_or_admin(self, client, make_user, auth_headers, gateway):
        make_user(**_subscription_fields())
        stranger = make_user()
        admin = make_user(role="admin")

        response = client.delete("/api/v1/subscriptions/sub_123/cancel", headers=auth_headers(stranger))
        assert response.status_code == 403
        assert error_code(response) == "forbidden"

        response = client.delete("/api/v1/subscriptions/sub_123/cancel", headers=auth_headers(admin))
        assert response.status_code == 200
        assert gateway.calls == [("cancel", "sub_123", True)]

    def test_unknown_subscription(self, client, make_user, auth_headers, gateway):
        user = make_user()
        response = client.post("/api/v1/subscriptions/sub_missing/resume", headers=auth_headers(user))
        assert response.status_code == 404
        assert error_code(response) == "not_found"

    def test_resume_before_period_end(self, client, db_session, make_user, auth_headers, gateway):
        user = make_user(**_subscription_fields(cancel=True))
        response = client.post("/api/v1/subscriptions/sub_123/resume", headers=auth_headers(user))
        assert response.status_code == 200
        assert response.json()["data"]["cancelAtPeriodEnd"] is False
        assert response.json()["data"]["status"] == "active"
        assert gateway.calls == [("resume", "sub_123")]
        db_session.refresh(user)
        assert user.subscription_cancel_at_period_end is False

    def test_resume_after_period_end(self, client, make_user, auth_headers, gateway):
        user = make_user(**_subscription_fields(days_left=-1, cancel=True))
        response = client.post("/api/v1/subscriptions/sub_123/resume", headers=auth_headers(user))
        assert response.status_code == 409
        assert error_code(response) == "subscription_period_ended"
        assert gateway.calls == []


class TestPrograms:

    def test_marketplace_lists_active_programs(self, client, make_program):
        make_program("mobility", title="Mobility")
        make_program("back-program", title="Back Program")
        make_program("retired", title="Retired", is_active=False)

        response = client.get("/api/v1/programs/marketplace")
        assert response.status_code == 200
        programs = response.json()["data"]
        assert [p["slug"] for p in programs] == ["back-program", "mobility"]
        assert set(programs[0]) == {"id", "slug", "title", "author", "description", "difficulty", "duration"}

    def test_my_programs(self, client, db_session, make_user, make_program, auth_headers):
        make_program("mobility")
        make_program("back-program")
        user = make_user()
        identity_store.add_purchased_program(db_session, user.id, "mobility")
        db_session.commit()

        data = client.get("/api/v1/programs/my", headers=auth_headers(user)).json()["data"]
        assert [p["slug"] for p in data] == ["mobility"]

    def test_purchase_checkout(self, client, make_user, make_program, auth_headers, gateway):
        program = make_program("back-program")
        user = make_user()
        response = client.post(f"/api/v1/programs/{program.id}/purchase", headers=auth_headers(user))
        assert response.status_code == 200
        assert response.json()["data"]["checkoutUrl"] == "https://checkout.test/program/back-program"
        assert gateway.calls[-1] == ("program_checkout", f"cus_{user.id.hex[:12]}", "back-program")

    def test_purchase_unknown_program(self, client, make_user, auth_headers, gateway):
        user = make_user()
        response = client.post(f"/api/v1/programs/{uuid4()}/purchase", headers=auth_headers(user))
        assert response.status_code == 404

    def test_purchase_inactive_program(self, client, make_user, make_program, auth_headers, gateway):
        program = make_program("retired", is_active=False)
        user = make_user()
        response = client.post(f"/api/v1/programs/{program.id}/purchase", headers=auth_headers(user))
        assert response.status_code == 404

    def test_already_purchased(self, client, db_session, make_user, make_program, auth_headers, gateway):
        program = make_program("back-program")
        user = make_user()
        identity_store.add_purchased_program(db_session, user.id, "back-program")
        db_session.commit()
        response = client.post(f"/api/v1/programs/{program.id}/purchase", headers=auth_headers(user))
        assert response.status_code == 409
        assert error_code(response) == "already_purchased"
        assert gateway.calls == []

    def test_grant_unknown_program(self, db_session, make_user):
        user = make_user()
        with pytest.raises(NotFoundError):
            entitlements.grant_program(db_session, user.id, "nope")


class TestSubscriptionGate:

    def test_active_subscription_passes(self, make_user):
        user = make_user(**_subscription_fields())
        assert require_active_subscription(current_user=user) is user

    def test_admin_passes_without_subscription(self, make_user):
        admin = make_user(role="admin")
        assert require_active_subscription(current_user=admin) is admin

    def test_past_due_is_refused_with_status(self, make_user):
        user = make_user(**_subscription_fields(status="past_due"))
        with pytest.raises(ForbiddenError) as exc:
            require_active_subscription(current_user=user)
        error = exc.value.to_error()
        assert error["code"] == "subscription_required"
        assert error["subscriptionStatus"] == "past_due"
        assert error["currentPeriodEnd"] is not None
