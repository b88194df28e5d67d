"""
Admin user operations: role changes, unlocks, session revocation, program
grants and the log buffer view.
"""
import logging
from datetime import timedelta

from core.auth import role_satisfies
from models import AdminAuditEvent, utcnow

from conftest import DEFAULT_PASSWORD, error_code


def _audit(db_session):
    return db_session.query(AdminAuditEvent).order_by(AdminAuditEvent.created_at).all()


class TestAdminAccess:

    def test_requires_bearer(self, client):
        assert client.get("/api/v1/admin/users").status_code == 401

    def test_members_and_trainers_are_forbidden(self, client, make_user, auth_headers):
        for role in ("user", "trainer"):
            response = client.get("/api/v1/admin/users", headers=auth_headers(make_user(role=role)))
            assert response.status_code == 403
            assert error_code(response) == "forbidden"

    def test_role_hierarchy(self):
        assert role_satisfies("admin", "trainer") is True
        assert role_satisfies("admin", "user") is True
        assert role_satisfies("trainer", "user") is True
        assert role_satisfies("trainer", "admin") is False
        assert role_satisfies("user", "trainer") is False
        assert role_satisfies("owner", "user") is False


class TestListUsers:

    def test_paginated_projection(self, client, make_user, auth_headers):
        admin = make_user(role="admin")
        for _ in range(3):
            make_user()

        response = client.get("/api/v1/admin/users?limit=2&offset=1", headers=auth_headers(admin))
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["total"] == 4
        assert data["limit"] == 2 and data["offset"] == 1
        assert len(data["users"]) == 2
        for user in data["users"]:
            assert "passwordHash" not in user
            assert "tokenVersion" not in user

    def test_limit_is_bounded(self, client, make_user, auth_headers):
        admin = make_user(role="admin")
        response = client.get("/api/v1/admin/users?limit=1000", headers=auth_headers(admin))
        assert response.status_code == 400
        assert error_code(response) == "validation_failed"


class TestRoleChange:

    def test_promote_bumps_version_and_audits(self, client, db_session, make_user, auth_headers):
        admin = make_user(role="admin")
        member = make_user()
        old_headers = auth_headers(member)

        response = client.put(
            f"/api/v1/admin/users/{member.id}/role", headers=auth_headers(admin), json={"newRole": "trainer"}
        )
        assert response.status_code == 200
        assert response.json()["data"]["role"] == "trainer"

        db_session.refresh(member)
        assert member.role == "trainer"
        assert member.token_version == 1
        assert client.get("/api/v1/auth/me", headers=old_headers).status_code == 401

        events = _audit(db_session)
        assert len(events) == 1
        assert events[0].action == "user.role_change"
        assert events[0].actor_user_id == admin.id
        assert events[0].target_user_id == member.id
        assert events[0].payload == {"before": {"role": "user"}, "after": {"role": "trainer"}}

    def test_demotion_also_bumps_version(self, client, db_session, make_user, auth_headers):
        admin = make_user(role="admin")
        other_admin = make_user(role="admin")
        client.put(f"/api/v1/admin/users/{other_admin.id}/role", headers=auth_headers(admin), json={"newRole": "user"})
        db_session.refresh(other_admin)
        assert other_admin.role == "user"
        assert other_admin.token_version == 1

    def test_same_role_is_a_no_op(self, client, db_session, make_user, auth_headers):
        admin = make_user(role="admin")
        member = make_user()
        response = client.put(f"/api/v1/admin/users/{member.id}/role", headers=auth_headers(admin), json={"newRole": "user"})
        assert response.status_code == 200
        db_session.refresh(member)
        assert member.token_version == 0
        assert _audit(db_session) == []

    def test_role_key_is_never_accepted(self, client, db_session, make_user, auth_headers):
        admin = make_user(role="admin")
        member = make_user()
        response = client.put(f"/api/v1/admin/users/{member.id}/role", headers=auth_headers(admin), json={"role": "admin"})
        assert response.status_code == 400
        assert error_code(response) == "validation_failed"
        db_session.refresh(member)
        assert member.role == "user"

    def test_unknown_role(self, client, make_user, auth_headers):
        admin = make_user(role="admin")
        member = make_user()
        response = client.put(f"/api/v1/admin/users/{member.id}/role", headers=auth_headers(admin), json={"newRole": "owner"})
        assert error_code(response) == "validation_failed"

    def test_cannot_change_own_role(self, client, make_user, auth_headers):
        admin = make_user(role="admin")
        response = client.put(f"/api/v1/admin/users/{admin.id}/role", headers=auth_headers(admin), json={"newRole": "user"})
        assert response.status_code == 403

    def test_unknown_user(self, client, make_user, auth_headers):
        admin = make_user(role="admin")
        response = client.put(
            "/api/v1/admin/users/6f1c2d3e-4a5b-4c6d-8e9f-0a1b2c3d4e5f/role",
            headers=auth_headers(admin),
            json={"newRole": "trainer"},
        )
        assert response.status_code == 404


class TestUnlockAndRevoke:

    def test_unlock_clears_lockout(self, client, db_session, make_user, auth_headers):
        admin = make_user(role="admin")
        member = make_user(email="locked@example.com", failed_login_attempts=0,
                           lockout_until=utcnow() + timedelta(minutes=10))
        assert client.post("/api/v1/auth/login", json={
            "email": "locked@example.com", "password": DEFAULT_PASSWORD,
        }).status_code == 423

        response = client.post(f"/api/v1/admin/users/{member.id}/unlock", headers=auth_headers(admin))
        assert response.status_code == 200
        assert response.json()["data"] == {"userId": str(member.id), "unlocked": True}

        assert client.post("/api/v1/auth/login", json={
            "email": "locked@example.com", "password": DEFAULT_PASSWORD,
        }).status_code == 200
        assert [e.action for e in _audit(db_session)] == ["user.unlock"]

    def test_revoke_sessions(self, client, db_session, make_user, auth_headers):
        admin = make_user(role="admin")
        member = make_user()
        member_headers = auth_headers(member)
        assert client.get("/api/v1/auth/me", headers=member_headers).status_code == 200

        response = client.post(f"/api/v1/admin/users/{member.id}/revoke-sessions", headers=auth_headers(admin))
        assert response.status_code == 200
        assert client.get("/api/v1/auth/me", headers=member_headers).status_code == 401
        db_session.refresh(member)
        assert member.token_version == 1


class TestGrantProgram:

    def test_grant(self, client, db_session, make_user, make_program, auth_headers):
        make_program("back-program")
        admin = make_user(role="admin")
        member = make_user()

        response = client.post(
            f"/api/v1/admin/users/{member.id}/programs", headers=auth_headers(admin), json={"programSlug": "back-program"}
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["granted"] is True
        assert data["user"]["purchasedProgramSlugs"] == ["back-program"]

        again = client.post(
            f"/api/v1/admin/users/{member.id}/programs", headers=auth_headers(admin), json={"programSlug": "back-program"}
        )
        assert again.json()["data"]["granted"] is False
        assert [e.action for e in _audit(db_session)] == ["user.program_grant"]

        access = client.get("/api/v1/programs/back-program/access", headers=auth_headers(member))
        assert access.json()["data"]["hasAccess"] is True

    def test_unknown_program(self, client, make_user, auth_headers):
        admin = make_user(role="admin")
        member = make_user()
        response = client.post(
            f"/api/v1/admin/users/{member.id}/programs", headers=auth_headers(admin), json={"programSlug": "missing"}
        )
        assert response.status_code == 404

    def test_purchased_slugs_key_is_stripped(self, client, make_user, make_program, auth_headers):
        make_program("back-program")
        admin = make_user(role="admin")
        member = make_user()
        response = client.post(
            f"/api/v1/admin/users/{member.id}/programs",
            headers=auth_headers(admin),
            json={"purchasedProgramSlugs": ["back-program"]},
        )
        assert error_code(response) == "validation_failed"


class TestLogView:

    def test_query_buffer(self, client, make_user, auth_headers):
        admin = make_user(role="admin")
        logging.getLogger("services.studio").warning("front desk printer offline")
        logging.getLogger("services.studio").info("front desk opened")

        response = client.get(
            "/api/v1/admin/logs?level=WARNING&logger=services.studio&contains=printer", headers=auth_headers(admin)
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert [r["message"] for r in data["records"]] == ["front desk printer offline"]
        assert data["capacity"] >= 10
        assert data["size"] >= 2

    def test_members_cannot_read_logs(self, client, make_user, auth_headers):
        response = client.get("/api/v1/admin/logs", headers=auth_headers(make_user()))
        assert response.status_code == 403
